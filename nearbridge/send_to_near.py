"""
Natural ETH → NEP-141 transfer ("sendToNear").

A transfer goes through three steps:

    LOCK   ether is sent to the custodian contract on Ethereum
    SYNC   the NEAR light client catches up with enough confirmations,
           an inclusion proof of the lock event is built
    MINT   the proof is submitted to NEAR, which mints the bridged token

The host drives it. ``act`` is called when the transfer needs a user action
or a retry (status ACTION_NEEDED or FAILED); ``check_status`` is polled while
it is IN_PROGRESS. Both dispatch on ``completed_step`` and return a new
transfer; the transfer passed in is never modified, so a collaborator error
simply propagates and the next call retries the same step.

    completed_step   act              check_status
    ──────────────   ──────────────   ──────────────
    NONE             _lock            _check_lock
    LOCK             _check_sync      _check_sync
    SYNC             _mint            _check_mint
    MINT             (error)          (error)
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, Awaitable, Callable, Coroutine, Dict, Optional, Set

from nearbridge.chain import (
    DestinationChain,
    ProofService,
    SourceChainReader,
    SourceChainSigner,
    SyncOracle,
    TransferRegistry,
    TxOutcome,
)
from nearbridge.config import BridgeConfig, get_config
from nearbridge.confirmations import Clock, ConfirmationTracker
from nearbridge.observability import BridgeComponent, correlation_scope, get_logger
from nearbridge.proof import ProofBuilder
from nearbridge.redirect import MINTING, TRANSACTION_HASHES, ERROR_CODE, WalletRedirectChannel
from nearbridge.replacement import (
    EventExpectation,
    SearchError,
    TransactionQuery,
    TxValidationError,
    find_replacement_tx,
)
from nearbridge.transfer import (
    EthCache,
    Step,
    Transfer,
    TransferStateError,
    TransferStatus,
    to_minor_units,
)

logger = get_logger("send_to_near", BridgeComponent.TRANSFER)

SOURCE_NETWORK = "ethereum"
DESTINATION_NETWORK = "near"
TRANSFER_TYPE = "@near-eth/near-ether/natural-ether/sendToNear"

ALREADY_FINALIZED = "Transfer already finalized."
UNVERIFIED_DEPOSIT = (
    "A deposit transaction was initiated but could not be verified. "
    "If no transaction was sent from your account, please retry."
)

Handler = Callable[[Transfer], Awaitable[Transfer]]
Scheduler = Callable[[Coroutine[Any, Any, Any]], Any]


class WrongNetworkError(TransferStateError):
    """The connected wallet is on a different chain than configured."""
    pass


class BackgroundScheduler:
    """
    Runs deferred submissions as tasks on the running event loop.

    Keeps a reference to every task until it finishes and logs failures.
    Tasks live only as long as their loop: a host that drives each call with
    its own ``asyncio.run`` must ``await scheduler.drain()`` before that call
    returns. Otherwise a wallet that awaits before signing is cancelled with
    the loop. The channel then holds a correlation id that never gets a hash,
    and the mint check waits on it forever.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def __call__(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Deferred submission failed",
                error_code="DEFERRED_SUBMISSION_FAILED",
                error=repr(exc),
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every outstanding submission; failures are already logged."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def describe_failure(failure: Any, tx_hash: str, explorer_url: str) -> str:
    """Readable message for a failed destination transaction."""
    if not isinstance(failure, dict) or not failure:
        return f"Transaction {explorer_url}/transactions/{tx_hash} failed"

    parts = []
    node: Any = failure
    while isinstance(node, dict) and node:
        if "kind" in node:
            node = node["kind"]
            continue
        if len(node) != 1:
            parts.append(json.dumps(node, sort_keys=True, default=str))
            node = None
            break
        key, node = next(iter(node.items()))
        parts.append(str(key))
    if node is not None and not isinstance(node, dict):
        parts.append(str(node))
    return f"{': '.join(parts)} (transaction {tx_hash})"


class SendToNear:
    """State machine for natural ETH → NEP-141 transfers."""

    def __init__(
        self,
        source_reader: SourceChainReader,
        source_signer: SourceChainSigner,
        destination: DestinationChain,
        sync_oracle: SyncOracle,
        proof_service: ProofService,
        redirect: WalletRedirectChannel,
        registry: Optional[TransferRegistry] = None,
        config: Optional[BridgeConfig] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Optional[Clock] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self.reader = source_reader
        self.signer = source_signer
        self.destination = destination
        self.redirect = redirect
        self.registry = registry
        self.config = config or get_config()
        self.scheduler = scheduler or BackgroundScheduler()
        self._new_id = id_factory or (lambda: uuid.uuid4().hex)

        cfg = self.config
        self.tracker = ConfirmationTracker(
            sync_oracle,
            relay_margin=cfg.transfer.relay_margin.get(),
            default_interval=cfg.transfer.sync_interval_seconds.get(),
            clock=clock,
        )
        self.proofs = ProofBuilder(
            proof_service,
            destination,
            source_reader,
            contract_address=cfg.source.custodian_address.get(),
            abi=cfg.source.custodian_abi.get(),
            event_name=cfg.transfer.lock_event_name.get(),
            evm_account=cfg.destination.evm_account.get(),
            proof_used_method=cfg.destination.proof_used_method.get(),
        )

        self._act_handlers: Dict[Step, Handler] = {
            Step.NONE: self._lock,
            Step.LOCK: self._check_sync,
            Step.SYNC: self._mint,
        }
        self._status_handlers: Dict[Step, Handler] = {
            Step.NONE: self._check_lock,
            Step.LOCK: self._check_sync,
            Step.SYNC: self._check_mint,
        }

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def act(self, transfer: Transfer) -> Transfer:
        """
        Advance a transfer waiting on the user (ACTION_NEEDED) or retry a FAILED one.

        From the SYNC step this hands the mint to ``self.scheduler`` and returns
        before the wallet answers. The caller's event loop must stay up until
        that submission finishes (see ``BackgroundScheduler.drain``).
        """
        handler = self._act_handlers.get(transfer.completed_step)
        if handler is None:
            raise TransferStateError(f"Don't know how to act on transfer: {transfer.id}")
        with correlation_scope(transfer.id):
            logger.debug("act", transfer_id=transfer.id, step=transfer.completed_step.value)
            return await handler(transfer)

    async def check_status(self, transfer: Transfer) -> Transfer:
        """Poll an IN_PROGRESS transfer."""
        handler = self._status_handlers.get(transfer.completed_step)
        if handler is None:
            raise TransferStateError(f"Don't know how to checkStatus for transfer {transfer.id}")
        with correlation_scope(transfer.id):
            logger.debug("check_status", transfer_id=transfer.id, step=transfer.completed_step.value)
            return await handler(transfer)

    async def initiate(self, amount: str, sender: str, recipient: str) -> Transfer:
        """Create a transfer of ``amount`` ether (human units), lock it and register it."""
        cfg = self.config.transfer
        decimals = cfg.decimals.get()
        source_token_name = cfg.source_token_name.get()
        transfer = Transfer.draft(
            id=self._new_id(),
            type=TRANSFER_TYPE,
            amount=to_minor_units(amount, decimals),
            sender=sender,
            recipient=recipient,
            source_token_name=source_token_name,
            destination_token_name="n" + source_token_name,
            decimals=decimals,
            needed_confirmations=cfg.needed_confirmations.get(),
        )
        with correlation_scope(transfer.id):
            transfer = await self._lock(transfer)
        if self.registry is not None:
            transfer = await self.registry.track(transfer)
        return transfer

    async def recover(self, lock_tx_hash: str) -> Transfer:
        """Rebuild a transfer from a mined lock transaction, then check its sync."""
        receipt = await self.reader.get_transaction_receipt(lock_tx_hash)
        if receipt is None:
            raise TransferStateError(f"Lock transaction {lock_tx_hash} has no receipt")

        events = await self.reader.get_events(
            self.proofs.contract_address,
            self.proofs.abi,
            self.proofs.event_name,
            receipt.block_number,
            receipt.block_number,
        )
        locked = next((e for e in events if e.transaction_hash == lock_tx_hash), None)
        if locked is None:
            raise TransferStateError("Unable to process lock transaction event.")

        cfg = self.config.transfer
        source_token_name = cfg.source_token_name.get()
        transfer = Transfer(
            id=self._new_id(),
            type=TRANSFER_TYPE,
            amount=str(locked.args["amount"]),
            sender=locked.args["sender"],
            recipient=locked.args["recipient"],
            source_token_name=source_token_name,
            destination_token_name="n" + source_token_name,
            decimals=cfg.decimals.get(),
            symbol=source_token_name,
            status=TransferStatus.IN_PROGRESS,
            completed_step=Step.LOCK,
            lock_hashes=(lock_tx_hash,),
            lock_receipts=(receipt,),
            needed_confirmations=cfg.needed_confirmations.get(),
        )
        with correlation_scope(transfer.id):
            logger.info("Recovered transfer from lock transaction", transfer_id=transfer.id, tx_hash=lock_tx_hash)
            return await self._check_sync(transfer)

    # =========================================================================
    # LOCK
    # =========================================================================

    async def _lock(self, transfer: Transfer) -> Transfer:
        """
        Broadcast the lock and return as soon as a hash exists. Inclusion is
        observed later by ``_check_lock``.
        """
        expected_chain = self.config.source.chain_id.get()
        chain_id = await self.signer.chain_id()
        if chain_id != expected_chain:
            raise WrongNetworkError(
                f"Wrong eth network for lock, expected: {expected_chain}, got: {chain_id}"
            )

        # Lower bound for a replacement search, leaving room for a shallow reorg.
        # Never below genesis: RPC nodes reject negative block numbers.
        head = await self.signer.get_block_number()
        safe_reorg_height = max(0, head - self.config.source.safe_reorg_margin.get())
        pending = await self.signer.send_contract_call(
            self.proofs.contract_address,
            self.proofs.abi,
            self.config.transfer.lock_method.get(),
            [transfer.recipient, 0],
            value=int(transfer.amount),
        )
        logger.info("Lock broadcast", transfer_id=transfer.id, tx_hash=pending.hash, nonce=pending.nonce)

        return transfer.evolve(
            status=TransferStatus.IN_PROGRESS,
            eth_cache=EthCache(
                from_address=pending.from_address,
                to=pending.to,
                nonce=pending.nonce,
                data=pending.input,
                safe_reorg_height=safe_reorg_height,
            ),
            lock_hashes=transfer.lock_hashes + (pending.hash,),
        )

    def _lock_expectations(self, transfer: Transfer) -> EventExpectation:
        def validate(args: Dict[str, Any]) -> bool:
            return (
                str(args.get("amount")) == transfer.amount
                and str(args.get("recipient")) == transfer.recipient
            )

        return EventExpectation(
            contract_address=self.proofs.contract_address,
            abi=self.proofs.abi,
            name=self.proofs.event_name,
            validate=validate,
        )

    async def _check_lock(self, transfer: Transfer) -> Transfer:
        lock_hash = transfer.last_lock_hash
        if lock_hash is None:
            raise TransferStateError(f"Transfer {transfer.id} has no lock transaction to check")

        expected_chain = self.config.source.chain_id.get()
        chain_id = await self.reader.chain_id()
        if chain_id != expected_chain:
            logger.warning(
                "Wrong eth network for check_lock",
                transfer_id=transfer.id,
                expected=expected_chain,
                got=chain_id,
            )
            return transfer

        receipt = await self.reader.get_transaction_receipt(lock_hash)

        # No receipt: the lock may have been dropped and replaced (speed up or cancel).
        if receipt is None:
            cache = transfer.eth_cache
            if cache is None:
                raise TransferStateError(f"Transfer {transfer.id} has no ethCache to search a replacement with")
            query = TransactionQuery(
                from_address=cache.from_address,
                to=cache.to or "",
                nonce=cache.nonce,
                data=cache.data,
                value=transfer.amount,
            )
            try:
                found = await find_replacement_tx(
                    self.reader,
                    cache.safe_reorg_height,
                    query,
                    self._lock_expectations(transfer),
                )
            except (SearchError, TxValidationError) as e:
                logger.error(
                    "Lock transaction could not be recovered",
                    error_code=type(e).__name__,
                    transfer_id=transfer.id,
                    tx_hash=lock_hash,
                    reason=str(e),
                )
                return transfer.fail(str(e))
            if found is None:
                return transfer
            receipt = await self.reader.get_transaction_receipt(found.hash)
            if receipt is None:
                return transfer

        if not receipt.status:
            logger.error("Lock transaction failed", transfer_id=transfer.id, tx_hash=receipt.transaction_hash)
            return transfer.fail(
                f"Transaction failed: {receipt.transaction_hash}",
                lock_receipts=transfer.lock_receipts + (receipt,),
            )

        if receipt.transaction_hash != lock_hash:
            logger.info(
                "Lock transaction was replaced",
                transfer_id=transfer.id,
                original=lock_hash,
                replacement=receipt.transaction_hash,
            )
            transfer = transfer.evolve(lock_hashes=transfer.lock_hashes + (receipt.transaction_hash,))

        return transfer.evolve(
            status=TransferStatus.IN_PROGRESS,
            completed_step=Step.LOCK,
            lock_receipts=transfer.lock_receipts + (receipt,),
        )

    # =========================================================================
    # SYNC
    # =========================================================================

    async def _check_sync(self, transfer: Transfer) -> Transfer:
        transfer = self.tracker.with_interval(transfer)
        if self.tracker.is_throttled(transfer):
            return transfer

        depth = await self.tracker.measure(transfer)
        lock_hash = transfer.last_lock_receipt.transaction_hash
        proof: Optional[bytes] = None

        if depth.proof_available:
            proof = await self.proofs.build(lock_hash)
            if await self.proofs.is_used(proof):
                # Minted by the relayer; there is no local mint hash to record.
                logger.info("Proof already used on destination", transfer_id=transfer.id, tx_hash=lock_hash)
                return transfer.with_error(
                    ALREADY_FINALIZED,
                    completed_step=Step.MINT,
                    completed_confirmations=depth.completed,
                    status=TransferStatus.COMPLETE,
                )

        # Leave the relayer some time to finalize before asking the user to.
        if not depth.relay_window_elapsed:
            return self.tracker.schedule_next(transfer, depth)

        if proof is None:
            proof = await self.proofs.build(lock_hash)
        return transfer.evolve(
            completed_confirmations=depth.completed,
            completed_step=Step.SYNC,
            status=TransferStatus.ACTION_NEEDED,
            proof=proof,
        )

    # =========================================================================
    # MINT
    # =========================================================================

    async def _mint(self, transfer: Transfer) -> Transfer:
        transfer = await self._check_sync(transfer)
        if transfer.status != TransferStatus.ACTION_NEEDED:
            return transfer
        if transfer.proof is None:
            raise TransferStateError(f"Transfer {transfer.id} is ready to mint but carries no proof")

        # The correlation id must be recorded before the wallet is invoked:
        # the wallet may take the host away before anything after the call runs.
        self.redirect.send(transfer.id)
        self.scheduler(self._submit_deposit(transfer.id, transfer.proof))
        logger.info("Mint submitted", transfer_id=transfer.id)

        return transfer.evolve(status=TransferStatus.IN_PROGRESS)

    async def _submit_deposit(self, transfer_id: str, proof: bytes) -> None:
        cfg = self.config.destination
        try:
            tx_hash = await self.destination.function_call(
                cfg.evm_account.get(),
                cfg.deposit_method.get(),
                proof,
                cfg.mint_gas.get(),
                cfg.mint_deposit.get(),
            )
        except Exception as e:
            if self.redirect.get(MINTING) == transfer_id:
                self.redirect.set(**{ERROR_CODE: type(e).__name__})
            raise

        # Hosts without a redirect learn the hash here instead of from the wallet.
        if tx_hash and self.redirect.get(MINTING) == transfer_id:
            self.redirect.set(**{TRANSACTION_HASHES: tx_hash})

    async def _check_mint(self, transfer: Transfer) -> Transfer:
        """
        Reconcile the mint submitted by ``_mint``. The channel is cleared only
        on a terminal outcome, so a collaborator error or an outcome not yet
        known leaves it for the next poll.
        """
        message = self.redirect.receive()
        if message is None or (message.correlation_id is None and not message.transaction_hashes):
            # The tab was closed before the wallet came back. A transaction may
            # still have been sent, which cannot be verified from here.
            logger.error("Mint outcome unverifiable", transfer_id=transfer.id)
            return transfer.fail(UNVERIFIED_DEPOSIT)

        if message.correlation_id is None:
            logger.info("Waiting for wallet redirect to sign mint", transfer_id=transfer.id)
            return transfer

        if message.correlation_id != transfer.id:
            self.redirect.clear()
            error = (
                f"Couldn't determine transaction outcome. "
                f"Got transfer id '{message.correlation_id}' in redirect, expected '{transfer.id}'"
            )
            logger.error(error, transfer_id=transfer.id)
            return transfer.fail(error)

        if message.error_code:
            self.redirect.clear()
            error = f"Error from wallet: {message.error_code}"
            logger.error(error, transfer_id=transfer.id)
            return transfer.fail(error)

        if not message.transaction_hashes:
            logger.info("Tx hash not received: pending redirect or wallet error", transfer_id=transfer.id)
            return transfer

        if len(message.transaction_hashes) > 1:
            self.redirect.clear()
            error = f"Error from wallet: expected single txHash, got: {','.join(message.transaction_hashes)}"
            logger.error(error, transfer_id=transfer.id)
            return transfer.fail(error)

        tx_hash = message.transaction_hashes[0]
        status = await self.destination.tx_status(tx_hash, self.destination.account_id)

        if status.outcome == TxOutcome.UNKNOWN:
            return transfer

        if status.outcome == TxOutcome.FAILURE:
            self.redirect.clear()
            error = describe_failure(status.failure, tx_hash, self.config.destination.explorer_url.get())
            logger.error("Mint transaction failed", transfer_id=transfer.id, tx_hash=tx_hash, reason=error)
            return transfer.fail(
                error,
                mint_hashes=transfer.mint_hashes + (tx_hash,),
                mint_tx=status.to_dict(),
            )

        self.redirect.clear()
        logger.info("Transfer complete", transfer_id=transfer.id, tx_hash=tx_hash)
        return transfer.evolve(
            completed_step=Step.MINT,
            status=TransferStatus.COMPLETE,
            mint_hashes=transfer.mint_hashes + (tx_hash,),
            mint_tx=status.to_dict(),
        )
