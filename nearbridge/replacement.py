"""
Relocating transactions a wallet dropped and replaced.

Wallets let users speed up or cancel a broadcast transaction by sending a new
one with the same nonce. The original hash then never gets a receipt, so the
bridge has to find whichever transaction actually consumed the nonce:

1. ``get_transaction_by_nonce`` binary-searches ``[start_search, head]`` for
   the block in which the sender's confirmed transaction count first exceeds
   the nonce, then picks the ``(from, nonce)`` transaction out of that block.
2. ``validate_replacement`` checks that the transaction found still does what
   the original was meant to do (recipient, calldata, value, emitted event)
   and reports a wallet cancel as such.

Known limitation: if several transactions from the same sender land in the
crossing block, the first ``(from, nonce)`` match in block order is returned.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from nearbridge.chain import EMPTY_DATA, SourceChainReader, Transaction, same_address
from nearbridge.observability import BridgeComponent, get_logger, timed_operation

logger = get_logger("replacement", BridgeComponent.LOCATOR)


class SearchError(Exception):
    """The crossing block or the transaction inside it could not be found."""
    pass


class TxValidationError(Exception):
    """The transaction found does not match what was broadcast, or was canceled."""

    def __init__(self, message: str, tx_hash: str):
        self.tx_hash = tx_hash
        super().__init__(message)


@dataclass(frozen=True)
class TransactionQuery:
    """What the dropped transaction was expected to do."""
    from_address: str
    to: str
    nonce: int
    data: Optional[str] = None
    value: Optional[str] = None


@dataclass(frozen=True)
class EventExpectation:
    """An event the replacement must have emitted, with a predicate on its args."""
    contract_address: str
    abi: str
    name: str
    validate: Callable[[Dict[str, Any]], bool]


@timed_operation(logger, "locate_transaction")
async def get_transaction_by_nonce(
    reader: SourceChainReader,
    start_search: int,
    from_address: str,
    nonce: int,
) -> Optional[Transaction]:
    """
    Find the mined transaction sent by ``from_address`` with ``nonce``.

    Returns ``None`` while the nonce is still unused (transaction pending).
    Raises ``SearchError`` when no block in ``[start_search, head]`` shows
    the nonce being consumed, which usually means a reorg happened during
    the search. A caller should retry later rather than treat that as loss.
    """
    current_count = await reader.get_transaction_count(from_address, "latest")
    if current_count <= nonce:
        return None

    target = nonce + 1
    tx_block: Optional[int] = None
    min_block = start_search
    max_block = await reader.get_block_number()
    while min_block <= max_block:
        middle = (min_block + max_block) // 2
        count_at_middle = await reader.get_transaction_count(from_address, middle)
        if count_at_middle < target:
            min_block = middle + 1
            continue
        count_before = await reader.get_transaction_count(from_address, middle - 1)
        if count_before < target:
            tx_block = middle
            break
        max_block = middle - 1

    if tx_block is None:
        logger.warning(
            "Nonce crossing not found in search range",
            sender=from_address,
            nonce=nonce,
            start_search=start_search,
        )
        raise SearchError("Could not find replacement transaction. It may be due to a chain reorg.")

    for tx in await reader.get_block_transactions(tx_block):
        if same_address(tx.from_address, from_address) and tx.nonce == nonce:
            if tx.block_number is None:
                return Transaction(
                    hash=tx.hash,
                    from_address=tx.from_address,
                    to=tx.to,
                    nonce=tx.nonce,
                    data=tx.data,
                    value=tx.value,
                    block_number=tx_block,
                )
            return tx
    raise SearchError(f"Error finding transaction in block {tx_block}.")


def is_cancellation(tx: Transaction) -> bool:
    """A wallet cancel is a zero-value transfer to self without calldata."""
    return (
        (tx.data or EMPTY_DATA) == EMPTY_DATA
        and same_address(tx.from_address, tx.to)
        and int(tx.value) == 0
    )


async def validate_replacement(
    reader: SourceChainReader,
    tx: Transaction,
    expected: TransactionQuery,
    event: Optional[EventExpectation] = None,
) -> Transaction:
    """Return ``tx`` if it matches ``expected``, else raise ``TxValidationError``."""
    if is_cancellation(tx):
        raise TxValidationError(f"Transaction canceled. Replaced by '{tx.hash}'", tx.hash)

    if not same_address(tx.to, expected.to):
        raise TxValidationError(
            f"Failed to validate transaction recipient. "
            f"Expected {expected.to}, got {tx.to}. "
            f"Transaction was dropped and replaced by '{tx.hash}'",
            tx.hash,
        )

    if expected.data is not None and tx.data != expected.data:
        raise TxValidationError(
            f"Failed to validate transaction data. "
            f"Expected {expected.data}, got {tx.data}. "
            f"Transaction was dropped and replaced by '{tx.hash}'",
            tx.hash,
        )

    if expected.value is not None and str(tx.value) != expected.value:
        raise TxValidationError(
            f"Failed to validate transaction value. "
            f"Expected {expected.value}, got {tx.value}. "
            f"Transaction was dropped and replaced by '{tx.hash}'",
            tx.hash,
        )

    if event is not None:
        block = tx.block_number
        if block is None:
            raise TxValidationError(
                f"Failed to validate event: transaction '{tx.hash}' has no block",
                tx.hash,
            )
        events = await reader.get_events(event.contract_address, event.abi, event.name, block, block)
        found = next((e for e in events if e.transaction_hash == tx.hash), None)
        if found is None or not event.validate(found.args):
            raise TxValidationError(
                f"Failed to validate event. Transaction was dropped and replaced by '{tx.hash}'",
                tx.hash,
            )

    return tx


async def find_replacement_tx(
    reader: SourceChainReader,
    start_search: int,
    expected: TransactionQuery,
    event: Optional[EventExpectation] = None,
) -> Optional[Transaction]:
    """Locate the transaction that consumed ``expected.nonce`` and validate it."""
    tx = await get_transaction_by_nonce(reader, start_search, expected.from_address, expected.nonce)
    if tx is None:
        return None
    logger.info(
        "Located transaction for nonce",
        sender=expected.from_address,
        nonce=expected.nonce,
        tx_hash=tx.hash,
        block_number=tx.block_number,
    )
    return await validate_replacement(reader, tx, expected, event)
