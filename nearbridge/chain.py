"""
NEARBRIDGE Chain Interfaces

The bridge client never talks to an RPC endpoint directly. Every chain
interaction goes through one of the protocols below, which a host binds to
its own transports (a JSON-RPC provider for Ethereum, a NEAR wallet
connection, an indexer for the light client height).

    ┌─────────────────────┐                ┌─────────────────────┐
    │   Ethereum (source) │                │    NEAR (destination)│
    │                     │                │                     │
    │  SourceChainReader  │   SyncOracle   │  DestinationChain   │
    │  SourceChainSigner  │ ─────────────▶ │  (view / call /     │
    │                     │  light client  │   tx status)        │
    └─────────┬───────────┘     height     └─────────────────────┘
              │
              ▼
        ProofService  ── serialized inclusion proof (opaque bytes)

The in-memory mock chains at the bottom of this module implement the same
protocols and are what the test-suite drives the state machine with.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union

BlockTag = Union[int, str]

EMPTY_DATA = "0x"


def normalize_address(address: Optional[str]) -> str:
    """Lower-case an address for comparison; ``None`` becomes ``""``."""
    return (address or "").lower()


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    return normalize_address(a) == normalize_address(b)


# =============================================================================
# CHAIN DATA
# =============================================================================

@dataclass(frozen=True)
class Transaction:
    """A transaction as it appears in a source-chain block."""
    hash: str
    from_address: str
    to: Optional[str]
    nonce: int
    data: str = EMPTY_DATA
    value: int = 0
    block_number: Optional[int] = None


@dataclass(frozen=True)
class PendingTransaction:
    """What the signer hands back right after broadcast, before inclusion."""
    hash: str
    from_address: str
    to: Optional[str]
    nonce: int
    input: str


@dataclass(frozen=True)
class Receipt:
    """Inclusion receipt of a source-chain transaction."""
    transaction_hash: str
    block_number: int
    status: bool
    from_address: str = ""
    to: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transactionHash": self.transaction_hash,
            "blockNumber": self.block_number,
            "status": self.status,
            "from": self.from_address,
            "to": self.to,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Receipt":
        return cls(
            transaction_hash=data["transactionHash"],
            block_number=int(data["blockNumber"]),
            status=bool(data["status"]),
            from_address=data.get("from") or "",
            to=data.get("to"),
        )


@dataclass(frozen=True)
class Event:
    """A decoded contract event."""
    name: str
    address: str
    transaction_hash: str
    block_number: int
    args: Dict[str, Any] = field(default_factory=dict)


class TxOutcome(Enum):
    """Tri-state outcome of a destination-chain transaction."""
    UNKNOWN = "unknown"
    FAILURE = "failure"
    SUCCESS = "success"


@dataclass(frozen=True)
class DestinationTxStatus:
    """Status of a destination-chain transaction looked up by hash."""
    outcome: TxOutcome
    transaction_hash: str
    failure: Any = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "transactionHash": self.transaction_hash,
            "failure": self.failure,
            "raw": self.raw,
        }


# =============================================================================
# PROTOCOLS
# =============================================================================

class SourceChainReader(Protocol):
    """Read-only access to the source chain."""

    async def chain_id(self) -> int:
        ...

    async def get_transaction_count(self, address: str, block: BlockTag = "latest") -> int:
        """Number of transactions ``address`` had confirmed as of ``block``."""
        ...

    async def get_block_number(self) -> int:
        ...

    async def get_block_transactions(self, height: int) -> List[Transaction]:
        ...

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Receipt]:
        ...

    async def get_events(
        self,
        contract_address: str,
        abi: str,
        event_name: str,
        from_block: int,
        to_block: int,
    ) -> List[Event]:
        ...


class SourceChainSigner(Protocol):
    """The connected wallet on the source chain."""

    async def chain_id(self) -> int:
        ...

    async def get_block_number(self) -> int:
        ...

    async def send_contract_call(
        self,
        contract_address: str,
        abi: str,
        method: str,
        args: Sequence[Any],
        value: int = 0,
    ) -> PendingTransaction:
        """Broadcast a call and return without waiting for inclusion."""
        ...


class DestinationChain(Protocol):
    """The connected account on the destination chain."""

    @property
    def account_id(self) -> str:
        ...

    async def view_function(self, contract_id: str, method: str, args: bytes) -> Any:
        ...

    async def function_call(
        self,
        contract_id: str,
        method: str,
        args: bytes,
        gas: int,
        deposit: int,
    ) -> Optional[str]:
        """Submit a call. Hosts that learn the hash synchronously return it."""
        ...

    async def tx_status(self, tx_hash: str, account_id: str) -> DestinationTxStatus:
        ...


class SyncOracle(Protocol):
    """Latest source-chain height known to the destination chain's light client."""

    async def observed_source_height(self) -> int:
        ...


class ProofService(Protocol):
    """Builds the serialized inclusion proof of a source-chain event."""

    async def build_proof(
        self,
        event_name: str,
        tx_hash: str,
        contract_address: str,
        abi: str,
        reader: SourceChainReader,
    ) -> bytes:
        ...


class TransferRegistry(Protocol):
    """Opaque, append-only registration of new transfers."""

    async def track(self, transfer: Any) -> Any:
        ...


# =============================================================================
# MOCK CHAINS
# =============================================================================

def encode_call(method: str, args: Sequence[Any]) -> str:
    """Deterministic stand-in for ABI call encoding used by the mock signer."""
    payload = json.dumps({"method": method, "args": list(args)}, sort_keys=True, default=str)
    return "0x" + payload.encode().hex()


class MockSourceChain:
    """
    In-memory source chain implementing both reader and signer protocols.

    Blocks are appended explicitly with ``mine``; broadcast transactions sit
    in a pending pool until mined, replaced (speed up) or canceled. Value
    bearing calls mined against a contract emit a lock event carrying
    ``sender``, ``recipient`` and ``amount``.
    """

    def __init__(
        self,
        chain_id: int = 1,
        start_height: int = 1000,
        sender: str = "0x" + "aa" * 20,
        lock_event_name: str = "Deposited",
    ):
        self._chain_id = chain_id
        self._start_height = start_height
        self._blocks: List[List[Transaction]] = [[]]
        self._pending: Dict[str, Transaction] = {}
        self._receipts: Dict[str, Receipt] = {}
        self._events: List[Event] = []
        self._failing: set = set()
        self._call_args: Dict[str, List[Any]] = {}
        self._counter = 0
        self.sender = sender
        self.lock_event_name = lock_event_name
        self.reads = 0

    # -- helpers --------------------------------------------------------------

    def _next_hash(self, seed: str) -> str:
        self._counter += 1
        return "0x" + hashlib.sha256(f"{seed}:{self._counter}".encode()).hexdigest()

    @property
    def head(self) -> int:
        return self._start_height + len(self._blocks) - 1

    def _resolve(self, block: BlockTag) -> int:
        if block == "latest":
            return self.head
        return int(block)

    def _confirmed_count(self, address: str, height: int) -> int:
        count = 0
        for offset, txs in enumerate(self._blocks):
            if self._start_height + offset > height:
                break
            count += sum(1 for tx in txs if same_address(tx.from_address, address))
        return count

    def _next_nonce(self, address: str) -> int:
        pending = sum(1 for tx in self._pending.values() if same_address(tx.from_address, address))
        return self._confirmed_count(address, self.head) + pending

    def submit(
        self,
        to: Optional[str],
        data: str = EMPTY_DATA,
        value: int = 0,
        from_address: Optional[str] = None,
        nonce: Optional[int] = None,
    ) -> Transaction:
        """Put a raw transaction in the pending pool."""
        sender = from_address or self.sender
        tx = Transaction(
            hash=self._next_hash(f"{sender}:{nonce}"),
            from_address=sender,
            to=to,
            nonce=self._next_nonce(sender) if nonce is None else nonce,
            data=data,
            value=value,
        )
        self._pending[tx.hash] = tx
        return tx

    def replace(
        self,
        tx_hash: str,
        to: Optional[str] = None,
        data: Optional[str] = None,
        value: Optional[int] = None,
    ) -> Transaction:
        """Drop a pending transaction in favour of one reusing its nonce."""
        original = self._pending.pop(tx_hash)
        replacement = Transaction(
            hash=self._next_hash(f"replace:{tx_hash}"),
            from_address=original.from_address,
            to=original.to if to is None else to,
            nonce=original.nonce,
            data=original.data if data is None else data,
            value=original.value if value is None else value,
        )
        if tx_hash in self._call_args:
            self._call_args[replacement.hash] = self._call_args[tx_hash]
        self._pending[replacement.hash] = replacement
        return replacement

    def cancel(self, tx_hash: str) -> Transaction:
        """Wallet-style cancel: a zero-value self transfer with no data."""
        original = self._pending[tx_hash]
        return self.replace(tx_hash, to=original.from_address, data=EMPTY_DATA, value=0)

    def fail_on_mine(self, tx_hash: str) -> None:
        self._failing.add(tx_hash)

    def mine(self, *tx_hashes: str) -> int:
        """Append a block holding the given pending transactions (all if none given)."""
        hashes = list(tx_hashes) if tx_hashes else list(self._pending)
        height = self.head + 1
        included: List[Transaction] = []
        for tx_hash in hashes:
            tx = self._pending.pop(tx_hash)
            mined = Transaction(
                hash=tx.hash,
                from_address=tx.from_address,
                to=tx.to,
                nonce=tx.nonce,
                data=tx.data,
                value=tx.value,
                block_number=height,
            )
            included.append(mined)
            ok = tx_hash not in self._failing
            self._receipts[tx.hash] = Receipt(
                transaction_hash=tx.hash,
                block_number=height,
                status=ok,
                from_address=tx.from_address,
                to=tx.to,
            )
            args = self._call_args.get(tx.hash)
            if ok and args is not None and tx.to and tx.data != EMPTY_DATA:
                self._events.append(Event(
                    name=self.lock_event_name,
                    address=tx.to,
                    transaction_hash=tx.hash,
                    block_number=height,
                    args={"sender": tx.from_address, "recipient": args[0], "amount": tx.value},
                ))
        self._blocks.append(included)
        return height

    def mine_empty(self, count: int = 1) -> int:
        for _ in range(count):
            self._blocks.append([])
        return self.head

    # -- reader / signer protocol ---------------------------------------------

    async def chain_id(self) -> int:
        return self._chain_id

    async def get_transaction_count(self, address: str, block: BlockTag = "latest") -> int:
        self.reads += 1
        return self._confirmed_count(address, self._resolve(block))

    async def get_block_number(self) -> int:
        return self.head

    async def get_block_transactions(self, height: int) -> List[Transaction]:
        offset = height - self._start_height
        if offset < 0 or offset >= len(self._blocks):
            return []
        return list(self._blocks[offset])

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Receipt]:
        return self._receipts.get(tx_hash)

    async def get_events(
        self,
        contract_address: str,
        abi: str,
        event_name: str,
        from_block: int,
        to_block: int,
    ) -> List[Event]:
        return [
            e for e in self._events
            if same_address(e.address, contract_address)
            and e.name == event_name
            and from_block <= e.block_number <= to_block
        ]

    async def send_contract_call(
        self,
        contract_address: str,
        abi: str,
        method: str,
        args: Sequence[Any],
        value: int = 0,
    ) -> PendingTransaction:
        tx = self.submit(to=contract_address, data=encode_call(method, args), value=value)
        self._call_args[tx.hash] = list(args)
        return PendingTransaction(
            hash=tx.hash,
            from_address=tx.from_address,
            to=tx.to,
            nonce=tx.nonce,
            input=tx.data,
        )


class MockDestinationChain:
    """In-memory destination chain: consumed proofs, submitted calls, tx statuses."""

    def __init__(self, account_id: str = "alice.near"):
        self._account_id = account_id
        self.used_proofs: set = set()
        self.calls: List[Dict[str, Any]] = []
        self.statuses: Dict[str, DestinationTxStatus] = {}
        self.next_call_hash: Optional[str] = None
        self.call_error: Optional[Exception] = None

    @property
    def account_id(self) -> str:
        return self._account_id

    def set_status(self, tx_hash: str, outcome: TxOutcome, failure: Any = None) -> None:
        self.statuses[tx_hash] = DestinationTxStatus(
            outcome=outcome,
            transaction_hash=tx_hash,
            failure=failure,
            raw={"status": {outcome.value: failure if failure is not None else True}},
        )

    async def view_function(self, contract_id: str, method: str, args: bytes) -> Any:
        if method == "is_used_proof":
            return bytes([1 if bytes(args) in self.used_proofs else 0])
        raise ValueError(f"Unknown view method: {method}")

    async def function_call(
        self,
        contract_id: str,
        method: str,
        args: bytes,
        gas: int,
        deposit: int,
    ) -> Optional[str]:
        self.calls.append({
            "contract_id": contract_id,
            "method": method,
            "args": args,
            "gas": gas,
            "deposit": deposit,
        })
        if self.call_error is not None:
            raise self.call_error
        return self.next_call_hash

    async def tx_status(self, tx_hash: str, account_id: str) -> DestinationTxStatus:
        return self.statuses.get(
            tx_hash,
            DestinationTxStatus(outcome=TxOutcome.UNKNOWN, transaction_hash=tx_hash),
        )


class MockSyncOracle:
    """Light client height, set directly by tests."""

    def __init__(self, height: int = 0):
        self.height = height

    async def observed_source_height(self) -> int:
        return self.height


class MockProofService:
    """Returns a deterministic opaque proof per transaction hash."""

    def __init__(self):
        self.requests: List[str] = []

    async def build_proof(
        self,
        event_name: str,
        tx_hash: str,
        contract_address: str,
        abi: str,
        reader: SourceChainReader,
    ) -> bytes:
        self.requests.append(tx_hash)
        return f"{event_name}:{tx_hash}".encode()


class MockTransferRegistry:
    """Collects tracked transfers."""

    def __init__(self):
        self.tracked: List[Any] = []

    async def track(self, transfer: Any) -> Any:
        self.tracked.append(transfer)
        return transfer
