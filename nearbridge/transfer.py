"""
Transfer value type.

A transfer is the unit of persistence and the subject of the state machine
in ``nearbridge.send_to_near``. It is immutable: every step takes a transfer
and returns a new one through ``Transfer.evolve``, so a stale snapshot held by
a second poller can simply be discarded.

Step progression::

    NONE ──lock──▶ LOCK ──sync──▶ SYNC ──mint──▶ MINT
                     └──────── proof already used ──────▶ MINT
"""

from __future__ import annotations

import dataclasses
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, localcontext
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from jsonschema import Draft202012Validator

from nearbridge.chain import Receipt

SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "transfer.schema.json"
_DIGITS = re.compile(r"[0-9]+")


class TransferStateError(Exception):
    """A transfer was asked to do something its state does not allow."""
    pass


class TransferDecodeError(ValueError):
    """A persisted transfer does not match the transfer schema."""
    pass


class TransferStatus(Enum):
    ACTION_NEEDED = "action-needed"
    IN_PROGRESS = "in-progress"
    FAILED = "failed"
    COMPLETE = "complete"


class Step(Enum):
    """Last completed step. ``NONE`` persists as ``null``."""
    NONE = None
    LOCK = "lock-natural-ether-to-nep141"
    SYNC = "sync-natural-ether-to-nep141"
    MINT = "mint-natural-ether-to-nep141"

    @property
    def rank(self) -> int:
        return _STEP_RANK[self]

    def __lt__(self, other: "Step") -> bool:
        if not isinstance(other, Step):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: "Step") -> bool:
        if not isinstance(other, Step):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: "Step") -> bool:
        if not isinstance(other, Step):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: "Step") -> bool:
        if not isinstance(other, Step):
            return NotImplemented
        return self.rank >= other.rank


_STEP_RANK = {Step.NONE: 0, Step.LOCK: 1, Step.SYNC: 2, Step.MINT: 3}


# =============================================================================
# AMOUNTS
# =============================================================================

def to_minor_units(amount: Union[str, int, Decimal], decimals: int) -> str:
    """
    Convert a human amount to an integer string of minor units, exactly.

    ``to_minor_units("1.5", 18) == "1500000000000000000"``. Amounts finer than
    the token precision and non-positive amounts are rejected.
    """
    if isinstance(amount, float):
        raise ValueError("Amounts must be given as str, int or Decimal, not float")
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {amount!r}") from e
    if not value.is_finite() or value <= 0:
        raise ValueError(f"Amount must be positive: {amount!r}")

    with localcontext() as ctx:
        ctx.prec = max(100, len(value.as_tuple().digits) + decimals + 1)
        scaled = value.scaleb(decimals)
        if scaled != scaled.to_integral_value():
            raise ValueError(f"Amount {amount} has more than {decimals} decimal places")
        return str(int(scaled))


def format_minor_units(amount: Union[str, int], decimals: int) -> str:
    """Inverse of ``to_minor_units`` for display, without trailing zeros."""
    with localcontext() as ctx:
        ctx.prec = max(100, len(str(amount)) + decimals + 1)
        value = Decimal(int(amount)).scaleb(-decimals)
        text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


# =============================================================================
# TRANSFER
# =============================================================================

@dataclass(frozen=True)
class EthCache:
    """
    Snapshot of the last broadcast lock transaction.

    The only input needed to relocate the lock after a wallet drops and
    replaces it (speed up or cancel).
    """
    from_address: str
    to: Optional[str]
    nonce: int
    data: str
    safe_reorg_height: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_address,
            "to": self.to,
            "nonce": self.nonce,
            "data": self.data,
            "safeReorgHeight": self.safe_reorg_height,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EthCache":
        return cls(
            from_address=data["from"],
            to=data.get("to"),
            nonce=int(data["nonce"]),
            data=data["data"],
            safe_reorg_height=int(data["safeReorgHeight"]),
        )


@dataclass(frozen=True)
class Transfer:
    id: str
    type: str
    amount: str
    sender: str
    recipient: str
    source_token_name: str
    destination_token_name: str
    decimals: int
    symbol: Optional[str] = None
    status: TransferStatus = TransferStatus.ACTION_NEEDED
    completed_step: Step = Step.NONE
    errors: Tuple[str, ...] = ()
    lock_hashes: Tuple[str, ...] = ()
    lock_receipts: Tuple[Receipt, ...] = ()
    mint_hashes: Tuple[str, ...] = ()
    eth_cache: Optional[EthCache] = None
    completed_confirmations: int = 0
    needed_confirmations: int = 20
    check_sync_interval: Optional[float] = None  # seconds
    next_check_sync_timestamp: Optional[datetime] = None
    proof: Optional[bytes] = None
    # Raw destination status of the last mint, kept for audit only.
    mint_tx: Optional[Dict[str, Any]] = field(default=None, compare=False)

    def __post_init__(self):
        if not _DIGITS.fullmatch(self.amount):
            raise TransferStateError(f"Transfer {self.id}: amount must be an integer string, got {self.amount!r}")
        if self.status == TransferStatus.COMPLETE and self.completed_step != Step.MINT:
            raise TransferStateError(
                f"Transfer {self.id}: status complete requires completedStep {Step.MINT.value}"
            )
        if self.completed_step >= Step.LOCK and not self.lock_hashes:
            raise TransferStateError(f"Transfer {self.id}: lock step completed without a lock hash")

    @classmethod
    def draft(
        cls,
        id: str,
        type: str,
        amount: str,
        sender: str,
        recipient: str,
        source_token_name: str,
        destination_token_name: str,
        decimals: int,
        needed_confirmations: int = 20,
        symbol: Optional[str] = None,
    ) -> "Transfer":
        return cls(
            id=id,
            type=type,
            amount=amount,
            sender=sender,
            recipient=recipient,
            source_token_name=source_token_name,
            destination_token_name=destination_token_name,
            decimals=decimals,
            symbol=symbol,
            needed_confirmations=needed_confirmations,
        )

    def evolve(self, **changes: Any) -> "Transfer":
        """Copy with ``changes`` applied. ``completed_step`` may not move backwards."""
        step = changes.get("completed_step")
        if step is not None and step < self.completed_step:
            raise TransferStateError(
                f"Transfer {self.id}: cannot move completedStep from "
                f"{self.completed_step.value} back to {step.value}"
            )
        for name in ("errors", "lock_hashes", "lock_receipts", "mint_hashes"):
            if name in changes:
                changes[name] = tuple(changes[name])
        return dataclasses.replace(self, **changes)

    def with_error(self, message: str, **changes: Any) -> "Transfer":
        return self.evolve(errors=self.errors + (message,), **changes)

    def fail(self, message: str, **changes: Any) -> "Transfer":
        return self.with_error(message, status=TransferStatus.FAILED, **changes)

    @property
    def last_lock_hash(self) -> Optional[str]:
        return self.lock_hashes[-1] if self.lock_hashes else None

    @property
    def last_lock_receipt(self) -> Optional[Receipt]:
        return self.lock_receipts[-1] if self.lock_receipts else None

    @property
    def is_terminal(self) -> bool:
        return self.status == TransferStatus.COMPLETE

    # -- persistence ----------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "amount": self.amount,
            "sender": self.sender,
            "recipient": self.recipient,
            "sourceTokenName": self.source_token_name,
            "destinationTokenName": self.destination_token_name,
            "symbol": self.symbol,
            "decimals": self.decimals,
            "status": self.status.value,
            "completedStep": self.completed_step.value,
            "errors": list(self.errors),
            "lockHashes": list(self.lock_hashes),
            "lockReceipts": [r.to_dict() for r in self.lock_receipts],
            "mintHashes": list(self.mint_hashes),
            "ethCache": self.eth_cache.to_dict() if self.eth_cache else None,
            "completedConfirmations": self.completed_confirmations,
            "neededConfirmations": self.needed_confirmations,
            "checkSyncInterval": self.check_sync_interval,
            "nextCheckSyncTimestamp": (
                self.next_check_sync_timestamp.isoformat()
                if self.next_check_sync_timestamp else None
            ),
            "proof": self.proof.hex() if self.proof is not None else None,
            "mintTx": self.mint_tx,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transfer":
        errors = sorted(_validator().iter_errors(data), key=lambda e: list(e.path))
        if errors:
            first = errors[0]
            where = "/".join(str(p) for p in first.path) or "<root>"
            raise TransferDecodeError(f"Invalid transfer at {where}: {first.message}")

        eth_cache = data.get("ethCache")
        next_check = data.get("nextCheckSyncTimestamp")
        proof = data.get("proof")
        try:
            return cls(
                id=data["id"],
                type=data["type"],
                amount=data["amount"],
                sender=data["sender"],
                recipient=data["recipient"],
                source_token_name=data["sourceTokenName"],
                destination_token_name=data["destinationTokenName"],
                symbol=data.get("symbol"),
                decimals=data["decimals"],
                status=TransferStatus(data["status"]),
                completed_step=Step(data["completedStep"]),
                errors=tuple(data["errors"]),
                lock_hashes=tuple(data["lockHashes"]),
                lock_receipts=tuple(Receipt.from_dict(r) for r in data["lockReceipts"]),
                mint_hashes=tuple(data["mintHashes"]),
                eth_cache=EthCache.from_dict(eth_cache) if eth_cache else None,
                completed_confirmations=data["completedConfirmations"],
                needed_confirmations=data["neededConfirmations"],
                check_sync_interval=data.get("checkSyncInterval"),
                next_check_sync_timestamp=_parse_timestamp(next_check) if next_check else None,
                proof=bytes.fromhex(proof) if proof is not None else None,
                mint_tx=data.get("mintTx"),
            )
        except (TransferStateError, ValueError) as e:
            raise TransferDecodeError(str(e)) from e

    @classmethod
    def from_json(cls, text: str) -> "Transfer":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise TransferDecodeError(f"Transfer is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise TransferDecodeError("Transfer JSON must be an object")
        return cls.from_dict(data)


@lru_cache(maxsize=1)
def _validator() -> Draft202012Validator:
    with open(SCHEMA_PATH) as f:
        schema = json.load(f)
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def _parse_timestamp(value: str) -> datetime:
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts
