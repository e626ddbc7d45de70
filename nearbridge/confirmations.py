"""Confirmation depth of the lock event, and throttling of sync checks."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from nearbridge.chain import SyncOracle
from nearbridge.observability import BridgeComponent, get_logger
from nearbridge.transfer import Transfer, TransferStateError, TransferStatus

logger = get_logger("confirmations", BridgeComponent.CONFIRMATIONS)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ConfirmationDepth:
    completed: int
    needed: int
    relay_margin: int

    @property
    def proof_available(self) -> bool:
        """Deep enough for the destination chain to accept a proof."""
        return self.completed > self.needed

    @property
    def relay_window_elapsed(self) -> bool:
        """The relayer had its margin to mint; the user may now mint manually."""
        return self.completed >= self.needed + self.relay_margin


class ConfirmationTracker:
    """
    Measures how many source blocks the destination chain has seen since the
    lock event, and rate-limits how often that is measured per transfer.
    """

    def __init__(
        self,
        sync_oracle: SyncOracle,
        relay_margin: int,
        default_interval: float,
        clock: Optional[Clock] = None,
    ):
        self._oracle = sync_oracle
        self.relay_margin = relay_margin
        self.default_interval = default_interval
        self._clock = clock or utc_now

    def now(self) -> datetime:
        return self._clock()

    def with_interval(self, transfer: Transfer) -> Transfer:
        if transfer.check_sync_interval:
            return transfer
        return transfer.evolve(check_sync_interval=self.default_interval)

    def is_throttled(self, transfer: Transfer) -> bool:
        next_check = transfer.next_check_sync_timestamp
        return next_check is not None and self.now() < next_check

    async def measure(self, transfer: Transfer) -> ConfirmationDepth:
        receipt = transfer.last_lock_receipt
        if receipt is None:
            raise TransferStateError(f"Transfer {transfer.id} has no lock receipt to count confirmations from")
        synced_to = await self._oracle.observed_source_height()
        completed = max(0, synced_to - receipt.block_number)
        logger.debug(
            "Measured confirmations",
            transfer_id=transfer.id,
            synced_to=synced_to,
            event_block=receipt.block_number,
            completed=completed,
        )
        return ConfirmationDepth(
            completed=completed,
            needed=transfer.needed_confirmations,
            relay_margin=self.relay_margin,
        )

    def schedule_next(self, transfer: Transfer, depth: ConfirmationDepth) -> Transfer:
        """Keep waiting: record progress and push the next check out by the interval."""
        interval = transfer.check_sync_interval or self.default_interval
        return transfer.evolve(
            next_check_sync_timestamp=self.now() + timedelta(seconds=interval),
            completed_confirmations=depth.completed,
            status=TransferStatus.IN_PROGRESS,
        )
