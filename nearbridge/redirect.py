"""
Wallet redirect channel.

Minting on NEAR goes through a wallet that may navigate the host away and
come back with the outcome in the URL. The id of the transfer being minted is
written to this single-slot mailbox *before* the wallet is invoked; the
outcome (transaction hashes or an error code) lands in the same slot when the
wallet returns. The state machine reads it back in ``check_status``.

Only one mint may be outstanding at a time: there is a single slot.

Keys follow the wallet's callback parameters:

    minting            id of the transfer whose mint was submitted
    transactionHashes  comma separated hashes the wallet broadcast
    errorCode          set by the wallet when the user rejected or it failed
"""

from __future__ import annotations

import json
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Protocol, Tuple, Union
from urllib.parse import parse_qsl, urlsplit

from nearbridge.observability import BridgeComponent, get_logger

logger = get_logger("redirect", BridgeComponent.REDIRECT)

MINTING = "minting"
TRANSACTION_HASHES = "transactionHashes"
ERROR_CODE = "errorCode"

KNOWN_KEYS = (MINTING, TRANSACTION_HASHES, ERROR_CODE)


class RedirectChannelError(Exception):
    """The channel's backing store could not be read or written."""
    pass


@dataclass(frozen=True)
class RedirectMessage:
    """Snapshot of the slot."""
    correlation_id: Optional[str]
    transaction_hashes: Tuple[str, ...] = ()
    error_code: Optional[str] = None


class WalletRedirectChannel(Protocol):
    def set(self, **params: str) -> None:
        ...

    def get(self, key: str) -> Optional[str]:
        ...

    def clear(self) -> None:
        ...

    def send(self, correlation_id: str, **payload: str) -> None:
        ...

    def receive(self) -> Optional[RedirectMessage]:
        ...


class RedirectChannel(ABC):
    """Shared behaviour; subclasses only decide where the slot lives."""

    def __init__(self):
        self._lock = threading.Lock()

    @abstractmethod
    def _load(self) -> Dict[str, str]:
        ...

    @abstractmethod
    def _store(self, params: Dict[str, str]) -> None:
        ...

    def set(self, **params: str) -> None:
        """Merge ``params`` into the slot."""
        with self._lock:
            current = self._load()
            current.update({k: str(v) for k, v in params.items() if v is not None})
            self._store(current)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._load().get(key)
        return value or None

    def clear(self) -> None:
        with self._lock:
            self._store({})

    def send(self, correlation_id: str, **payload: str) -> None:
        """Start a new correlation, replacing whatever the slot held."""
        with self._lock:
            params = {MINTING: correlation_id}
            params.update({k: str(v) for k, v in payload.items() if v is not None})
            self._store(params)
        logger.debug("Recorded mint correlation", correlation_id=correlation_id)

    def receive(self) -> Optional[RedirectMessage]:
        with self._lock:
            params = self._load()
        if not any(params.get(k) for k in KNOWN_KEYS):
            return None
        hashes = params.get(TRANSACTION_HASHES) or ""
        return RedirectMessage(
            correlation_id=params.get(MINTING) or None,
            transaction_hashes=tuple(h for h in hashes.split(",") if h),
            error_code=params.get(ERROR_CODE) or None,
        )

    def absorb_url(self, url: str) -> None:
        """Copy the wallet callback parameters found in ``url`` into the slot."""
        query = dict(parse_qsl(urlsplit(url).query, keep_blank_values=False))
        found = {k: query[k] for k in KNOWN_KEYS if k in query}
        if found:
            self.set(**found)
            logger.info("Absorbed wallet redirect", keys=sorted(found))


class InMemoryRedirectChannel(RedirectChannel):
    """Direct handoff for hosts without a navigation boundary."""

    def __init__(self):
        super().__init__()
        self._params: Dict[str, str] = {}

    def _load(self) -> Dict[str, str]:
        return dict(self._params)

    def _store(self, params: Dict[str, str]) -> None:
        self._params = dict(params)


class FileRedirectChannel(RedirectChannel):
    """Slot persisted as a JSON file so it survives a process restart."""

    def __init__(self, path: Union[str, Path]):
        super().__init__()
        self.path = Path(path)

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise RedirectChannelError(f"Cannot read redirect channel {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise RedirectChannelError(f"Redirect channel {self.path} does not hold an object")
        return {str(k): str(v) for k, v in data.items()}

    def _store(self, params: Dict[str, str]) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w") as f:
                json.dump(params, f, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as e:
            raise RedirectChannelError(f"Cannot write redirect channel {self.path}: {e}") from e
