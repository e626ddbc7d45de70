"""
ERC-20 token metadata with a monotonic cache.

Decimals, name and icon of a deployed token never change, so they are cached
per address forever. Balances change and are always fetched.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, MutableMapping, Optional, Protocol, Tuple

from nearbridge.observability import BridgeComponent, get_logger

logger = get_logger("metadata", BridgeComponent.METADATA)


class TokenMetadataSource(Protocol):
    async def decimals(self, address: str) -> int:
        ...

    async def name(self, address: str) -> str:
        ...

    async def balance_of(self, address: str, owner: str) -> int:
        ...

    async def icon(self, address: str) -> Optional[str]:
        """URL of the token icon, or None if there is none."""
        ...


@dataclass(frozen=True)
class Erc20Data:
    address: str
    balance: Optional[str]
    decimals: int
    icon: Optional[str]
    name: str


class MetadataCache:
    """Address keyed store with no eviction. Entries are written once."""

    def __init__(self, store: Optional[MutableMapping[Tuple[str, str], Any]] = None):
        self._store = store if store is not None else {}
        self._lock = threading.Lock()

    def get(self, kind: str, address: str) -> Tuple[bool, Any]:
        key = (kind, address.lower())
        with self._lock:
            if key in self._store:
                return True, self._store[key]
        return False, None

    def put(self, kind: str, address: str, value: Any) -> Any:
        key = (kind, address.lower())
        with self._lock:
            # First writer wins; later values for the same key are identical anyway.
            return self._store.setdefault(key, value)

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)


class TokenMetadata:
    def __init__(self, source: TokenMetadataSource, cache: Optional[MetadataCache] = None):
        self._source = source
        self._cache = cache if cache is not None else MetadataCache()

    async def _cached(self, kind: str, address: str, fetch: Callable[[], Awaitable[Any]]) -> Any:
        hit, value = self._cache.get(kind, address)
        if hit:
            return value
        value = await fetch()
        logger.debug("Cached token metadata", kind=kind, address=address)
        return self._cache.put(kind, address, value)

    async def get_decimals(self, address: str) -> int:
        return int(await self._cached("decimals", address, lambda: self._source.decimals(address)))

    async def get_name(self, address: str) -> str:
        return await self._cached("name", address, lambda: self._source.name(address))

    async def get_icon(self, address: str) -> Optional[str]:
        return await self._cached("icon", address, lambda: self._source.icon(address))

    async def get_balance(self, address: str, owner: Optional[str]) -> Optional[str]:
        if not owner:
            return None
        return str(await self._source.balance_of(address, owner))

    async def get_erc20_data(self, address: str, owner: Optional[str] = None) -> Erc20Data:
        """Name, icon, decimals and (when ``owner`` is given) balance of a token."""
        balance, decimals, icon, name = await asyncio.gather(
            self.get_balance(address, owner),
            self.get_decimals(address),
            self.get_icon(address),
            self.get_name(address),
        )
        return Erc20Data(address=address, balance=balance, decimals=decimals, icon=icon, name=name)
