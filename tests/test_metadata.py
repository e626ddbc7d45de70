"""Tests for ERC-20 metadata lookups and their cache."""

import asyncio

import pytest

from nearbridge.metadata import Erc20Data, MetadataCache, TokenMetadata

TOKEN = "0x" + "12" * 20


class CountingSource:
    """Token metadata source that counts every lookup."""

    def __init__(self):
        self.calls = []
        self.balance = 42

    async def decimals(self, address):
        self.calls.append(("decimals", address))
        return 6

    async def name(self, address):
        self.calls.append(("name", address))
        return "USD Coin"

    async def balance_of(self, address, owner):
        self.calls.append(("balance_of", address, owner))
        return self.balance

    async def icon(self, address):
        self.calls.append(("icon", address))
        return None


class TestMetadataCache:

    def test_miss_then_hit(self):
        cache = MetadataCache()
        assert cache.get("decimals", TOKEN) == (False, None)
        cache.put("decimals", TOKEN, 6)
        assert cache.get("decimals", TOKEN) == (True, 6)

    def test_cached_none_is_a_hit(self):
        cache = MetadataCache()
        cache.put("icon", TOKEN, None)
        assert cache.get("icon", TOKEN) == (True, None)

    def test_keys_ignore_address_case(self):
        cache = MetadataCache()
        cache.put("name", TOKEN.upper(), "USD Coin")
        assert cache.get("name", TOKEN) == (True, "USD Coin")

    def test_first_write_wins(self):
        cache = MetadataCache()
        assert cache.put("decimals", TOKEN, 6) == 6
        assert cache.put("decimals", TOKEN, 18) == 6
        assert len(cache) == 1

    def test_external_store(self):
        store = {}
        MetadataCache(store).put("decimals", TOKEN, 6)
        assert store == {("decimals", TOKEN): 6}


class TestTokenMetadata:

    def test_static_metadata_fetched_once(self):
        source = CountingSource()
        metadata = TokenMetadata(source)

        async def scenario():
            for _ in range(3):
                assert await metadata.get_decimals(TOKEN) == 6
                assert await metadata.get_name(TOKEN) == "USD Coin"
                assert await metadata.get_icon(TOKEN) is None

        asyncio.run(scenario())
        assert sorted(c[0] for c in source.calls) == ["decimals", "icon", "name"]

    def test_balance_is_never_cached(self):
        source = CountingSource()
        metadata = TokenMetadata(source)

        assert asyncio.run(metadata.get_balance(TOKEN, "0xowner")) == "42"
        source.balance = 43
        assert asyncio.run(metadata.get_balance(TOKEN, "0xowner")) == "43"

    def test_balance_without_owner(self):
        source = CountingSource()
        assert asyncio.run(TokenMetadata(source).get_balance(TOKEN, None)) is None
        assert source.calls == []

    def test_erc20_data(self):
        data = asyncio.run(TokenMetadata(CountingSource()).get_erc20_data(TOKEN, "0xowner"))
        assert data == Erc20Data(address=TOKEN, balance="42", decimals=6, icon=None, name="USD Coin")

    def test_shared_cache_between_instances(self):
        cache = MetadataCache()
        first = CountingSource()
        second = CountingSource()

        asyncio.run(TokenMetadata(first, cache).get_decimals(TOKEN))
        asyncio.run(TokenMetadata(second, cache).get_decimals(TOKEN))
        assert len(first.calls) == 1
        assert second.calls == []

    def test_injected_empty_cache_is_filled(self):
        """An empty cache is still the caller's cache, not a cue to make a private one."""
        cache = MetadataCache()
        metadata = TokenMetadata(CountingSource(), cache)

        asyncio.run(metadata.get_name(TOKEN))
        assert len(cache) == 1
        assert cache.get("name", TOKEN) == (True, "USD Coin")

    def test_source_error_is_not_cached(self):
        class FlakySource(CountingSource):
            def __init__(self):
                super().__init__()
                self.fail = True

            async def decimals(self, address):
                if self.fail:
                    raise ConnectionError("rpc down")
                return await super().decimals(address)

        source = FlakySource()
        metadata = TokenMetadata(source)
        with pytest.raises(ConnectionError):
            asyncio.run(metadata.get_decimals(TOKEN))

        source.fail = False
        assert asyncio.run(metadata.get_decimals(TOKEN)) == 6
