"""
Tests for locating dropped and replaced transactions.

Covers the nonce binary search, replacement validation (recipient, calldata,
value, emitted event) and wallet cancel detection, all against the in-memory
source chain.

Run with: pytest tests/test_replacement.py -v
"""

import asyncio
import math

import pytest

from nearbridge.chain import EMPTY_DATA, MockSourceChain, Transaction
from nearbridge.replacement import (
    EventExpectation,
    SearchError,
    TransactionQuery,
    TxValidationError,
    find_replacement_tx,
    get_transaction_by_nonce,
    is_cancellation,
    validate_replacement,
)

CUSTODIAN = "0x" + "cc" * 20
OTHER_CONTRACT = "0x" + "dd" * 20
ONE_ETH = 10**18


def _broadcast_lock(chain: MockSourceChain, recipient: str = "bob.near", value: int = ONE_ETH):
    return asyncio.run(chain.send_contract_call(
        CUSTODIAN, "[]", "depositToNear", [recipient, 0], value=value,
    ))


def _query(pending, value: int = ONE_ETH) -> TransactionQuery:
    return TransactionQuery(
        from_address=pending.from_address,
        to=pending.to,
        nonce=pending.nonce,
        data=pending.input,
        value=str(value),
    )


def _deposit_event(recipient: str = "bob.near", amount: int = ONE_ETH) -> EventExpectation:
    return EventExpectation(
        contract_address=CUSTODIAN,
        abi="[]",
        name="Deposited",
        validate=lambda args: args["recipient"] == recipient and args["amount"] == amount,
    )


# =============================================================================
# NONCE SEARCH
# =============================================================================

class TestGetTransactionByNonce:
    """Binary search for the block that consumed a nonce."""

    def test_pending_nonce_returns_none(self):
        """While the nonce is unused the search reports nothing, not an error."""
        chain = MockSourceChain()
        pending = _broadcast_lock(chain)
        chain.mine_empty(5)

        result = asyncio.run(get_transaction_by_nonce(chain, 990, pending.from_address, pending.nonce))
        assert result is None

    def test_finds_transaction_in_crossing_block(self):
        chain = MockSourceChain()
        first = chain.submit(to=OTHER_CONTRACT, value=1)
        chain.mine(first.hash)
        chain.mine_empty(7)
        second = chain.submit(to=OTHER_CONTRACT, value=2)
        height = chain.mine(second.hash)
        chain.mine_empty(4)

        tx = asyncio.run(get_transaction_by_nonce(chain, 1000, chain.sender, 1))
        assert tx is not None
        assert tx.hash == second.hash
        assert tx.nonce == 1
        assert tx.block_number == height

    def test_first_nonce_found(self):
        chain = MockSourceChain()
        chain.mine_empty(3)
        tx0 = chain.submit(to=OTHER_CONTRACT)
        height = chain.mine(tx0.hash)

        tx = asyncio.run(get_transaction_by_nonce(chain, 990, chain.sender, 0))
        assert tx.hash == tx0.hash
        assert tx.block_number == height

    def test_address_comparison_is_case_insensitive(self):
        chain = MockSourceChain(sender="0x" + "Ab" * 20)
        tx0 = chain.submit(to=OTHER_CONTRACT)
        chain.mine(tx0.hash)

        tx = asyncio.run(get_transaction_by_nonce(chain, 990, ("0x" + "ab" * 20).upper(), 0))
        assert tx is not None
        assert tx.hash == tx0.hash

    def test_crossing_below_search_range_raises(self):
        """A nonce consumed before the lower bound looks like a reorg."""
        chain = MockSourceChain()
        tx0 = chain.submit(to=OTHER_CONTRACT)
        chain.mine(tx0.hash)
        chain.mine_empty(10)

        with pytest.raises(SearchError, match="It may be due to a chain reorg"):
            asyncio.run(get_transaction_by_nonce(chain, 1005, chain.sender, 0))

    def test_other_senders_do_not_affect_search(self):
        chain = MockSourceChain()
        stranger = "0x" + "ee" * 20
        noise = chain.submit(to=OTHER_CONTRACT, from_address=stranger)
        mine = chain.submit(to=OTHER_CONTRACT)
        height = chain.mine(noise.hash, mine.hash)

        tx = asyncio.run(get_transaction_by_nonce(chain, 990, chain.sender, 0))
        assert tx.hash == mine.hash
        assert tx.block_number == height

    def test_search_reads_are_logarithmic(self):
        chain = MockSourceChain()
        chain.mine_empty(600)
        tx0 = chain.submit(to=OTHER_CONTRACT)
        chain.mine(tx0.hash)
        chain.mine_empty(423)
        span = chain.head - 1000 + 1
        chain.reads = 0

        tx = asyncio.run(get_transaction_by_nonce(chain, 1000, chain.sender, 0))
        assert tx.hash == tx0.hash
        assert chain.reads <= 2 * (math.ceil(math.log2(span)) + 1) + 1


# =============================================================================
# VALIDATION
# =============================================================================

class TestCancellation:

    def test_self_transfer_without_data_is_cancel(self):
        tx = Transaction(hash="0x1", from_address="0xAA", to="0xaa", nonce=3, data=EMPTY_DATA, value=0)
        assert is_cancellation(tx)

    def test_value_bearing_self_transfer_is_not_cancel(self):
        tx = Transaction(hash="0x1", from_address="0xaa", to="0xaa", nonce=3, data=EMPTY_DATA, value=5)
        assert not is_cancellation(tx)

    def test_call_to_self_with_data_is_not_cancel(self):
        tx = Transaction(hash="0x1", from_address="0xaa", to="0xaa", nonce=3, data="0x01", value=0)
        assert not is_cancellation(tx)


class TestFindReplacementTx:
    """End to end: search, then validate what was found."""

    def test_speed_up_is_accepted(self):
        chain = MockSourceChain()
        pending = _broadcast_lock(chain)
        replacement = chain.replace(pending.hash)
        height = chain.mine(replacement.hash)

        found = asyncio.run(find_replacement_tx(chain, 990, _query(pending), _deposit_event()))
        assert found.hash == replacement.hash
        assert found.block_number == height

    def test_still_pending_returns_none(self):
        chain = MockSourceChain()
        pending = _broadcast_lock(chain)

        assert asyncio.run(find_replacement_tx(chain, 990, _query(pending))) is None

    def test_cancel_is_reported(self):
        chain = MockSourceChain()
        pending = _broadcast_lock(chain)
        cancel = chain.cancel(pending.hash)
        chain.mine(cancel.hash)

        with pytest.raises(TxValidationError) as exc_info:
            asyncio.run(find_replacement_tx(chain, 990, _query(pending), _deposit_event()))
        assert str(exc_info.value) == f"Transaction canceled. Replaced by '{cancel.hash}'"
        assert exc_info.value.tx_hash == cancel.hash

    def test_wrong_recipient_is_rejected(self):
        chain = MockSourceChain()
        pending = _broadcast_lock(chain)
        replacement = chain.replace(pending.hash, to=OTHER_CONTRACT)
        chain.mine(replacement.hash)

        with pytest.raises(TxValidationError, match="recipient") as exc_info:
            asyncio.run(find_replacement_tx(chain, 990, _query(pending)))
        assert replacement.hash in str(exc_info.value)

    def test_wrong_calldata_is_rejected(self):
        chain = MockSourceChain()
        pending = _broadcast_lock(chain)
        replacement = chain.replace(pending.hash, data="0xdeadbeef")
        chain.mine(replacement.hash)

        with pytest.raises(TxValidationError, match="data") as exc_info:
            asyncio.run(find_replacement_tx(chain, 990, _query(pending)))
        assert replacement.hash in str(exc_info.value)

    def test_wrong_value_is_rejected(self):
        chain = MockSourceChain()
        pending = _broadcast_lock(chain)
        replacement = chain.replace(pending.hash, value=ONE_ETH // 2)
        chain.mine(replacement.hash)

        with pytest.raises(TxValidationError, match="value") as exc_info:
            asyncio.run(find_replacement_tx(chain, 990, _query(pending)))
        assert replacement.hash in str(exc_info.value)

    def test_unexpected_event_is_rejected(self):
        chain = MockSourceChain()
        pending = _broadcast_lock(chain)
        replacement = chain.replace(pending.hash)
        chain.mine(replacement.hash)

        with pytest.raises(TxValidationError, match="Failed to validate event") as exc_info:
            asyncio.run(find_replacement_tx(
                chain, 990, _query(pending), _deposit_event(recipient="carol.near"),
            ))
        assert exc_info.value.tx_hash == replacement.hash

    def test_optional_checks_can_be_skipped(self):
        """Without calldata or value expectations only the recipient is checked."""
        chain = MockSourceChain()
        pending = _broadcast_lock(chain)
        replacement = chain.replace(pending.hash, data="0x00", value=1)
        chain.mine(replacement.hash)

        query = TransactionQuery(from_address=pending.from_address, to=CUSTODIAN, nonce=pending.nonce)
        found = asyncio.run(find_replacement_tx(chain, 990, query))
        assert found.hash == replacement.hash


class TestValidateReplacement:

    def test_transaction_without_block_fails_event_check(self):
        chain = MockSourceChain()
        tx = Transaction(hash="0xabc", from_address=chain.sender, to=CUSTODIAN, nonce=0, data="0x01", value=1)
        query = TransactionQuery(from_address=chain.sender, to=CUSTODIAN, nonce=0)

        with pytest.raises(TxValidationError, match="has no block"):
            asyncio.run(validate_replacement(chain, tx, query, _deposit_event()))

    def test_matching_transaction_is_returned(self):
        chain = MockSourceChain()
        tx = Transaction(hash="0xabc", from_address=chain.sender, to=CUSTODIAN.upper(), nonce=0, data="0x01", value=1)
        query = TransactionQuery(from_address=chain.sender, to=CUSTODIAN, nonce=0, data="0x01", value="1")

        assert asyncio.run(validate_replacement(chain, tx, query)) is tx


@pytest.mark.slow
class TestLongHistory:

    def test_search_over_long_history(self):
        """Nonce crossings deep in a long chain with many same-sender transactions."""
        chain = MockSourceChain()
        expected = {}
        for i in range(200):
            chain.mine_empty(250)
            tx = chain.submit(to=OTHER_CONTRACT, value=i)
            expected[tx.nonce] = (tx.hash, chain.mine(tx.hash))

        for nonce in (0, 57, 123, 199):
            tx = asyncio.run(get_transaction_by_nonce(chain, 1000, chain.sender, nonce))
            assert (tx.hash, tx.block_number) == expected[nonce]
