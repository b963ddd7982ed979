"""
Unit tests for the chain and balance book.

Tests cover:
1. Block clock and mining
2. Transaction hashes, receipts and log queries
3. Balance transfers, receive hooks and snapshots
"""

import pytest

from timemarket.crypto import keypair_from_seed
from timemarket.core.balances import BalanceBook
from timemarket.core.chain import Chain, Event
from timemarket.core.errors import PaymentError


ALICE = keypair_from_seed(b"alice").address
BOB = keypair_from_seed(b"bob").address
CONTRACT = keypair_from_seed(b"contract").address


@pytest.fixture
def chain():
    return Chain(chain_id=31337, start_time=1_700_000_000, block_time=12)


@pytest.fixture
def book():
    book = BalanceBook()
    book.credit(ALICE, 1000)
    return book


def _event(name="Ping", **args):
    return Event(address=CONTRACT, name=name, args=args, indexed=("who",))


# =============================================================================
# Chain Tests
# =============================================================================


class TestBlockClock:
    """Tests for block numbers and timestamps."""

    def test_genesis(self, chain):
        assert chain.block_number == 0
        assert chain.timestamp == 1_700_000_000
        assert chain.get_block(0).timestamp == 1_700_000_000

    def test_mine_advances_by_block_time(self, chain):
        block = chain.mine(3)
        assert block.number == 3
        assert block.timestamp == 1_700_000_000 + 36

    def test_advance_time(self, chain):
        chain.advance_time(86400)
        assert chain.block_number == 1
        assert chain.timestamp == 1_700_086_400

    def test_mine_requires_a_block(self, chain):
        with pytest.raises(ValueError):
            chain.mine(0)


class TestTransactions:
    """Tests for tx identities, receipts and logs."""

    def test_tx_hashes_are_unique_per_nonce(self, chain):
        assert chain.new_tx_hash(ALICE) != chain.new_tx_hash(ALICE)

    def test_commit_produces_receipt(self, chain):
        tx = chain.new_tx_hash(ALICE)
        receipt = chain.commit(ALICE, tx, [_event(who=ALICE)])

        assert receipt.tx_hash == tx
        assert receipt.block_number == 0
        assert receipt.timestamp == chain.timestamp
        assert chain.get_receipt(tx) is receipt
        assert chain.last_receipt is receipt
        assert len(receipt.events("Ping")) == 1

    def test_same_block_shares_timestamp(self, chain):
        r1 = chain.commit(ALICE, chain.new_tx_hash(ALICE), [_event(who=ALICE)])
        r2 = chain.commit(BOB, chain.new_tx_hash(BOB), [_event(who=BOB)])
        assert r1.timestamp == r2.timestamp
        assert r1.tx_hash != r2.tx_hash

    def test_log_filters_on_indexed_args(self, chain):
        chain.commit(ALICE, chain.new_tx_hash(ALICE), [_event(who=ALICE)])
        chain.mine()
        chain.commit(BOB, chain.new_tx_hash(BOB), [_event(who=BOB)])

        assert len(chain.get_logs(address=CONTRACT, event="Ping")) == 2
        assert len(chain.get_logs(filters={"who": BOB.upper().replace("0X", "0x")})) == 1
        assert len(chain.get_logs(from_block=1)) == 1
        assert len(chain.get_logs(to_block=0)) == 1

    def test_filter_on_non_indexed_arg_rejected(self, chain):
        chain.commit(ALICE, chain.new_tx_hash(ALICE), [_event(who=ALICE, amount=1)])
        with pytest.raises(ValueError):
            chain.get_logs(filters={"amount": 1})

    def test_rpc_form(self, chain):
        receipt = chain.commit(ALICE, chain.new_tx_hash(ALICE), [_event(who=ALICE, blob=b"\x01")])
        rpc = receipt.logs[0].to_rpc()
        assert rpc["blockNumber"] == 0
        assert rpc["transactionHash"] == receipt.tx_hash
        assert rpc["args"]["blob"] == "0x01"

    def test_deployment_addresses_differ(self, chain):
        assert chain.deployment_address(ALICE) != chain.deployment_address(ALICE)


# =============================================================================
# Balance Tests
# =============================================================================


class TestBalanceBook:
    """Tests for value transfers."""

    def test_transfer(self, book):
        book.transfer(ALICE, BOB, 300)
        assert book.balance_of(ALICE) == 700
        assert book.balance_of(BOB) == 300
        assert book.total_supply == 1000

    def test_insufficient_balance(self, book):
        with pytest.raises(PaymentError):
            book.transfer(ALICE, BOB, 1001)
        assert book.balance_of(ALICE) == 1000

    def test_zero_transfer_skips_hook(self, book):
        calls = []
        book.set_receive_hook(BOB, lambda sender, amount: calls.append(amount))
        book.transfer(ALICE, BOB, 0)
        assert calls == []

    def test_rejecting_hook_undoes_transfer(self, book):
        def reject(sender, amount):
            raise RuntimeError("no thanks")

        book.set_receive_hook(BOB, reject)
        with pytest.raises(PaymentError):
            book.transfer(ALICE, BOB, 100)
        assert book.balance_of(ALICE) == 1000
        assert book.balance_of(BOB) == 0

    def test_hook_removal(self, book):
        def reject(sender, amount):
            raise RuntimeError("no thanks")

        book.set_receive_hook(BOB, reject)
        book.set_receive_hook(BOB, None)
        book.transfer(ALICE, BOB, 100)
        assert book.balance_of(BOB) == 100

    def test_rollback_restores_touched_accounts(self, book):
        book.begin()
        book.transfer(ALICE, BOB, 500)
        book.credit(CONTRACT, 7)
        book.rollback()

        assert book.balance_of(ALICE) == 1000
        assert book.balance_of(BOB) == 0
        assert book.total_supply == 1000

    def test_commit_keeps_changes(self, book):
        book.begin()
        book.transfer(ALICE, BOB, 500)
        book.commit()
        assert book.balance_of(BOB) == 500

    def test_nested_levels(self, book):
        """An inner commit still rolls back with its outer level."""
        book.begin()
        book.transfer(ALICE, BOB, 100)
        book.begin()
        book.transfer(BOB, CONTRACT, 40)
        book.commit()
        assert book.balance_of(CONTRACT) == 40

        book.rollback()
        assert (book.balance_of(ALICE), book.balance_of(BOB), book.balance_of(CONTRACT)) == (1000, 0, 0)

    def test_inner_rollback_only(self, book):
        book.begin()
        book.transfer(ALICE, BOB, 100)
        book.begin()
        book.transfer(BOB, CONTRACT, 40)
        book.rollback()
        book.commit()
        assert (book.balance_of(ALICE), book.balance_of(BOB), book.balance_of(CONTRACT)) == (900, 100, 0)
