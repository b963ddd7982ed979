"""
Integration Tests - full marketplace lifecycle.

Tests verify:
1. Encrypted offer creation -> purchases -> exhaustion
2. Reveal round-trip through the decryption oracle
3. Purchase history reconstruction with provenance
4. Conservation of value and counters across many purchases
"""

import asyncio
import random

import pytest

from timemarket.crypto import keypair_from_seed
from timemarket.core.balances import BalanceBook
from timemarket.core.chain import Chain
from timemarket.core.config import MarketConfig
from timemarket.core.market import OfferLedger, RevealState
from timemarket.fhe import FheGateway
from timemarket.indexer import PurchaseIndexer

CHAIN_ID = 11155111
START = 1_700_000_000

OWNER = keypair_from_seed(b"owner").address
TREASURY = keypair_from_seed(b"treasury").address
CREATORS = [keypair_from_seed(f"creator-{i}".encode()).address for i in range(3)]
BUYERS = [keypair_from_seed(f"buyer-{i}".encode()).address for i in range(4)]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def deployment():
    """Ledger wired to a 3-of-3 KMS and funded buyers."""
    kms = [keypair_from_seed(f"kms-{i}".encode()) for i in range(3)]
    gateway = FheGateway(chain_id=CHAIN_ID, kms_signers=kms, kms_threshold=3)
    balances = BalanceBook()
    for buyer in BUYERS:
        balances.credit(buyer, 1_000_000)

    config = MarketConfig(chain_id=CHAIN_ID, platform_fee_bps=500, kms_threshold=3)
    ledger = OfferLedger(
        OWNER,
        TREASURY,
        gateway,
        chain=Chain(chain_id=CHAIN_ID, start_time=START),
        balances=balances,
        config=config,
    )
    return ledger, gateway, balances


# =============================================================================
# Lifecycle
# =============================================================================


class TestOfferLifecycle:
    """Encrypted create, buy out, reveal, reconcile."""

    def test_full_lifecycle(self, deployment):
        ledger, gateway, balances = deployment
        creator, buyer = CREATORS[0], BUYERS[0]

        # Create from one encrypted bundle
        bundle = (
            gateway.create_encrypted_input(ledger.address, creator)
            .add64(100)
            .add32(30)
            .add32(5)
            .encrypt()
        )
        offer_id = ledger.create_offer_encrypted(
            creator, "Consulting", "One hour", 100, 30, 5, *bundle.handles, bundle.proof
        )
        ledger.chain.mine()

        # Buy 2, then the remaining 3
        first = ledger.purchase_offer(buyer, offer_id, 2, 200)
        offer = ledger.get_offer(offer_id)
        assert (offer.available_slots, offer.is_active) == (3, True)
        assert balances.balance_of(TREASURY) == 10
        assert balances.balance_of(creator) == 190
        ledger.chain.mine()

        second = ledger.purchase_offer(buyer, offer_id, 3, 300)
        offer = ledger.get_offer(offer_id)
        assert (offer.available_slots, offer.is_active) == (0, False)
        assert offer_id not in ledger.get_active_offer_ids()
        ledger.chain.mine()

        # Reveal
        handles = ledger.request_reveal(creator, offer_id)
        (requested,) = ledger.chain.last_receipt.events("RevealRequested")
        result = gateway.public_decrypt([requested.args["price_handle"], requested.args["slots_handle"]])
        revealed = ledger.resolve_callback(BUYERS[1], offer_id, result.cleartexts, result.decryption_proof)
        assert (revealed.price, revealed.slots) == (100, 5)
        assert ledger.get_offer(offer_id).reveal_state == RevealState.RESOLVED
        assert handles == [bundle.handles[0], bundle.handles[2]]

        # Reconcile
        history = asyncio.run(PurchaseIndexer.for_ledger(ledger).fetch_purchase_history(buyer))
        assert [item.id for item in history] == [first, second]
        assert all(item.tx_hash for item in history)
        assert history[0].offer.revealed_slots == 5

    def test_value_and_counters_conserved(self, deployment):
        ledger, gateway, balances = deployment
        rng = random.Random(7)
        supply = balances.total_supply

        offers = [
            ledger.create_offer(creator, f"Offer {i}", "Slots", rng.randint(1, 500), 30, rng.randint(1, 20))
            for i, creator in enumerate(CREATORS * 2)
        ]

        expected_volume = 0
        sold = {oid: 0 for oid in offers}
        for _ in range(40):
            offer = ledger.get_offer(rng.choice(offers))
            if not offer.is_active:
                continue
            quantity = rng.randint(1, offer.available_slots)
            payment = offer.public_price * quantity + rng.randint(0, 50)
            ledger.purchase_offer(rng.choice(BUYERS), offer.id, quantity, payment)
            expected_volume += offer.public_price * quantity
            sold[offer.id] += quantity
            if rng.random() < 0.3:
                ledger.chain.mine()

        stats = ledger.get_contract_stats()
        assert stats.total_volume == expected_volume
        assert stats.total_volume == sum(
            ledger.get_purchase(pid).total_price
            for buyer in BUYERS
            for pid in ledger.get_user_purchases(buyer)
        )
        assert balances.total_supply == supply
        assert balances.balance_of(ledger.address) == 0

        for oid in offers:
            offer = ledger.get_offer(oid)
            assert offer.available_slots == offer.slots - sold[oid]
            assert offer.is_active == (offer.available_slots > 0)
            assert (oid in ledger.get_active_offer_ids()) == offer.is_active

        for buyer in BUYERS:
            history = asyncio.run(PurchaseIndexer.for_ledger(ledger).fetch_purchase_history(buyer))
            hashes = [item.tx_hash for item in history]
            assert all(hashes)
            assert len(set(hashes)) == len(hashes)

    def test_threshold_proof_needs_all_signers(self, deployment):
        ledger, gateway, _ = deployment
        offer_id = ledger.create_offer(CREATORS[0], "Consulting", "One hour", 100, 30, 5)
        result = gateway.public_decrypt(ledger.request_reveal(CREATORS[0], offer_id))

        two_of_three = bytes([2]) + result.decryption_proof[1:1 + 2 * 65]
        assert not gateway.check_signatures(
            ledger.reveals.handles_for(ledger.get_offer(offer_id)), result.cleartexts, two_of_three
        )
        ledger.resolve_callback(OWNER, offer_id, result.cleartexts, result.decryption_proof)
        assert ledger.get_offer(offer_id).reveal_state == RevealState.RESOLVED
