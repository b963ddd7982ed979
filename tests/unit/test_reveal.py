"""
Unit tests for the reveal/callback flow.

Tests cover:
1. Declassification (who may request, which handles)
2. Callback verification against the offer's current handles
3. Forged, substituted and replayed callbacks
"""

import pytest

from timemarket.crypto import keypair_from_seed, sign
from timemarket.core.chain import Chain
from timemarket.core.config import MarketConfig
from timemarket.core.errors import AuthorizationError, ProofVerificationError, ValidationError
from timemarket.core.market import OfferLedger, RevealState
from timemarket.fhe import FheGateway, encode_cleartexts
from timemarket.fhe.gateway import decryption_digest

CHAIN_ID = 31337

OWNER = keypair_from_seed(b"owner").address
TREASURY = keypair_from_seed(b"treasury").address
ALICE = keypair_from_seed(b"alice").address
BOB = keypair_from_seed(b"bob").address
RELAYER = keypair_from_seed(b"relayer").address


@pytest.fixture
def gateway():
    return FheGateway(chain_id=CHAIN_ID)


@pytest.fixture
def ledger(gateway):
    return OfferLedger(
        OWNER,
        TREASURY,
        gateway,
        chain=Chain(chain_id=CHAIN_ID, start_time=1_700_000_000),
        config=MarketConfig(chain_id=CHAIN_ID),
    )


@pytest.fixture
def offer_id(ledger, gateway):
    """Encrypted offer: display price 90, encrypted price 120 and 4 slots."""
    bundle = gateway.create_encrypted_input(ledger.address, ALICE).add64(120).add32(14).add32(4).encrypt()
    return ledger.create_offer_encrypted(ALICE, "Mentoring", "Weekly call", 90, 14, 4, *bundle.handles, bundle.proof)


# =============================================================================
# Request
# =============================================================================


class TestRequestReveal:
    """Tests for declassification."""

    def test_declassifies_price_and_slots(self, ledger, gateway, offer_id):
        handles = ledger.request_reveal(ALICE, offer_id)
        data = ledger.get_encrypted_offer_data(offer_id)

        assert handles == [data.price, data.slots]
        assert gateway.is_publicly_decryptable(data.price)
        assert gateway.is_publicly_decryptable(data.slots)
        assert not gateway.is_publicly_decryptable(data.duration)
        assert ledger.get_offer(offer_id).reveal_state == RevealState.DECLASSIFIED

    def test_event_lists_handles(self, ledger, offer_id):
        handles = ledger.request_reveal(ALICE, offer_id)
        (log,) = ledger.chain.last_receipt.events("RevealRequested")
        assert [log.args["price_handle"], log.args["slots_handle"]] == handles

    def test_owner_may_request(self, ledger, offer_id):
        ledger.request_reveal(OWNER, offer_id)
        assert ledger.get_offer(offer_id).reveal_state == RevealState.DECLASSIFIED

    def test_stranger_rejected(self, ledger, gateway, offer_id):
        with pytest.raises(AuthorizationError):
            ledger.request_reveal(BOB, offer_id)
        data = ledger.get_encrypted_offer_data(offer_id)
        assert not gateway.is_publicly_decryptable(data.price)
        assert ledger.get_offer(offer_id).reveal_state == RevealState.SEALED

    def test_repeat_while_pending(self, ledger, offer_id):
        first = ledger.request_reveal(ALICE, offer_id)
        assert ledger.request_reveal(ALICE, offer_id) == first


# =============================================================================
# Callback
# =============================================================================


class TestResolveCallback:
    """Tests for accepting decryption results."""

    def test_valid_callback(self, ledger, gateway, offer_id):
        handles = ledger.request_reveal(ALICE, offer_id)
        result = gateway.public_decrypt(handles)

        values = ledger.resolve_callback(RELAYER, offer_id, result.cleartexts, result.decryption_proof)

        assert (values.price, values.slots) == (120, 4)
        offer = ledger.get_offer(offer_id)
        assert offer.public_price == 120
        assert offer.revealed_slots == 4
        assert offer.slots == offer.available_slots == 4
        assert offer.reveal_state == RevealState.RESOLVED
        (log,) = ledger.chain.last_receipt.events("RevealResolved")
        assert log.args == {"offer_id": offer_id, "price": 120, "slots": 4}

    def test_revealed_price_applies_to_purchases(self, ledger, gateway, offer_id):
        result = gateway.public_decrypt(ledger.request_reveal(ALICE, offer_id))
        ledger.resolve_callback(RELAYER, offer_id, result.cleartexts, result.decryption_proof)

        ledger.balances.credit(BOB, 1000)
        purchase_id = ledger.purchase_offer(BOB, offer_id, 1, 120)
        assert ledger.get_purchase(purchase_id).total_price == 120

    def test_forged_cleartext_rejected(self, ledger, gateway, offer_id):
        result = gateway.public_decrypt(ledger.request_reveal(ALICE, offer_id))
        forged = encode_cleartexts([1, 4])

        with pytest.raises(ProofVerificationError):
            ledger.resolve_callback(RELAYER, offer_id, forged, result.decryption_proof)

        offer = ledger.get_offer(offer_id)
        assert offer.public_price == 90
        assert offer.revealed_slots is None
        assert offer.reveal_state == RevealState.DECLASSIFIED

    def test_proof_for_other_offer_rejected(self, ledger, gateway, offer_id):
        other = ledger.create_offer(ALICE, "Other", "Plain", 120, 14, 4)
        ledger.request_reveal(ALICE, offer_id)
        other_result = gateway.public_decrypt(ledger.request_reveal(ALICE, other))

        # Same cleartext values, but signed over the other offer's handles
        with pytest.raises(ProofVerificationError):
            ledger.resolve_callback(RELAYER, offer_id, other_result.cleartexts, other_result.decryption_proof)

    def test_untrusted_signer_rejected(self, ledger, offer_id):
        handles = ledger.request_reveal(ALICE, offer_id)
        forged = encode_cleartexts([1, 4])
        rogue = keypair_from_seed(b"rogue-kms")
        rogue_proof = bytes([1]) + sign(decryption_digest(CHAIN_ID, handles, forged), rogue.private_key)

        with pytest.raises(ProofVerificationError):
            ledger.resolve_callback(RELAYER, offer_id, forged, rogue_proof)

    def test_callback_without_request(self, ledger, gateway, offer_id):
        with pytest.raises(ValidationError):
            ledger.resolve_callback(RELAYER, offer_id, encode_cleartexts([1, 1]), b"\x00")

    def test_hex_encoded_callback_rejected(self, ledger, gateway, offer_id):
        """Hex strings from a JSON client are refused, not decoded."""
        result = gateway.public_decrypt(ledger.request_reveal(ALICE, offer_id))

        with pytest.raises(ValidationError):
            ledger.resolve_callback(RELAYER, offer_id, result.cleartexts.hex(), result.decryption_proof)
        with pytest.raises(ValidationError):
            ledger.resolve_callback(RELAYER, offer_id, result.cleartexts, "0x" + result.decryption_proof.hex())

        assert ledger.get_offer(offer_id).reveal_state == RevealState.DECLASSIFIED
        ledger.resolve_callback(RELAYER, offer_id, result.cleartexts, result.decryption_proof)
        assert ledger.get_offer(offer_id).reveal_state == RevealState.RESOLVED

    def test_replay_after_resolution(self, ledger, gateway, offer_id):
        result = gateway.public_decrypt(ledger.request_reveal(ALICE, offer_id))
        ledger.resolve_callback(RELAYER, offer_id, result.cleartexts, result.decryption_proof)

        with pytest.raises(ValidationError):
            ledger.resolve_callback(RELAYER, offer_id, result.cleartexts, result.decryption_proof)
        with pytest.raises(ValidationError):
            ledger.request_reveal(ALICE, offer_id)

    def test_public_decrypt_before_request(self, ledger, gateway, offer_id):
        data = ledger.get_encrypted_offer_data(offer_id)
        with pytest.raises(AuthorizationError):
            gateway.public_decrypt([data.price, data.slots])
