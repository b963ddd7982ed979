"""
Unit tests for marketplace records, fee split and validation helpers.
"""

import copy
from dataclasses import replace

import pytest

from timemarket.core.market.models import (
    ActiveOfferSet,
    MarketState,
    Offer,
    OfferState,
    Purchase,
    RevealState,
    split_fee,
)
from timemarket.utils.validation import (
    validate_address,
    validate_blob,
    validate_fee_bps,
    validate_handle,
    validate_integer,
    validate_positive,
    validate_text,
    validate_uint_width,
)


def _offer(**overrides):
    fields = dict(
        id=1,
        creator="0x" + "11" * 20,
        title="t",
        description="d",
        public_price=100,
        duration=30,
        slots=5,
        available_slots=5,
        created_at=1000,
        expires_at=1000 + 30 * 86400,
        encrypted_price=b"\x01" * 32,
        encrypted_duration=b"\x02" * 32,
        encrypted_slots=b"\x03" * 32,
    )
    fields.update(overrides)
    return Offer(**fields)


# =============================================================================
# Fee Split
# =============================================================================


class TestFeeSplit:
    """Tests for the platform fee split."""

    def test_five_percent_of_two_hundred(self):
        split = split_fee(200, 500)
        assert split.fee == 10
        assert split.creator_amount == 190

    def test_fee_rounds_down(self):
        split = split_fee(199, 250)
        assert split.fee == 4
        assert split.creator_amount == 195

    @pytest.mark.parametrize("fee_bps", [0, 1, 99, 250, 333, 500, 999, 1000])
    @pytest.mark.parametrize("total", [0, 1, 7, 100, 12345, 10**18 + 3])
    def test_parts_add_up(self, total, fee_bps):
        split = split_fee(total, fee_bps)
        assert split.fee + split.creator_amount == total
        assert 0 <= split.fee <= split.creator_amount


# =============================================================================
# Active Offer Set
# =============================================================================


class TestActiveOfferSet:
    """Tests for O(1) swap-with-last removal."""

    def test_remove_swaps_last_into_place(self):
        active = ActiveOfferSet()
        for i in (1, 2, 3, 4):
            active.add(i)

        active.remove(2)

        assert active.ids() == [1, 4, 3]
        assert 2 not in active
        assert len(active) == 3

    def test_remove_last(self):
        active = ActiveOfferSet()
        active.add(1)
        active.add(2)
        active.remove(2)
        assert active.ids() == [1]

    def test_positions_stay_consistent(self):
        active = ActiveOfferSet()
        for i in range(1, 6):
            active.add(i)
        for i in (1, 5, 3):
            active.remove(i)
        assert sorted(active) == [2, 4]
        active.remove(4)
        active.remove(2)
        assert len(active) == 0

    def test_double_add_rejected(self):
        active = ActiveOfferSet()
        active.add(1)
        with pytest.raises(ValueError):
            active.add(1)

    def test_remove_missing(self):
        with pytest.raises(KeyError):
            ActiveOfferSet().remove(7)

    def test_reinsert_undoes_remove_exactly(self):
        for victim in (1, 3, 5):
            active = ActiveOfferSet()
            for i in range(1, 6):
                active.add(i)
            position = active.remove(victim)
            active.reinsert(victim, position)
            assert active.ids() == [1, 2, 3, 4, 5]
            active.remove(4)
            assert 4 not in active and len(active) == 4


# =============================================================================
# Market State Journal
# =============================================================================


def _state():
    return MarketState(owner="0x" + "01" * 20, treasury="0x" + "02" * 20, platform_fee_bps=250)


class TestMarketStateJournal:
    """Rollback restores exactly what a call touched."""

    def test_rollback_restores_records_indices_and_counters(self):
        state = _state()
        for i in (1, 2, 3):
            state.add_offer(_offer(id=i))
        state.next_offer_id = 4

        state.begin()
        state.add_offer(_offer(id=4))
        state.next_offer_id = 5
        state.touch_offer(1).available_slots = 0
        state.retire_offer(1)
        state.add_purchase(Purchase(id=1, offer_id=1, buyer="0xb", slots=5, total_price=500, timestamp=0))
        state.total_volume += 500
        state.platform_fee_bps = 900
        state.rollback()

        assert sorted(state.offers) == [1, 2, 3]
        assert state.active.ids() == [1, 2, 3]
        assert state.offers[1].available_slots == 5
        assert state.purchases == {} and state.user_purchases == {}
        assert state.user_offers[_offer().creator] == [1, 2, 3]
        assert (state.next_offer_id, state.total_volume, state.platform_fee_bps) == (4, 0, 250)

    def test_commit_keeps_changes(self):
        state = _state()
        state.add_offer(_offer(id=1))

        state.begin()
        state.touch_offer(1).state = OfferState.DEACTIVATED
        state.retire_offer(1)
        state.commit()
        state.begin()
        state.rollback()

        assert state.offers[1].state == OfferState.DEACTIVATED
        assert state.active.ids() == []

    def test_offer_restored_in_place(self):
        state = _state()
        state.add_offer(_offer(id=1))
        live = state.offers[1]

        state.begin()
        state.touch_offer(1).reveal_state = RevealState.DECLASSIFIED
        state.touch_offer(1).reveal_state = RevealState.RESOLVED
        state.rollback()

        assert state.offers[1] is live
        assert live.reveal_state == RevealState.SEALED

    def test_single_open_journal(self):
        state = _state()
        state.begin()
        with pytest.raises(RuntimeError):
            state.begin()
        state.rollback()
        assert not state.in_transaction


# =============================================================================
# Offer Record
# =============================================================================


class TestOffer:
    """Tests for the offer record."""

    def test_defaults(self):
        offer = _offer()
        assert offer.is_active
        assert offer.state == OfferState.ACTIVE
        assert offer.reveal_state == RevealState.SEALED
        assert offer.revealed_slots is None

    def test_handles_are_write_once(self):
        offer = _offer()
        with pytest.raises(AttributeError):
            offer.encrypted_price = b"\x09" * 32

    def test_copies_keep_handles(self):
        offer = _offer()
        assert replace(offer).encrypted_data == offer.encrypted_data
        assert copy.deepcopy(offer).encrypted_slots == offer.encrypted_slots

    def test_expiry_is_inclusive(self):
        offer = _offer()
        assert not offer.is_expired(offer.expires_at)
        assert offer.is_expired(offer.expires_at + 1)


# =============================================================================
# Validators
# =============================================================================


class TestValidators:
    """Tests for (is_valid, error_message) validators."""

    def test_text(self):
        assert validate_text("hello", "title")[0]
        assert not validate_text("", "title")[0]
        assert not validate_text("   ", "title")[0]
        assert not validate_text(5, "title")[0]
        assert not validate_text("x" * 11, "title", max_length=10)[0]

    def test_integer_rejects_bool(self):
        ok, err = validate_integer(True, "n")
        assert not ok
        assert "int" in err

    def test_positive(self):
        assert validate_positive(1, "n")[0]
        assert not validate_positive(0, "n")[0]
        assert not validate_positive(-3, "n")[0]

    def test_uint_width(self):
        assert validate_uint_width(255, 8)[0]
        assert not validate_uint_width(256, 8)[0]

    def test_address(self):
        assert validate_address("0x" + "ab" * 20)[0]
        assert not validate_address("0x" + "00" * 20)[0]
        assert validate_address("0x" + "00" * 20, allow_zero=True)[0]
        assert not validate_address(None)[0]

    def test_handle(self):
        assert validate_handle(b"\x01" * 32)[0]
        assert not validate_handle(b"\x00" * 32)[0]
        assert not validate_handle(b"\x01" * 31)[0]
        assert not validate_handle("0x" + "01" * 32)[0]

    def test_blob(self):
        assert validate_blob(b"\x01\x02")[0]
        assert validate_blob(b"")[0]
        assert not validate_blob("0x0102")[0]
        assert not validate_blob(None)[0]

    def test_fee_bps(self):
        assert validate_fee_bps(0, 1000)[0]
        assert validate_fee_bps(1000, 1000)[0]
        assert not validate_fee_bps(1001, 1000)[0]
        assert not validate_fee_bps(-1, 1000)[0]
