"""
Offer Ledger - authoritative state machine of the marketplace.

Conceptual Background:
---------------------
The ledger owns two append-only arenas:

1. **Offers**: sequential ids, mutated only by purchase, deactivation and
   reveal; never deleted.
2. **Purchases**: sequential ids, immutable once written.

Secondary indices hold ids only: offers per creator, purchases per buyer,
and the set of active offer ids.

Offer States:
------------
    ACTIVE -> EXHAUSTED    (available slots reach zero)
    ACTIVE -> DEACTIVATED  (creator or owner withdraws it)

Expiry is checked lazily: a purchase after ``expires_at`` is refused, but
no background sweep flips the state.

Execution Model:
---------------
Every state-changing call runs in one frame:
1. Take the reentrancy guard (released on every exit path)
2. Open undo journals on ledger state and balances
3. Validate, mutate ledger state, then move value
4. On any error replay the journals backwards and drop the frame's events;
   on success mine the events into the chain under the call's tx hash

Purchase Settlement:
-------------------
    total_price    = public_price * quantity
    fee            = total_price * fee_bps // 10000   -> treasury
    creator_amount = total_price - fee                -> creator
    payment - total_price                             -> refunded to buyer
"""

from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Iterator, List, Optional, Tuple

from timemarket.core.balances import BalanceBook
from timemarket.core.chain import Chain, Event
from timemarket.core.config import MarketConfig
from timemarket.core.errors import AuthorizationError, PaymentError, ValidationError
from timemarket.core.market import events
from timemarket.core.market.models import (
    ContractStats,
    EncryptedOfferData,
    MarketState,
    Offer,
    OfferState,
    Purchase,
    RevealState,
    split_fee,
)
from timemarket.core.market.guard import ReentrancyGuard
from timemarket.core.market.reveal import RevealVerifier, RevealedValues
from timemarket.fhe.gateway import FheGateway
from timemarket.fhe.types import FheType, handle_type
from timemarket.utils.logger import get_logger
from timemarket.utils.validation import (
    MAX_DESCRIPTION_LENGTH,
    MAX_TITLE_LENGTH,
    MAX_UINT64,
    validate_address,
    validate_blob,
    validate_fee_bps,
    validate_handle,
    validate_positive,
    validate_text,
)

logger = get_logger("ledger")


# =============================================================================
# Constants
# =============================================================================

MAX_UINT32 = 2**32 - 1

# Position and type of each value inside an encrypted offer bundle
ENCRYPTED_OFFER_LAYOUT = (
    ("price", FheType.EUINT64),
    ("duration", FheType.EUINT32),
    ("slots", FheType.EUINT32),
)


def _check(result: Tuple[bool, str]) -> None:
    ok, err = result
    if not ok:
        raise ValidationError(err)


@dataclass
class _Frame:
    """Per-call context: caller, tx hash and buffered events."""
    sender: str
    tx_hash: str
    events: List[Event] = field(default_factory=list)


# =============================================================================
# Offer Ledger
# =============================================================================


class OfferLedger:
    """
    Marketplace ledger for time-slot offers.

    Attributes:
        address: Contract address (receives payments, holds ACL grants)
        chain: Block clock and event log
        balances: Native value of every account
        gateway: FHE coprocessor / ACL / decryption oracle
        reveals: Reveal/callback verifier bound to this ledger
    """

    def __init__(
        self,
        owner: str,
        treasury: str,
        gateway: FheGateway,
        chain: Optional[Chain] = None,
        balances: Optional[BalanceBook] = None,
        config: Optional[MarketConfig] = None,
        address: Optional[str] = None,
    ):
        """
        Deploy the ledger.

        Args:
            owner: Platform owner (admin operations)
            treasury: Receiver of platform fees
            gateway: FHE gateway the handles live in
            chain: Chain to run on; a fresh one is created if None
            balances: Balance book; a fresh one is created if None
            config: Economic parameters; defaults if None
            address: Contract address; derived from owner if None
        """
        self.config = config or MarketConfig()
        _check(validate_address(owner, "owner"))
        _check(validate_address(treasury, "treasury"))
        _check(validate_fee_bps(self.config.platform_fee_bps, self.config.max_fee_bps))

        self.chain = chain or Chain(chain_id=self.config.chain_id, block_time=self.config.block_time)
        if gateway.chain_id != self.chain.chain_id:
            raise ValueError(f"Gateway chain {gateway.chain_id} != ledger chain {self.chain.chain_id}")
        if gateway.kms_threshold < self.config.kms_threshold:
            raise ValueError(
                f"Gateway accepts {gateway.kms_threshold} KMS signature(s), "
                f"ledger requires {self.config.kms_threshold}"
            )

        self.gateway = gateway
        self.balances = balances or BalanceBook()
        self.address = (address or self.chain.deployment_address(owner)).lower()

        self._state = MarketState(
            owner=owner.lower(),
            treasury=treasury.lower(),
            platform_fee_bps=self.config.platform_fee_bps,
        )
        self._guard = ReentrancyGuard()
        self._frame: Optional[_Frame] = None
        self.reveals = RevealVerifier(gateway, self.address)

        logger.info(
            f"OfferLedger deployed at {self.address}: owner={self._state.owner}, "
            f"fee={self._state.platform_fee_bps}bps"
        )

    # =========================================================================
    # Execution Frames
    # =========================================================================

    @contextmanager
    def _call(self, sender: str, operation: str) -> Iterator[_Frame]:
        with self._guard.enter(operation):
            _check(validate_address(sender, "sender"))

            frame = _Frame(sender=sender.lower(), tx_hash=self.chain.new_tx_hash(sender))
            self._frame = frame
            self._state.begin()
            self.balances.begin()
            try:
                yield frame
            except Exception as exc:
                self._state.rollback()
                self.balances.rollback()
                logger.debug(f"{operation} by {frame.sender} reverted: {exc}")
                raise
            finally:
                self._frame = None

            self._state.commit()
            self.balances.commit()
            self.chain.commit(frame.sender, frame.tx_hash, frame.events)

    def _emit(self, schema: events.EventSchema, **args) -> None:
        self._frame.events.append(schema(self.address, **args))

    def _offer(self, offer_id: int) -> Offer:
        _check(validate_positive(offer_id, "offer_id"))
        if offer_id not in self._state.offers:
            raise ValidationError(f"Offer {offer_id} does not exist")
        return self._state.touch_offer(offer_id)

    def _require_owner(self, sender: str) -> None:
        if sender != self._state.owner:
            raise AuthorizationError(f"{sender} is not the platform owner")

    def _require_creator_or_owner(self, offer: Offer, sender: str) -> None:
        if sender not in (offer.creator, self._state.owner):
            raise AuthorizationError(f"{sender} is neither creator of offer {offer.id} nor owner")

    # =========================================================================
    # Offer Creation
    # =========================================================================

    @staticmethod
    def _validate_offer_fields(title, description, price, duration_days, slots) -> None:
        _check(validate_text(title, "title", MAX_TITLE_LENGTH))
        _check(validate_text(description, "description", MAX_DESCRIPTION_LENGTH))
        _check(validate_positive(price, "price", max_val=MAX_UINT64))
        _check(validate_positive(duration_days, "duration", max_val=MAX_UINT32))
        _check(validate_positive(slots, "slots", max_val=MAX_UINT32))

    def create_offer(
        self,
        sender: str,
        title: str,
        description: str,
        price: int,
        duration_days: int,
        slots: int,
    ) -> int:
        """
        Create an offer from plaintext values.

        The values are still given encrypted handles (encrypted as public
        values), so every offer carries all three handles.

        Returns:
            New offer id
        """
        with self._call(sender, "create_offer") as frame:
            self._validate_offer_fields(title, description, price, duration_days, slots)

            handles = EncryptedOfferData(
                price=self.gateway.trivial_encrypt(price, FheType.EUINT64),
                duration=self.gateway.trivial_encrypt(duration_days, FheType.EUINT32),
                slots=self.gateway.trivial_encrypt(slots, FheType.EUINT32),
            )
            self._grant(handles, frame.sender)
            return self._store_offer(frame, title, description, price, duration_days, slots, handles)

    def create_offer_encrypted(
        self,
        sender: str,
        title: str,
        description: str,
        display_price: int,
        duration_days: int,
        slots: int,
        price_handle: bytes,
        duration_handle: bytes,
        slots_handle: bytes,
        proof: bytes,
    ) -> int:
        """
        Create an offer whose price, duration and slots are also imported
        as ciphertexts from one encrypted input bundle.

        Plain fields are validated before anything is imported. Each handle
        is then checked at its bundle position against the single proof.

        Raises:
            ValidationError: invalid plain field or malformed handle
            ProofVerificationError: the proof does not cover the handles

        Returns:
            New offer id
        """
        with self._call(sender, "create_offer_encrypted") as frame:
            self._validate_offer_fields(title, description, display_price, duration_days, slots)

            supplied = (price_handle, duration_handle, slots_handle)
            for (name, fhe_type), handle in zip(ENCRYPTED_OFFER_LAYOUT, supplied):
                _check(validate_handle(handle, f"{name}_handle"))
                if handle_type(handle) != fhe_type:
                    raise ValidationError(f"{name}_handle must be {fhe_type.name}")

            imported = [
                self.gateway.verify_input(bytes(handle), index, self.address, frame.sender, proof)
                for index, handle in enumerate(supplied)
            ]

            handles = EncryptedOfferData(*imported)
            self._grant(handles, frame.sender)
            return self._store_offer(frame, title, description, display_price, duration_days, slots, handles)

    def _grant(self, handles: EncryptedOfferData, creator: str) -> None:
        for handle in (handles.price, handles.duration, handles.slots):
            self.gateway.allow(handle, self.address)
            self.gateway.allow(handle, creator)

    def _store_offer(
        self,
        frame: _Frame,
        title: str,
        description: str,
        price: int,
        duration_days: int,
        slots: int,
        handles: EncryptedOfferData,
    ) -> int:
        state = self._state
        offer_id = state.next_offer_id
        now = self.chain.timestamp

        offer = Offer(
            id=offer_id,
            creator=frame.sender,
            title=title,
            description=description,
            public_price=price,
            duration=duration_days,
            slots=slots,
            available_slots=slots,
            created_at=now,
            expires_at=now + duration_days * self.config.seconds_per_day,
            encrypted_price=handles.price,
            encrypted_duration=handles.duration,
            encrypted_slots=handles.slots,
        )

        state.add_offer(offer)
        state.next_offer_id += 1
        state.total_offers_created += 1

        self._emit(
            events.OFFER_CREATED,
            offer_id=offer_id,
            creator=frame.sender,
            title=title,
            public_price=price,
            duration=duration_days,
            slots=slots,
        )
        logger.info(f"Offer {offer_id} created by {frame.sender}: {slots} slot(s) at {price}")
        return offer_id

    # =========================================================================
    # Purchasing
    # =========================================================================

    def purchase_offer(self, sender: str, offer_id: int, quantity: int, payment: int) -> int:
        """
        Buy ``quantity`` slots of an offer.

        ``payment`` is the value attached to the call; it is taken from the
        buyer's balance and any excess over the total price is refunded.

        Raises:
            ValidationError: unknown/inactive/expired offer, bad quantity,
                or the creator buying their own offer
            PaymentError: payment below total price, or a transfer failing

        Returns:
            New purchase id
        """
        with self._call(sender, "purchase_offer") as frame:
            buyer = frame.sender
            state = self._state
            offer = self._offer(offer_id)
            now = self.chain.timestamp

            _check(validate_positive(quantity, "quantity", max_val=MAX_UINT32))
            if not offer.is_active:
                raise ValidationError(f"Offer {offer_id} is not active ({offer.state.name})")
            if quantity > offer.available_slots:
                raise ValidationError(
                    f"Only {offer.available_slots} slot(s) left on offer {offer_id}, requested {quantity}"
                )
            if offer.is_expired(now):
                raise ValidationError(f"Offer {offer_id} expired at {offer.expires_at}")
            if buyer == offer.creator:
                raise ValidationError("Creator cannot purchase their own offer")

            total_price = offer.public_price * quantity
            if isinstance(payment, bool) or not isinstance(payment, int) or payment < total_price:
                raise PaymentError(f"Insufficient payment: {payment} < {total_price}")

            split = split_fee(total_price, state.platform_fee_bps)
            self.balances.transfer(buyer, self.address, payment)

            # Effects
            offer.available_slots -= quantity
            if offer.available_slots == 0:
                offer.state = OfferState.EXHAUSTED
                state.retire_offer(offer_id)
                logger.info(f"Offer {offer_id} sold out")

            purchase = Purchase(
                id=state.next_purchase_id,
                offer_id=offer_id,
                buyer=buyer,
                slots=quantity,
                total_price=total_price,
                timestamp=now,
            )
            state.add_purchase(purchase)
            state.next_purchase_id += 1
            state.total_purchases += 1
            state.total_volume += total_price

            self._emit(
                events.OFFER_PURCHASED,
                offer_id=offer_id,
                buyer=buyer,
                slots=quantity,
                total_price=total_price,
                slots_left=offer.available_slots,
                purchase_id=purchase.id,
            )

            # Interactions
            self.balances.transfer(self.address, state.treasury, split.fee)
            self.balances.transfer(self.address, offer.creator, split.creator_amount)
            self.balances.transfer(self.address, buyer, payment - total_price)

            logger.debug(
                f"Purchase {purchase.id}: {quantity} slot(s) of offer {offer_id} by {buyer}, "
                f"total={total_price}, fee={split.fee}, creator={split.creator_amount}"
            )
            return purchase.id

    # =========================================================================
    # Deactivation
    # =========================================================================

    def deactivate_offer(self, sender: str, offer_id: int) -> None:
        """
        Withdraw an offer. Creator or owner only; purchases already made stand.
        """
        with self._call(sender, "deactivate_offer") as frame:
            offer = self._offer(offer_id)
            self._require_creator_or_owner(offer, frame.sender)
            if not offer.is_active:
                raise ValidationError(f"Offer {offer_id} is not active ({offer.state.name})")

            offer.state = OfferState.DEACTIVATED
            self._state.retire_offer(offer_id)

            self._emit(events.OFFER_DEACTIVATED, offer_id=offer_id, by=frame.sender)
            logger.info(f"Offer {offer_id} deactivated by {frame.sender}")

    # =========================================================================
    # Reveal / Callback
    # =========================================================================

    def request_reveal(self, sender: str, offer_id: int) -> List[bytes]:
        """
        Declassify an offer's price and slots handles.

        Returns:
            The declassified handles [price, slots], as emitted in RevealRequested
        """
        with self._call(sender, "request_reveal") as frame:
            offer = self._offer(offer_id)
            self._require_creator_or_owner(offer, frame.sender)

            handles = self.reveals.declassify(offer)
            self._emit(
                events.REVEAL_REQUESTED,
                offer_id=offer_id,
                price_handle=handles[0],
                slots_handle=handles[1],
            )
            logger.info(f"Reveal requested for offer {offer_id}")
            return handles

    def resolve_callback(
        self,
        sender: str,
        offer_id: int,
        cleartexts: bytes,
        decryption_proof: bytes,
    ) -> RevealedValues:
        """
        Accept the decryption oracle's answer for a pending reveal.

        Anyone may relay the callback; the decryption proof is what is
        trusted. On success the revealed price becomes the offer's public
        price and the revealed slot count is recorded.

        Raises:
            ValidationError: no reveal pending, or a non-bytes blob or proof
            ProofVerificationError: proof does not match the offer's handles
        """
        with self._call(sender, "resolve_callback"):
            _check(validate_blob(cleartexts, "cleartexts"))
            _check(validate_blob(decryption_proof, "decryption_proof"))
            offer = self._offer(offer_id)
            values = self.reveals.verify(offer, cleartexts, decryption_proof)

            offer.public_price = values.price
            offer.revealed_slots = values.slots
            offer.reveal_state = RevealState.RESOLVED

            self._emit(events.REVEAL_RESOLVED, offer_id=offer_id, price=values.price, slots=values.slots)
            logger.info(f"Offer {offer_id} revealed: price={values.price}, slots={values.slots}")
            return values

    # =========================================================================
    # Administration
    # =========================================================================

    def update_fee(self, sender: str, fee_bps: int) -> None:
        """Set the platform fee (owner only, at most ``max_fee_bps``)."""
        with self._call(sender, "update_fee") as frame:
            self._require_owner(frame.sender)
            _check(validate_fee_bps(fee_bps, self.config.max_fee_bps))

            old = self._state.platform_fee_bps
            self._state.platform_fee_bps = fee_bps
            self._emit(events.FEE_UPDATED, old_fee_bps=old, new_fee_bps=fee_bps)
            logger.info(f"Platform fee updated: {old} -> {fee_bps} bps")

    def update_treasury(self, sender: str, treasury: str) -> None:
        """Set the fee receiver (owner only, non-zero address)."""
        with self._call(sender, "update_treasury") as frame:
            self._require_owner(frame.sender)
            _check(validate_address(treasury, "treasury"))

            old = self._state.treasury
            self._state.treasury = treasury.lower()
            self._emit(events.TREASURY_UPDATED, old_treasury=old, new_treasury=self._state.treasury)
            logger.info(f"Treasury updated: {old} -> {self._state.treasury}")

    def emergency_withdraw(self, sender: str) -> int:
        """
        Send the ledger's entire balance to the owner (owner only).

        Returns:
            Amount withdrawn
        """
        with self._call(sender, "emergency_withdraw") as frame:
            self._require_owner(frame.sender)

            amount = self.balances.balance_of(self.address)
            self.balances.transfer(self.address, self._state.owner, amount)
            self._emit(events.EMERGENCY_WITHDRAWAL, to=self._state.owner, amount=amount)
            logger.warning(f"Emergency withdrawal of {amount} to {self._state.owner}")
            return amount

    # =========================================================================
    # Views
    # =========================================================================

    def get_offer(self, offer_id: int) -> Optional[Offer]:
        """Copy of an offer, or None if it does not exist."""
        self._guard.ensure_unlocked("get_offer")
        offer = self._state.offers.get(offer_id)
        return replace(offer) if offer is not None else None

    def get_purchase(self, purchase_id: int) -> Optional[Purchase]:
        self._guard.ensure_unlocked("get_purchase")
        return self._state.purchases.get(purchase_id)

    def get_active_offer_ids(self) -> List[int]:
        self._guard.ensure_unlocked("get_active_offer_ids")
        return self._state.active.ids()

    def get_active_offers(self) -> List[Offer]:
        return [self.get_offer(i) for i in self.get_active_offer_ids()]

    def get_user_offers(self, creator: str) -> List[int]:
        self._guard.ensure_unlocked("get_user_offers")
        return list(self._state.user_offers.get(creator.lower(), []))

    def get_offers_by_creator(self, creator: str) -> List[Offer]:
        return [self.get_offer(i) for i in self.get_user_offers(creator)]

    def get_user_purchases(self, buyer: str) -> List[int]:
        self._guard.ensure_unlocked("get_user_purchases")
        return list(self._state.user_purchases.get(buyer.lower(), []))

    def get_encrypted_offer_data(self, offer_id: int) -> EncryptedOfferData:
        self._guard.ensure_unlocked("get_encrypted_offer_data")
        return self._offer(offer_id).encrypted_data

    def get_contract_stats(self) -> ContractStats:
        self._guard.ensure_unlocked("get_contract_stats")
        state = self._state
        return ContractStats(
            total_offers_created=state.total_offers_created,
            total_purchases=state.total_purchases,
            total_volume=state.total_volume,
            active_offers_count=len(state.active),
        )

    @property
    def platform_fee(self) -> int:
        self._guard.ensure_unlocked("platform_fee")
        return self._state.platform_fee_bps

    @property
    def treasury(self) -> str:
        self._guard.ensure_unlocked("treasury")
        return self._state.treasury

    @property
    def owner(self) -> str:
        self._guard.ensure_unlocked("owner")
        return self._state.owner

    # =========================================================================
    # Utility
    # =========================================================================

    def __repr__(self) -> str:
        state = self._state
        return (
            f"OfferLedger(address={self.address}, offers={len(state.offers)}, "
            f"purchases={len(state.purchases)}, active={len(state.active)})"
        )

    def stats(self) -> dict:
        """Get ledger statistics."""
        summary = self.get_contract_stats()
        return {
            "address": self.address,
            "total_offers_created": summary.total_offers_created,
            "total_purchases": summary.total_purchases,
            "total_volume": summary.total_volume,
            "active_offers_count": summary.active_offers_count,
            "platform_fee_bps": self._state.platform_fee_bps,
            "treasury": self._state.treasury,
            "balance": self.balances.balance_of(self.address),
        }
