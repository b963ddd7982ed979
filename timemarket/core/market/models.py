"""
Marketplace records: offers, purchases and derived statistics.

Records live in append-only arenas keyed by sequential integer ids.
Secondary indices (per creator, per buyer, active set) hold ids, never
references, so a record has exactly one owner: the arena.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Dict, Iterator, List, Optional, Set

from timemarket.utils.validation import BASIS_POINTS


class OfferState(IntEnum):
    """Purchasing state of an offer."""
    ACTIVE = 0        # Accepting purchases
    EXHAUSTED = 1     # All slots sold (terminal)
    DEACTIVATED = 2   # Withdrawn by creator or owner (terminal)


class RevealState(IntEnum):
    """Declassification state of an offer's price/slots handles."""
    SEALED = 0        # Handles private
    DECLASSIFIED = 1  # Handles publicly decryptable, callback pending
    RESOLVED = 2      # Verified cleartext written back


HANDLE_FIELDS = ("encrypted_price", "encrypted_duration", "encrypted_slots")


@dataclass(frozen=True)
class EncryptedOfferData:
    """The three encrypted handles of an offer."""
    price: bytes
    duration: bytes
    slots: bytes


@dataclass
class Offer:
    """
    A marketplace offer of time slots.

    Attributes:
        id: Sequential id, starting at 1, never reused
        creator: Address that created the offer
        public_price: Price per slot in the smallest currency unit
        duration: Offer lifetime in days
        slots: Total slots, fixed at creation
        available_slots: Slots still for sale (<= slots)
        expires_at: created_at + duration days; checked lazily at purchase
        encrypted_*: Handles assigned once at creation
        revealed_slots: Slot count from a verified reveal, None before
    """
    id: int
    creator: str
    title: str
    description: str
    public_price: int
    duration: int
    slots: int
    available_slots: int
    created_at: int
    expires_at: int
    encrypted_price: bytes
    encrypted_duration: bytes
    encrypted_slots: bytes
    state: OfferState = OfferState.ACTIVE
    reveal_state: RevealState = RevealState.SEALED
    revealed_slots: Optional[int] = None

    def __setattr__(self, name, value):
        if name in HANDLE_FIELDS and getattr(self, name, None) is not None:
            raise AttributeError(f"{name} is write-once")
        super().__setattr__(name, value)

    @property
    def is_active(self) -> bool:
        return self.state == OfferState.ACTIVE

    def is_expired(self, now: int) -> bool:
        return now > self.expires_at

    @property
    def encrypted_data(self) -> EncryptedOfferData:
        return EncryptedOfferData(
            price=self.encrypted_price,
            duration=self.encrypted_duration,
            slots=self.encrypted_slots,
        )


@dataclass(frozen=True)
class Purchase:
    """An immutable record of one purchase."""
    id: int
    offer_id: int
    buyer: str
    slots: int
    total_price: int
    timestamp: int


@dataclass(frozen=True)
class ContractStats:
    total_offers_created: int = 0
    total_purchases: int = 0
    total_volume: int = 0
    active_offers_count: int = 0


@dataclass(frozen=True)
class FeeSplit:
    """How a purchase's total price is divided."""
    total_price: int
    fee: int
    creator_amount: int


def split_fee(total_price: int, fee_bps: int) -> FeeSplit:
    """
    Split a total into platform fee and creator amount.

    The fee rounds down; the creator gets the remainder, so the two parts
    always add up to the total.
    """
    fee = total_price * fee_bps // BASIS_POINTS
    return FeeSplit(total_price=total_price, fee=fee, creator_amount=total_price - fee)


class ActiveOfferSet:
    """
    Ids of offers that are still purchasable.

    Removal swaps the last id into the freed position, so it is O(1) and
    does not preserve order.
    """

    def __init__(self):
        self._ids: List[int] = []
        self._positions: Dict[int, int] = {}

    def add(self, offer_id: int) -> None:
        if offer_id in self._positions:
            raise ValueError(f"Offer {offer_id} is already active")
        self._positions[offer_id] = len(self._ids)
        self._ids.append(offer_id)

    def remove(self, offer_id: int) -> int:
        """Drop ``offer_id``; returns the position it held."""
        position = self._positions.pop(offer_id)
        last = self._ids.pop()
        if last != offer_id:
            self._ids[position] = last
            self._positions[last] = position
        return position

    def reinsert(self, offer_id: int, position: int) -> None:
        """Exact inverse of the ``remove`` that returned ``position``."""
        if position == len(self._ids):
            self._positions[offer_id] = position
            self._ids.append(offer_id)
            return
        moved = self._ids[position]
        self._positions[moved] = len(self._ids)
        self._ids.append(moved)
        self._ids[position] = offer_id
        self._positions[offer_id] = position

    def __contains__(self, offer_id: int) -> bool:
        return offer_id in self._positions

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self) -> Iterator[int]:
        return iter(list(self._ids))

    def ids(self) -> List[int]:
        return list(self._ids)


# Plain fields restored wholesale on rollback
_SCALAR_FIELDS = (
    "owner",
    "treasury",
    "platform_fee_bps",
    "next_offer_id",
    "next_purchase_id",
    "total_offers_created",
    "total_purchases",
    "total_volume",
)


@dataclass
class MarketState:
    """
    Everything a ledger call may mutate.

    Between ``begin`` and ``commit`` every change to a record or index is
    journaled with its inverse, so ``rollback`` costs the size of the call,
    not the size of the market. Records must be changed through the methods
    below (or fetched with ``touch_offer`` before mutating).
    """
    owner: str
    treasury: str
    platform_fee_bps: int
    offers: Dict[int, Offer] = field(default_factory=dict)
    purchases: Dict[int, Purchase] = field(default_factory=dict)
    user_offers: Dict[str, List[int]] = field(default_factory=dict)
    user_purchases: Dict[str, List[int]] = field(default_factory=dict)
    active: ActiveOfferSet = field(default_factory=ActiveOfferSet)
    next_offer_id: int = 1
    next_purchase_id: int = 1
    total_offers_created: int = 0
    total_purchases: int = 0
    total_volume: int = 0
    _undo: Optional[List[Callable[[], None]]] = field(default=None, init=False, repr=False, compare=False)
    _scalars: Dict[str, Any] = field(default_factory=dict, init=False, repr=False, compare=False)
    _touched: Set[int] = field(default_factory=set, init=False, repr=False, compare=False)

    # =========================================================================
    # Journal
    # =========================================================================

    @property
    def in_transaction(self) -> bool:
        return self._undo is not None

    def begin(self) -> None:
        if self._undo is not None:
            raise RuntimeError("MarketState journal already open")
        self._undo = []
        self._scalars = {name: getattr(self, name) for name in _SCALAR_FIELDS}
        self._touched = set()

    def commit(self) -> None:
        self._undo = None
        self._touched = set()

    def rollback(self) -> None:
        undo, self._undo = self._undo or [], None
        for action in reversed(undo):
            action()
        for name, value in self._scalars.items():
            setattr(self, name, value)
        self._touched = set()

    def _record(self, action: Callable[[], None]) -> None:
        if self._undo is not None:
            self._undo.append(action)

    def _index(self, index: Dict[str, List[int]], key: str, item_id: int) -> None:
        created = key not in index
        ids = index.setdefault(key, [])
        ids.append(item_id)

        def undo():
            ids.pop()
            if created:
                del index[key]

        self._record(undo)

    # =========================================================================
    # Mutations
    # =========================================================================

    def touch_offer(self, offer_id: int) -> Offer:
        """Live offer record; its fields as of now are restored on rollback."""
        offer = self.offers[offer_id]
        if self._undo is not None and offer_id not in self._touched:
            self._touched.add(offer_id)
            saved = dict(vars(offer))
            self._record(lambda: vars(offer).update(saved))
        return offer

    def add_offer(self, offer: Offer) -> None:
        """Insert a new offer, index it by creator and mark it active."""
        self.offers[offer.id] = offer
        self._record(lambda: self.offers.pop(offer.id))
        self._index(self.user_offers, offer.creator, offer.id)
        self.active.add(offer.id)
        self._record(lambda: self.active.remove(offer.id))

    def retire_offer(self, offer_id: int) -> None:
        """Drop an offer from the active set."""
        position = self.active.remove(offer_id)
        self._record(lambda: self.active.reinsert(offer_id, position))

    def add_purchase(self, purchase: Purchase) -> None:
        self.purchases[purchase.id] = purchase
        self._record(lambda: self.purchases.pop(purchase.id))
        self._index(self.user_purchases, purchase.buyer, purchase.id)
