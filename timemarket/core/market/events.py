"""
Ledger event schema.

Each event declares its arguments and which of them are indexed, i.e. can
be used as log filters by off-chain readers.
"""

from dataclasses import dataclass
from typing import Tuple

from timemarket.core.chain import Event


@dataclass(frozen=True)
class EventSchema:
    name: str
    fields: Tuple[str, ...]
    indexed: Tuple[str, ...] = ()

    def __call__(self, address: str, **args) -> Event:
        missing = set(self.fields) - set(args)
        extra = set(args) - set(self.fields)
        if missing or extra:
            raise ValueError(f"{self.name}: missing {sorted(missing)}, unexpected {sorted(extra)}")
        return Event(address=address, name=self.name, args=args, indexed=self.indexed)


OFFER_CREATED = EventSchema(
    "OfferCreated",
    ("offer_id", "creator", "title", "public_price", "duration", "slots"),
    indexed=("offer_id", "creator"),
)

# purchase_id lets readers correlate a log with its Purchase record exactly
OFFER_PURCHASED = EventSchema(
    "OfferPurchased",
    ("offer_id", "buyer", "slots", "total_price", "slots_left", "purchase_id"),
    indexed=("offer_id", "buyer"),
)

OFFER_DEACTIVATED = EventSchema(
    "OfferDeactivated",
    ("offer_id", "by"),
    indexed=("offer_id",),
)

REVEAL_REQUESTED = EventSchema(
    "RevealRequested",
    ("offer_id", "price_handle", "slots_handle"),
    indexed=("offer_id",),
)

REVEAL_RESOLVED = EventSchema(
    "RevealResolved",
    ("offer_id", "price", "slots"),
    indexed=("offer_id",),
)

FEE_UPDATED = EventSchema("FeeUpdated", ("old_fee_bps", "new_fee_bps"))

TREASURY_UPDATED = EventSchema(
    "TreasuryUpdated",
    ("old_treasury", "new_treasury"),
    indexed=("new_treasury",),
)

EMERGENCY_WITHDRAWAL = EventSchema(
    "EmergencyWithdrawal",
    ("to", "amount"),
    indexed=("to",),
)
