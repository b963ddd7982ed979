"""
Indexer data models.

Raw logs arrive as JSON-RPC style dicts and are parsed with pydantic, so a
malformed entry is rejected at the boundary instead of producing a bogus
correlation key. History items are plain dataclasses handed to callers.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from timemarket.core.market.models import Offer, Purchase

# (offer_id, slots, total_price, block_timestamp)
PurchaseKey = Tuple[int, int, int, int]


def purchase_key(offer_id: int, slots: int, total_price: int, timestamp: int) -> PurchaseKey:
    """Composite key shared by a Purchase record and its OfferPurchased log."""
    return (offer_id, slots, total_price, timestamp)


class PurchaseLogArgs(BaseModel):
    """Arguments of an OfferPurchased event."""

    model_config = ConfigDict(extra="ignore")

    offer_id: int = Field(ge=1)
    buyer: str
    slots: int = Field(ge=1)
    total_price: int = Field(ge=0)
    slots_left: int = Field(ge=0)
    # Absent on logs emitted before the field existed
    purchase_id: Optional[int] = Field(default=None, ge=1)


class RawPurchaseLog(BaseModel):
    """One OfferPurchased log entry as returned by the log store."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    address: str
    event: str
    block_number: int = Field(alias="blockNumber", ge=0)
    tx_hash: str = Field(alias="transactionHash", min_length=1)
    log_index: int = Field(alias="logIndex", ge=0)
    args: PurchaseLogArgs


@dataclass(frozen=True)
class TimedPurchaseLog:
    """A parsed log joined with the timestamp of its block."""
    log: RawPurchaseLog
    timestamp: int

    @property
    def key(self) -> PurchaseKey:
        args = self.log.args
        return purchase_key(args.offer_id, args.slots, args.total_price, self.timestamp)


@dataclass
class PurchaseHistoryItem:
    """
    One purchase as shown in a buyer's history.

    Attributes:
        id: Purchase id
        tx_hash: Hash of the purchasing transaction, None if no log matched
        offer: The purchased offer, None if it could not be fetched
    """
    id: int
    offer_id: int
    buyer: str
    slots: int
    total_price: int
    timestamp: int
    tx_hash: Optional[str] = None
    offer: Optional[Offer] = None

    @classmethod
    def from_purchase(
        cls,
        purchase: Purchase,
        tx_hash: Optional[str] = None,
        offer: Optional[Offer] = None,
    ) -> "PurchaseHistoryItem":
        return cls(
            id=purchase.id,
            offer_id=purchase.offer_id,
            buyer=purchase.buyer,
            slots=purchase.slots,
            total_price=purchase.total_price,
            timestamp=purchase.timestamp,
            tx_hash=tx_hash,
            offer=offer,
        )

    @property
    def key(self) -> PurchaseKey:
        return purchase_key(self.offer_id, self.slots, self.total_price, self.timestamp)
