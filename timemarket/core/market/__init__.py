"""
Market Module.

The authoritative offer/purchase state machine:
- Offer and Purchase records in append-only arenas
- Ledger operations with all-or-nothing execution frames
- Reveal/callback verification of declassified offer fields
"""

from timemarket.core.market.models import (
    OfferState,
    RevealState,
    Offer,
    Purchase,
    EncryptedOfferData,
    ContractStats,
    FeeSplit,
    split_fee,
)
from timemarket.core.market.reveal import RevealVerifier, RevealedValues
from timemarket.core.market.ledger import OfferLedger

__all__ = [
    "OfferState",
    "RevealState",
    "Offer",
    "Purchase",
    "EncryptedOfferData",
    "ContractStats",
    "FeeSplit",
    "split_fee",
    "RevealVerifier",
    "RevealedValues",
    "OfferLedger",
]
