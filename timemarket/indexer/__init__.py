"""
Indexer Module.

Read-only reconstruction of purchase history from ledger records and the
event log.
"""

from timemarket.indexer.models import PurchaseHistoryItem, RawPurchaseLog, purchase_key
from timemarket.indexer.source import ChainDataSource, LedgerDataSource
from timemarket.indexer.reconcile import PurchaseIndexer, match_transactions

__all__ = [
    "PurchaseHistoryItem",
    "RawPurchaseLog",
    "purchase_key",
    "ChainDataSource",
    "LedgerDataSource",
    "PurchaseIndexer",
    "match_transactions",
]
