"""
Purchase Reconciliation - rebuild a buyer's history with provenance.

Conceptual Background:
---------------------
Purchase records on the ledger carry no transaction identity. To show one,
the indexer joins two independent views of the same history:

1. **Records**: the buyer's purchase ids resolved to Purchase and Offer records
2. **Logs**: OfferPurchased events filtered by buyer, each with the
   timestamp of the block it landed in

Both sides are keyed by (offer_id, slots, total_price, timestamp). A record
claims the first unclaimed log with its key; each log is claimed at most
once, so two identical purchases in one block get one log each (in order)
rather than both pointing at the same transaction.

When ``match_on_purchase_id`` is enabled, logs that carry a purchase id are
matched to that record exactly and only id-less logs fall back to the key.

Failure Isolation:
-----------------
Every read runs under its own timeout. A failed offer read leaves that
item's offer empty; a failed or malformed log, or a failed block read,
drops the affected log(s) only. Only the initial id-list read is fatal.
"""

import asyncio
from collections import defaultdict, deque
from typing import Any, Awaitable, Deque, Dict, Iterable, List, Optional, Sequence, TYPE_CHECKING

import pydantic

from timemarket.core.errors import ReconciliationError
from timemarket.core.market.models import Offer, Purchase
from timemarket.indexer.models import (
    PurchaseHistoryItem,
    PurchaseKey,
    RawPurchaseLog,
    TimedPurchaseLog,
    purchase_key,
)
from timemarket.indexer.source import ChainDataSource, LedgerDataSource
from timemarket.utils.logger import get_logger

if TYPE_CHECKING:
    from timemarket.core.config import MarketConfig
    from timemarket.core.market.ledger import OfferLedger

logger = get_logger("indexer")


# =============================================================================
# Matching
# =============================================================================


def match_transactions(
    purchases: Sequence[Purchase],
    logs: Iterable[TimedPurchaseLog],
    match_on_purchase_id: bool = False,
) -> Dict[int, Optional[str]]:
    """
    Assign a transaction hash to each purchase.

    Purchases are visited in id order and logs in chain order, so ties
    between identical keys resolve deterministically.

    Args:
        purchases: Purchase records of one buyer
        logs: Parsed, timestamped logs of the same buyer
        match_on_purchase_id: Match id-carrying logs by purchase id

    Returns:
        purchase id -> tx hash (None when no log is left to claim)
    """
    ordered = sorted(logs, key=lambda t: (t.log.block_number, t.log.log_index))

    by_id: Dict[int, str] = {}
    by_key: Dict[PurchaseKey, Deque[str]] = defaultdict(deque)
    for timed in ordered:
        pid = timed.log.args.purchase_id
        if match_on_purchase_id and pid is not None:
            by_id.setdefault(pid, timed.log.tx_hash)
        else:
            by_key[timed.key].append(timed.log.tx_hash)

    result: Dict[int, Optional[str]] = {}
    for purchase in sorted(purchases, key=lambda p: p.id):
        tx_hash = by_id.pop(purchase.id, None)
        if tx_hash is None:
            queue = by_key.get(purchase_key(purchase.offer_id, purchase.slots, purchase.total_price, purchase.timestamp))
            if queue:
                tx_hash = queue.popleft()
        result[purchase.id] = tx_hash
    return result


# =============================================================================
# Indexer
# =============================================================================


class PurchaseIndexer:
    """
    Read-only purchase history reconstruction.

    Attributes:
        source: Where records, logs and blocks are read from
        contract_address: Ledger whose logs are scanned
        from_block: First block scanned (the ledger's deployment block)
        fetch_timeout: Seconds allowed for each individual read
        match_on_purchase_id: Prefer exact purchase-id matching
    """

    def __init__(
        self,
        source: ChainDataSource,
        contract_address: str,
        from_block: int = 0,
        fetch_timeout: float = 10.0,
        match_on_purchase_id: bool = False,
    ):
        if fetch_timeout <= 0:
            raise ValueError("fetch_timeout must be positive")
        self.source = source
        self.contract_address = contract_address.lower()
        self.from_block = from_block
        self.fetch_timeout = fetch_timeout
        self.match_on_purchase_id = match_on_purchase_id

    @classmethod
    def for_ledger(cls, ledger: "OfferLedger", config: Optional["MarketConfig"] = None) -> "PurchaseIndexer":
        """Indexer reading an in-process ledger, configured from ``config``."""
        config = config or ledger.config
        return cls(
            LedgerDataSource(ledger),
            ledger.address,
            from_block=config.deploy_block,
            fetch_timeout=config.fetch_timeout,
            match_on_purchase_id=config.match_on_purchase_id,
        )

    # =========================================================================
    # Guarded Reads
    # =========================================================================

    async def _fetch(self, what: str, call: Awaitable[Any]) -> Any:
        """Run one read under the timeout; any failure becomes ReconciliationError."""
        try:
            return await asyncio.wait_for(call, timeout=self.fetch_timeout)
        except ReconciliationError:
            raise
        except asyncio.TimeoutError as exc:
            raise ReconciliationError(f"{what} timed out after {self.fetch_timeout}s") from exc
        except Exception as exc:
            raise ReconciliationError(f"{what} failed: {exc}") from exc

    async def _try_fetch(self, what: str, call: Awaitable[Any]) -> Any:
        """Like ``_fetch`` but degrades to None, logging the failure."""
        try:
            return await self._fetch(what, call)
        except ReconciliationError as exc:
            logger.warning(f"Reconciliation degraded: {exc}")
            return None

    # =========================================================================
    # History
    # =========================================================================

    async def fetch_purchase_history(self, buyer: str, sort_by_time: bool = False) -> List[PurchaseHistoryItem]:
        """
        Reconstruct ``buyer``'s purchase history.

        Args:
            buyer: Buyer address
            sort_by_time: Newest first (ties broken by id) instead of id order

        Returns:
            One item per purchase record that could be read

        Raises:
            ReconciliationError: the buyer's purchase-id list could not be read
        """
        buyer = buyer.lower()
        ids = await self._fetch(f"purchase ids of {buyer}", self.source.get_user_purchases(buyer))
        if not ids:
            return []

        purchases = await self._fetch_purchases(ids)
        offers, logs = await asyncio.gather(
            self._fetch_offers({p.offer_id for p in purchases}),
            self._fetch_logs(buyer),
        )
        tx_hashes = match_transactions(purchases, logs, self.match_on_purchase_id)

        items = [
            PurchaseHistoryItem.from_purchase(p, tx_hash=tx_hashes.get(p.id), offer=offers.get(p.offer_id))
            for p in purchases
        ]
        if sort_by_time:
            items.sort(key=lambda item: (-item.timestamp, -item.id))

        matched = sum(1 for item in items if item.tx_hash is not None)
        logger.info(f"History for {buyer}: {len(items)} purchase(s), {matched} with transaction")
        return items

    async def _fetch_purchases(self, ids: Sequence[int]) -> List[Purchase]:
        results = await asyncio.gather(
            *(self._try_fetch(f"purchase {pid}", self.source.get_purchase(pid)) for pid in ids)
        )
        purchases = []
        for pid, purchase in zip(ids, results):
            if purchase is None:
                logger.warning(f"Purchase {pid} unavailable, omitted from history")
                continue
            purchases.append(purchase)
        return purchases

    async def _fetch_offers(self, offer_ids: Iterable[int]) -> Dict[int, Offer]:
        offer_ids = sorted(offer_ids)
        results = await asyncio.gather(
            *(self._try_fetch(f"offer {oid}", self.source.get_offer(oid)) for oid in offer_ids)
        )
        return {oid: offer for oid, offer in zip(offer_ids, results) if offer is not None}

    async def _fetch_logs(self, buyer: str) -> List[TimedPurchaseLog]:
        raw_logs = await self._try_fetch(
            f"purchase logs of {buyer}",
            self.source.get_purchase_logs(self.contract_address, buyer, self.from_block),
        )
        if not raw_logs:
            return []

        parsed: List[RawPurchaseLog] = []
        for raw in raw_logs:
            try:
                parsed.append(RawPurchaseLog.model_validate(raw))
            except pydantic.ValidationError as exc:
                error = ReconciliationError(f"Malformed purchase log: {exc.error_count()} error(s)")
                logger.warning(f"Reconciliation degraded: {error}")

        blocks = sorted({log.block_number for log in parsed})
        stamps = await asyncio.gather(
            *(self._try_fetch(f"block {n}", self.source.get_block_timestamp(n)) for n in blocks)
        )
        timestamps = {n: ts for n, ts in zip(blocks, stamps) if ts is not None}

        return [
            TimedPurchaseLog(log=log, timestamp=timestamps[log.block_number])
            for log in parsed
            if log.block_number in timestamps
        ]
