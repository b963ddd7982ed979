"""
Read-side data sources for the indexer.

The indexer never touches ledger internals: it reads through a
``ChainDataSource``, the same surface a remote RPC client would offer
(contract views, log queries, block headers).
"""

import asyncio
from typing import Any, Dict, List, Optional, Protocol, TYPE_CHECKING, runtime_checkable

from timemarket.core.errors import ReconciliationError
from timemarket.core.market import events
from timemarket.core.market.models import Offer, Purchase

if TYPE_CHECKING:
    from timemarket.core.market.ledger import OfferLedger


# =============================================================================
# Protocol
# =============================================================================

@runtime_checkable
class ChainDataSource(Protocol):
    """Async reads the indexer relies on."""

    async def get_user_purchases(self, buyer: str) -> List[int]:
        ...

    async def get_purchase(self, purchase_id: int) -> Optional[Purchase]:
        ...

    async def get_offer(self, offer_id: int) -> Optional[Offer]:
        ...

    async def get_purchase_logs(self, contract: str, buyer: str, from_block: int) -> List[Dict[str, Any]]:
        ...

    async def get_block_timestamp(self, block_number: int) -> int:
        ...


# =============================================================================
# In-process Source
# =============================================================================

class LedgerDataSource:
    """
    ``ChainDataSource`` over an in-process ledger and its chain.

    Args:
        ledger: Ledger to read from
        latency: Optional delay (seconds) added to every read
    """

    def __init__(self, ledger: "OfferLedger", latency: float = 0.0):
        self.ledger = ledger
        self.latency = latency

    async def _pause(self) -> None:
        # Always yield so concurrent reads interleave
        await asyncio.sleep(self.latency)

    async def get_user_purchases(self, buyer: str) -> List[int]:
        await self._pause()
        return self.ledger.get_user_purchases(buyer)

    async def get_purchase(self, purchase_id: int) -> Optional[Purchase]:
        await self._pause()
        return self.ledger.get_purchase(purchase_id)

    async def get_offer(self, offer_id: int) -> Optional[Offer]:
        await self._pause()
        return self.ledger.get_offer(offer_id)

    async def get_purchase_logs(self, contract: str, buyer: str, from_block: int) -> List[Dict[str, Any]]:
        await self._pause()
        logs = self.ledger.chain.get_logs(
            address=contract,
            event=events.OFFER_PURCHASED.name,
            filters={"buyer": buyer},
            from_block=from_block,
        )
        return [log.to_rpc() for log in logs]

    async def get_block_timestamp(self, block_number: int) -> int:
        await self._pause()
        block = self.ledger.chain.get_block(block_number)
        if block is None:
            raise ReconciliationError(f"Unknown block {block_number}")
        return block.timestamp
