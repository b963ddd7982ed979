"""
Chain - block clock, transaction identities and the append-only event log.

Conceptual Background:
---------------------
The ledger runs on top of a chain that provides three things:

1. **Time**: a current block number and timestamp. Several transactions can
   land in the same block and then share its timestamp.
2. **Transaction identity**: every successful ledger call gets a tx hash and
   a receipt carrying the events it emitted.
3. **Event log**: append-only, queryable by contract address, event name and
   *indexed* arguments only (like topic filters).

Failed calls leave no receipt and no log entries.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from timemarket.crypto import keccak256, encode_address, encode_uint, bytes_to_hex
from timemarket.utils.logger import get_logger

logger = get_logger("chain")


DEFAULT_CHAIN_ID = 11155111
DEFAULT_BLOCK_TIME = 12


# =============================================================================
# Data Structures
# =============================================================================


@dataclass(frozen=True)
class Block:
    number: int
    timestamp: int


@dataclass(frozen=True)
class Event:
    """An event emitted during a call, before it is mined."""
    address: str
    name: str
    args: Dict[str, Any]
    indexed: Tuple[str, ...] = ()


@dataclass(frozen=True)
class LogEntry:
    """
    A mined event.

    Attributes:
        address: Emitting contract
        event: Event name
        args: All event arguments
        indexed: Names of the arguments that can be filtered on
        block_number: Block the transaction landed in
        tx_hash: Hash of the emitting transaction
        log_index: Position in the global log
    """
    address: str
    event: str
    args: Dict[str, Any]
    indexed: Tuple[str, ...]
    block_number: int
    tx_hash: str
    log_index: int

    def matches(self, filters: Mapping[str, Any]) -> bool:
        for name, expected in filters.items():
            if name not in self.indexed:
                raise ValueError(f"Argument '{name}' of {self.event} is not indexed")
            actual = self.args.get(name)
            if isinstance(actual, str) and isinstance(expected, str):
                if actual.lower() != expected.lower():
                    return False
            elif actual != expected:
                return False
        return True

    def to_rpc(self) -> Dict[str, Any]:
        """JSON-RPC style dict (camelCase keys, bytes as 0x-hex)."""
        return {
            "address": self.address,
            "event": self.event,
            "args": {
                k: bytes_to_hex(v) if isinstance(v, (bytes, bytearray)) else v
                for k, v in self.args.items()
            },
            "blockNumber": self.block_number,
            "transactionHash": self.tx_hash,
            "logIndex": self.log_index,
        }


@dataclass(frozen=True)
class TxReceipt:
    """Proof that a call succeeded, with the logs it produced."""
    tx_hash: str
    sender: str
    block_number: int
    timestamp: int
    logs: Tuple[LogEntry, ...] = ()

    def events(self, name: str) -> List[LogEntry]:
        return [log for log in self.logs if log.event == name]


# =============================================================================
# Chain
# =============================================================================


class Chain:
    """
    In-process chain used by the ledger.

    Attributes:
        chain_id: Network identifier handles are bound to
        block_time: Seconds between consecutive blocks
    """

    def __init__(
        self,
        chain_id: int = DEFAULT_CHAIN_ID,
        start_time: Optional[int] = None,
        block_time: int = DEFAULT_BLOCK_TIME,
    ):
        self.chain_id = chain_id
        self.block_time = block_time

        genesis = Block(number=0, timestamp=start_time if start_time is not None else int(time.time()))
        self._blocks: Dict[int, Block] = {0: genesis}
        self._head = genesis

        self._logs: List[LogEntry] = []
        self._receipts: Dict[str, TxReceipt] = {}
        self._nonces: Dict[str, int] = {}
        self.last_receipt: Optional[TxReceipt] = None

    # =========================================================================
    # Time
    # =========================================================================

    @property
    def block_number(self) -> int:
        return self._head.number

    @property
    def timestamp(self) -> int:
        return self._head.timestamp

    def mine(self, blocks: int = 1, seconds: Optional[int] = None) -> Block:
        """
        Close the current block and open ``blocks`` new ones.

        Args:
            blocks: Number of blocks to advance
            seconds: Total time to advance (defaults to blocks * block_time)
        """
        if blocks < 1:
            raise ValueError("Must mine at least one block")
        elapsed = seconds if seconds is not None else blocks * self.block_time
        self._head = Block(number=self._head.number + blocks, timestamp=self._head.timestamp + elapsed)
        self._blocks[self._head.number] = self._head
        return self._head

    def advance_time(self, seconds: int) -> Block:
        """Jump forward in time by one block spanning ``seconds``."""
        return self.mine(blocks=1, seconds=seconds)

    def get_block(self, number: int) -> Optional[Block]:
        return self._blocks.get(number)

    # =========================================================================
    # Transactions
    # =========================================================================

    def _next_nonce(self, sender: str) -> int:
        key = sender.lower()
        nonce = self._nonces.get(key, 0)
        self._nonces[key] = nonce + 1
        return nonce

    def new_tx_hash(self, sender: str) -> str:
        nonce = self._next_nonce(sender)
        seed = encode_uint(self.chain_id) + encode_address(sender) + encode_uint(nonce)
        return bytes_to_hex(keccak256(seed))

    def deployment_address(self, deployer: str) -> str:
        """Address of a contract created by ``deployer`` at its next nonce."""
        nonce = self._next_nonce(deployer)
        return bytes_to_hex(keccak256(b"create" + encode_address(deployer) + encode_uint(nonce))[-20:])

    def commit(self, sender: str, tx_hash: str, events: Sequence[Event]) -> TxReceipt:
        """Mine a successful call into the current block."""
        logs = []
        for event in events:
            entry = LogEntry(
                address=event.address,
                event=event.name,
                args=dict(event.args),
                indexed=event.indexed,
                block_number=self._head.number,
                tx_hash=tx_hash,
                log_index=len(self._logs),
            )
            self._logs.append(entry)
            logs.append(entry)

        receipt = TxReceipt(
            tx_hash=tx_hash,
            sender=sender.lower(),
            block_number=self._head.number,
            timestamp=self._head.timestamp,
            logs=tuple(logs),
        )
        self._receipts[tx_hash] = receipt
        self.last_receipt = receipt
        logger.debug(f"Tx {tx_hash[:10]}... in block {receipt.block_number}: {len(logs)} log(s)")
        return receipt

    def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        return self._receipts.get(tx_hash)

    # =========================================================================
    # Log Queries
    # =========================================================================

    def get_logs(
        self,
        address: Optional[str] = None,
        event: Optional[str] = None,
        filters: Optional[Mapping[str, Any]] = None,
        from_block: int = 0,
        to_block: Optional[int] = None,
    ) -> List[LogEntry]:
        """
        Query the event log.

        Args:
            address: Emitting contract
            event: Event name
            filters: Indexed-argument equality filters
            from_block: First block (inclusive)
            to_block: Last block (inclusive), None = latest
        """
        filters = filters or {}
        result = []
        for log in self._logs:
            if log.block_number < from_block:
                continue
            if to_block is not None and log.block_number > to_block:
                continue
            if address is not None and log.address.lower() != address.lower():
                continue
            if event is not None and log.event != event:
                continue
            if not log.matches(filters):
                continue
            result.append(log)
        return result

    def __repr__(self) -> str:
        return f"Chain(id={self.chain_id}, block={self.block_number}, logs={len(self._logs)})"
