"""
Reentrancy Guard - scoped lock around every state-changing ledger call.

The lock is taken when a call starts and released on every exit path. A
second call arriving while it is held (for example from a recipient's
receive hook during a transfer) is refused with ``ReentrancyError``.
"""

import threading
from contextlib import contextmanager
from typing import Iterator

from timemarket.core.errors import ReentrancyError


class ReentrancyGuard:
    """Non-blocking lock; contention is an error, not a wait."""

    def __init__(self):
        self._lock = threading.Lock()

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def enter(self, operation: str = "call") -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            raise ReentrancyError(f"Reentrant {operation} rejected")
        try:
            yield
        finally:
            self._lock.release()

    def ensure_unlocked(self, operation: str = "read") -> None:
        """Refuse reads while a state-changing call is in progress."""
        if self._lock.locked():
            raise ReentrancyError(f"{operation} during an in-progress call")
