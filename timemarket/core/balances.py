"""
Balance Book - native value held by accounts and contracts.

Transfers behave like calls into the recipient: an account may register a
receive hook, and if that hook raises the transfer fails. The ledger treats
any failed leg as fatal for the whole operation.
"""

from typing import Callable, Dict, List, Optional

from timemarket.core.errors import PaymentError
from timemarket.utils.logger import get_logger

logger = get_logger("balances")

ReceiveHook = Callable[[str, int], None]


class BalanceBook:
    """Account balances in the smallest currency unit."""

    def __init__(self):
        self._balances: Dict[str, int] = {}
        self._hooks: Dict[str, ReceiveHook] = {}
        self._journals: List[Dict[str, Optional[int]]] = []

    def balance_of(self, address: str) -> int:
        return self._balances.get(address.lower(), 0)

    def credit(self, address: str, amount: int) -> None:
        """Mint value into an account (genesis allocations, faucets)."""
        if amount < 0:
            raise ValueError("Cannot credit a negative amount")
        key = address.lower()
        self._set(key, self._balances.get(key, 0) + amount)

    @property
    def total_supply(self) -> int:
        return sum(self._balances.values())

    # =========================================================================
    # Receive Hooks
    # =========================================================================

    def set_receive_hook(self, address: str, hook: Optional[ReceiveHook]) -> None:
        """
        Install (or remove, with None) a hook run on every incoming transfer.

        The hook gets (sender, amount). Raising from it rejects the transfer.
        """
        key = address.lower()
        if hook is None:
            self._hooks.pop(key, None)
        else:
            self._hooks[key] = hook

    # =========================================================================
    # Transfers
    # =========================================================================

    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        """
        Move ``amount`` from sender to recipient.

        Raises:
            PaymentError: insufficient balance, or the recipient rejected it
        """
        if amount < 0:
            raise PaymentError(f"Negative transfer amount: {amount}")
        if amount == 0:
            return

        src, dst = sender.lower(), recipient.lower()
        available = self._balances.get(src, 0)
        if available < amount:
            raise PaymentError(f"Insufficient balance: {sender} has {available}, needs {amount}")

        self._set(src, available - amount)
        self._set(dst, self._balances.get(dst, 0) + amount)

        hook = self._hooks.get(dst)
        if hook is None:
            return

        try:
            hook(src, amount)
        except Exception as exc:
            self._set(dst, self._balances[dst] - amount)
            self._set(src, self._balances[src] + amount)
            logger.warning(f"Transfer of {amount} to {recipient} rejected: {exc}")
            raise PaymentError(f"Transfer to {recipient} failed: {exc}") from exc

    # =========================================================================
    # Journal
    # =========================================================================

    def begin(self) -> None:
        """
        Open a journal level. Levels nest: a hook may enter another ledger
        that shares this book while the outer call is still open.
        """
        self._journals.append({})

    def commit(self) -> None:
        """Close the innermost level, folding its originals into the parent."""
        journal = self._journals.pop()
        if self._journals:
            parent = self._journals[-1]
            for key, original in journal.items():
                parent.setdefault(key, original)

    def rollback(self) -> None:
        """Put back every balance changed since the matching ``begin``."""
        for key, original in self._journals.pop().items():
            if original is None:
                self._balances.pop(key, None)
            else:
                self._balances[key] = original

    def _set(self, key: str, value: int) -> None:
        if self._journals and key not in self._journals[-1]:
            self._journals[-1][key] = self._balances.get(key)
        self._balances[key] = value
