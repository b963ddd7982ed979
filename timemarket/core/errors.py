"""
Error taxonomy for the marketplace.

Every failure a ledger operation can report derives from ``MarketError``.
A raised error always means the operation left no trace: the ledger
restores its state before the exception reaches the caller.
"""


class MarketError(Exception):
    """Base class for all marketplace errors."""


class ValidationError(MarketError):
    """Malformed or out-of-range input, or an operation not allowed in the offer's state."""


class AuthorizationError(MarketError):
    """Caller is not permitted to perform the operation."""


class ProofVerificationError(MarketError):
    """An input proof or decryption proof did not authenticate the data presented with it."""


class PaymentError(MarketError):
    """Insufficient payment, or a transfer leg failed."""


class ReentrancyError(MarketError):
    """A ledger call was made while another ledger call was still in progress."""


class ReconciliationError(MarketError):
    """A read-side lookup failed; affects a single history record only."""


class EncoderSessionError(MarketError):
    """An encrypted input session was reused after finalization or used concurrently."""
