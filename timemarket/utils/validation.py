"""
Input Validation - checks for every value crossing the ledger boundary.

Validators return ``(is_valid, error_message)`` so callers can decide which
error to raise; the ledger turns failures into ``ValidationError``.
"""

from typing import Any, Tuple

from timemarket.crypto import is_valid_address, ZERO_ADDRESS

# =============================================================================
# Constants
# =============================================================================

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 4096

HANDLE_SIZE = 32

MAX_UINT64 = 2**64 - 1
MAX_UINT256 = 2**256 - 1

BASIS_POINTS = 10_000


# =============================================================================
# Validation Functions
# =============================================================================


def validate_text(value: Any, name: str, max_length: int = MAX_DESCRIPTION_LENGTH) -> Tuple[bool, str]:
    """Non-empty string of bounded length."""
    if not isinstance(value, str):
        return False, f"{name} must be str, got {type(value).__name__}"

    if not value.strip():
        return False, f"{name} must not be empty"

    if len(value) > max_length:
        return False, f"{name} exceeds max length {max_length}, got {len(value)}"

    return True, ""


def validate_integer(
    value: Any,
    name: str,
    min_val: int = 0,
    max_val: int = MAX_UINT256,
) -> Tuple[bool, str]:
    """
    Validate integer within bounds.

    Booleans are rejected even though they subclass int.
    """
    if isinstance(value, bool) or not isinstance(value, int):
        return False, f"{name} must be int, got {type(value).__name__}"

    if value < min_val:
        return False, f"{name} must be >= {min_val}, got {value}"

    if value > max_val:
        return False, f"{name} must be <= {max_val}, got {value}"

    return True, ""


def validate_positive(value: Any, name: str, max_val: int = MAX_UINT256) -> Tuple[bool, str]:
    """Strictly positive integer."""
    return validate_integer(value, name, min_val=1, max_val=max_val)


def validate_uint_width(value: Any, bits: int, name: str = "value") -> Tuple[bool, str]:
    """Unsigned integer that fits in ``bits`` bits."""
    return validate_integer(value, name, min_val=0, max_val=2**bits - 1)


def validate_address(address: Any, name: str = "address", allow_zero: bool = False) -> Tuple[bool, str]:
    """0x-prefixed 20-byte hex address."""
    if not isinstance(address, str) or not is_valid_address(address):
        return False, f"{name} is not a valid address: {address!r}"

    if not allow_zero and address.lower() == ZERO_ADDRESS:
        return False, f"{name} must not be the zero address"

    return True, ""


def validate_handle(handle: Any, name: str = "handle") -> Tuple[bool, str]:
    """32-byte encrypted handle."""
    if not isinstance(handle, (bytes, bytearray)):
        return False, f"{name} must be bytes, got {type(handle).__name__}"

    if len(handle) != HANDLE_SIZE:
        return False, f"{name} must be {HANDLE_SIZE} bytes, got {len(handle)}"

    if not any(handle):
        return False, f"{name} must not be the null handle"

    return True, ""


def validate_blob(blob: Any, name: str = "blob") -> Tuple[bool, str]:
    """Raw bytes as carried by oracle callbacks. Hex strings are rejected."""
    if not isinstance(blob, (bytes, bytearray)):
        return False, f"{name} must be bytes, got {type(blob).__name__}"

    return True, ""


def validate_fee_bps(fee_bps: Any, max_fee_bps: int) -> Tuple[bool, str]:
    """Platform fee in basis points, capped by ``max_fee_bps``."""
    ok, err = validate_integer(fee_bps, "fee_bps", min_val=0, max_val=BASIS_POINTS)
    if not ok:
        return ok, err

    if fee_bps > max_fee_bps:
        return False, f"fee_bps must be <= {max_fee_bps}, got {fee_bps}"

    return True, ""
