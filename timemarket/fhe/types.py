"""
Encrypted value types, handle layout and cleartext encoding.

Handle Layout (32 bytes):
------------------------
    [0:21]   keccak-derived digest (unique per ciphertext)
    [21]     index of the value inside its input bundle
    [22:30]  chain id (big-endian uint64)
    [30]     encrypted type code
    [31]     handle version

The index byte lets an importer check that handle[i] is presented at
position i of the proof it came with.

Cleartext Blob:
--------------
One 32-byte big-endian word per handle, in handle order.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import List, Sequence

from timemarket.crypto import keccak256, encode_uint, decode_uint, WORD_SIZE
from timemarket.core.errors import ValidationError

HANDLE_SIZE = 32
HANDLE_VERSION = 0

# Largest bundle a single proof can cover (index must fit in one byte)
MAX_BUNDLE_SIZE = 255


class FheType(IntEnum):
    """Encrypted unsigned integer types (codes follow the fhEVM numbering)."""
    EUINT8 = 2
    EUINT16 = 3
    EUINT32 = 4
    EUINT64 = 5

    @property
    def bits(self) -> int:
        return _BIT_WIDTHS[self]

    @property
    def max_value(self) -> int:
        return 2**self.bits - 1

    @classmethod
    def from_bits(cls, bits: int) -> "FheType":
        for fhe_type, width in _BIT_WIDTHS.items():
            if width == bits:
                return fhe_type
        raise ValidationError(f"Unsupported bit width: {bits}")


_BIT_WIDTHS = {
    FheType.EUINT8: 8,
    FheType.EUINT16: 16,
    FheType.EUINT32: 32,
    FheType.EUINT64: 64,
}


# =============================================================================
# Handles
# =============================================================================


def derive_handle(seed: bytes, index: int, chain_id: int, fhe_type: FheType) -> bytes:
    """Build a handle from a ciphertext seed and its metadata."""
    if not 0 <= index < MAX_BUNDLE_SIZE:
        raise ValidationError(f"Handle index out of range: {index}")
    return (
        keccak256(seed)[:21]
        + bytes([index])
        + encode_uint(chain_id, 8)
        + bytes([int(fhe_type), HANDLE_VERSION])
    )


def handle_index(handle: bytes) -> int:
    return handle[21]


def handle_chain_id(handle: bytes) -> int:
    return decode_uint(handle[22:30])


def handle_type(handle: bytes) -> FheType:
    try:
        return FheType(handle[30])
    except ValueError:
        raise ValidationError(f"Unknown encrypted type code {handle[30]}")


def handle_hex(handle: bytes) -> str:
    return "0x" + handle.hex()


# =============================================================================
# Cleartext Blobs
# =============================================================================


def encode_cleartexts(values: Sequence[int]) -> bytes:
    """Pack decrypted values into one blob."""
    return b"".join(encode_uint(v) for v in values)


def decode_cleartexts(blob: bytes, types: Sequence[FheType]) -> List[int]:
    """
    Unpack a cleartext blob into typed values.

    Raises:
        ValidationError: wrong blob length or a value too wide for its type
    """
    if len(blob) != WORD_SIZE * len(types):
        raise ValidationError(
            f"Cleartext blob must be {WORD_SIZE * len(types)} bytes, got {len(blob)}"
        )

    values = []
    for i, fhe_type in enumerate(types):
        value = decode_uint(blob[i * WORD_SIZE:(i + 1) * WORD_SIZE])
        if value > fhe_type.max_value:
            raise ValidationError(f"Cleartext {i} does not fit {fhe_type.name}: {value}")
        values.append(value)
    return values


@dataclass(frozen=True)
class EncryptedBundle:
    """
    Result of finalizing an encrypted input session.

    ``proof`` authenticates every handle, in this exact order.
    """
    handles: List[bytes]
    proof: bytes

    def __len__(self) -> int:
        return len(self.handles)


@dataclass(frozen=True)
class DecryptionResult:
    """What the decryption oracle hands back for a set of declassified handles."""
    clear_values: dict  # handle -> int
    cleartexts: bytes
    decryption_proof: bytes

    def values_for(self, handles: Sequence[bytes]) -> List[int]:
        return [self.clear_values[h] for h in handles]
