"""
FHE Module.

Encrypted inputs and the gateway that backs them:
- Handle layout and cleartext encoding
- Batch encoder with a single shared proof per bundle
- Coprocessor, ACL and decryption oracle
"""

from timemarket.fhe.types import (
    FheType,
    EncryptedBundle,
    DecryptionResult,
    HANDLE_SIZE,
    derive_handle,
    handle_index,
    handle_type,
    handle_chain_id,
    handle_hex,
    encode_cleartexts,
    decode_cleartexts,
)
from timemarket.fhe.gateway import FheGateway, parse_input_proof
from timemarket.fhe.encoder import EncryptedInput

__all__ = [
    "FheType",
    "EncryptedBundle",
    "DecryptionResult",
    "HANDLE_SIZE",
    "derive_handle",
    "handle_index",
    "handle_type",
    "handle_chain_id",
    "handle_hex",
    "encode_cleartexts",
    "decode_cleartexts",
    "FheGateway",
    "parse_input_proof",
    "EncryptedInput",
]
