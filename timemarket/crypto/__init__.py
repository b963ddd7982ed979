"""
Cryptographic primitives for the Time Marketplace.

This module provides:
- Hashing (SHA-256, Keccak-256)
- secp256k1 key pairs and Ethereum-style addresses
- Recoverable ECDSA signatures (r || s || v)
- Fixed-width word encoding used by proofs and cleartext blobs

Design Notes:
-------------
Signatures are recoverable so that a verifier only needs to know the
*address* of the expected signer (coprocessor, KMS node), never its public
key. This mirrors how on-chain verifiers check signer sets.
"""

import hashlib
import secrets
from dataclasses import dataclass
from typing import Optional

from Crypto.Hash import keccak
from py_ecc.secp256k1 import secp256k1


# =============================================================================
# Constants
# =============================================================================

# secp256k1 curve order
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

SIGNATURE_SIZE = 65
ADDRESS_SIZE = 20
WORD_SIZE = 32

ZERO_ADDRESS = "0x" + "00" * ADDRESS_SIZE


# =============================================================================
# Hashing
# =============================================================================


def sha256(data: bytes) -> bytes:
    """Compute SHA-256 hash."""
    return hashlib.sha256(data).digest()


def keccak256(data: bytes) -> bytes:
    """
    Compute Keccak-256 hash (Ethereum-style).

    Used for: handle derivation, proof digests, addresses, tx hashes.
    """
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


# =============================================================================
# Hex / Address Helpers
# =============================================================================


def bytes_to_hex(data: bytes) -> str:
    """Convert bytes to hex string with 0x prefix."""
    return "0x" + data.hex()


def hex_to_bytes(hex_str: str) -> bytes:
    """Convert hex string (with or without 0x prefix) to bytes."""
    if hex_str.startswith(("0x", "0X")):
        hex_str = hex_str[2:]
    return bytes.fromhex(hex_str)


def is_valid_address(address: str) -> bool:
    """Check if string is a 0x-prefixed 20-byte hex address."""
    if not isinstance(address, str) or not address.startswith("0x"):
        return False
    if len(address) != 2 + 2 * ADDRESS_SIZE:
        return False
    try:
        int(address, 16)
        return True
    except ValueError:
        return False


def normalize_address(address: str) -> str:
    """Lower-case an address so it can be used as a dictionary key."""
    if not is_valid_address(address):
        raise ValueError(f"Invalid address: {address!r}")
    return address.lower()


def address_from_public_key(public_key: bytes) -> str:
    """Address = last 20 bytes of keccak256(public_key)."""
    if len(public_key) != 64:
        raise ValueError("Public key must be 64 bytes")
    return bytes_to_hex(keccak256(public_key)[-ADDRESS_SIZE:])


# =============================================================================
# Word Encoding
# =============================================================================


def encode_uint(value: int, size: int = WORD_SIZE) -> bytes:
    """Big-endian, zero-padded unsigned integer."""
    return value.to_bytes(size, byteorder="big")


def decode_uint(data: bytes) -> int:
    return int.from_bytes(data, byteorder="big")


def encode_address(address: str) -> bytes:
    """20 raw address bytes."""
    return hex_to_bytes(normalize_address(address))


# =============================================================================
# Key Pairs
# =============================================================================


@dataclass
class KeyPair:
    """
    A secp256k1 key pair.

    Attributes:
        private_key: 32-byte secret scalar
        public_key: 64-byte uncompressed point (x || y)
    """
    private_key: bytes
    public_key: bytes

    @property
    def address(self) -> str:
        return address_from_public_key(self.public_key)


def _public_key_for(private_key: bytes) -> bytes:
    x, y = secp256k1.privtopub(private_key)
    return encode_uint(x) + encode_uint(y)


def generate_keypair() -> KeyPair:
    """Generate a new random key pair."""
    scalar = secrets.randbelow(SECP256K1_ORDER - 1) + 1
    private_key = encode_uint(scalar)
    return KeyPair(private_key=private_key, public_key=_public_key_for(private_key))


def keypair_from_seed(seed: bytes) -> KeyPair:
    """
    Derive a deterministic key pair from a seed.

    Handy for reproducible demo accounts and test fixtures.
    """
    scalar = decode_uint(keccak256(seed)) % (SECP256K1_ORDER - 1) + 1
    private_key = encode_uint(scalar)
    return KeyPair(private_key=private_key, public_key=_public_key_for(private_key))


# =============================================================================
# Recoverable Signatures
# =============================================================================


def sign(message_hash: bytes, private_key: bytes) -> bytes:
    """
    Sign a 32-byte digest.

    Returns:
        65-byte signature r || s || v, with v in {0, 1}
    """
    if len(message_hash) != 32:
        raise ValueError("Message hash must be 32 bytes")
    if len(private_key) != 32:
        raise ValueError("Private key must be 32 bytes")

    # py_ecc already returns low-s signatures with v in {27, 28}
    v, r, s = secp256k1.ecdsa_raw_sign(message_hash, private_key)
    return encode_uint(r) + encode_uint(s) + bytes([v - 27])


def recover_address(message_hash: bytes, signature: bytes) -> Optional[str]:
    """
    Recover the signer address of a 65-byte signature.

    Returns:
        Lower-case address, or None if the signature is malformed
    """
    if len(message_hash) != 32 or len(signature) != SIGNATURE_SIZE:
        return None

    r = decode_uint(signature[:32])
    s = decode_uint(signature[32:64])
    v = signature[64]
    if v not in (0, 1):
        return None
    if not (1 <= r < SECP256K1_ORDER and 1 <= s < SECP256K1_ORDER):
        return None

    try:
        x, y = secp256k1.ecdsa_raw_recover(message_hash, (v + 27, r, s))
    except Exception:
        return None

    return address_from_public_key(encode_uint(x) + encode_uint(y))


def verify_signer(message_hash: bytes, signature: bytes, address: str) -> bool:
    """Check that ``signature`` over ``message_hash`` was made by ``address``."""
    recovered = recover_address(message_hash, signature)
    return recovered is not None and recovered == address.lower()
