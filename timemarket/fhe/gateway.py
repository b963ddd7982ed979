"""
FHE Gateway - the trusted encryption/decryption black box.

The gateway bundles the three external roles the marketplace relies on:

1. **Coprocessor**: turns plaintext bundles into ciphertexts, hands out one
   handle per value and signs an input proof over the whole ordered bundle.
2. **ACL**: records which subjects may use or decrypt a handle, and which
   handles have been declassified for public decryption.
3. **KMS / decryption oracle**: decrypts declassified handles and signs the
   resulting cleartext blob; ``check_signatures`` verifies such a proof.

Ciphertexts are AES-GCM under a network key the gateway never exposes, so
handles carry no plaintext by themselves.

Input Proof Layout:
------------------
    count(1) || handle_0 .. handle_{count-1} (32 each) || signature(65)

Decryption Proof Layout:
-----------------------
    count(1) || signature_0 .. signature_{count-1} (65 each)
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, TYPE_CHECKING

from Crypto.Cipher import AES
from Crypto.Random import get_random_bytes

from timemarket.crypto import (
    KeyPair,
    generate_keypair,
    keccak256,
    sign,
    recover_address,
    encode_uint,
    decode_uint,
    encode_address,
    normalize_address,
    SIGNATURE_SIZE,
)
from timemarket.core.errors import AuthorizationError, ProofVerificationError, ValidationError
from timemarket.fhe.types import (
    FheType,
    EncryptedBundle,
    DecryptionResult,
    HANDLE_SIZE,
    MAX_BUNDLE_SIZE,
    derive_handle,
    handle_index,
    handle_chain_id,
    handle_hex,
    encode_cleartexts,
)
from timemarket.utils.logger import get_logger
from timemarket.utils.validation import validate_handle

if TYPE_CHECKING:
    from timemarket.fhe.encoder import EncryptedInput

logger = get_logger("fhe")


# =============================================================================
# Constants
# =============================================================================

DOMAIN_INPUT_PROOF = b"timemarket.input-proof.v0"
DOMAIN_DECRYPTION = b"timemarket.decryption.v0"


@dataclass(frozen=True)
class _Ciphertext:
    fhe_type: FheType
    nonce: bytes
    data: bytes
    tag: bytes


# =============================================================================
# Digests
# =============================================================================


def input_proof_digest(chain_id: int, contract: str, submitter: str, handles: Sequence[bytes]) -> bytes:
    """Digest the coprocessor signs for an input bundle."""
    return keccak256(
        DOMAIN_INPUT_PROOF
        + encode_uint(chain_id)
        + encode_address(contract)
        + encode_address(submitter)
        + bytes([len(handles)])
        + b"".join(handles)
    )


def decryption_digest(chain_id: int, handles: Sequence[bytes], cleartexts: bytes) -> bytes:
    """Digest each KMS signer signs for a decryption result."""
    return keccak256(
        DOMAIN_DECRYPTION
        + encode_uint(chain_id)
        + bytes([len(handles)])
        + b"".join(handles)
        + cleartexts
    )


def parse_input_proof(proof: bytes) -> Tuple[List[bytes], bytes]:
    """
    Split an input proof into its handle list and signature.

    Raises:
        ProofVerificationError: malformed proof
    """
    if not isinstance(proof, (bytes, bytearray)) or len(proof) < 1 + SIGNATURE_SIZE:
        raise ProofVerificationError("Input proof is too short")

    count = proof[0]
    expected = 1 + count * HANDLE_SIZE + SIGNATURE_SIZE
    if count == 0 or len(proof) != expected:
        raise ProofVerificationError(f"Input proof length {len(proof)} does not match {count} handles")

    body = proof[1:1 + count * HANDLE_SIZE]
    handles = [bytes(body[i * HANDLE_SIZE:(i + 1) * HANDLE_SIZE]) for i in range(count)]
    return handles, bytes(proof[-SIGNATURE_SIZE:])


# =============================================================================
# Gateway
# =============================================================================


class FheGateway:
    """
    Coprocessor, ACL and KMS in one object.

    Attributes:
        chain_id: Chain the handles are bound to
        kms_threshold: Distinct KMS signatures a decryption proof needs
    """

    def __init__(
        self,
        chain_id: int,
        coprocessor: Optional[KeyPair] = None,
        kms_signers: Optional[Iterable[KeyPair]] = None,
        kms_threshold: int = 1,
        network_key: Optional[bytes] = None,
    ):
        self.chain_id = chain_id
        self._coprocessor = coprocessor or generate_keypair()
        self._kms = list(kms_signers) if kms_signers else [generate_keypair()]
        if not 1 <= kms_threshold <= len(self._kms):
            raise ValueError(f"kms_threshold must be in [1, {len(self._kms)}], got {kms_threshold}")
        self.kms_threshold = kms_threshold
        self._network_key = network_key or get_random_bytes(32)

        self._ciphertexts: Dict[bytes, _Ciphertext] = {}
        self._acl: Dict[bytes, Set[str]] = {}
        self._public: Set[bytes] = set()

        logger.info(
            f"FheGateway initialized: chain={chain_id}, coprocessor={self.coprocessor_address}, "
            f"kms={len(self._kms)} signer(s), threshold={kms_threshold}"
        )

    # =========================================================================
    # Identity
    # =========================================================================

    @property
    def coprocessor_address(self) -> str:
        return self._coprocessor.address

    @property
    def kms_addresses(self) -> List[str]:
        return [kp.address for kp in self._kms]

    # =========================================================================
    # Coprocessor
    # =========================================================================

    def create_encrypted_input(self, contract: str, submitter: str) -> "EncryptedInput":
        """Open a new single-use input session bound to (contract, submitter)."""
        from timemarket.fhe.encoder import EncryptedInput

        return EncryptedInput(self, contract, submitter)

    def _encrypt(self, value: int, fhe_type: FheType, index: int, binding: bytes) -> bytes:
        cipher = AES.new(self._network_key, AES.MODE_GCM)
        cipher.update(bytes([int(fhe_type)]))
        data, tag = cipher.encrypt_and_digest(encode_uint(value))
        handle = derive_handle(cipher.nonce + data + binding, index, self.chain_id, fhe_type)
        self._ciphertexts[handle] = _Ciphertext(fhe_type, cipher.nonce, data, tag)
        return handle

    def encrypt_bundle(
        self,
        contract: str,
        submitter: str,
        values: Sequence[Tuple[int, FheType]],
    ) -> EncryptedBundle:
        """
        Encrypt an ordered bundle and sign one proof over all of its handles.

        Args:
            contract: Contract that will import the handles
            submitter: Account that will present them
            values: (plaintext, type) pairs in insertion order
        """
        if not values:
            raise ValidationError("Cannot encrypt an empty bundle")
        if len(values) > MAX_BUNDLE_SIZE:
            raise ValidationError(f"Bundle exceeds {MAX_BUNDLE_SIZE} values")

        binding = encode_address(contract) + encode_address(submitter)
        handles = [
            self._encrypt(value, fhe_type, i, binding)
            for i, (value, fhe_type) in enumerate(values)
        ]

        digest = input_proof_digest(self.chain_id, contract, submitter, handles)
        signature = sign(digest, self._coprocessor.private_key)
        proof = bytes([len(handles)]) + b"".join(handles) + signature

        logger.debug(f"Encrypted bundle of {len(handles)} value(s) for {submitter} -> {contract}")
        return EncryptedBundle(handles=handles, proof=proof)

    def trivial_encrypt(self, value: int, fhe_type: FheType) -> bytes:
        """Encrypt a value that is already public (no proof involved)."""
        if not 0 <= value <= fhe_type.max_value:
            raise ValidationError(f"Value does not fit {fhe_type.name}: {value}")
        return self._encrypt(value, fhe_type, 0, b"trivial")

    def verify_input(
        self,
        handle: bytes,
        index: int,
        contract: str,
        submitter: str,
        proof: bytes,
    ) -> bytes:
        """
        Import handle[index] presented together with ``proof``.

        Succeeds only if ``proof`` was issued for this contract and submitter
        and lists exactly this handle at position ``index``. Verification has
        no side effects; the importer grants ACL access once every handle of
        the bundle has passed.

        Raises:
            ProofVerificationError: the proof does not vouch for the handle
        """
        ok, err = validate_handle(handle)
        if not ok:
            raise ProofVerificationError(err)

        proof_handles, signature = parse_input_proof(proof)

        if index >= len(proof_handles) or proof_handles[index] != handle:
            logger.warning(f"Rejected handle {handle_hex(handle)[:18]}...: not at position {index} of proof")
            raise ProofVerificationError(f"Handle is not covered by the proof at position {index}")

        if handle_index(handle) != index or handle_chain_id(handle) != self.chain_id:
            raise ProofVerificationError("Handle metadata does not match its position or chain")

        digest = input_proof_digest(self.chain_id, contract, submitter, proof_handles)
        if recover_address(digest, signature) != self.coprocessor_address:
            logger.warning(f"Rejected input proof from {submitter}: bad coprocessor signature")
            raise ProofVerificationError("Input proof signature is invalid for this contract and submitter")

        if handle not in self._ciphertexts:
            raise ProofVerificationError("Unknown handle")

        return handle

    # =========================================================================
    # ACL
    # =========================================================================

    def _require_known(self, handle: bytes) -> None:
        if handle not in self._ciphertexts:
            raise ValidationError(f"Unknown handle {handle_hex(handle)}")

    def allow(self, handle: bytes, subject: str) -> None:
        """Grant ``subject`` the right to use and decrypt ``handle``."""
        self._require_known(handle)
        self._acl.setdefault(handle, set()).add(normalize_address(subject))

    def is_allowed(self, handle: bytes, subject: str) -> bool:
        return subject.lower() in self._acl.get(handle, ())

    def make_publicly_decryptable(self, handle: bytes, caller: str) -> None:
        """Declassify a handle. Only a subject holding an ACL grant may do this."""
        self._require_known(handle)
        if not self.is_allowed(handle, caller):
            raise AuthorizationError(f"{caller} may not declassify {handle_hex(handle)}")
        self._public.add(handle)

    def is_publicly_decryptable(self, handle: bytes) -> bool:
        return handle in self._public

    # =========================================================================
    # KMS / Decryption Oracle
    # =========================================================================

    def _decrypt(self, handle: bytes) -> int:
        ct = self._ciphertexts[handle]
        cipher = AES.new(self._network_key, AES.MODE_GCM, nonce=ct.nonce)
        cipher.update(bytes([int(ct.fhe_type)]))
        return decode_uint(cipher.decrypt_and_verify(ct.data, ct.tag))

    def public_decrypt(self, handles: Sequence[bytes]) -> DecryptionResult:
        """
        Decrypt declassified handles and sign the cleartext blob.

        Raises:
            AuthorizationError: a handle has not been declassified
        """
        handles = [bytes(h) for h in handles]
        for handle in handles:
            self._require_known(handle)
            if handle not in self._public:
                raise AuthorizationError(f"Handle {handle_hex(handle)} is not publicly decryptable")

        values = [self._decrypt(h) for h in handles]
        cleartexts = encode_cleartexts(values)
        digest = decryption_digest(self.chain_id, handles, cleartexts)
        signatures = [sign(digest, kp.private_key) for kp in self._kms]
        proof = bytes([len(signatures)]) + b"".join(signatures)

        logger.debug(f"Public decryption of {len(handles)} handle(s)")
        return DecryptionResult(
            clear_values=dict(zip(handles, values)),
            cleartexts=cleartexts,
            decryption_proof=proof,
        )

    def check_signatures(self, handles: Sequence[bytes], cleartexts: bytes, decryption_proof: bytes) -> bool:
        """
        Verify a decryption proof against a handle list and cleartext blob.

        Returns True only if at least ``kms_threshold`` distinct KMS signers
        signed exactly this (handles, cleartexts) pair.
        """
        if not isinstance(decryption_proof, (bytes, bytearray)) or not decryption_proof:
            return False
        if not isinstance(cleartexts, (bytes, bytearray)):
            return False

        count = decryption_proof[0]
        if len(decryption_proof) != 1 + count * SIGNATURE_SIZE:
            return False

        digest = decryption_digest(self.chain_id, [bytes(h) for h in handles], bytes(cleartexts))
        signers = set(self.kms_addresses)
        seen: Set[str] = set()
        for i in range(count):
            start = 1 + i * SIGNATURE_SIZE
            recovered = recover_address(digest, bytes(decryption_proof[start:start + SIGNATURE_SIZE]))
            if recovered in signers:
                seen.add(recovered)

        return len(seen) >= self.kms_threshold

    def user_decrypt(self, handle: bytes, user: str) -> int:
        """Plaintext of ``handle`` for a subject holding an ACL grant."""
        self._require_known(handle)
        if not self.is_allowed(handle, user):
            raise AuthorizationError(f"{user} has no ACL grant for {handle_hex(handle)}")
        return self._decrypt(handle)
