"""
Encrypted Input Batch Encoder.

Several sensitive values are imported together so that one proof can vouch
for all of them. The proof is defined over the ordered concatenation of the
whole bundle, so a proof from one session never authenticates a handle from
another session, nor the same handles in a different order.

Usage:
------
    session = gateway.create_encrypted_input(contract, user)
    session.add64(price).add32(duration_days).add32(slots)
    bundle = session.encrypt()      # bundle.handles[i], bundle.proof

A session is single-use. Appends from two logical batches must never be
interleaved on one instance; a second thread touching a busy session gets
an ``EncoderSessionError``.
"""

import threading
from contextlib import contextmanager
from typing import List, Tuple, TYPE_CHECKING

from timemarket.core.errors import EncoderSessionError, ValidationError
from timemarket.fhe.types import FheType, EncryptedBundle, MAX_BUNDLE_SIZE
from timemarket.utils.validation import validate_address, validate_uint_width

if TYPE_CHECKING:
    from timemarket.fhe.gateway import FheGateway


class EncryptedInput:
    """
    One encrypted input session keyed by (target contract, submitter).

    Attributes:
        contract: Contract that will import the handles
        submitter: Account that will submit them
    """

    def __init__(self, gateway: "FheGateway", contract: str, submitter: str):
        for name, address in (("contract", contract), ("submitter", submitter)):
            ok, err = validate_address(address, name)
            if not ok:
                raise ValidationError(err)

        self._gateway = gateway
        self.contract = contract.lower()
        self.submitter = submitter.lower()
        self._values: List[Tuple[int, FheType]] = []
        self._finalized = False
        self._busy = threading.Lock()

    # =========================================================================
    # Appending
    # =========================================================================

    def add(self, value: int, fhe_type: FheType) -> "EncryptedInput":
        """Append one value; insertion order is the handle order."""
        ok, err = validate_uint_width(value, fhe_type.bits, f"{fhe_type.name} value")
        if not ok:
            raise ValidationError(err)

        with self._session():
            if len(self._values) >= MAX_BUNDLE_SIZE:
                raise ValidationError(f"Bundle exceeds {MAX_BUNDLE_SIZE} values")
            self._values.append((value, fhe_type))
        return self

    def add8(self, value: int) -> "EncryptedInput":
        return self.add(value, FheType.EUINT8)

    def add16(self, value: int) -> "EncryptedInput":
        return self.add(value, FheType.EUINT16)

    def add32(self, value: int) -> "EncryptedInput":
        return self.add(value, FheType.EUINT32)

    def add64(self, value: int) -> "EncryptedInput":
        return self.add(value, FheType.EUINT64)

    def add_bits(self, value: int, bits: int) -> "EncryptedInput":
        """Append with the width given as 8/16/32/64."""
        return self.add(value, FheType.from_bits(bits))

    # =========================================================================
    # Finalization
    # =========================================================================

    def encrypt(self) -> EncryptedBundle:
        """
        Encrypt the whole bundle once.

        Returns:
            EncryptedBundle with one handle per appended value and one proof
        """
        with self._session():
            if not self._values:
                raise ValidationError("Cannot finalize an empty encrypted input")
            bundle = self._gateway.encrypt_bundle(self.contract, self.submitter, self._values)
            self._finalized = True
        return bundle

    @property
    def finalized(self) -> bool:
        return self._finalized

    def __len__(self) -> int:
        return len(self._values)

    @contextmanager
    def _session(self):
        if not self._busy.acquire(blocking=False):
            raise EncoderSessionError("Encrypted input is being used by another caller")
        try:
            if self._finalized:
                raise EncoderSessionError("Encrypted input was already finalized; open a new session")
            yield
        finally:
            self._busy.release()
