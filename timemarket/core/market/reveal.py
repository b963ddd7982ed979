"""
Reveal/Callback Verifier - declassification of an offer's price and slots.

Protocol:
--------
1. ``declassify``: the offer's price and slots handles are marked publicly
   decryptable. The ledger emits them in a RevealRequested event; that
   event is the only authoritative list of what the cleartext must cover.
2. The decryption oracle produces (cleartexts, decryption_proof) off-line.
3. ``verify``: the handle list is rebuilt from the offer's *current* state
   and checked against the proof. Only then is the blob decoded.

States:
------
    SEALED -> DECLASSIFIED -> RESOLVED

There is no timeout: a callback that never arrives leaves the offer
DECLASSIFIED.
"""

from dataclasses import dataclass
from typing import List, TYPE_CHECKING

from timemarket.core.errors import ProofVerificationError, ValidationError
from timemarket.core.market.models import Offer, RevealState
from timemarket.fhe.types import decode_cleartexts, handle_type
from timemarket.utils.logger import get_logger

if TYPE_CHECKING:
    from timemarket.fhe.gateway import FheGateway

logger = get_logger("reveal")


@dataclass(frozen=True)
class RevealedValues:
    """Verified cleartext of an offer's declassified fields."""
    price: int
    slots: int


class RevealVerifier:
    """
    Binds decryption callbacks to the handles an offer actually holds.

    The verifier never takes a handle list from the caller: it is always
    derived from the offer record, so a stale or substituted list cannot be
    used to pass off forged cleartext.
    """

    def __init__(self, gateway: "FheGateway", contract: str):
        self.gateway = gateway
        self.contract = contract

    @staticmethod
    def handles_for(offer: Offer) -> List[bytes]:
        """Handles covered by a reveal, in cleartext order."""
        return [offer.encrypted_price, offer.encrypted_slots]

    def declassify(self, offer: Offer) -> List[bytes]:
        """
        Mark the offer's price/slots handles publicly decryptable.

        Can be repeated while a callback is pending; a resolved offer is final.
        """
        if offer.reveal_state == RevealState.RESOLVED:
            raise ValidationError(f"Offer {offer.id} has already been revealed")

        handles = self.handles_for(offer)
        for handle in handles:
            self.gateway.make_publicly_decryptable(handle, self.contract)

        offer.reveal_state = RevealState.DECLASSIFIED
        logger.debug(f"Offer {offer.id} declassified ({len(handles)} handles)")
        return handles

    def verify(self, offer: Offer, cleartexts: bytes, decryption_proof: bytes) -> RevealedValues:
        """
        Check a decryption callback and decode it.

        Raises:
            ValidationError: no reveal pending for this offer
            ProofVerificationError: proof does not cover (handles, cleartexts)
        """
        if offer.reveal_state != RevealState.DECLASSIFIED:
            raise ValidationError(
                f"Offer {offer.id} has no pending reveal (state: {offer.reveal_state.name})"
            )

        handles = self.handles_for(offer)
        if not self.gateway.check_signatures(handles, cleartexts, decryption_proof):
            logger.warning(f"Rejected reveal callback for offer {offer.id}: invalid decryption proof")
            raise ProofVerificationError(f"Decryption proof does not match offer {offer.id}")

        price, slots = decode_cleartexts(cleartexts, [handle_type(h) for h in handles])
        return RevealedValues(price=price, slots=slots)
