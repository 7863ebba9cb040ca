"""Verification of gateway payment callbacks.

A callback is untrusted until its hash has been recomputed from its own
fields plus the merchant key and salt. ``PaymentResponseVerifier.verify``
never raises: every failure comes back as a ``Rejected`` value so a caller
cannot mistake an unhandled exception for a verified payment.
"""
import enum
import logging
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict

from storefront.config import MerchantCredential
from storefront.hashing import (
    compute_digest,
    digests_match,
    format_amount,
    inbound_canonical_string,
)

logger = logging.getLogger(__name__)


class PaymentCallback(BaseModel):
    """Gateway callback fields as posted; everything is a string."""

    model_config = ConfigDict(extra="ignore", frozen=True, coerce_numbers_to_str=True)

    txnid: str = ""
    amount: str = ""
    status: str = ""
    email: str = ""
    firstname: str = ""
    productinfo: str = ""
    hash: str = ""

    # not part of the digest; the raw body is stored with the callback event
    mihpayid: str = ""
    error_Message: str = ""


class RejectionReason(str, enum.Enum):
    DIGEST_MISMATCH = "digest_mismatch"
    MALFORMED_CALLBACK = "malformed_callback"


@dataclass(frozen=True)
class Verified:
    txnid: str
    status: str
    amount: str

    accepted = True


@dataclass(frozen=True)
class Rejected:
    reason: RejectionReason
    txnid: str = ""

    accepted = False


class PaymentResponseVerifier:
    def __init__(self, credential: MerchantCredential) -> None:
        self.credential = credential

    def expected_digest(self, callback: PaymentCallback, amount: str) -> str:
        return compute_digest(
            inbound_canonical_string(
                salt=self.credential.shared_secret,
                status=callback.status,
                email=callback.email,
                firstname=callback.firstname,
                productinfo=callback.productinfo,
                amount=amount,
                txnid=callback.txnid,
                key=self.credential.merchant_key,
            )
        )

    def verify(self, callback: PaymentCallback) -> Verified | Rejected:
        if not callback.hash:
            logger.warning("Callback for txnid=%r carried no hash", callback.txnid)
            return Rejected(RejectionReason.MALFORMED_CALLBACK, callback.txnid)

        try:
            amount = format_amount(callback.amount)
        except ValueError:
            logger.warning(
                "Callback for txnid=%r has unparseable amount %r",
                callback.txnid, callback.amount,
            )
            return Rejected(RejectionReason.MALFORMED_CALLBACK, callback.txnid)

        expected = self.expected_digest(callback, amount)
        if not digests_match(expected, callback.hash):
            logger.warning(
                "Callback digest mismatch: txnid=%r status=%r amount=%r email=%r hash=%s...",
                callback.txnid, callback.status, callback.amount, callback.email,
                callback.hash[:16],
            )
            return Rejected(RejectionReason.DIGEST_MISMATCH, callback.txnid)

        return Verified(txnid=callback.txnid, status=callback.status, amount=amount)
