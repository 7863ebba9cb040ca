"""Construction and signing of outbound gateway payment requests."""
import html
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal

from storefront.config import MerchantCredential
from storefront.hashing import compute_digest, format_amount, outbound_canonical_string
from storefront.txnid import generate_transaction_id

logger = logging.getLogger(__name__)

MAX_CUSTOM_FIELDS = 10
UDF_NAME = re.compile(r"udf([1-9]|10)")


class PaymentRequestError(ValueError):
    """Caller input rejected before anything was signed."""


class InvalidAmount(PaymentRequestError):
    """Amount is not a positive number."""


class InvalidBuyer(PaymentRequestError):
    """Buyer name or email is missing."""


@dataclass(frozen=True)
class PaymentRequest:
    key: str
    txnid: str
    amount: Decimal
    productinfo: str
    firstname: str
    email: str
    phone: str
    surl: str
    furl: str
    udf: tuple[str, ...] = field(default_factory=tuple)
    hash: str = ""

    @property
    def amount_str(self) -> str:
        return format_amount(self.amount)

    def form_fields(self) -> dict[str, str]:
        """Fields exactly as they are posted to the gateway."""
        fields = {
            "key": self.key,
            "txnid": self.txnid,
            "amount": self.amount_str,
            "productinfo": self.productinfo,
            "firstname": self.firstname,
            "email": self.email,
            "phone": self.phone,
            "surl": self.surl,
            "furl": self.furl,
        }
        for index in range(MAX_CUSTOM_FIELDS):
            fields[f"udf{index + 1}"] = self.udf[index] if index < len(self.udf) else ""
        fields["hash"] = self.hash
        return fields


@dataclass(frozen=True)
class PreparedPayment:
    request: PaymentRequest
    endpoint: str

    @property
    def txnid(self) -> str:
        return self.request.txnid

    @property
    def fields(self) -> dict[str, str]:
        return self.request.form_fields()

    def html_form(self) -> str:
        """Auto-submitting HTML form that posts the signed fields to the gateway."""
        inputs = "\n".join(
            f'      <input type="hidden" name="{html.escape(name)}" value="{html.escape(value)}"/>'
            for name, value in self.fields.items()
        )
        return (
            "<html>\n"
            '  <head><meta charset="utf-8"/></head>\n'
            '  <body onload="document.forms[0].submit()">\n'
            f'    <form action="{html.escape(self.endpoint)}" method="post">\n'
            f"{inputs}\n"
            "    </form>\n"
            "  </body>\n"
            "</html>\n"
        )


def _custom_values(custom_fields: Mapping[str, str] | Iterable[tuple[str, str]] | None) -> tuple[str, ...]:
    """Lay custom fields out over udf1..udf10.

    A field named ``udf1`` to ``udf10`` keeps that slot. Any other name takes
    the lowest free slot, in insertion order. Fields that find no free slot
    are dropped.
    """
    if not custom_fields:
        return ()
    pairs = custom_fields.items() if isinstance(custom_fields, Mapping) else custom_fields
    slots: list[str | None] = [None] * MAX_CUSTOM_FIELDS
    unplaced = []
    for name, value in pairs:
        text = "" if value is None else str(value)
        match = UDF_NAME.fullmatch(str(name))
        if match:
            slots[int(match.group(1)) - 1] = text
        else:
            unplaced.append(text)

    free = [index for index, slot in enumerate(slots) if slot is None]
    for index, text in zip(free, unplaced):
        slots[index] = text
    if len(unplaced) > len(free):
        logger.debug(
            "Dropping %d custom fields beyond udf%d",
            len(unplaced) - len(free), MAX_CUSTOM_FIELDS,
        )

    while slots and slots[-1] is None:
        slots.pop()
    return tuple("" if slot is None else slot for slot in slots)


class PaymentRequestBuilder:
    """Assembles and signs payment requests for a single merchant credential.

    The gateway endpoint is fixed when the builder is created, from the
    credential's environment. Building is pure: nothing is persisted.
    """

    def __init__(self, credential: MerchantCredential) -> None:
        self.credential = credential
        self.endpoint = credential.gateway_endpoint

    def build(
        self,
        amount: Decimal | int | float | str,
        productinfo: str,
        firstname: str,
        email: str,
        phone: str | None = None,
        success_url: str | None = None,
        failure_url: str | None = None,
        custom_fields: Mapping[str, str] | Iterable[tuple[str, str]] | None = None,
        txnid: str | None = None,
    ) -> PreparedPayment:
        """
        Validate inputs and return a signed request with its gateway endpoint.

        Raises:
            InvalidAmount: If amount is not a number greater than zero.
            InvalidBuyer: If firstname or email is blank.
        """
        try:
            amount_str = format_amount(amount)
        except ValueError as exc:
            raise InvalidAmount(str(exc))
        if Decimal(amount_str) <= 0:
            raise InvalidAmount(f"Amount must be greater than zero, got {amount!r}.")

        firstname = (firstname or "").strip()
        email = (email or "").strip()
        if not firstname:
            raise InvalidBuyer("Buyer name is required.")
        if not email:
            raise InvalidBuyer("Buyer email is required.")

        txnid = txnid or generate_transaction_id()
        productinfo = productinfo or ""
        key = self.credential.merchant_key

        digest = compute_digest(
            outbound_canonical_string(
                key=key,
                txnid=txnid,
                amount=amount_str,
                productinfo=productinfo,
                firstname=firstname,
                email=email,
                salt=self.credential.shared_secret,
            )
        )
        request = PaymentRequest(
            key=key,
            txnid=txnid,
            amount=Decimal(amount_str),
            productinfo=productinfo,
            firstname=firstname,
            email=email,
            phone=phone or "",
            surl=success_url or self.credential.success_url,
            furl=failure_url or self.credential.failure_url,
            udf=_custom_values(custom_fields),
            hash=digest,
        )
        logger.info("Signed payment request %s for amount %s", txnid, amount_str)
        return PreparedPayment(request=request, endpoint=self.endpoint)
