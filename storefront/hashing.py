import hashlib
import hmac
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

DELIMITER = "|"

# Empty positions kept for the gateway's udf/legacy fields. The two directions
# carry a different number of them; both counts are part of the wire contract.
OUTBOUND_RESERVED_SLOTS = 6
INBOUND_RESERVED_SLOTS = 11

RESERVED = None

OUTBOUND_LAYOUT: tuple[str | None, ...] = (
    "key",
    "txnid",
    "amount",
    "productinfo",
    "firstname",
    "email",
    *([RESERVED] * OUTBOUND_RESERVED_SLOTS),
    "salt",
)

INBOUND_LAYOUT: tuple[str | None, ...] = (
    "salt",
    "status",
    *([RESERVED] * INBOUND_RESERVED_SLOTS),
    "email",
    "firstname",
    "productinfo",
    "amount",
    "txnid",
    "key",
)

TWO_PLACES = Decimal("0.01")


def format_amount(value: Decimal | int | float | str) -> str:
    """Render an amount with exactly two decimal digits (ROUND_HALF_UP).

    Floats are converted through ``str()`` so ``100.1`` is treated as the
    decimal literal the caller wrote, not its binary approximation.

    Raises:
        ValueError: If the value is not a finite number.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value.strip() if isinstance(value, str) else value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    try:
        return str(amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP))
    except InvalidOperation:
        raise ValueError(f"Amount out of range: {value!r}")


def _join(layout: tuple[str | None, ...], values: dict[str, str]) -> str:
    return DELIMITER.join("" if slot is RESERVED else values[slot] for slot in layout)


def outbound_canonical_string(
    key: str,
    txnid: str,
    amount: str,
    productinfo: str,
    firstname: str,
    email: str,
    salt: str,
) -> str:
    """Build the request-signing string. ``amount`` must already be formatted."""
    return _join(
        OUTBOUND_LAYOUT,
        {
            "key": key,
            "txnid": txnid,
            "amount": amount,
            "productinfo": productinfo,
            "firstname": firstname,
            "email": email,
            "salt": salt,
        },
    )


def inbound_canonical_string(
    salt: str,
    status: str,
    email: str,
    firstname: str,
    productinfo: str,
    amount: str,
    txnid: str,
    key: str,
) -> str:
    """Build the callback-verification string (reverse field order)."""
    return _join(
        INBOUND_LAYOUT,
        {
            "salt": salt,
            "status": status,
            "email": email,
            "firstname": firstname,
            "productinfo": productinfo,
            "amount": amount,
            "txnid": txnid,
            "key": key,
        },
    )


def compute_digest(canonical: str) -> str:
    """SHA-512 of the canonical string as lowercase hex."""
    return hashlib.sha512(canonical.encode("utf-8")).hexdigest()


def digests_match(expected: str, received: str) -> bool:
    """Case-insensitive constant-time comparison of two hex digests."""
    normalized = (received or "").strip().lower()
    return hmac.compare_digest(expected.lower().encode("utf-8"), normalized.encode("utf-8"))
