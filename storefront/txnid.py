import secrets

TXNID_PREFIX = "tx_"
TXNID_ENTROPY_BYTES = 8


def generate_transaction_id() -> str:
    """Return an unpredictable, URL-safe transaction id with 64 bits of entropy."""
    return TXNID_PREFIX + secrets.token_hex(TXNID_ENTROPY_BYTES)
