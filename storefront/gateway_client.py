"""Server-to-server calls to the gateway's merchant API.

These endpoints use their own hash scheme, ``sha512(key|command|var1|salt)``,
which is unrelated to the checkout form hash in ``storefront.hashing``.
The client applies a bounded timeout and never retries; callers decide
whether and when to try again.
"""
import hashlib
import logging
from decimal import Decimal
from typing import Any

import httpx

from storefront.config import DEFAULT_TIMEOUT_SECONDS, MerchantCredential
from storefront.hashing import format_amount

logger = logging.getLogger(__name__)

VERIFY_COMMAND = "verify_payment"
REFUND_COMMAND = "cancel_refund_transaction"
REFUND_TOKEN_PREFIX = "rf_"


class GatewayCommunicationError(Exception):
    """The gateway could not be reached or answered with an error.

    This says nothing about whether the payment itself succeeded.
    """


def command_hash(key: str, command: str, var1: str, salt: str) -> str:
    return hashlib.sha512(f"{key}|{command}|{var1}|{salt}".encode("utf-8")).hexdigest()


def refund_token(payment_id: str) -> str:
    """Default refund reference. Stable per payment so the gateway drops a retried refund."""
    return REFUND_TOKEN_PREFIX + payment_id


class GatewayClient:
    def __init__(
        self,
        credential: MerchantCredential,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.Client | None = None,
    ) -> None:
        self.credential = credential
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._client.close()

    @property
    def is_closed(self) -> bool:
        return self._client.is_closed

    def _command_fields(self, command: str, var1: str) -> dict[str, str]:
        return {
            "key": self.credential.merchant_key,
            "command": command,
            "var1": var1,
            "hash": command_hash(
                self.credential.merchant_key, command, var1, self.credential.shared_secret,
            ),
        }

    def _post(self, url: str, data: dict[str, str]) -> dict[str, Any]:
        try:
            response = self._client.post(url, data=data)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            logger.error("Gateway call %s failed: %s", data.get("command"), exc)
            raise GatewayCommunicationError(str(exc)) from exc
        except ValueError as exc:
            logger.error("Gateway call %s returned a non-JSON body", data.get("command"))
            raise GatewayCommunicationError("Gateway returned a non-JSON response") from exc
        if not isinstance(body, dict):
            logger.error("Gateway call %s returned a non-object body", data.get("command"))
            raise GatewayCommunicationError("Gateway returned a non-object response")
        return body

    def verify_payment(self, txnid: str) -> dict[str, Any]:
        """Query the gateway for the current state of a transaction."""
        return self._post(
            self.credential.verify_endpoint,
            self._command_fields(VERIFY_COMMAND, txnid),
        )

    def refund(
        self,
        payment_id: str,
        amount: Decimal | str,
        token: str | None = None,
    ) -> dict[str, Any]:
        """
        Request a refund for a captured payment.

        Args:
            payment_id: Gateway payment id (mihpayid) of the captured payment.
            amount: Amount to refund.
            token: Merchant-side unique refund reference; derived from
                payment_id if omitted.
        """
        data = self._command_fields(REFUND_COMMAND, payment_id)
        data["var2"] = token or refund_token(payment_id)
        data["var3"] = format_amount(amount)
        return self._post(self.credential.refund_endpoint, data)
