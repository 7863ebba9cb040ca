import os
from collections.abc import Mapping
from dataclasses import dataclass

from dotenv import load_dotenv

SANDBOX = "sandbox"
PRODUCTION = "production"

# "test" is what older deployments put in PAYU_MODE
MODE_ALIASES = {"sandbox": SANDBOX, "test": SANDBOX, "production": PRODUCTION}

GATEWAY_ENDPOINTS = {
    SANDBOX: "https://test.payu.in/_payment",
    PRODUCTION: "https://secure.payu.in/_payment",
}
VERIFY_ENDPOINTS = {
    SANDBOX: "https://test.payu.in/merchant/postservice.php?form=2",
    PRODUCTION: "https://info.payu.in/merchant/postservice.php?form=2",
}
REFUND_ENDPOINTS = {
    SANDBOX: "https://test.payu.in/merchant/refund.php",
    PRODUCTION: "https://secure.payu.in/merchant/refund.php",
}

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_DATABASE_URL = "sqlite:///./storefront.db"


class ConfigurationError(Exception):
    """Merchant credentials are missing or invalid."""


@dataclass(frozen=True)
class MerchantCredential:
    merchant_key: str
    shared_secret: str
    environment: str = SANDBOX
    success_url: str = ""
    failure_url: str = ""

    def __post_init__(self) -> None:
        if not self.merchant_key:
            raise ConfigurationError("Merchant key is not configured.")
        if not self.shared_secret:
            raise ConfigurationError("Merchant shared secret is not configured.")
        if self.environment not in GATEWAY_ENDPOINTS:
            raise ConfigurationError(f"Unknown gateway environment: {self.environment!r}")

    @property
    def gateway_endpoint(self) -> str:
        return GATEWAY_ENDPOINTS[self.environment]

    @property
    def verify_endpoint(self) -> str:
        return VERIFY_ENDPOINTS[self.environment]

    @property
    def refund_endpoint(self) -> str:
        return REFUND_ENDPOINTS[self.environment]

    def __repr__(self) -> str:
        return (
            f"MerchantCredential(merchant_key={self.merchant_key!r}, "
            f"environment={self.environment!r})"
        )


def load_credential(environ: Mapping[str, str] | None = None) -> MerchantCredential:
    """
    Build the merchant credential from environment variables.

    Reads PAYU_MERCHANT_KEY (or PAYU_KEY), PAYU_SALT, PAYU_MODE,
    PAYU_SUCCESS_URL and PAYU_FAILURE_URL.

    Raises:
        ConfigurationError: If key or salt is absent or PAYU_MODE is unknown.
    """
    env = os.environ if environ is None else environ
    key = (env.get("PAYU_MERCHANT_KEY") or env.get("PAYU_KEY") or "").strip()
    salt = (env.get("PAYU_SALT") or "").strip()
    if not key or not salt:
        raise ConfigurationError("PAYU_MERCHANT_KEY and PAYU_SALT must be set.")

    raw_mode = (env.get("PAYU_MODE") or SANDBOX).strip().lower()
    if raw_mode not in MODE_ALIASES:
        raise ConfigurationError(f"PAYU_MODE must be 'sandbox' or 'production', got {raw_mode!r}.")

    return MerchantCredential(
        merchant_key=key,
        shared_secret=salt,
        environment=MODE_ALIASES[raw_mode],
        success_url=env.get("PAYU_SUCCESS_URL", ""),
        failure_url=env.get("PAYU_FAILURE_URL", ""),
    )


class Settings:
    """Process settings read once at startup."""

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        env = os.environ if environ is None else environ
        self.credential = load_credential(env)
        self.database_url: str = env.get("DATABASE_URL", DEFAULT_DATABASE_URL)
        try:
            self.gateway_timeout: float = float(
                env.get("PAYU_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)
            )
        except ValueError:
            raise ConfigurationError("PAYU_TIMEOUT_SECONDS must be a number.")


def load_settings() -> Settings:
    # grab env vars from .env file
    load_dotenv()
    return Settings()
