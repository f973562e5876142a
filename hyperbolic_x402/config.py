"""Configuration loader for the Hyperbolic x402 proxy.

Settings come from environment variables and are read once at process start
into an immutable GatewayConfig. Required credentials are checked at request
time so the service can start (and answer /health) before it is fully
configured.
"""

import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Tuple

DEFAULT_BASE_URL = "https://api.hyperbolic.xyz/v1"
DEFAULT_PRICE = "$0.001"
DEFAULT_NETWORK = "eip155:84532"

REQUEST_ID_MODES = ("generate", "require")
PAYMENT_ORDERS = ("after_success", "before_upstream")

# env var name -> GatewayConfig attribute
REQUIRED_SETTINGS: Tuple[Tuple[str, str], ...] = (
    ("FACILITATOR_URL", "facilitator_url"),
    ("ADDRESS", "pay_to"),
    ("HYPERBOLIC_API_KEY", "api_key"),
)


class ConfigurationError(Exception):
    """Raised when required settings are missing at request time."""

    def __init__(self, missing: List[str]) -> None:
        self.missing = missing
        super().__init__(
            "Server misconfigured. Missing environment variables: {}".format(
                ", ".join(missing)
            )
        )


@dataclass(frozen=True)
class PaymentSettings:
    """Fixed tariff for the chat-completions endpoint."""

    pay_to: Optional[str]
    facilitator_url: Optional[str]
    price: str = DEFAULT_PRICE
    network: str = DEFAULT_NETWORK
    max_timeout_seconds: int = 60


@dataclass(frozen=True)
class GatewayConfig:
    """Top-level proxy configuration."""

    api_key: Optional[str] = None
    pay_to: Optional[str] = None
    facilitator_url: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    price: str = DEFAULT_PRICE
    network: str = DEFAULT_NETWORK
    allowed_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "info"
    port: int = 3000
    request_id_mode: str = "generate"
    payment_order: str = "after_success"

    @property
    def payment(self) -> PaymentSettings:
        return PaymentSettings(
            pay_to=self.pay_to,
            facilitator_url=self.facilitator_url,
            price=self.price,
            network=self.network,
        )

    def missing_settings(self) -> List[str]:
        """Return the names of required environment variables that are unset."""
        return [env for env, attr in REQUIRED_SETTINGS if not getattr(self, attr)]

    def require_complete(self) -> None:
        """Raise ConfigurationError if any required setting is missing."""
        missing = self.missing_settings()
        if missing:
            raise ConfigurationError(missing)


def _choice(raw: Mapping[str, str], name: str, allowed: Tuple[str, ...]) -> str:
    value = raw.get(name, allowed[0]).strip().lower()
    if value not in allowed:
        raise ValueError(
            "{} must be one of {}, got {!r}".format(name, ", ".join(allowed), value)
        )
    return value


def load_config(environ: Optional[Mapping[str, str]] = None) -> GatewayConfig:
    """Build a GatewayConfig from environment variables.

    Args:
        environ: Mapping to read from. Defaults to ``os.environ``.

    Returns:
        A frozen GatewayConfig instance.

    Raises:
        ValueError: If PORT, REQUEST_ID_MODE or PAYMENT_ORDER hold invalid values.
    """
    raw = os.environ if environ is None else environ

    origins_raw = raw.get("ALLOWED_ORIGINS", "")
    origins = [o.strip() for o in origins_raw.split(",") if o.strip()] or ["*"]

    port_raw = raw.get("PORT", "3000")
    try:
        port = int(port_raw)
    except ValueError:
        raise ValueError("PORT must be an integer, got {!r}".format(port_raw))

    return GatewayConfig(
        api_key=raw.get("HYPERBOLIC_API_KEY") or None,
        pay_to=raw.get("ADDRESS") or None,
        facilitator_url=raw.get("FACILITATOR_URL") or None,
        base_url=raw.get("HYPERBOLIC_BASE_URL", DEFAULT_BASE_URL).rstrip("/"),
        price=raw.get("PAYMENT_PRICE", DEFAULT_PRICE),
        network=raw.get("PAYMENT_NETWORK", DEFAULT_NETWORK),
        allowed_origins=origins,
        log_level=raw.get("LOG_LEVEL", "info").lower(),
        port=port,
        request_id_mode=_choice(raw, "REQUEST_ID_MODE", REQUEST_ID_MODES),
        payment_order=_choice(raw, "PAYMENT_ORDER", PAYMENT_ORDERS),
    )
