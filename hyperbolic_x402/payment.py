"""x402 payment gate for the chat-completions endpoint.

Payment handling is delegated to the x402 SDK: an ``x402ResourceServer``
backed by an HTTP facilitator client and the EVM ``exact`` scheme, driven
through the SDK's FastAPI payment middleware. The facilitator owns signature
checking and on-chain settlement.

The gate does not sit in the ASGI middleware stack. The chat handler invokes
it with a ``deliver`` coroutine that produces the provider body, so the
middleware only settles once that body exists. A ``deliver`` that raises, or
a non-2xx response, is never settled.

Wire format (x402 v2):
- 402 response: ``PAYMENT-REQUIRED`` header carrying the requirements
- request: ``PAYMENT-SIGNATURE`` header carrying the signed payload
- success: ``PAYMENT-RESPONSE`` header carrying the settlement result
"""

import json
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import Request, Response
from fastapi.responses import StreamingResponse
from pydantic import ValidationError
from x402 import x402ResourceServer
from x402.http import (
    PAYMENT_REQUIRED_HEADER,
    PAYMENT_RESPONSE_HEADER,
    PAYMENT_SIGNATURE_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    FacilitatorConfig,
    HTTPFacilitatorClient,
    PaymentOption,
    RouteConfig,
    decode_payment_response_header,
    encode_payment_response_header,
)
from x402.http.middleware.fastapi import payment_middleware
from x402.mechanisms.evm.exact import ExactEvmServerScheme
from x402.schemas import SettleResponse

from hyperbolic_x402.config import PaymentSettings
from hyperbolic_x402.models import PaymentOutcome
from hyperbolic_x402.telemetry import log_event

SCHEME = "exact"
CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
PAYMENT_HEADER = PAYMENT_SIGNATURE_HEADER
LEGACY_PAYMENT_RESPONSE_HEADER = X_PAYMENT_RESPONSE_HEADER

Deliver = Callable[[], Awaitable[Dict[str, Any]]]
Middleware = Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]


class PaymentDecodeError(Exception):
    """Raised when a PAYMENT-RESPONSE header cannot be decoded."""


def encode_payment_response(settlement: Dict[str, Any]) -> str:
    """Encode a settlement result as a PAYMENT-RESPONSE header value."""
    return encode_payment_response_header(SettleResponse.model_validate(settlement))


def decode_payment_response(header: str) -> PaymentOutcome:
    """Decode a PAYMENT-RESPONSE header into a PaymentOutcome.

    Raises:
        PaymentDecodeError: If the header is not base64 JSON describing a
            settlement.
    """
    try:
        settled = decode_payment_response_header(header)
    except (ValueError, ValidationError) as exc:
        raise PaymentDecodeError(
            "Invalid payment response header: {}".format(exc)
        ) from exc

    return PaymentOutcome(
        success=settled.success,
        transaction=settled.transaction,
        network=str(settled.network),
        payer=settled.payer,
    )


def settlement_header(message: Any) -> Optional[str]:
    """Return the settlement header of a request or response, if present."""
    return message.headers.get(PAYMENT_RESPONSE_HEADER) or message.headers.get(
        LEGACY_PAYMENT_RESPONSE_HEADER
    )


class PaymentGate:
    """Charges the fixed per-call tariff through the x402 SDK.

    Args:
        settings: Tariff and facilitator location.
        facilitator: Facilitator client. Defaults to an
            ``HTTPFacilitatorClient`` for ``settings.facilitator_url``.
    """

    def __init__(self, settings: PaymentSettings, facilitator: Any = None) -> None:
        self.settings = settings
        if facilitator is None:
            facilitator = HTTPFacilitatorClient(
                FacilitatorConfig(url=settings.facilitator_url)
            )
        self.facilitator = facilitator
        self._middleware: Optional[Middleware] = None

    def routes(self) -> Dict[str, RouteConfig]:
        """Route table for the SDK middleware: one paid route."""
        return {
            "POST " + CHAT_COMPLETIONS_PATH: RouteConfig(
                accepts=[
                    PaymentOption(
                        scheme=SCHEME,
                        pay_to=self.settings.pay_to,
                        price=self.settings.price,
                        network=self.settings.network,
                        max_timeout_seconds=self.settings.max_timeout_seconds,
                    )
                ],
                mime_type="application/json",
                description="Chat completion via Hyperbolic",
            )
        }

    def middleware(self) -> Middleware:
        """Build the SDK middleware on first use.

        Building it fetches the facilitator's supported payment kinds.
        """
        if self._middleware is None:
            server = x402ResourceServer(self.facilitator)
            server.register(self.settings.network, ExactEvmServerScheme())
            self._middleware = payment_middleware(routes=self.routes(), server=server)
            log_event(
                "payment_gate_ready",
                network=self.settings.network,
                price=self.settings.price,
                pay_to=self.settings.pay_to,
            )
        return self._middleware

    async def charge(self, request: Request, deliver: Deliver) -> Response:
        """Run ``deliver`` behind the payment middleware.

        Returns the middleware's response: the delivered body with a
        PAYMENT-RESPONSE header on success, otherwise a 402 (or a 5xx when
        the facilitator misbehaves). Exceptions raised by ``deliver``
        propagate unsettled.
        """

        async def call_next(_: Request) -> Response:
            body = await deliver()
            return StreamingResponse(
                iter([json.dumps(body).encode("utf-8")]),
                media_type="application/json",
            )

        return await self.middleware()(request, call_next)
