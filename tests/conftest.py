"""Shared test fixtures for the Hyperbolic x402 proxy tests."""

from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from x402.http import encode_payment_signature_header
from x402.schemas import (
    PaymentPayload,
    PaymentRequirements,
    SettleResponse,
    SupportedKind,
    SupportedResponse,
    VerifyResponse,
)

from hyperbolic_x402.config import DEFAULT_NETWORK, GatewayConfig, PaymentSettings
from hyperbolic_x402.payment import (
    PAYMENT_HEADER,
    PAYMENT_RESPONSE_HEADER,
    Deliver,
    PaymentGate,
    encode_payment_response,
)

PAY_TO = "0x1111111111111111111111111111111111111111"
PAYER = "0x2222222222222222222222222222222222222222"
TX_HASH = "0x" + "ab" * 32
BASE_SEPOLIA_USDC = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"

SUCCESS_BODY: Dict[str, Any] = {
    "id": "chatcmpl-1",
    "object": "chat.completion",
    "created": 1700000000,
    "model": "x",
    "choices": [
        {
            "index": 0,
            "message": {"role": "assistant", "content": "hello"},
            "finish_reason": "stop",
            "logprobs": None,
        }
    ],
    "usage": {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4},
}


class UpstreamStub:
    """httpx handler standing in for the inference provider."""

    def __init__(
        self,
        status_code: int = 200,
        json_body: Optional[Any] = None,
        text: Optional[str] = None,
    ) -> None:
        self.status_code = status_code
        self.json_body = SUCCESS_BODY if json_body is None else json_body
        self.text = text
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.text is not None:
            return httpx.Response(self.status_code, text=self.text)
        return httpx.Response(self.status_code, json=self.json_body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def accepted_requirements(settings: PaymentSettings) -> PaymentRequirements:
    """Requirements the gate advertises for the default $0.001 tariff."""
    return PaymentRequirements(
        scheme="exact",
        network=settings.network,
        asset=BASE_SEPOLIA_USDC,
        amount="1000",
        pay_to=settings.pay_to,
        max_timeout_seconds=settings.max_timeout_seconds,
        extra={"name": "USDC", "version": "2"},
    )


def payment_signature(settings: PaymentSettings) -> str:
    """A PAYMENT-SIGNATURE header accepting the gate's requirements.

    The signature is not real; the stub facilitator does not check it.
    """
    payload = PaymentPayload(
        accepted=accepted_requirements(settings),
        payload={"signature": "0xsig", "authorization": {"from": PAYER}},
    )
    return encode_payment_signature_header(payload)


class StubFacilitator:
    """In-process x402 facilitator for the real payment gate.

    Advertises the ``exact`` scheme on the test network and records every
    verify/settle call.
    """

    def __init__(
        self,
        network: str = DEFAULT_NETWORK,
        valid: bool = True,
        settled: bool = True,
    ) -> None:
        self.network = network
        self.valid = valid
        self.settled = settled
        self.calls: List[str] = []

    def get_supported(self) -> SupportedResponse:
        return SupportedResponse(
            kinds=[SupportedKind(x402_version=2, scheme="exact", network=self.network)]
        )

    async def verify(self, payload: Any, requirements: Any) -> VerifyResponse:
        self.calls.append("verify")
        if not self.valid:
            return VerifyResponse(is_valid=False, invalid_reason="insufficient_funds")
        return VerifyResponse(is_valid=True, payer=PAYER)

    async def settle(self, payload: Any, requirements: Any) -> SettleResponse:
        self.calls.append("settle")
        if not self.settled:
            return SettleResponse(
                success=False,
                error_reason="nonce_used",
                transaction="",
                network=requirements.network,
            )
        return SettleResponse(
            success=True,
            transaction=TX_HASH,
            network=requirements.network,
            payer=PAYER,
        )


class RecordingGate(PaymentGate):
    """Payment gate that records calls instead of talking to a facilitator.

    ``charges`` holds every (payment header, resource) the gate was asked to
    charge; ``settlements`` holds the bodies that were actually delivered.
    """

    def __init__(self, settings: PaymentSettings, header: Optional[str] = None) -> None:
        super().__init__(settings, facilitator=StubFacilitator(settings.network))
        self.header = header or encode_payment_response(
            {
                "success": True,
                "transaction": TX_HASH,
                "network": settings.network,
                "payer": PAYER,
            }
        )
        self.charges: List[Tuple[Optional[str], str]] = []
        self.settlements: List[Dict[str, Any]] = []

    async def charge(self, request: Request, deliver: Deliver) -> Response:
        self.charges.append((request.headers.get(PAYMENT_HEADER), str(request.url)))
        body = await deliver()
        self.settlements.append(body)
        return JSONResponse(content=body, headers={PAYMENT_RESPONSE_HEADER: self.header})


def make_config(**overrides: Any) -> GatewayConfig:
    values: Dict[str, Any] = {
        "api_key": "hb-test-key",
        "pay_to": PAY_TO,
        "facilitator_url": "https://facilitator.example.com",
        "base_url": "https://api.example.com/v1",
    }
    values.update(overrides)
    return GatewayConfig(**values)


@pytest.fixture()
def test_config() -> GatewayConfig:
    """Return a fully populated GatewayConfig."""
    return make_config()


@pytest.fixture()
def gate(test_config: GatewayConfig) -> RecordingGate:
    return RecordingGate(test_config.payment)


@pytest.fixture()
def facilitator() -> StubFacilitator:
    return StubFacilitator()


@pytest.fixture()
def real_gate(test_config: GatewayConfig, facilitator: StubFacilitator) -> PaymentGate:
    """The SDK-backed gate, wired to the in-process facilitator."""
    return PaymentGate(test_config.payment, facilitator=facilitator)


@pytest.fixture()
def upstream() -> UpstreamStub:
    return UpstreamStub()
