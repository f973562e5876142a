"""Upstream client for the Hyperbolic OpenAI-compatible inference API.

Each request makes a single attempt: no retries and no application-level
timeout. Failures are classified into UpstreamError with a message that is
safe to show the caller.
"""

import json
import re
from typing import Any, Dict, Optional

import httpx

from hyperbolic_x402.config import GatewayConfig
from hyperbolic_x402.models import ChatCompletionRequest

UNAVAILABLE_MESSAGE = "The AI service is currently unavailable"
INVALID_FORMAT_MESSAGE = "Invalid response format from inference provider"

_ALLOWED_MODELS = re.compile(r"Only (.+?) allowed now")


class UpstreamError(Exception):
    """Raised when the inference provider call fails."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__("Upstream error {}: {}".format(status_code, message))


def extract_user_message(error_text: str, model: str) -> str:
    """Derive a caller-facing message from an upstream error body.

    Hyperbolic reports unsupported models as ``Only a && b allowed now``; that
    form is rewritten into a sorted list of valid model ids.

    Args:
        error_text: Raw upstream response body.
        model: The model id the caller asked for.

    Returns:
        The message to return to the caller.
    """
    try:
        data = json.loads(error_text)
    except ValueError:
        return UNAVAILABLE_MESSAGE

    message = data.get("message") if isinstance(data, dict) else None
    if not isinstance(message, str) or not message:
        return UNAVAILABLE_MESSAGE

    if "allowed now" not in message:
        return message

    match = _ALLOWED_MODELS.search(message)
    if match is None:
        return "Invalid model: {}. Please check the model name.".format(model)

    valid_models = sorted(
        name.strip() for name in match.group(1).split(" && ") if name.strip()
    )
    return 'Invalid model: "{}". Valid models are: {}'.format(
        model, ", ".join(valid_models)
    )


def _headers(api_key: Optional[str]) -> Dict[str, str]:
    return {
        "Authorization": "Bearer {}".format(api_key),
        "Content-Type": "application/json",
    }


async def call_upstream(
    config: GatewayConfig,
    request: ChatCompletionRequest,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    """Forward a validated request to the inference provider.

    Args:
        config: Gateway configuration (base URL and API key).
        request: The validated chat completion request.
        transport: Optional httpx transport, used by tests.

    Returns:
        The provider's JSON body, untouched.

    Raises:
        UpstreamError: On a non-2xx status, a malformed body, or a transport
            failure.
    """
    url = "{}/chat/completions".format(config.base_url)

    try:
        async with httpx.AsyncClient(transport=transport, timeout=None) as client:
            resp = await client.post(
                url, json=request.upstream_payload(), headers=_headers(config.api_key)
            )
    except httpx.HTTPError:
        raise UpstreamError(502, UNAVAILABLE_MESSAGE)

    if not resp.is_success:
        raise UpstreamError(
            resp.status_code, extract_user_message(resp.text, request.model)
        )

    try:
        data = resp.json()
    except ValueError:
        raise UpstreamError(502, INVALID_FORMAT_MESSAGE)

    # The body is relayed as-is; only the choices list is required.
    if not isinstance(data, dict) or not isinstance(data.get("choices"), list):
        raise UpstreamError(502, INVALID_FORMAT_MESSAGE)

    return data


async def check_upstream(
    config: GatewayConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    """Confirm the provider is reachable by listing its models.

    Raises:
        UpstreamError: If the listing call fails.
    """
    url = "{}/models".format(config.base_url)
    try:
        async with httpx.AsyncClient(transport=transport, timeout=None) as client:
            resp = await client.get(url, headers=_headers(config.api_key))
    except httpx.HTTPError as exc:
        raise UpstreamError(502, "Hyperbolic API unreachable: {}".format(exc))

    if not resp.is_success:
        raise UpstreamError(
            resp.status_code,
            "Hyperbolic API check failed: {}".format(resp.status_code),
        )
