"""Request validation for the chat-completions endpoint.

Validation is all-or-nothing: a body either becomes a ChatCompletionRequest or
is rejected with every violated constraint listed.
"""

import json
from typing import Any, List, Optional

from pydantic import ValidationError

from hyperbolic_x402.models import ChatCompletionRequest, FieldViolation

MAX_BODY_BYTES = 10 * 1024 * 1024


class RequestValidationError(Exception):
    """Raised when a request body violates the chat-completion schema."""

    def __init__(
        self, message: str, details: Optional[List[FieldViolation]] = None
    ) -> None:
        self.message = message
        self.details = details or []
        super().__init__(message)


class PayloadTooLarge(Exception):
    """Raised when a request body exceeds MAX_BODY_BYTES."""


def _violations(exc: ValidationError) -> List[FieldViolation]:
    violations = []
    for err in exc.errors():
        path = ".".join(str(part) for part in err["loc"]) or "body"
        violations.append(FieldViolation(path=path, reason=err["msg"]))
    return violations


def parse_json_body(raw: bytes) -> Any:
    """Decode a raw request body as JSON.

    Raises:
        PayloadTooLarge: If the body exceeds MAX_BODY_BYTES.
        RequestValidationError: If the body is empty or not valid JSON.
    """
    if len(raw) > MAX_BODY_BYTES:
        raise PayloadTooLarge("Request body exceeds {} bytes".format(MAX_BODY_BYTES))
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, ValueError):
        raise RequestValidationError(
            "Invalid request format",
            [FieldViolation(path="body", reason="Request body must be valid JSON")],
        )


def validate_chat_request(payload: Any) -> ChatCompletionRequest:
    """Turn a parsed JSON body into a ChatCompletionRequest.

    An already validated request is returned as-is.

    Raises:
        RequestValidationError: Listing every violated constraint.
    """
    try:
        return ChatCompletionRequest.model_validate(payload)
    except ValidationError as exc:
        raise RequestValidationError("Invalid request format", _violations(exc))
