"""Request and response models for the Hyperbolic x402 proxy."""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChatMessage(BaseModel):
    """A single message in a chat conversation."""

    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str = Field(..., min_length=1, strict=True)


class ChatCompletionRequest(BaseModel):
    """Incoming OpenAI-compatible chat completion request."""

    model_config = ConfigDict(frozen=True)

    model: str = Field(..., min_length=1, strict=True, description="Upstream model id")
    messages: List[ChatMessage] = Field(
        ..., min_length=1, description="Conversation messages"
    )
    max_tokens: Optional[int] = Field(default=None, ge=1, le=4000, strict=True)
    temperature: Optional[float] = Field(default=None, ge=0, le=2, strict=True)
    top_p: Optional[float] = Field(default=None, ge=0, le=1, strict=True)
    stream: Optional[bool] = Field(default=None, strict=True)

    @field_validator("max_tokens", mode="before")
    @classmethod
    def _integral_max_tokens(cls, value: Any) -> Any:
        """Accept JSON numbers such as 100.0 when they are whole."""
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return value

    def upstream_payload(self) -> Dict[str, Any]:
        """Body forwarded to the inference provider (unset options omitted)."""
        return self.model_dump(exclude_none=True)


class PaymentOutcome(BaseModel):
    """Decoded x402 settlement response attached to a paid request."""

    success: bool
    transaction: Optional[str] = None
    network: Optional[str] = None
    payer: Optional[str] = None


class FieldViolation(BaseModel):
    """One violated constraint of a rejected request."""

    path: str
    reason: str


class ErrorDetail(BaseModel):
    """Structured error detail."""

    type: str
    message: str
    details: Optional[List[FieldViolation]] = None


class ErrorResponse(BaseModel):
    """Error response envelope."""

    error: ErrorDetail
    request_id: Optional[str] = None
    timestamp: str
