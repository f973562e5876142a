"""FastAPI application for the Hyperbolic x402 proxy.

Provides an OpenAI-compatible /v1/chat/completions endpoint that forwards
requests to Hyperbolic and charges a fixed x402 micropayment per call.

Pay-after-success ordering:
1. Validate the request before any network call
2. Call the inference provider
3. Charge the caller only once the provider has answered successfully
4. Return the provider's body untouched, with the settlement in a header

A caller is never charged for an invalid request or a failed inference call.
"""

import logging
import os
import time
import uuid
from typing import Any, Dict, List, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from hyperbolic_x402.config import ConfigurationError, GatewayConfig, load_config
from hyperbolic_x402.models import ErrorDetail, ErrorResponse, FieldViolation
from hyperbolic_x402.payment import (
    CHAT_COMPLETIONS_PATH,
    LEGACY_PAYMENT_RESPONSE_HEADER,
    PAYMENT_REQUIRED_HEADER,
    PAYMENT_RESPONSE_HEADER,
    PaymentDecodeError,
    PaymentGate,
    decode_payment_response,
    settlement_header,
)
from hyperbolic_x402.provider import UpstreamError, call_upstream, check_upstream
from hyperbolic_x402.telemetry import log_event, setup_logging, utc_timestamp
from hyperbolic_x402.validation import (
    PayloadTooLarge,
    RequestValidationError,
    parse_json_body,
    validate_chat_request,
)

VERSION = "1.0.0"
REQUEST_ID_HEADER = "X-Request-ID"
PUBLIC_DIR = "public"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "X-DNS-Prefetch-Control": "off",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
}


def _error_response(
    status: int,
    error_type: str,
    message: str,
    request_id: Optional[str] = None,
    details: Optional[List[FieldViolation]] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body = ErrorResponse(
        error=ErrorDetail(type=error_type, message=message, details=details),
        request_id=request_id,
        timestamp=utc_timestamp(),
    )
    headers = {REQUEST_ID_HEADER: request_id} if request_id else None
    return JSONResponse(
        status_code=status,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )


def _log_payment(
    payment_response: Optional[str],
    request_id: str,
    model: str,
    body: Dict[str, Any],
) -> None:
    """Log the settlement for a paid request. Never fails the request."""
    usage = body.get("usage") or {}
    tokens = usage.get("total_tokens") if isinstance(usage, dict) else None

    if not payment_response:
        log_event(
            "payment_processed",
            success=False,
            error="No payment header found",
            request_id=request_id,
            model=model,
            tokens=tokens,
        )
        return

    try:
        outcome = decode_payment_response(payment_response)
    except PaymentDecodeError as exc:
        log_event(
            "payment_decode_failed",
            level=logging.WARNING,
            request_id=request_id,
            error=str(exc),
        )
        log_event(
            "payment_processed",
            success=False,
            error="Failed to decode payment response",
            request_id=request_id,
            model=model,
            tokens=tokens,
        )
        return

    log_event("payment_processed", **outcome.model_dump())
    log_event("request_context", request_id=request_id, model=model, tokens=tokens)


def create_app(
    config: Optional[GatewayConfig] = None,
    *,
    payment_gate: Optional[PaymentGate] = None,
    upstream_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the proxy application.

    Args:
        config: Gateway configuration. Loaded from the environment if omitted.
        payment_gate: Gate to charge callers with. Built from ``config`` on
            the first paid request if omitted.
        upstream_transport: Optional httpx transport for provider calls.

    Returns:
        The configured FastAPI application.
    """
    cfg = config if config is not None else load_config()
    setup_logging(cfg.log_level)
    started_at = time.monotonic()

    application = FastAPI(title="Hyperbolic x402 API", version=VERSION)
    application.state.config = cfg
    application.state.payment_gate = payment_gate

    application.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[
            PAYMENT_REQUIRED_HEADER,
            PAYMENT_RESPONSE_HEADER,
            LEGACY_PAYMENT_RESPONSE_HEADER,
            REQUEST_ID_HEADER,
        ],
    )

    @application.middleware("http")
    async def security_headers(request: Request, call_next: Any) -> Response:
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    @application.middleware("http")
    async def log_responses(request: Request, call_next: Any) -> Response:
        start = time.perf_counter()
        response = await call_next(request)
        status = response.status_code
        if status >= 400 or CHAT_COMPLETIONS_PATH in request.url.path:
            if status >= 500:
                level = logging.ERROR
            elif status >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            log_event(
                "http_response",
                level=level,
                method=request.method,
                path=request.url.path,
                status_code=status,
                duration_ms=round((time.perf_counter() - start) * 1000, 1),
            )
        return response

    if os.path.isdir(PUBLIC_DIR):
        application.mount("/static", StaticFiles(directory=PUBLIC_DIR), name="static")

    @application.get("/", response_class=PlainTextResponse)
    async def root() -> str:
        return "Welcome to the Hyperbolic x402 API"

    @application.get("/favicon.ico", include_in_schema=False)
    @application.get("/favicon.png", include_in_schema=False)
    async def favicon() -> Response:
        return Response(status_code=204)

    @application.get("/health")
    async def health() -> Dict[str, Any]:
        """Liveness only; no external checks."""
        return {
            "status": "healthy",
            "timestamp": utc_timestamp(),
            "uptime": round(time.monotonic() - started_at, 3),
            "version": VERSION,
        }

    @application.get("/ready")
    async def ready() -> JSONResponse:
        """Readiness: configuration present and the provider reachable."""
        missing = cfg.missing_settings()
        if missing:
            return JSONResponse(
                status_code=503,
                content={
                    "status": "not ready",
                    "error": "Missing environment variables: {}".format(
                        ", ".join(missing)
                    ),
                    "timestamp": utc_timestamp(),
                },
            )

        try:
            await check_upstream(cfg, transport=upstream_transport)
        except UpstreamError as exc:
            log_event("readiness_failed", level=logging.ERROR, error=exc.message)
            return JSONResponse(
                status_code=503,
                content={
                    "status": "not ready",
                    "error": exc.message,
                    "timestamp": utc_timestamp(),
                },
            )

        return JSONResponse(
            status_code=200,
            content={
                "status": "ready",
                "timestamp": utc_timestamp(),
                "services": {"hyperbolic": "healthy"},
            },
        )

    @application.post(CHAT_COMPLETIONS_PATH, response_model=None)
    async def chat_completions(request: Request) -> Response:
        """Handle a paid chat completion request.

        Request flow:
        1. Resolve the correlation id (required header or generated)
        2. Check configuration, then validate the body
        3. Call the provider, then run the payment gate over its body
           (before_upstream: the gate verifies first and calls the provider
           itself)
        4. Settle only after provider success
        5. Return the provider body with PAYMENT-RESPONSE
        """
        request_id = request.headers.get(REQUEST_ID_HEADER)
        if not request_id:
            if cfg.request_id_mode == "require":
                log_event(
                    "validation_error",
                    level=logging.WARNING,
                    error="X-Request-ID header is required",
                )
                return _error_response(
                    400, "validation_error", "X-Request-ID header is required"
                )
            request_id = str(uuid.uuid4())

        body: Optional[Dict[str, Any]] = None

        try:
            cfg.require_complete()

            chat = validate_chat_request(parse_json_body(await request.body()))

            if application.state.payment_gate is None:
                application.state.payment_gate = PaymentGate(cfg.payment)
            gate = application.state.payment_gate

            if cfg.payment_order == "after_success":
                body = await call_upstream(cfg, chat, transport=upstream_transport)

            async def deliver() -> Dict[str, Any]:
                nonlocal body
                if body is None:
                    body = await call_upstream(cfg, chat, transport=upstream_transport)
                return body

            response = await gate.charge(request, deliver)

        except ConfigurationError as exc:
            log_event(
                "configuration_error",
                level=logging.ERROR,
                request_id=request_id,
                missing=exc.missing,
            )
            return _error_response(500, "configuration_error", str(exc), request_id)
        except PayloadTooLarge as exc:
            return _error_response(413, "payload_too_large", str(exc), request_id)
        except RequestValidationError as exc:
            log_event("validation_error", level=logging.WARNING, request_id=request_id)
            return _error_response(
                400, "validation_error", exc.message, request_id, details=exc.details
            )
        except UpstreamError as exc:
            log_event(
                "upstream_error",
                level=logging.ERROR,
                request_id=request_id,
                status_code=exc.status_code,
                error=exc.message,
            )
            return _error_response(
                exc.status_code, "upstream_error", exc.message, request_id
            )
        except Exception as exc:
            log_event(
                "chat_completion_error",
                level=logging.ERROR,
                request_id=request_id,
                error=str(exc),
            )
            return _error_response(
                500, "internal_error", "An unexpected error occurred", request_id
            )

        response.headers[REQUEST_ID_HEADER] = request_id

        if response.status_code >= 400 or body is None:
            log_event(
                "payment_required" if response.status_code == 402 else "payment_error",
                level=logging.INFO if response.status_code == 402 else logging.ERROR,
                request_id=request_id,
                status_code=response.status_code,
            )
            return response

        _log_payment(settlement_header(response), request_id, chat.model, body)
        return response

    @application.post("/v1/transaction-log")
    async def transaction_log(request: Request) -> JSONResponse:
        """Record an out-of-band payment confirmation against a request id."""
        request_id = request.headers.get(REQUEST_ID_HEADER)
        if not request_id:
            return _error_response(
                400, "validation_error", "X-Request-ID header is required"
            )

        outcome = None
        payment_response = settlement_header(request)
        if payment_response:
            try:
                outcome = decode_payment_response(payment_response)
            except PaymentDecodeError as exc:
                log_event(
                    "payment_decode_failed",
                    level=logging.WARNING,
                    request_id=request_id,
                    error=str(exc),
                )

        log_event(
            "transaction_logged",
            request_id=request_id,
            payment=outcome.model_dump() if outcome else None,
        )
        return JSONResponse(
            status_code=200,
            content={
                "status": "logged",
                "request_id": request_id,
                "payment": outcome.model_dump() if outcome else None,
                "timestamp": utc_timestamp(),
            },
            headers={REQUEST_ID_HEADER: request_id},
        )

    @application.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        """Convert routing errors into our error envelope format."""
        if exc.status_code == 404:
            return _error_response(
                404, "not_found", "Route {} not found".format(request.url.path)
            )
        return _error_response(exc.status_code, "http_error", str(exc.detail))

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        log_event(
            "unhandled_error",
            level=logging.ERROR,
            method=request.method,
            path=request.url.path,
            error=str(exc),
        )
        return _error_response(500, "internal_error", "An unexpected error occurred")

    return application

