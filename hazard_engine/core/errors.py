"""
Centralised error handling: exception hierarchy + FastAPI handlers.

Every failure the engine can observe has its own exception class carrying an
``ErrorKind``. Provider clients raise them, the aggregation engine captures
them per branch (they never abort a whole assessment) and the Health Monitor
counts them by kind. Only total data unavailability escapes the engine, as
``NoDataError``.

    Transient (retried by the provider client with backoff)
        NetworkError, ServerError, RemoteRateLimitError, ProviderTimeoutError

    Terminal (raised immediately)
        RateLimitExceeded, AuthenticationError, InvalidParameterError,
        NoDataError, ResponseFormatError

Usage:
    from hazard_engine.core.errors import NoDataError, register_error_handlers

    raise NoDataError("No hazard data for location", provider="gov_index")
"""

from __future__ import annotations

import logging
import traceback
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from hazard_engine.core.config import settings

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Failure categories, also used as Health Monitor counter keys."""
    NETWORK_ERROR = "network_error"
    SERVER_ERROR = "server_error"
    REMOTE_RATE_LIMITED = "remote_rate_limited"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    AUTHENTICATION_ERROR = "authentication_error"
    INVALID_PARAMETER = "invalid_parameter"
    NO_DATA = "no_data"
    TIMEOUT = "timeout"
    INVALID_RESPONSE = "invalid_response"


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class HazardEngineError(Exception):
    """Base exception for all engine errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class ValidationError(HazardEngineError):
    """Engine input validation failed (422)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class ProviderError(HazardEngineError):
    """
    A provider call did not produce usable data.

    Subclasses pin ``kind`` and ``retryable``; ``provider`` and ``operation``
    identify the branch, ``http_status`` is the remote status when there was
    one.
    """

    kind: ErrorKind = ErrorKind.SERVER_ERROR
    retryable: bool = False
    default_status: int = 502

    def __init__(
        self,
        message: str = "",
        *,
        provider: Optional[str] = None,
        operation: Optional[str] = None,
        http_status: Optional[int] = None,
        **details: Any,
    ):
        self.provider = provider
        self.operation = operation
        self.http_status = http_status
        d: Dict[str, Any] = {"kind": self.kind.value}
        if provider:
            d["provider"] = provider
        if operation:
            d["operation"] = operation
        if http_status is not None:
            d["http_status"] = http_status
        d.update(details)
        prefix = f"[{provider}] " if provider else ""
        super().__init__(
            message=f"{prefix}{message or self.kind.value}",
            status_code=self.default_status,
            error_code=self.kind.value.upper(),
            details=d,
        )


class NetworkError(ProviderError):
    """Connection refused, DNS failure, reset mid-response."""
    kind = ErrorKind.NETWORK_ERROR
    retryable = True


class ServerError(ProviderError):
    """Remote answered 5xx."""
    kind = ErrorKind.SERVER_ERROR
    retryable = True


class RemoteRateLimitError(ProviderError):
    """Remote answered 429; honoured via Retry-After when present."""
    kind = ErrorKind.REMOTE_RATE_LIMITED
    retryable = True

    def __init__(self, message: str = "", *, retry_after: Optional[float] = None, **kwargs: Any):
        self.retry_after = retry_after
        super().__init__(message, retry_after_seconds=retry_after, **kwargs)


class ProviderTimeoutError(ProviderError):
    """A single attempt or a whole branch exceeded its deadline."""
    kind = ErrorKind.TIMEOUT
    retryable = True
    default_status = 504


class RateLimitExceeded(ProviderError):
    """No local rate-limit token became available within the allowed wait."""
    kind = ErrorKind.RATE_LIMIT_EXCEEDED
    default_status = 429

    def __init__(self, message: str = "", *, retry_after: float = 0.0, **kwargs: Any):
        self.retry_after = retry_after
        super().__init__(
            message or "Rate limit exceeded",
            retry_after_seconds=round(retry_after, 3),
            **kwargs,
        )


class AuthenticationError(ProviderError):
    """Provider rejected or is missing credentials."""
    kind = ErrorKind.AUTHENTICATION_ERROR


class InvalidParameterError(ProviderError):
    """Provider rejected the request parameters (4xx)."""
    kind = ErrorKind.INVALID_PARAMETER


class NoDataError(ProviderError):
    """
    Provider answered but has nothing for this location.

    Raised without a provider by the aggregation engine when no hazard at all
    could be scored.
    """
    kind = ErrorKind.NO_DATA
    default_status = 404


class ResponseFormatError(ProviderError):
    """Provider answered with a body that could not be parsed."""
    kind = ErrorKind.INVALID_RESPONSE


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    # Include request path in non-production
    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body, headers=headers)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(HazardEngineError)
    async def handle_engine_error(request: Request, exc: HazardEngineError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        headers = None
        if isinstance(exc, RateLimitExceeded) and exc.retry_after:
            headers = {"Retry-After": str(max(1, int(round(exc.retry_after))))}
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request, headers,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError: %s", exc)
        return _build_error_response(
            422, "VALIDATION_ERROR", str(exc), request=request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        details = (
            {"traceback": traceback.format_exc().split("\n")}
            if settings.DEBUG else None
        )
        return _build_error_response(
            500, "INTERNAL_ERROR", message, details, request,
        )
