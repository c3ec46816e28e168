"""Error normalization and handlers.

Every error response shares one envelope:

    {"error": {"code", "message", "request_id"}, "detail": message, ...extra}

Denials that drive an upgrade prompt (feature gate, quota, rate limit) add
their structured fields at the top level of the payload.
"""

import logging
import builtins
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from starlette.requests import Request

from snippetfactory.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.extra = dict(extra or {})
        self.headers = dict(headers or {})


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class UnauthenticatedError(AppError):
    """No identity was presented; raised before any plan lookup."""
    code = "unauthenticated"
    status_code = 401


class InvalidCredentialError(AppError):
    """Malformed, unknown or revoked API key."""
    code = "invalid_credential"
    status_code = 401


class FeatureGateError(PermissionError):
    """The principal's effective plan lacks a boolean feature."""
    code = "feature_not_available"
    status_code = 403


class QuotaExceededError(PermissionError):
    code = "quota_exceeded"
    status_code = 403


class RateLimitError(AppError):
    code = "rate_limited"
    status_code = 429


class UpstreamUnavailableError(AppError):
    """Entitlement/plan store unreachable. Always a denial, never a grant."""
    code = "upstream_unavailable"
    status_code = 503


class ConfigurationError(AppError):
    code = "config_error"
    status_code = 500


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid)
    for key, value in exc.extra.items():
        payload.setdefault(key, value)
    logger = logging.getLogger("snippetfactory")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    for name, value in exc.headers.items():
        response.headers[name] = value
    response.headers["x-request-id"] = rid
    return response


_HTTP_ERROR_CODES = {
    404: "not_found",
    405: "method_not_allowed",
}


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = _HTTP_ERROR_CODES.get(exc.status_code, "http_error")
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("snippetfactory")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    for name, value in (getattr(exc, "headers", None) or {}).items():
        response.headers[name] = value
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("snippetfactory")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response


def _describe_validation_errors(errors) -> str:
    parts = []
    for err in errors:
        location = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return "; ".join(parts) or "Invalid request"


async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies and query params map to the validation_error envelope (400)."""
    rid = _extract_request_id(request)
    message = _describe_validation_errors(exc.errors())
    payload = _error_payload(ValidationError.code, message, rid)
    logger = logging.getLogger("snippetfactory")
    logger.warning("request.invalid", extra={"request_id": rid, "error_code": ValidationError.code, "status": 400})
    response = JSONResponse(status_code=ValidationError.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response
