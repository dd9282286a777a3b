from __future__ import annotations
from typing import Any, Dict, Optional
from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


# ── Typed domain exceptions ───────────────────────────────────────────────────

class AppError(Exception):
    """Base for all application-level errors."""
    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, detail: str, context: Optional[Dict[str, Any]] = None):
        self.detail = detail
        self.context = context or {}
        super().__init__(detail)


class NotFoundError(AppError):
    status_code = 404
    error_code = "NOT_FOUND"


class PreconditionError(AppError):
    status_code = 409
    error_code = "PRECONDITION_FAILED"


class ValidationFailedError(AppError):
    status_code = 422
    error_code = "VALIDATION_FAILED"


class CredentialRequiredError(AppError):
    """The caller must (re-)authorize with the provider before retrying."""
    status_code = 401
    error_code = "CREDENTIAL_REQUIRED"

    def __init__(self, detail: str, authorization_url: str, context: Optional[Dict[str, Any]] = None):
        self.authorization_url = authorization_url
        super().__init__(detail, {**(context or {}), "authorization_url": authorization_url})


class OAuthStateError(AppError):
    status_code = 400
    error_code = "INVALID_OAUTH_STATE"


class AuthorizationFailedError(AppError):
    status_code = 400
    error_code = "AUTHORIZATION_FAILED"


class ConversionError(AppError):
    status_code = 502
    error_code = "CONVERSION_FAILED"


class SyncError(AppError):
    status_code = 502
    error_code = "SYNC_FAILED"


class ExportError(AppError):
    status_code = 502
    error_code = "EXPORT_FAILED"


class PersistenceError(AppError):
    status_code = 500
    error_code = "PERSISTENCE_ERROR"


class CacheError(AppError):
    status_code = 503
    error_code = "CACHE_UNAVAILABLE"


# ── Provider transport errors (never rendered directly) ──────────────────────

class ProviderError(Exception):
    def __init__(self, detail: str, status_code: Optional[int] = None):
        self.detail = detail
        self.status_code = status_code
        super().__init__(detail)


class ProviderAuthError(ProviderError):
    """The provider rejected the bearer credential (401)."""


# ── FastAPI exception handlers ────────────────────────────────────────────────

async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.error_code,
            "detail": exc.detail,
            "context": exc.context,
        },
    )


async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP_ERROR",
            "detail": exc.detail,
        },
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = ValidationFailedError(
        "Request validation failed",
        {"errors": [
            {"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]} for e in exc.errors()
        ]},
    )
    return await app_error_handler(request, error)
