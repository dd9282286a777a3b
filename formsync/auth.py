from __future__ import annotations
import hmac
from dataclasses import dataclass
from fastapi import Request, Security
from fastapi.security import APIKeyHeader
from formsync.config import settings
from formsync.exceptions import AppError


class AuthenticationError(AppError):
    status_code = 401
    error_code = "UNAUTHORIZED"


@dataclass(frozen=True)
class CallerContext:
    """Identity of the internal user an operation runs on behalf of.

    Sessions are issued upstream; this service only trusts the gateway's
    user header on requests that also carry the service API key.
    """
    user_id: str


_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_key(
    api_key: str | None = Security(_api_key_header),
) -> str:
    if not api_key or not hmac.compare_digest(api_key, settings.API_KEY):
        raise AuthenticationError("Invalid or missing API key")
    return api_key


async def get_caller(request: Request) -> CallerContext:
    user_id = (request.headers.get(settings.USER_ID_HEADER) or "").strip()
    if not user_id:
        raise AuthenticationError(f"Missing {settings.USER_ID_HEADER} header")
    return CallerContext(user_id=user_id)
