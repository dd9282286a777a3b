"""Delegated-credential lifecycle: absent / valid / expired.

Expiry is judged locally, without a network round trip. When a credential is
expired and carries a refresh token, one silent refresh is attempted if
``OAUTH_SILENT_REFRESH`` is enabled; every other path ends in a
``CredentialRequiredError`` carrying a fresh authorization URL.
"""
from __future__ import annotations

import asyncio
import enum
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

import google.auth.exceptions
import google.oauth2.credentials
import google_auth_oauthlib.flow
import requests
import structlog
from google.auth.transport.requests import Request as GoogleRequest
from oauthlib.oauth2.rfc6749.errors import OAuth2Error
from sqlalchemy.ext.asyncio import AsyncSession

from formsync.cache import consume_oauth_state, remember_oauth_state
from formsync.config import settings
from formsync.exceptions import AuthorizationFailedError, CredentialRequiredError, OAuthStateError
from formsync.models import OAuthCredential
from formsync.repositories.credentials import CredentialRepository
from formsync.services.provider import FormsProvider, GoogleWorkspaceProvider

log = structlog.get_logger(__name__)

# Treat tokens this close to expiry as already expired.
EXPIRY_SKEW = timedelta(seconds=60)


class CredentialState(str, enum.Enum):
    ABSENT = "absent"
    VALID = "valid"
    EXPIRED = "expired"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def credential_state(credential: Optional[OAuthCredential], now: Optional[datetime] = None) -> CredentialState:
    if credential is None or not credential.access_token:
        return CredentialState.ABSENT
    expires_at = as_utc(credential.expires_at)
    now = now or datetime.now(timezone.utc)
    if expires_at is not None and expires_at - EXPIRY_SKEW <= now:
        return CredentialState.EXPIRED
    return CredentialState.VALID


def _client_config() -> dict:
    return {
        "web": {
            "client_id": settings.GOOGLE_CLIENT_ID,
            "client_secret": settings.GOOGLE_CLIENT_SECRET,
            "auth_uri": settings.GOOGLE_AUTH_URI,
            "token_uri": settings.GOOGLE_TOKEN_URI,
            "redirect_uris": [settings.GOOGLE_REDIRECT_URI],
        }
    }


def _flow() -> google_auth_oauthlib.flow.Flow:
    flow = google_auth_oauthlib.flow.Flow.from_client_config(
        _client_config(),
        scopes=settings.GOOGLE_SCOPES,
        autogenerate_code_verifier=False,
    )
    flow.redirect_uri = settings.GOOGLE_REDIRECT_URI
    return flow


def build_authorization_url(state: str) -> str:
    authorization_url, _ = _flow().authorization_url(
        state=state,
        access_type="offline",
        include_granted_scopes="true",
        prompt="consent",  # force consent so Google issues a refresh token
    )
    return authorization_url


def exchange_code(code: str) -> google.oauth2.credentials.Credentials:
    """Blocking: trade an authorization code for tokens."""
    flow = _flow()
    flow.fetch_token(code=code)
    return flow.credentials


def refresh_access_token(refresh_token: str) -> Tuple[str, Optional[datetime]]:
    """Blocking: mint a new access token. Raises ``google.auth.exceptions.RefreshError``."""
    creds = google.oauth2.credentials.Credentials(
        token=None,
        refresh_token=refresh_token,
        token_uri=settings.GOOGLE_TOKEN_URI,
        client_id=settings.GOOGLE_CLIENT_ID,
        client_secret=settings.GOOGLE_CLIENT_SECRET,
        scopes=settings.GOOGLE_SCOPES,
    )
    creds.refresh(GoogleRequest())
    return creds.token, as_utc(creds.expiry)


class CredentialManager:
    def __init__(
        self,
        db: AsyncSession,
        provider_factory: Callable[[str], FormsProvider] = GoogleWorkspaceProvider,
    ):
        self.repo = CredentialRepository(db)
        self.provider_factory = provider_factory

    async def authorization_url(self, user_id: str) -> str:
        state = secrets.token_urlsafe(24)
        await remember_oauth_state(state, user_id)
        return build_authorization_url(state)

    async def reauthorize(self, user_id: str, reason: str) -> CredentialRequiredError:
        """Build the error a caller raises to send the user through consent."""
        log.info("credential.reauthorization_required", user_id=user_id, reason=reason)
        return CredentialRequiredError(
            f"Google authorization required: {reason}",
            authorization_url=await self.authorization_url(user_id),
        )

    async def access_token(self, user_id: str) -> str:
        credential = await self.repo.get(user_id)
        state = credential_state(credential)
        if state is CredentialState.VALID:
            return credential.access_token
        if state is CredentialState.ABSENT:
            raise await self.reauthorize(user_id, "no credential on file")

        if credential.refresh_token and settings.OAUTH_SILENT_REFRESH:
            refresh_token = credential.refresh_token
            try:
                token, expires_at = await asyncio.to_thread(refresh_access_token, refresh_token)
            except google.auth.exceptions.GoogleAuthError as exc:
                log.warning("credential.refresh.failed", user_id=user_id, error=str(exc))
            else:
                await self.repo.put(user_id, token, None, expires_at, settings.GOOGLE_SCOPES)
                log.info("credential.refreshed", user_id=user_id)
                return token
        raise await self.reauthorize(user_id, "credential expired")

    async def provider_for(self, user_id: str) -> FormsProvider:
        return self.provider_factory(await self.access_token(user_id))

    async def rejected(self, user_id: str) -> CredentialRequiredError:
        """The provider answered 401; never reuse this token."""
        await self.repo.expire(user_id, datetime.now(timezone.utc))
        return await self.reauthorize(user_id, "credential rejected by provider")

    async def complete_authorization(self, state: str, code: str) -> str:
        user_id = await consume_oauth_state(state)
        if not user_id:
            raise OAuthStateError("Unknown or expired authorization state")
        try:
            creds = await asyncio.to_thread(exchange_code, code)
        except (OAuth2Error, requests.RequestException, google.auth.exceptions.GoogleAuthError) as exc:
            log.warning("credential.exchange.failed", user_id=user_id, error=str(exc))
            raise AuthorizationFailedError(
                "Google rejected the authorization code; start authorization again"
            ) from exc
        await self.repo.put(
            user_id,
            creds.token,
            creds.refresh_token,
            as_utc(creds.expiry),
            list(creds.scopes or settings.GOOGLE_SCOPES),
        )
        log.info("credential.stored", user_id=user_id, has_refresh=bool(creds.refresh_token))
        return user_id

    async def disconnect(self, user_id: str) -> bool:
        return await self.repo.delete(user_id)
