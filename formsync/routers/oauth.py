from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from formsync.auth import CallerContext, get_caller, require_api_key
from formsync.database import get_db
from formsync.exceptions import NotFoundError
from formsync.repositories.credentials import CredentialRepository
from formsync.routers.questionnaires import get_credentials
from formsync.schemas import AuthorizationOut, CredentialOut
from formsync.services.credentials import CredentialManager

router = APIRouter(prefix="/oauth/google", tags=["oauth"])


@router.get("/authorize", response_model=AuthorizationOut, dependencies=[Depends(require_api_key)])
async def authorize(
    caller: CallerContext = Depends(get_caller),
    credentials: CredentialManager = Depends(get_credentials),
):
    return AuthorizationOut(authorization_url=await credentials.authorization_url(caller.user_id))


@router.get("/callback", response_model=CredentialOut)
async def callback(
    state: str = Query(...),
    code: str = Query(...),
    db: AsyncSession = Depends(get_db),
    credentials: CredentialManager = Depends(get_credentials),
):
    """Google redirects the browser here; the state nonce identifies the user."""
    user_id = await credentials.complete_authorization(state, code)
    stored = await CredentialRepository(db).get(user_id)
    return CredentialOut(
        user_id=user_id,
        expires_at=stored.expires_at,
        has_refresh_token=bool(stored.refresh_token),
    )


@router.delete("", status_code=204, dependencies=[Depends(require_api_key)])
async def disconnect(
    caller: CallerContext = Depends(get_caller),
    credentials: CredentialManager = Depends(get_credentials),
):
    if not await credentials.disconnect(caller.user_id):
        raise NotFoundError("No Google credential on file")
