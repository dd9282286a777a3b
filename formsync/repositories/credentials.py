from __future__ import annotations
from datetime import datetime
from typing import List, Optional
from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession
from formsync.database import upsert_insert
from formsync.models import OAuthCredential


class CredentialRepository:
    """One delegated credential row per internal user."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, user_id: str) -> Optional[OAuthCredential]:
        return await self.db.get(OAuthCredential, user_id, populate_existing=True)

    async def put(
        self,
        user_id: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[datetime],
        scopes: Optional[List[str]] = None,
    ) -> None:
        values = {
            "access_token": access_token,
            "expires_at": expires_at,
            "scopes": scopes,
        }
        # A refresh response usually omits the refresh token; keep the stored one.
        if refresh_token:
            values["refresh_token"] = refresh_token
        stmt = upsert_insert(self.db, OAuthCredential).values(user_id=user_id, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id"],
            set_={key: getattr(stmt.excluded, key) for key in values},
        )
        await self.db.execute(stmt)
        await self.db.commit()

    async def expire(self, user_id: str, at: datetime) -> None:
        await self.db.execute(
            update(OAuthCredential)
            .where(OAuthCredential.user_id == user_id)
            .values(expires_at=at)
        )
        await self.db.commit()

    async def delete(self, user_id: str) -> bool:
        result = await self.db.execute(
            delete(OAuthCredential).where(OAuthCredential.user_id == user_id)
        )
        await self.db.commit()
        return result.rowcount > 0
