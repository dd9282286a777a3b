from __future__ import annotations
from datetime import datetime
from typing import List, Optional
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from formsync.models import RunStatus, SyncLog, _uuid


class SyncLogRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        questionnaire_id: str,
        sync_type: str,
        started_at: datetime,
        triggered_by: str | None = None,
    ) -> str:
        log_id = _uuid()
        self.db.add(
            SyncLog(
                id=log_id,
                questionnaire_id=questionnaire_id,
                sync_type=sync_type,
                triggered_by=triggered_by,
                sync_status=RunStatus.IN_PROGRESS.value,
                started_at=started_at,
            )
        )
        await self.db.commit()
        return log_id

    async def finish(
        self,
        log_id: str,
        status: str,
        completed_at: datetime,
        fetched: int = 0,
        new: int = 0,
        updated: int = 0,
        failed: int = 0,
        error_message: str | None = None,
    ) -> None:
        await self.db.execute(
            update(SyncLog)
            .where(SyncLog.id == log_id)
            .values(
                responses_fetched=fetched,
                responses_new=new,
                responses_updated=updated,
                responses_failed=failed,
                sync_status=status,
                error_message=error_message,
                completed_at=completed_at,
            )
        )
        await self.db.commit()

    async def get(self, log_id: str) -> Optional[SyncLog]:
        return await self.db.get(SyncLog, log_id, populate_existing=True)

    async def recent(self, questionnaire_id: str, limit: int = 10) -> List[SyncLog]:
        rows = await self.db.execute(
            select(SyncLog)
            .where(SyncLog.questionnaire_id == questionnaire_id)
            .order_by(SyncLog.started_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(rows.scalars().all())
