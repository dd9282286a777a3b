from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from formsync.database import upsert_insert
from formsync.models import QuestionnaireResponse, ResponseSyncStatus, _uuid


class ResponseRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def exists(self, questionnaire_id: str, external_response_id: str) -> bool:
        row = await self.db.execute(
            select(QuestionnaireResponse.id).where(
                QuestionnaireResponse.questionnaire_id == questionnaire_id,
                QuestionnaireResponse.external_response_id == external_response_id,
            )
        )
        return row.first() is not None

    async def upsert(
        self,
        questionnaire_id: str,
        external_response_id: str,
        answers: Dict[str, Any],
        raw_payload: dict,
        synced_at: datetime,
        submitted_at: Optional[datetime] = None,
        respondent_email: Optional[str] = None,
    ) -> None:
        """
        Insert-or-update on the (questionnaire, external response id) key.
        Re-running with identical input rewrites identical values; only
        ``synced_at`` moves.
        """
        stmt = upsert_insert(self.db, QuestionnaireResponse).values(
            id=_uuid(),
            questionnaire_id=questionnaire_id,
            external_response_id=external_response_id,
            respondent_email=respondent_email,
            answers=answers,
            raw_payload=raw_payload,
            submitted_at=submitted_at,
            synced_at=synced_at,
            sync_status=ResponseSyncStatus.SYNCED.value,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["questionnaire_id", "external_response_id"],
            set_={
                "respondent_email": stmt.excluded.respondent_email,
                "answers": stmt.excluded.answers,
                "raw_payload": stmt.excluded.raw_payload,
                "submitted_at": stmt.excluded.submitted_at,
                "synced_at": stmt.excluded.synced_at,
                "sync_status": stmt.excluded.sync_status,
            },
        )
        await self.db.execute(stmt)

    async def for_questionnaire(self, questionnaire_id: str) -> List[QuestionnaireResponse]:
        rows = await self.db.execute(
            select(QuestionnaireResponse)
            .where(QuestionnaireResponse.questionnaire_id == questionnaire_id)
            .order_by(
                QuestionnaireResponse.submitted_at.asc(),
                QuestionnaireResponse.created_at.asc(),
            )
            # Upserts bypass the identity map; reload what is cached.
            .execution_options(populate_existing=True)
        )
        return list(rows.scalars().all())

    async def stats(self, questionnaire_id: str) -> dict:
        row = await self.db.execute(
            select(
                func.count(QuestionnaireResponse.id).label("total_responses"),
                func.count(
                    case((QuestionnaireResponse.sync_status == ResponseSyncStatus.SYNCED.value, 1))
                ).label("synced_responses"),
                func.count(
                    case((QuestionnaireResponse.sync_status == ResponseSyncStatus.FAILED.value, 1))
                ).label("failed_responses"),
                func.max(QuestionnaireResponse.synced_at).label("last_synced_at"),
                func.min(QuestionnaireResponse.submitted_at).label("first_response_at"),
                func.max(QuestionnaireResponse.submitted_at).label("latest_response_at"),
            ).where(QuestionnaireResponse.questionnaire_id == questionnaire_id)
        )
        return row.one()._asdict()

    async def delete_for_questionnaire(self, questionnaire_id: str) -> int:
        """Remove stored responses; sync logs are audit artifacts and stay."""
        result = await self.db.execute(
            delete(QuestionnaireResponse).where(
                QuestionnaireResponse.questionnaire_id == questionnaire_id
            )
        )
        await self.db.commit()
        return result.rowcount
