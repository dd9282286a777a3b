from __future__ import annotations
from datetime import datetime
from typing import Dict, List, Optional

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from formsync.exceptions import PersistenceError
from formsync.models import (
    Question, Questionnaire, QuestionnaireResponse, SyncLog, _uuid,
)
from formsync.schemas import QuestionIn, QuestionnaireCreate

log = structlog.get_logger(__name__)


class QuestionnaireRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    def _question_row(self, questionnaire_id: str, position: int, data: QuestionIn) -> Question:
        return Question(
            questionnaire_id=questionnaire_id,
            question_text=data.question_text,
            question_type=data.question_type.value,
            options=data.options,
            is_required=data.is_required,
            position=position,
        )

    async def create(self, data: QuestionnaireCreate, created_by: str) -> Questionnaire:
        """
        Insert a questionnaire and all of its questions as one unit.
        Positions come from the explicit indices when given, else list order.
        Any storage failure rolls back everything written so far.
        """
        ordered = sorted(
            enumerate(data.questions),
            key=lambda pair: pair[1].position if pair[1].position is not None else pair[0],
        )
        questionnaire_id = _uuid()
        try:
            self.db.add(
                Questionnaire(
                    id=questionnaire_id,
                    title=data.title,
                    description=data.description,
                    purpose=data.purpose.value,
                    is_anonymous=data.is_anonymous,
                    is_template=data.is_template,
                    created_by=created_by,
                )
            )
            await self.db.flush()
            for position, (_, question) in enumerate(ordered):
                self.db.add(self._question_row(questionnaire_id, position, question))
                await self.db.flush()
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            log.error("questionnaire.create.failed", error=str(exc))
            raise PersistenceError("Questionnaire could not be created") from exc

        log.info("questionnaire.created", questionnaire_id=questionnaire_id, questions=len(ordered))
        return await self.get(questionnaire_id, with_questions=True)

    async def get(self, questionnaire_id: str, with_questions: bool = False) -> Optional[Questionnaire]:
        q = (
            select(Questionnaire)
            .where(Questionnaire.id == questionnaire_id)
            .execution_options(populate_existing=True)
        )
        if with_questions:
            q = q.options(selectinload(Questionnaire.questions))
        return (await self.db.execute(q)).scalar_one_or_none()

    async def list_all(self, created_by: Optional[str] = None, limit: int = 100) -> List[Questionnaire]:
        q = select(Questionnaire).order_by(Questionnaire.created_at.desc()).limit(limit)
        if created_by:
            q = q.where(Questionnaire.created_by == created_by)
        return list((await self.db.execute(q)).scalars().all())

    async def questions(self, questionnaire_id: str) -> List[Question]:
        rows = await self.db.execute(
            select(Question)
            .where(Question.questionnaire_id == questionnaire_id)
            .order_by(Question.position)
        )
        return list(rows.scalars().all())

    async def set_external_form(
        self,
        questionnaire_id: str,
        form_id: str,
        form_url: str,
        question_ids: Dict[str, str],
    ) -> None:
        """Record the provider form and the provider question id per question."""
        await self.db.execute(
            update(Questionnaire)
            .where(Questionnaire.id == questionnaire_id)
            .values(external_form_id=form_id, external_form_url=form_url)
        )
        for question_id, external_id in question_ids.items():
            await self.db.execute(
                update(Question)
                .where(Question.id == question_id)
                .values(external_question_id=external_id)
            )
        await self.db.commit()

    async def set_external_sheet(self, questionnaire_id: str, sheet_id: str, sheet_url: str) -> None:
        await self.db.execute(
            update(Questionnaire)
            .where(Questionnaire.id == questionnaire_id)
            .values(external_sheet_id=sheet_id, external_sheet_url=sheet_url)
        )
        await self.db.commit()

    async def record_sync(self, questionnaire_id: str, total_responses: int, synced_at: datetime) -> None:
        await self.db.execute(
            update(Questionnaire)
            .where(Questionnaire.id == questionnaire_id)
            .values(total_responses=total_responses, last_synced_at=synced_at)
        )
        await self.db.commit()

    async def delete(self, questionnaire_id: str) -> bool:
        """Delete the questionnaire with its questions, responses and sync logs."""
        try:
            for model in (QuestionnaireResponse, SyncLog, Question):
                await self.db.execute(
                    delete(model).where(model.questionnaire_id == questionnaire_id)
                )
            result = await self.db.execute(
                delete(Questionnaire).where(Questionnaire.id == questionnaire_id)
            )
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            log.error("questionnaire.delete.failed", questionnaire_id=questionnaire_id, error=str(exc))
            raise PersistenceError("Questionnaire could not be deleted") from exc
        return result.rowcount > 0
