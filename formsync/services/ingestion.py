"""Response ingestion: provider response set → local response store.

Every run is wrapped by ``SyncLogRecorder.run``. Items are upserted and
committed one at a time on the (questionnaire, external response id) key, so a
bad item is counted and skipped without undoing the ones before it.

New vs updated is decided by an existence check before the upsert. Two runs
racing on the same questionnaire can both see "absent" and both count "new"
while the unique constraint keeps a single row; tallies of interleaved runs
are therefore per-run views, not a global truth.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from formsync.auth import CallerContext
from formsync.config import settings
from formsync.exceptions import (
    NotFoundError, PreconditionError, ProviderAuthError, ProviderError, SyncError,
)
from formsync.models import RunType
from formsync.repositories.questionnaires import QuestionnaireRepository
from formsync.repositories.responses import ResponseRepository
from formsync.repositories.sync_logs import SyncLogRepository
from formsync.schemas import SyncLogOut, SyncResult, SyncStatus
from formsync.services.credentials import CredentialManager
from formsync.services.sync_log import SyncLogRecorder

log = structlog.get_logger(__name__)


class NormalizationError(ValueError):
    pass


def _entries(container: Any) -> Optional[list]:
    if container is None:
        return []
    if not isinstance(container, dict):
        return None
    entries = container.get("answers")
    return entries if isinstance(entries, list) else None


def _answer_value(question_id: str, answer: Any) -> Any:
    if not isinstance(answer, dict):
        raise NormalizationError(f"answer for {question_id} is not an object")
    if "textAnswers" in answer:
        entries = _entries(answer["textAnswers"])
        if entries is None:
            raise NormalizationError(f"malformed text answers for {question_id}")
        values = [e.get("value") for e in entries if isinstance(e, dict)]
        return values[0] if len(values) == 1 else values
    if "fileUploadAnswers" in answer:
        entries = _entries(answer["fileUploadAnswers"])
        if entries is None:
            raise NormalizationError(f"malformed file upload answers for {question_id}")
        return [e.get("fileId") for e in entries if isinstance(e, dict)]
    # Grades and other answer kinds carry no respondent value.
    return None


def normalize_answers(raw_answers: Any, question_ids: Dict[str, str]) -> Dict[str, Any]:
    """
    Collapse provider answers into ``{internal question id: value}``.

    One text value becomes a scalar, several stay a list; file uploads become
    their file id list. Provider question ids without an internal question
    (items added directly on the provider) keep the provider id as key.
    """
    if raw_answers is None:
        return {}
    if not isinstance(raw_answers, dict):
        raise NormalizationError("answers is not an object")
    normalized: Dict[str, Any] = {}
    for external_id, answer in raw_answers.items():
        value = _answer_value(external_id, answer)
        if value is None:
            continue
        normalized[question_ids.get(external_id, external_id)] = value
    return normalized


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if not isinstance(value, str):
        raise NormalizationError(f"bad timestamp {value!r}")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise NormalizationError(f"bad timestamp {value!r}") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


async def sync_responses(
    db: AsyncSession,
    questionnaire_id: str,
    caller: CallerContext,
    credentials: CredentialManager,
    run_type: RunType = RunType.MANUAL,
) -> SyncResult:
    questionnaires = QuestionnaireRepository(db)
    responses = ResponseRepository(db)

    questionnaire = await questionnaires.get(questionnaire_id)
    if not questionnaire:
        raise NotFoundError(f"Questionnaire {questionnaire_id} not found")
    form_id = questionnaire.external_form_id
    question_ids = {
        q.external_question_id: q.id
        for q in await questionnaires.questions(questionnaire_id)
        if q.external_question_id
    }

    recorder = SyncLogRecorder(db)
    async with recorder.run(
        questionnaire_id, run_type, caller.user_id, settings.SYNC_ERROR_SUMMARY_ITEMS
    ) as tally:
        if not form_id:
            raise PreconditionError("Questionnaire has not been converted to an external form")

        provider = await credentials.provider_for(caller.user_id)
        try:
            fetched = await provider.list_responses(form_id)
        except ProviderAuthError as exc:
            raise await credentials.rejected(caller.user_id) from exc
        except ProviderError as exc:
            raise SyncError(f"Could not fetch responses: {exc.detail}") from exc

        tally.fetched = len(fetched)
        for index, item in enumerate(fetched):
            external_id = item.get("responseId") if isinstance(item, dict) else None
            label = external_id if isinstance(external_id, str) and external_id else f"#{index + 1}"
            try:
                if not external_id or not isinstance(external_id, str):
                    raise NormalizationError("missing responseId")
                email = item.get("respondentEmail")
                if email is not None and not isinstance(email, str):
                    raise NormalizationError("respondentEmail is not a string")
                answers = normalize_answers(item.get("answers"), question_ids)
                submitted_at = parse_timestamp(item.get("lastSubmittedTime") or item.get("createTime"))

                existed = await responses.exists(questionnaire_id, external_id)
                await responses.upsert(
                    questionnaire_id,
                    external_id,
                    answers=answers,
                    raw_payload=item,
                    synced_at=datetime.now(timezone.utc),
                    submitted_at=submitted_at,
                    respondent_email=email,
                )
                await db.commit()
            except NormalizationError as exc:
                tally.failed += 1
                tally.errors.append(f"{label}: {exc}")
                log.warning("sync.item.invalid", questionnaire_id=questionnaire_id,
                            response_id=label, error=str(exc))
                continue
            except SQLAlchemyError as exc:
                await db.rollback()
                tally.failed += 1
                tally.errors.append(f"{label}: storage error")
                log.error("sync.item.store_failed", questionnaire_id=questionnaire_id,
                          response_id=label, error=str(exc))
                continue

            if existed:
                tally.updated += 1
            else:
                tally.new += 1

        # Count what the provider holds, so provider-side deletions show up.
        await questionnaires.record_sync(questionnaire_id, tally.fetched, datetime.now(timezone.utc))

    log.info("sync.completed", questionnaire_id=questionnaire_id, status=tally.status.value,
             fetched=tally.fetched, new=tally.new, updated=tally.updated, failed=tally.failed)
    return SyncResult(
        sync_log_id=tally.log_id,
        fetched=tally.fetched,
        new=tally.new,
        updated=tally.updated,
        failed=tally.failed,
        status=tally.status,
    )


async def get_sync_status(db: AsyncSession, questionnaire_id: str) -> SyncStatus:
    questionnaire = await QuestionnaireRepository(db).get(questionnaire_id)
    if not questionnaire:
        raise NotFoundError(f"Questionnaire {questionnaire_id} not found")
    runs = await SyncLogRepository(db).recent(questionnaire_id, settings.SYNC_STATUS_RECENT_RUNS)
    return SyncStatus(
        has_external_form=bool(questionnaire.external_form_id),
        external_form_url=questionnaire.external_form_url,
        last_synced_at=questionnaire.last_synced_at,
        total_responses=questionnaire.total_responses,
        recent_runs=[SyncLogOut.model_validate(r) for r in runs],
    )
