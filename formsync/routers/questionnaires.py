from __future__ import annotations
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from formsync.auth import CallerContext, get_caller, require_api_key
from formsync.database import get_db
from formsync.exceptions import NotFoundError
from formsync.models import RunType
from formsync.repositories.questionnaires import QuestionnaireRepository
from formsync.repositories.responses import ResponseRepository
from formsync.repositories.sync_logs import SyncLogRepository
from formsync.schemas import (
    ConvertResult, DeletedOut, ExportRequest, ExportResult, QuestionnaireCreate,
    QuestionnaireOut, QuestionnaireSummary, ResponseOut, ResponseStats,
    SyncLogOut, SyncResult, SyncStatus,
)
from formsync.services.conversion import convert_questionnaire
from formsync.services.credentials import CredentialManager
from formsync.services.export import export_to_sheet
from formsync.services.ingestion import get_sync_status, sync_responses

router = APIRouter(
    prefix="/api/v1/questionnaires",
    tags=["questionnaires"],
    dependencies=[Depends(require_api_key)],
)


def get_credentials(db: AsyncSession = Depends(get_db)) -> CredentialManager:
    return CredentialManager(db)


async def _require(repo: QuestionnaireRepository, questionnaire_id: str):
    questionnaire = await repo.get(questionnaire_id, with_questions=True)
    if not questionnaire:
        raise NotFoundError(f"Questionnaire {questionnaire_id} not found")
    return questionnaire


@router.post("", response_model=QuestionnaireOut, status_code=201)
async def create_questionnaire(
    body: QuestionnaireCreate,
    caller: CallerContext = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await QuestionnaireRepository(db).create(body, caller.user_id)


@router.get("", response_model=List[QuestionnaireSummary])
async def list_questionnaires(
    mine: bool = Query(False),
    limit: int = Query(100, ge=1, le=500),
    caller: CallerContext = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    rows = await QuestionnaireRepository(db).list_all(
        created_by=caller.user_id if mine else None, limit=limit
    )
    return [QuestionnaireSummary.model_validate(r) for r in rows]


@router.get("/{questionnaire_id}", response_model=QuestionnaireOut)
async def get_questionnaire(questionnaire_id: str, db: AsyncSession = Depends(get_db)):
    return await _require(QuestionnaireRepository(db), questionnaire_id)


@router.delete("/{questionnaire_id}", status_code=204)
async def delete_questionnaire(questionnaire_id: str, db: AsyncSession = Depends(get_db)):
    if not await QuestionnaireRepository(db).delete(questionnaire_id):
        raise NotFoundError(f"Questionnaire {questionnaire_id} not found")


@router.post("/{questionnaire_id}/convert", response_model=ConvertResult, status_code=201)
async def convert(
    questionnaire_id: str,
    caller: CallerContext = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
    credentials: CredentialManager = Depends(get_credentials),
):
    return await convert_questionnaire(db, questionnaire_id, caller, credentials)


@router.post("/{questionnaire_id}/sync", response_model=SyncResult)
async def sync(
    questionnaire_id: str,
    run_type: RunType = Query(RunType.MANUAL),
    caller: CallerContext = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
    credentials: CredentialManager = Depends(get_credentials),
):
    return await sync_responses(db, questionnaire_id, caller, credentials, run_type)


@router.post("/{questionnaire_id}/export", response_model=ExportResult, status_code=201)
async def export(
    questionnaire_id: str,
    body: ExportRequest | None = None,
    caller: CallerContext = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
    credentials: CredentialManager = Depends(get_credentials),
):
    share_with = [str(e) for e in body.share_with] if body else []
    return await export_to_sheet(db, questionnaire_id, caller, credentials, share_with)


@router.get("/{questionnaire_id}/sync-status", response_model=SyncStatus)
async def sync_status(questionnaire_id: str, db: AsyncSession = Depends(get_db)):
    return await get_sync_status(db, questionnaire_id)


@router.get("/{questionnaire_id}/sync-logs", response_model=List[SyncLogOut])
async def sync_logs(
    questionnaire_id: str,
    limit: int = Query(10, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    await _require(QuestionnaireRepository(db), questionnaire_id)
    rows = await SyncLogRepository(db).recent(questionnaire_id, limit)
    return [SyncLogOut.model_validate(r) for r in rows]


@router.get("/{questionnaire_id}/sync-logs/{log_id}", response_model=SyncLogOut)
async def sync_log_detail(questionnaire_id: str, log_id: str, db: AsyncSession = Depends(get_db)):
    run = await SyncLogRepository(db).get(log_id)
    if run is None or run.questionnaire_id != questionnaire_id:
        raise NotFoundError(f"Sync log {log_id} not found for questionnaire {questionnaire_id}")
    return SyncLogOut.model_validate(run)


@router.get("/{questionnaire_id}/responses", response_model=List[ResponseOut])
async def list_responses(questionnaire_id: str, db: AsyncSession = Depends(get_db)):
    await _require(QuestionnaireRepository(db), questionnaire_id)
    rows = await ResponseRepository(db).for_questionnaire(questionnaire_id)
    return [ResponseOut.model_validate(r) for r in rows]


@router.get("/{questionnaire_id}/responses/stats", response_model=ResponseStats)
async def response_stats(questionnaire_id: str, db: AsyncSession = Depends(get_db)):
    await _require(QuestionnaireRepository(db), questionnaire_id)
    return ResponseStats(**await ResponseRepository(db).stats(questionnaire_id))


@router.delete("/{questionnaire_id}/responses", response_model=DeletedOut)
async def delete_responses(questionnaire_id: str, db: AsyncSession = Depends(get_db)):
    await _require(QuestionnaireRepository(db), questionnaire_id)
    return DeletedOut(deleted=await ResponseRepository(db).delete_for_questionnaire(questionnaire_id))
