from __future__ import annotations

from datetime import datetime
from typing import Any, List, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from formsync.auth import CallerContext
from formsync.exceptions import (
    ExportError, NotFoundError, PreconditionError, ProviderAuthError, ProviderError,
)
from formsync.models import Question, QuestionnaireResponse
from formsync.repositories.questionnaires import QuestionnaireRepository
from formsync.repositories.responses import ResponseRepository
from formsync.schemas import ExportResult
from formsync.services.credentials import CredentialManager

log = structlog.get_logger(__name__)

SHEET_NAME = "Responses"
FIXED_HEADERS = ["Response ID", "Submitted At"]
LIST_SEPARATOR = ", "


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return LIST_SEPARATOR.join(str(v) for v in value)
    if isinstance(value, (dict, bool)):
        return str(value)
    return value


def _timestamp(value: datetime | None) -> str:
    return value.isoformat() if value else ""


def build_rows(questions: Sequence[Question], responses: Sequence[QuestionnaireResponse]) -> List[List[Any]]:
    """Header row plus one row per response, question columns in position order."""
    ordered = sorted(questions, key=lambda q: q.position)
    rows: List[List[Any]] = [FIXED_HEADERS + [q.question_text for q in ordered]]
    for response in responses:
        answers = response.answers or {}
        rows.append(
            [
                response.external_response_id or response.id,
                _timestamp(response.submitted_at or response.created_at),
            ]
            + [_cell(answers.get(q.id)) for q in ordered]
        )
    return rows


def header_format_requests(sheet_id: int) -> List[dict]:
    return [{
        "repeatCell": {
            "range": {"sheetId": sheet_id, "startRowIndex": 0, "endRowIndex": 1},
            "cell": {
                "userEnteredFormat": {
                    "backgroundColor": {"red": 0.2, "green": 0.2, "blue": 0.2},
                    "textFormat": {
                        "foregroundColor": {"red": 1.0, "green": 1.0, "blue": 1.0},
                        "fontSize": 11,
                        "bold": True,
                    },
                }
            },
            "fields": "userEnteredFormat(backgroundColor,textFormat)",
        }
    }]


async def export_to_sheet(
    db: AsyncSession,
    questionnaire_id: str,
    caller: CallerContext,
    credentials: CredentialManager,
    share_with: Sequence[str] = (),
) -> ExportResult:
    questionnaires = QuestionnaireRepository(db)
    questionnaire = await questionnaires.get(questionnaire_id)
    if not questionnaire:
        raise NotFoundError(f"Questionnaire {questionnaire_id} not found")

    responses = await ResponseRepository(db).for_questionnaire(questionnaire_id)
    if not responses:
        raise PreconditionError("No stored responses to export; sync the form first")

    title = f"{questionnaire.title} - Responses"
    rows = build_rows(await questionnaires.questions(questionnaire_id), responses)

    provider = await credentials.provider_for(caller.user_id)
    try:
        sheet = await provider.create_spreadsheet(title, SHEET_NAME)
        spreadsheet_id = sheet.get("spreadsheetId")
        if not spreadsheet_id:
            raise ProviderError(f"spreadsheet creation returned no spreadsheetId: {str(sheet)[:200]}")
        await provider.write_range(spreadsheet_id, f"{SHEET_NAME}!A1", rows)
        await provider.batch_format(spreadsheet_id, header_format_requests(sheet.get("sheetId", 0)))
    except ProviderAuthError as exc:
        raise await credentials.rejected(caller.user_id) from exc
    except ProviderError as exc:
        raise ExportError(f"Spreadsheet provider error: {exc.detail}") from exc

    for email in share_with:
        try:
            await provider.share_file(spreadsheet_id, email)
        except ProviderError as exc:
            log.warning("export.share.failed", spreadsheet_id=spreadsheet_id, email=email, error=exc.detail)

    url = sheet.get("spreadsheetUrl") or f"https://docs.google.com/spreadsheets/d/{spreadsheet_id}/edit"
    await questionnaires.set_external_sheet(questionnaire_id, spreadsheet_id, url)
    log.info("export.completed", questionnaire_id=questionnaire_id,
             spreadsheet_id=spreadsheet_id, rows=len(rows) - 1, user_id=caller.user_id)
    return ExportResult(spreadsheet_id=spreadsheet_id, spreadsheet_url=url, rows_written=len(rows) - 1)
