from datetime import datetime, timezone

import pytest

from conftest import form_response, text_answer
from formsync.exceptions import ExportError, NotFoundError, PreconditionError, ProviderError
from formsync.models import Question, QuestionnaireResponse
from formsync.repositories.questionnaires import QuestionnaireRepository
from formsync.services.export import FIXED_HEADERS, build_rows, export_to_sheet
from formsync.services.ingestion import sync_responses


def test_build_rows_orders_columns_and_flattens_values():
    questions = [
        Question(id="q-b", question_text="Tools", position=1),
        Question(id="q-a", question_text="Name", position=0),
    ]
    responses = [
        QuestionnaireResponse(
            id="local-1",
            external_response_id="r1",
            answers={"q-a": "Ada", "q-b": ["Slack", "Jira"]},
            submitted_at=datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc),
        ),
        QuestionnaireResponse(
            id="local-2",
            external_response_id="r2",
            answers={"q-a": "Grace"},
            submitted_at=datetime(2024, 5, 2, 9, 30, tzinfo=timezone.utc),
        ),
    ]

    rows = build_rows(questions, responses)

    assert rows[0] == FIXED_HEADERS + ["Name", "Tools"]
    assert rows[1] == ["r1", "2024-05-01T10:00:00+00:00", "Ada", "Slack, Jira"]
    assert rows[2] == ["r2", "2024-05-02T09:30:00+00:00", "Grace", ""]


@pytest.mark.asyncio
async def test_export_without_responses_is_refused(db, converted, caller, credentials, provider):
    with pytest.raises(PreconditionError):
        await export_to_sheet(db, converted.id, caller, credentials)
    assert provider.calls == []
    assert provider.tokens == ["access-token"]  # only the conversion fixture


@pytest.mark.asyncio
async def test_export_unknown_questionnaire(db, caller, credentials):
    with pytest.raises(NotFoundError):
        await export_to_sheet(db, "missing", caller, credentials)


@pytest.mark.asyncio
async def test_export_writes_header_then_rows(db, converted, caller, credentials, provider):
    provider.responses = [
        form_response("r1", {"gq-0": text_answer("Ada"), "gq-1": text_answer("Slack", "Jira")}),
        form_response("r2", {"gq-0": text_answer("Grace")}, submitted="2024-05-02T09:30:00Z"),
    ]
    await sync_responses(db, converted.id, caller, credentials)
    provider.calls.clear()

    result = await export_to_sheet(db, converted.id, caller, credentials, share_with=["lead@example.com"])

    assert result.spreadsheet_id == "sheet-456"
    assert result.rows_written == 2
    assert provider.names() == ["create_spreadsheet", "write_range", "batch_format", "share_file"]
    assert provider.calls[0][1] == {"title": "Team pulse - Responses", "sheet_name": "Responses"}

    written = provider.calls[1][1]
    assert written["range"] == "Responses!A1"
    assert written["rows"][0] == FIXED_HEADERS + ["Name", "Tools used"]
    assert written["rows"][1][0] == "r1"
    assert written["rows"][1][2:] == ["Ada", "Slack, Jira"]
    assert written["rows"][2][2:] == ["Grace", ""]

    header = provider.calls[2][1]["requests"][0]["repeatCell"]
    assert header["range"]["endRowIndex"] == 1
    assert header["cell"]["userEnteredFormat"]["textFormat"]["bold"] is True

    stored = await QuestionnaireRepository(db).get(converted.id)
    assert stored.external_sheet_id == "sheet-456"
    assert stored.external_sheet_url == result.spreadsheet_url


@pytest.mark.asyncio
async def test_share_failure_does_not_fail_export(db, converted, caller, credentials, provider):
    provider.responses = [form_response("r1", {"gq-0": text_answer("Ada")})]
    await sync_responses(db, converted.id, caller, credentials)
    provider.errors["share_file"] = ProviderError("Invalid sharing request", 400)

    result = await export_to_sheet(db, converted.id, caller, credentials, share_with=["nobody@example.com"])
    assert result.rows_written == 1


@pytest.mark.asyncio
async def test_spreadsheet_provider_failure(db, converted, caller, credentials, provider):
    provider.responses = [form_response("r1", {"gq-0": text_answer("Ada")})]
    await sync_responses(db, converted.id, caller, credentials)
    provider.errors["write_range"] = ProviderError("Quota exceeded", 429)

    with pytest.raises(ExportError):
        await export_to_sheet(db, converted.id, caller, credentials)
    stored = await QuestionnaireRepository(db).get(converted.id)
    assert stored.external_sheet_id is None


@pytest.mark.asyncio
async def test_spreadsheet_without_id_is_export_failed(db, converted, caller, credentials, provider):
    provider.responses = [form_response("r1", {"gq-0": text_answer("Ada")})]
    await sync_responses(db, converted.id, caller, credentials)
    qid = converted.id
    provider.calls.clear()
    provider.spreadsheet_id = ""

    with pytest.raises(ExportError) as exc_info:
        await export_to_sheet(db, qid, caller, credentials)
    assert "no spreadsheetId" in exc_info.value.detail
    assert provider.names() == ["create_spreadsheet"]
    stored = await QuestionnaireRepository(db).get(qid)
    assert stored.external_sheet_id is None
