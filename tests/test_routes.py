import pytest
from unittest.mock import AsyncMock, patch
from contextlib import asynccontextmanager
from oauthlib.oauth2.rfc6749.errors import InvalidGrantError

from conftest import form_response, text_answer
from formsync.auth import require_api_key
from formsync.main import app

BASE = "/api/v1/questionnaires"

PULSE = {
    "title": "Team pulse",
    "description": "Quarterly check-in",
    "questions": [
        {"question_text": "Name", "question_type": "short_text", "is_required": True},
        {"question_text": "Mood", "question_type": "rating"},
        {"question_text": "Tools used", "question_type": "checkbox", "options": ["Slack", "Jira"]},
    ],
}


@pytest.mark.asyncio
async def test_health(client):
    mock_conn = AsyncMock()
    mock_conn.execute = AsyncMock()

    @asynccontextmanager
    async def mock_connect():
        yield mock_conn

    with patch("formsync.routers.admin.engine") as mock_engine, \
         patch("formsync.routers.admin.ping_redis", new_callable=AsyncMock, return_value=True):
        mock_engine.connect = mock_connect
        r = await client.get("/admin/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert r.json()["version"] is not None


@pytest.mark.asyncio
async def test_health_degraded_without_redis(client):
    @asynccontextmanager
    async def mock_connect():
        yield AsyncMock()

    with patch("formsync.routers.admin.engine") as mock_engine, \
         patch("formsync.routers.admin.ping_redis", new_callable=AsyncMock, return_value=False):
        mock_engine.connect = mock_connect
        r = await client.get("/admin/health")
    assert r.json()["status"] == "degraded"
    assert r.json()["redis"] == "error"


@pytest.mark.asyncio
async def test_create_and_fetch_questionnaire(client):
    r = await client.post(BASE, json=PULSE)
    assert r.status_code == 201
    created = r.json()
    assert [q["position"] for q in created["questions"]] == [0, 1, 2]
    assert created["created_by"] == "user-1"
    assert "X-Request-Id" in r.headers

    r = await client.get(f"{BASE}/{created['id']}")
    assert r.status_code == 200
    assert r.json()["title"] == "Team pulse"

    r = await client.get(BASE, params={"mine": True})
    assert [q["id"] for q in r.json()] == [created["id"]]


@pytest.mark.asyncio
async def test_create_rejects_non_contiguous_positions(client):
    body = {
        "title": "Broken",
        "questions": [
            {"question_text": "a", "question_type": "short_text", "position": 0},
            {"question_text": "b", "question_type": "short_text", "position": 3},
        ],
    }
    r = await client.post(BASE, json=body)
    assert r.status_code == 422
    assert r.json()["error"] == "VALIDATION_FAILED"
    assert r.json()["context"]["errors"]


@pytest.mark.asyncio
async def test_create_rejects_unknown_question_type(client):
    body = {"title": "Broken", "questions": [{"question_text": "a", "question_type": "slider"}]}
    r = await client.post(BASE, json=body)
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_questionnaire_not_found(client):
    r = await client.get(f"{BASE}/does-not-exist")
    assert r.status_code == 404
    assert r.json()["error"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_missing_user_header(client):
    r = await client.post(BASE, json=PULSE, headers={"X-User-Id": ""})
    assert r.status_code == 401
    assert r.json()["error"] == "UNAUTHORIZED"


@pytest.mark.asyncio
async def test_missing_api_key(client):
    override = app.dependency_overrides.pop(require_api_key)
    try:
        r = await client.get(BASE)
    finally:
        app.dependency_overrides[require_api_key] = override
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_convert_without_credential_returns_authorization_url(client, provider):
    created = (await client.post(BASE, json=PULSE)).json()
    r = await client.post(f"{BASE}/{created['id']}/convert")
    assert r.status_code == 401
    body = r.json()
    assert body["error"] == "CREDENTIAL_REQUIRED"
    assert body["context"]["authorization_url"].startswith("https://accounts.google.com/")
    assert provider.calls == []


@pytest.mark.asyncio
async def test_convert_sync_and_read_back(client, valid_credential, provider):
    created = (await client.post(BASE, json=PULSE)).json()
    qid = created["id"]

    r = await client.post(f"{BASE}/{qid}/convert")
    assert r.status_code == 201
    assert r.json()["external_form_id"] == "form-123"

    r = await client.post(f"{BASE}/{qid}/convert")
    assert r.status_code == 409
    assert r.json()["error"] == "PRECONDITION_FAILED"

    provider.responses = [
        form_response("r1", {"gq-0": text_answer("Ada"), "gq-2": text_answer("Slack")}),
        {"responseId": "r2", "answers": ["not", "a", "map"]},
    ]
    r = await client.post(f"{BASE}/{qid}/sync")
    assert r.status_code == 200
    assert r.json()["status"] == "partial"
    assert (r.json()["new"], r.json()["failed"]) == (1, 1)
    log_id = r.json()["sync_log_id"]

    r = await client.get(f"{BASE}/{qid}/responses")
    assert [x["external_response_id"] for x in r.json()] == ["r1"]

    r = await client.get(f"{BASE}/{qid}/responses/stats")
    assert r.json()["total_responses"] == 1

    r = await client.get(f"{BASE}/{qid}/sync-status")
    status = r.json()
    assert status["has_external_form"] is True
    assert status["total_responses"] == 2
    assert status["recent_runs"][0]["sync_status"] == "partial"

    r = await client.get(f"{BASE}/{qid}/sync-logs")
    assert len(r.json()) == 1

    r = await client.get(f"{BASE}/{qid}/sync-logs/{log_id}")
    assert r.status_code == 200
    assert (r.json()["responses_fetched"], r.json()["responses_failed"]) == (2, 1)
    assert "r2" in r.json()["error_message"]


@pytest.mark.asyncio
async def test_sync_before_conversion(client, valid_credential):
    created = (await client.post(BASE, json=PULSE)).json()
    r = await client.post(f"{BASE}/{created['id']}/sync")
    assert r.status_code == 409

    r = await client.get(f"{BASE}/{created['id']}/sync-logs")
    assert r.json()[0]["sync_status"] == "failed"
    log_id = r.json()[0]["id"]

    other = (await client.post(BASE, json=PULSE)).json()
    r = await client.get(f"{BASE}/{other['id']}/sync-logs/{log_id}")
    assert r.status_code == 404
    r = await client.get(f"{BASE}/{created['id']}/sync-logs/missing")
    assert r.status_code == 404
    assert r.json()["error"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_export_without_responses(client, converted, provider):
    r = await client.post(f"{BASE}/{converted.id}/export")
    assert r.status_code == 409
    assert provider.calls == []


@pytest.mark.asyncio
async def test_export_after_sync(client, converted, provider):
    provider.responses = [form_response("r1", {"gq-0": text_answer("Ada")})]
    await client.post(f"{BASE}/{converted.id}/sync")

    r = await client.post(f"{BASE}/{converted.id}/export", json={"share_with": ["lead@example.com"]})
    assert r.status_code == 201
    assert r.json()["rows_written"] == 1
    assert provider.calls[-1][0] == "share_file"


@pytest.mark.asyncio
async def test_delete_responses_then_questionnaire(client, converted, provider):
    provider.responses = [form_response("r1", {"gq-0": text_answer("Ada")})]
    await client.post(f"{BASE}/{converted.id}/sync")

    r = await client.delete(f"{BASE}/{converted.id}/responses")
    assert r.json() == {"deleted": 1}

    r = await client.delete(f"{BASE}/{converted.id}")
    assert r.status_code == 204
    r = await client.delete(f"{BASE}/{converted.id}")
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_oauth_authorize_and_callback(client, oauth_state):
    r = await client.get("/oauth/google/authorize")
    assert r.status_code == 200
    assert "access_type=offline" in r.json()["authorization_url"]
    oauth_state["remember"].assert_awaited_once()

    granted = type("Granted", (), {"token": "t", "refresh_token": "r", "expiry": None, "scopes": None})()
    with patch("formsync.services.credentials.exchange_code", return_value=granted):
        r = await client.get("/oauth/google/callback", params={"state": "nonce", "code": "c"})
    assert r.status_code == 200
    assert r.json() == {"user_id": "user-1", "expires_at": None, "has_refresh_token": True}

    r = await client.delete("/oauth/google")
    assert r.status_code == 204


@pytest.mark.asyncio
async def test_oauth_callback_with_unknown_state(client, oauth_state):
    oauth_state["consume"].return_value = None
    r = await client.get("/oauth/google/callback", params={"state": "forged", "code": "c"})
    assert r.status_code == 400
    assert r.json()["error"] == "INVALID_OAUTH_STATE"


@pytest.mark.asyncio
async def test_oauth_callback_with_rejected_code(client, oauth_state):
    with patch("formsync.services.credentials.exchange_code", side_effect=InvalidGrantError("Bad Request")):
        r = await client.get("/oauth/google/callback", params={"state": "nonce", "code": "used"})
    assert r.status_code == 400
    assert r.json()["error"] == "AUTHORIZATION_FAILED"
