import os

# Set required env vars BEFORE any app imports trigger Settings()
os.environ.setdefault("API_KEY", "test-api-key-for-testing")
os.environ.setdefault("DB_USER", "test")
os.environ.setdefault("DB_PASSWORD", "test")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from formsync.main import app
from formsync.auth import CallerContext, require_api_key
from formsync.database import Base, get_db
from formsync.models import QuestionType
from formsync.repositories.credentials import CredentialRepository
from formsync.repositories.questionnaires import QuestionnaireRepository
from formsync.routers.questionnaires import get_credentials
from formsync.schemas import QuestionIn, QuestionnaireCreate
from formsync.services.conversion import convert_questionnaire
from formsync.services.credentials import CredentialManager

TEST_DB = "sqlite+aiosqlite:///:memory:"
TEST_API_KEY = "test-api-key-for-testing"
USER_ID = "user-1"


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(TEST_DB, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db(db_engine):
    Session = async_sessionmaker(db_engine, expire_on_commit=False)
    async with Session() as session:
        yield session
        await session.rollback()


class FakeProvider:
    """In-memory stand-in for the Google Forms/Sheets capability interface."""

    def __init__(self):
        self.calls = []
        self.tokens = []
        self.responses = []
        self.errors = {}
        self.form_id = "form-123"
        self.spreadsheet_id = "sheet-456"

    def __call__(self, access_token):
        self.tokens.append(access_token)
        return self

    def names(self):
        return [name for name, _ in self.calls]

    def _record(self, name, **kwargs):
        self.calls.append((name, kwargs))
        if name in self.errors:
            raise self.errors[name]

    async def create_form(self, title):
        self._record("create_form", title=title)
        return {"formId": self.form_id, "responderUri": f"https://forms.example/{self.form_id}/viewform"}

    async def batch_update(self, form_id, requests):
        self._record("batch_update", form_id=form_id, requests=requests)
        replies = []
        for req in requests:
            if "createItem" in req:
                index = req["createItem"]["location"]["index"]
                replies.append({"createItem": {"itemId": f"item-{index}", "questionId": [f"gq-{index}"]}})
            else:
                replies.append({})
        return {"replies": replies}

    async def list_responses(self, form_id):
        self._record("list_responses", form_id=form_id)
        return list(self.responses)

    async def create_spreadsheet(self, title, sheet_name):
        self._record("create_spreadsheet", title=title, sheet_name=sheet_name)
        return {
            "spreadsheetId": self.spreadsheet_id,
            "spreadsheetUrl": f"https://sheets.example/{self.spreadsheet_id}",
            "sheetId": 0,
        }

    async def write_range(self, spreadsheet_id, range_, rows):
        self._record("write_range", spreadsheet_id=spreadsheet_id, range=range_, rows=rows)

    async def batch_format(self, spreadsheet_id, requests):
        self._record("batch_format", spreadsheet_id=spreadsheet_id, requests=requests)

    async def share_file(self, file_id, email, role="reader"):
        self._record("share_file", file_id=file_id, email=email, role=role)


def text_answer(*values):
    return {"textAnswers": {"answers": [{"value": v} for v in values]}}


def form_response(response_id, answers, submitted="2024-05-01T10:00:00Z", email=None):
    item = {
        "responseId": response_id,
        "createTime": submitted,
        "lastSubmittedTime": submitted,
        "answers": answers,
    }
    if email:
        item["respondentEmail"] = email
    return item


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def caller():
    return CallerContext(user_id=USER_ID)


@pytest.fixture(autouse=True)
def oauth_state():
    # Redis is not available in tests; the state store is mocked.
    with patch("formsync.services.credentials.remember_oauth_state", new_callable=AsyncMock) as remember, \
         patch("formsync.services.credentials.consume_oauth_state", new_callable=AsyncMock) as consume:
        consume.return_value = USER_ID
        yield {"remember": remember, "consume": consume}


@pytest.fixture
def credentials(db, provider):
    return CredentialManager(db, provider_factory=provider)


@pytest_asyncio.fixture
async def valid_credential(db):
    await CredentialRepository(db).put(
        USER_ID,
        "access-token",
        "refresh-token",
        datetime.now(timezone.utc) + timedelta(hours=1),
    )


@pytest_asyncio.fixture
async def questionnaire(db):
    data = QuestionnaireCreate(
        title="Team pulse",
        description="Quarterly check-in",
        questions=[
            QuestionIn(question_text="Name", question_type=QuestionType.SHORT_TEXT),
            QuestionIn(
                question_text="Tools used",
                question_type=QuestionType.CHECKBOX,
                options='["Slack", "Jira", "Notion"]',
            ),
        ],
    )
    return await QuestionnaireRepository(db).create(data, USER_ID)


@pytest_asyncio.fixture
async def converted(db, questionnaire, caller, credentials, valid_credential, provider):
    await convert_questionnaire(db, questionnaire.id, caller, credentials)
    provider.calls.clear()
    return await QuestionnaireRepository(db).get(questionnaire.id, with_questions=True)


@pytest_asyncio.fixture
async def client(db, credentials):
    async def override_get_db():
        yield db

    async def override_api_key():
        return TEST_API_KEY

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[require_api_key] = override_api_key
    app.dependency_overrides[get_credentials] = lambda: credentials

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-User-Id": USER_ID},
    ) as c:
        yield c

    app.dependency_overrides.clear()
