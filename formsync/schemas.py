from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, EmailStr, Field, field_validator

from formsync.models import Purpose, QuestionType, RunStatus


class QuestionIn(BaseModel):
    question_text: str = Field(..., min_length=1)
    question_type: QuestionType
    # A list, a JSON-encoded list, or a comma separated string.
    options: Optional[Union[List[Any], str]] = None
    is_required: bool = False
    position: Optional[int] = Field(None, ge=0)


class QuestionnaireCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    purpose: Purpose = Purpose.EMPLOYEE_FEEDBACK
    is_anonymous: bool = False
    is_template: bool = False
    questions: List[QuestionIn] = []

    @field_validator("questions")
    @classmethod
    def positions_contiguous(cls, v: List[QuestionIn]) -> List[QuestionIn]:
        given = [q.position for q in v if q.position is not None]
        if not given:
            return v
        if len(given) != len(v) or sorted(given) != list(range(len(v))):
            raise ValueError("question positions must be 0..n-1 with no gaps or repeats")
        return v


class QuestionOut(BaseModel):
    id: str
    question_text: str
    question_type: str
    options: Optional[Any]
    is_required: bool
    position: int
    external_question_id: Optional[str]
    model_config = {"from_attributes": True}


class QuestionnaireOut(BaseModel):
    id: str
    title: str
    description: Optional[str]
    purpose: str
    is_anonymous: bool
    is_template: bool
    created_by: str
    external_form_id: Optional[str]
    external_form_url: Optional[str]
    external_sheet_url: Optional[str]
    last_synced_at: Optional[datetime]
    total_responses: int
    created_at: Optional[datetime]
    questions: List[QuestionOut] = []
    model_config = {"from_attributes": True}


class QuestionnaireSummary(BaseModel):
    id: str
    title: str
    purpose: str
    external_form_url: Optional[str]
    last_synced_at: Optional[datetime]
    total_responses: int
    model_config = {"from_attributes": True}


class ResponseOut(BaseModel):
    id: str
    external_response_id: Optional[str]
    responder_id: Optional[str]
    respondent_email: Optional[str]
    answers: Dict[str, Any]
    submitted_at: Optional[datetime]
    synced_at: Optional[datetime]
    sync_status: str
    model_config = {"from_attributes": True}


class ResponseStats(BaseModel):
    total_responses: int
    synced_responses: int
    failed_responses: int
    last_synced_at: Optional[datetime] = None
    first_response_at: Optional[datetime] = None
    latest_response_at: Optional[datetime] = None


class SyncLogOut(BaseModel):
    id: str
    sync_type: str
    triggered_by: Optional[str]
    responses_fetched: int
    responses_new: int
    responses_updated: int
    responses_failed: int
    sync_status: str
    error_message: Optional[str]
    started_at: datetime
    completed_at: Optional[datetime]
    model_config = {"from_attributes": True}


class ConvertResult(BaseModel):
    external_form_id: str
    external_form_url: str


class SyncResult(BaseModel):
    sync_log_id: str
    fetched: int
    new: int
    updated: int
    failed: int
    status: RunStatus


class ExportRequest(BaseModel):
    share_with: List[EmailStr] = []


class ExportResult(BaseModel):
    spreadsheet_id: str
    spreadsheet_url: str
    rows_written: int


class SyncStatus(BaseModel):
    has_external_form: bool
    external_form_url: Optional[str]
    last_synced_at: Optional[datetime]
    total_responses: int
    recent_runs: List[SyncLogOut]


class AuthorizationOut(BaseModel):
    authorization_url: str


class CredentialOut(BaseModel):
    user_id: str
    expires_at: Optional[datetime]
    has_refresh_token: bool


class DeletedOut(BaseModel):
    deleted: int


class HealthResponse(BaseModel):
    status: str
    database: str
    redis: str
    version: str
