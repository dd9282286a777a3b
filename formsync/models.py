import enum
import uuid

from sqlalchemy import (
    Boolean, Column, Integer, String, JSON,
    DateTime, ForeignKey, Index, UniqueConstraint, func, Text,
)
from sqlalchemy.orm import relationship
from formsync.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class QuestionType(str, enum.Enum):
    SHORT_TEXT = "short_text"
    LONG_TEXT = "long_text"
    MULTIPLE_CHOICE = "multiple_choice"   # single choice, radio buttons
    CHECKBOX = "checkbox"                 # multi choice
    DROPDOWN = "dropdown"
    RATING = "rating"
    FILE_UPLOAD = "file_upload"
    DATE = "date"


CHOICE_TYPES = frozenset(
    {QuestionType.MULTIPLE_CHOICE, QuestionType.CHECKBOX, QuestionType.DROPDOWN}
)


class Purpose(str, enum.Enum):
    EMPLOYEE_FEEDBACK = "employee_feedback"
    CLIENT_REQUIREMENTS = "client_requirements"
    RECRUITMENT = "recruitment"
    ONBOARDING = "onboarding"


class ResponseSyncStatus(str, enum.Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"
    PARTIAL = "partial"


class RunType(str, enum.Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    SCHEDULED = "scheduled"


class RunStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


class Questionnaire(Base):
    __tablename__ = "questionnaires"

    id                 = Column(String(36), primary_key=True, default=_uuid)
    title              = Column(String(255), nullable=False)
    description        = Column(Text, nullable=True)
    purpose            = Column(String(32), nullable=False, default=Purpose.EMPLOYEE_FEEDBACK.value)
    is_anonymous       = Column(Boolean, nullable=False, default=False)
    is_template        = Column(Boolean, nullable=False, default=False)
    created_by         = Column(String(36), nullable=False)
    external_form_id   = Column(String(255), nullable=True)
    external_form_url  = Column(Text, nullable=True)
    external_sheet_id  = Column(String(255), nullable=True)
    external_sheet_url = Column(Text, nullable=True)
    last_synced_at     = Column(DateTime(timezone=True), nullable=True)
    total_responses    = Column(Integer, nullable=False, default=0)
    created_at         = Column(DateTime(timezone=True), server_default=func.now())
    updated_at         = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    questions = relationship(
        "Question",
        back_populates="questionnaire",
        order_by="Question.position",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_questionnaires_created_by", "created_by"),
        Index("ix_questionnaires_purpose", "purpose"),
    )


class Question(Base):
    __tablename__ = "questionnaire_questions"

    id                   = Column(String(36), primary_key=True, default=_uuid)
    questionnaire_id     = Column(
        String(36), ForeignKey("questionnaires.id", ondelete="CASCADE"), nullable=False
    )
    question_text        = Column(Text, nullable=False)
    question_type        = Column(String(32), nullable=False)
    options              = Column(JSON, nullable=True)
    is_required          = Column(Boolean, nullable=False, default=False)
    position             = Column(Integer, nullable=False)
    external_question_id = Column(String(255), nullable=True)   # provider's question id
    created_at           = Column(DateTime(timezone=True), server_default=func.now())

    questionnaire = relationship("Questionnaire", back_populates="questions")

    __table_args__ = (
        UniqueConstraint("questionnaire_id", "position", name="uq_question_position"),
    )


class QuestionnaireResponse(Base):
    __tablename__ = "questionnaire_responses"

    id                   = Column(String(36), primary_key=True, default=_uuid)
    questionnaire_id     = Column(
        String(36), ForeignKey("questionnaires.id", ondelete="CASCADE"), nullable=False
    )
    responder_id         = Column(String(36), nullable=True)     # null for anonymous
    external_response_id = Column(String(255), nullable=True)
    respondent_email     = Column(String(255), nullable=True)
    answers              = Column(JSON, nullable=False, default=dict)
    raw_payload          = Column(JSON, nullable=True)
    submitted_at         = Column(DateTime(timezone=True), nullable=True)
    synced_at            = Column(DateTime(timezone=True), nullable=True)
    sync_status          = Column(String(16), nullable=False, default=ResponseSyncStatus.PENDING.value)
    created_at           = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        # Dedup key for ingestion; upserts conflict on exactly these columns.
        UniqueConstraint(
            "questionnaire_id", "external_response_id", name="uq_response_external_id"
        ),
        Index("ix_responses_questionnaire", "questionnaire_id"),
        Index("ix_responses_sync_status", "sync_status"),
        Index("ix_responses_synced_at", "synced_at"),
    )


class SyncLog(Base):
    __tablename__ = "questionnaire_sync_logs"

    id                = Column(String(36), primary_key=True, default=_uuid)
    questionnaire_id  = Column(
        String(36), ForeignKey("questionnaires.id", ondelete="CASCADE"), nullable=False
    )
    sync_type         = Column(String(16), nullable=False, default=RunType.MANUAL.value)
    triggered_by      = Column(String(36), nullable=True)
    responses_fetched = Column(Integer, nullable=False, default=0)
    responses_new     = Column(Integer, nullable=False, default=0)
    responses_updated = Column(Integer, nullable=False, default=0)
    responses_failed  = Column(Integer, nullable=False, default=0)
    sync_status       = Column(String(16), nullable=False, default=RunStatus.IN_PROGRESS.value)
    error_message     = Column(Text, nullable=True)
    started_at        = Column(DateTime(timezone=True), nullable=False)
    completed_at      = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_sync_logs_questionnaire", "questionnaire_id"),
        Index("ix_sync_logs_started", "started_at"),
    )


class OAuthCredential(Base):
    __tablename__ = "oauth_credentials"

    user_id       = Column(String(36), primary_key=True)
    access_token  = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    expires_at    = Column(DateTime(timezone=True), nullable=True)
    scopes        = Column(JSON, nullable=True)
    created_at    = Column(DateTime(timezone=True), server_default=func.now())
    updated_at    = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
