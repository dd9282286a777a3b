"""Questionnaire → external form conversion.

Creates the form shell from the title alone, then issues one batch update:
the description (when there is one) followed by one ``createItem`` per
question at its position index. Not idempotent; a questionnaire that already
has an external form id is refused.
"""
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from formsync.auth import CallerContext
from formsync.exceptions import (
    ConversionError, NotFoundError, PreconditionError, ProviderAuthError, ProviderError,
)
from formsync.models import CHOICE_TYPES, Question, QuestionType
from formsync.repositories.questionnaires import QuestionnaireRepository
from formsync.schemas import ConvertResult
from formsync.services.credentials import CredentialManager

log = structlog.get_logger(__name__)

RATING_LOW, RATING_HIGH = 1, 5
RATING_LOW_LABEL, RATING_HIGH_LABEL = "Poor", "Excellent"

_CHOICE_KINDS = {
    QuestionType.MULTIPLE_CHOICE: "RADIO",
    QuestionType.CHECKBOX: "CHECKBOX",
    QuestionType.DROPDOWN: "DROP_DOWN",
}


def parse_options(raw: Any) -> List[str]:
    """
    Fallback chain, in order:
      1. already a list  -> used as is
      2. JSON list text  -> decoded
      3. anything else   -> split on commas, trimmed, empties dropped
    Malformed JSON falls through to (3) rather than failing.
    """
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        values = raw
    else:
        text = str(raw)
        try:
            decoded = json.loads(text)
        except ValueError:
            decoded = None
        if isinstance(decoded, list):
            values = decoded
        else:
            values = text.split(",")
    return [str(v).strip() for v in values if v is not None and str(v).strip()]


def question_body(question: Question) -> Dict[str, Any]:
    qtype = QuestionType(question.question_type)
    body: Dict[str, Any] = {"required": bool(question.is_required)}

    if qtype is QuestionType.SHORT_TEXT:
        body["textQuestion"] = {"paragraph": False}
    elif qtype is QuestionType.LONG_TEXT:
        body["textQuestion"] = {"paragraph": True}
    elif qtype in CHOICE_TYPES:
        options = parse_options(question.options)
        if not options:
            raise ConversionError(
                f"Question {question.position + 1} ({qtype.value}) has no options",
                {"question_id": question.id},
            )
        body["choiceQuestion"] = {
            "type": _CHOICE_KINDS[qtype],
            "options": [{"value": o} for o in options],
        }
    elif qtype is QuestionType.RATING:
        body["scaleQuestion"] = {
            "low": RATING_LOW,
            "high": RATING_HIGH,
            "lowLabel": RATING_LOW_LABEL,
            "highLabel": RATING_HIGH_LABEL,
        }
    elif qtype is QuestionType.DATE:
        body["dateQuestion"] = {"includeTime": False, "includeYear": True}
    else:
        # The Forms API cannot create upload items.
        raise ConversionError(
            f"Question {question.position + 1}: {qtype.value} questions are not supported by the form provider",
            {"question_id": question.id},
        )
    return body


def build_requests(description: Optional[str], questions: List[Question]) -> List[dict]:
    requests: List[dict] = []
    if description:
        requests.append({
            "updateFormInfo": {
                "info": {"description": description},
                "updateMask": "description",
            }
        })
    for question in sorted(questions, key=lambda q: q.position):
        requests.append({
            "createItem": {
                "item": {
                    "title": question.question_text,
                    "questionItem": {"question": question_body(question)},
                },
                "location": {"index": question.position},
            }
        })
    return requests


def _external_question_ids(replies: List[dict], questions: List[Question]) -> Dict[str, str]:
    created = [r["createItem"] for r in replies if "createItem" in r]
    mapping: Dict[str, str] = {}
    for question, reply in zip(sorted(questions, key=lambda q: q.position), created):
        ids = reply.get("questionId") or []
        if ids:
            mapping[question.id] = ids[0]
    return mapping


async def convert_questionnaire(
    db: AsyncSession,
    questionnaire_id: str,
    caller: CallerContext,
    credentials: CredentialManager,
) -> ConvertResult:
    repo = QuestionnaireRepository(db)
    questionnaire = await repo.get(questionnaire_id)
    if not questionnaire:
        raise NotFoundError(f"Questionnaire {questionnaire_id} not found")
    if questionnaire.external_form_id:
        raise PreconditionError(
            "Questionnaire already has an external form",
            {"external_form_url": questionnaire.external_form_url},
        )

    title = questionnaire.title
    questions = await repo.questions(questionnaire_id)
    requests = build_requests(questionnaire.description, questions)

    provider = await credentials.provider_for(caller.user_id)

    form_id: Optional[str] = None
    try:
        form = await provider.create_form(title)
        form_id = form.get("formId")
        if not form_id:
            raise ProviderError(f"form creation returned no formId: {str(form)[:200]}")
        reply = await provider.batch_update(form_id, requests)
    except ProviderAuthError as exc:
        raise await credentials.rejected(caller.user_id) from exc
    except ProviderError as exc:
        context = {"orphaned_form_id": form_id} if form_id else {}
        if form_id:
            log.warning("conversion.orphaned_form", questionnaire_id=questionnaire_id, form_id=form_id)
        raise ConversionError(f"Form provider error: {exc.detail}", context) from exc

    form_url = form.get("responderUri") or f"https://docs.google.com/forms/d/{form_id}/viewform"
    await repo.set_external_form(
        questionnaire_id,
        form_id,
        form_url,
        _external_question_ids(reply.get("replies", []), questions),
    )
    log.info("conversion.completed", questionnaire_id=questionnaire_id,
             form_id=form_id, items=len(questions), user_id=caller.user_id)
    return ConvertResult(external_form_id=form_id, external_form_url=form_url)
