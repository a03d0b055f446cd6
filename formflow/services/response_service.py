"""Candidate submissions: answer validation, atomic recording, uploads."""

from __future__ import annotations

import logging
import re
import uuid
from datetime import date, datetime, timezone
from typing import Any, Iterable

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from formflow.core.config import settings
from formflow.core.structured_logging import build_log_context
from formflow.db.enums import FormFieldType
from formflow.db.enums import FormInvitationStatus as Status
from formflow.db.models import Application, FormInvitation, FormResponse, FormResponseAnswer
from formflow.services import invitation_service, storage_service, token_service
from formflow.services.exceptions import (
    AlreadyAnsweredError,
    FormValidationError,
    InvalidTransitionError,
    MissingRequiredAnswerError,
    ResponseNotFoundError,
    UploadTooLargeError,
)
from formflow.services.invitation_state import transition

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
YES_VALUES = {"yes", "true", "1", "y"}
NO_VALUES = {"no", "false", "0", "n"}
ANSWER_MAX_LENGTH = 10_000
FILE_URL_MAX_LENGTH = 1000


def _get(item: Any, key: str) -> Any:
    if isinstance(item, dict):
        return item.get(key)
    return getattr(item, key, None)


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        value = "yes" if value else "no"
    text = str(value).strip()
    return text or None


def normalize_yes_no(value: str) -> str | None:
    lowered = value.strip().lower()
    if lowered in YES_VALUES:
        return "yes"
    if lowered in NO_VALUES:
        return "no"
    return None


def submit_sources() -> list[Status]:
    """Statuses a submission may start from."""
    if settings.FORMS_ALLOW_SUBMIT_WITHOUT_VIEW:
        return [Status.VIEWED, Status.SENT]
    return [Status.VIEWED]


# =============================================================================
# Validation
# =============================================================================

def _check_value(field: dict[str, Any], value: str) -> tuple[str | None, str | None]:
    """Return (normalized value, error message) for a non-empty text answer."""
    label = field["label"]
    field_type = field["type"]

    if len(value) > ANSWER_MAX_LENGTH:
        return None, f'Answer for "{label}" is too long.'
    if field_type == FormFieldType.EMAIL.value:
        if not EMAIL_RE.match(value):
            return None, f'Invalid email format for "{label}".'
    elif field_type == FormFieldType.SELECT.value:
        if value not in (field.get("options") or []):
            return None, f'Invalid option selected for "{label}".'
    elif field_type == FormFieldType.DATE.value:
        try:
            date.fromisoformat(value)
        except ValueError:
            return None, f'Invalid date for "{label}" (use YYYY-MM-DD).'
    elif field_type == FormFieldType.YES_NO.value:
        normalized = normalize_yes_no(value)
        if normalized is None:
            return None, f'Answer "{label}" with yes or no.'
        return normalized, None
    elif field_type == FormFieldType.FILE.value:
        return None, f'"{label}" expects an uploaded file.'
    return value, None


def validate_answers(
    snapshot: dict[str, Any],
    answers: Iterable[Any],
) -> list[dict[str, Any]]:
    """
    Check submitted answers against the invitation's snapshot.

    Returns the answers to persist, in snapshot order, carrying the question
    wording and type from the snapshot. Blank answers are dropped.

    Raises:
        FormValidationError: Unknown or repeated field, bad value, misplaced file
        MissingRequiredAnswerError: One or more required fields unanswered
    """
    fields = {f["id"]: (position, f) for position, f in enumerate(snapshot.get("fields", []))}
    details: list[dict[str, str]] = []
    seen: set[str] = set()
    accepted: dict[str, dict[str, Any]] = {}

    for index, item in enumerate(answers):
        path = f"answers[{index}]"
        field_id = str(_get(item, "field_id") or "")
        if field_id not in fields:
            details.append({"field": f"{path}.field_id", "message": "Unknown question."})
            continue
        if field_id in seen:
            details.append({"field": f"{path}.field_id", "message": "Question answered more than once."})
            continue
        seen.add(field_id)

        position, field = fields[field_id]
        value = _clean(_get(item, "answer"))
        file_url = _clean(_get(item, "file_url"))

        if file_url is not None:
            if field["type"] != FormFieldType.FILE.value:
                details.append({"field": f"{path}.file_url", "message": "Only file questions take a file."})
                continue
            if value is not None:
                details.append({
                    "field": path,
                    "message": "Send either an answer or a file, not both.",
                })
                continue
            if len(file_url) > FILE_URL_MAX_LENGTH:
                details.append({"field": f"{path}.file_url", "message": "File URL is too long."})
                continue
        elif value is not None:
            value, error = _check_value(field, value)
            if error:
                details.append({"field": f"{path}.answer", "message": error})
                continue

        if value is None and file_url is None:
            continue
        accepted[field_id] = {
            "field_id": uuid.UUID(field_id),
            "question": field["label"],
            "field_type": field["type"],
            "position": position,
            "answer": value,
            "file_url": file_url,
        }

    if details:
        raise FormValidationError("Some answers are invalid.", details=details)

    missing = [
        field
        for field_id, (_, field) in fields.items()
        if field.get("required") and field_id not in accepted
    ]
    if missing:
        raise MissingRequiredAnswerError(
            "Please answer: " + ", ".join(f'"{f["label"]}"' for f in missing),
            details=[{"field": f["id"], "message": f'"{f["label"]}" is required.'} for f in missing],
        )

    return sorted(accepted.values(), key=lambda a: a["position"])


# =============================================================================
# Submission
# =============================================================================

def submit_response(db: Session, token: str, answers: Iterable[Any]) -> FormResponse:
    """
    Record a candidate's answers and close the invitation.

    The status change to ``answered`` and the response rows are written in
    one transaction: either both exist afterwards or neither does.
    """
    invitation = token_service.validate(db, token)
    invitation_service.ensure_open(db, invitation)

    sources = submit_sources()
    if invitation.status not in [s.value for s in sources]:
        raise InvalidTransitionError(
            invitation.status,
            Status.ANSWERED.value,
            message="Please open the form link before submitting.",
        )

    records = validate_answers(invitation.field_snapshot, answers)

    now = datetime.now(timezone.utc)
    try:
        transition(
            db,
            invitation,
            Status.ANSWERED,
            expected=sources,
            answered_at=now,
            viewed_at=func.coalesce(FormInvitation.viewed_at, now),
        )
        response = FormResponse(
            organization_id=invitation.organization_id,
            invitation_id=invitation.id,
            application_id=invitation.application_id,
            form_id=invitation.form_id,
            submitted_at=now,
        )
        response.answers = [FormResponseAnswer(**record) for record in records]
        db.add(response)
        db.commit()
    except InvalidTransitionError:
        # Lost a race (another submit, the sweep); report the winner's state
        db.rollback()
        db.refresh(invitation)
        invitation_service.ensure_open(db, invitation)
        raise
    except IntegrityError:
        db.rollback()
        raise AlreadyAnsweredError()
    except Exception:
        db.rollback()
        raise

    db.refresh(response)
    logger.info(
        "form_response_submitted",
        extra=build_log_context(
            invitation_id=invitation.id,
            org_id=invitation.organization_id,
            application_id=invitation.application_id,
            form_id=invitation.form_id,
        ),
    )
    return response


# =============================================================================
# Uploads
# =============================================================================

def store_upload(
    db: Session,
    token: str,
    filename: str | None,
    content_type: str | None,
    data: bytes,
) -> storage_service.StoredFile:
    """
    Store a file for an open invitation and return its URL for ``file_url``.

    Raises:
        UploadTooLargeError: Larger than FORM_UPLOAD_MAX_BYTES
        FormValidationError: Empty file or disallowed extension
    """
    invitation = token_service.validate(db, token)
    invitation_service.ensure_open(db, invitation)

    if len(data) > settings.FORM_UPLOAD_MAX_BYTES:
        limit_mb = settings.FORM_UPLOAD_MAX_BYTES / (1024 * 1024)
        raise UploadTooLargeError(
            f"The file is too large. Maximum size is {limit_mb:g} MB.",
            max_bytes=settings.FORM_UPLOAD_MAX_BYTES,
        )
    if not data:
        raise FormValidationError(
            "The file is empty.",
            details=[{"field": "file", "message": "Empty file."}],
        )
    if not storage_service.is_allowed_extension(filename):
        allowed = ", ".join(sorted(storage_service.ALLOWED_EXTENSIONS))
        raise FormValidationError(
            "This file type is not allowed.",
            details=[{"field": "file", "message": f"Allowed types: {allowed}."}],
        )

    stored = storage_service.store_file(
        data,
        {
            "storage_key": storage_service.build_storage_key(
                invitation.organization_id, invitation.id, filename or ""
            ),
            "content_type": content_type or "application/octet-stream",
        },
    )
    logger.info(
        "form_upload_stored",
        extra={**build_log_context(invitation_id=invitation.id), "size_bytes": len(data)},
    )
    return stored


# =============================================================================
# Recruiter reads
# =============================================================================

def response_form_name(response: FormResponse) -> str | None:
    snapshot = response.invitation.field_snapshot if response.invitation else None
    return (snapshot or {}).get("form_name")


def list_responses(
    db: Session, org_id: uuid.UUID, application_id: uuid.UUID
) -> list[FormResponse]:
    invitation_service.get_application(db, org_id, application_id)
    return (
        db.query(FormResponse)
        .options(selectinload(FormResponse.invitation))
        .filter(
            FormResponse.organization_id == org_id,
            FormResponse.application_id == application_id,
        )
        .order_by(FormResponse.submitted_at.desc())
        .all()
    )


def list_form_responses(
    db: Session, org_id: uuid.UUID, form_id: uuid.UUID
) -> list[tuple[FormResponse, Application]]:
    """Every response to one template with its candidate, newest first."""
    return (
        db.query(FormResponse, Application)
        .join(FormInvitation, FormInvitation.id == FormResponse.invitation_id)
        .join(Application, Application.id == FormResponse.application_id)
        .filter(
            FormResponse.organization_id == org_id,
            FormInvitation.form_id == form_id,
        )
        .order_by(FormResponse.submitted_at.desc())
        .all()
    )


def get_response_detail(
    db: Session, org_id: uuid.UUID, response_id: uuid.UUID
) -> FormResponse:
    response = (
        db.query(FormResponse)
        .options(
            selectinload(FormResponse.answers),
            selectinload(FormResponse.invitation),
        )
        .filter(FormResponse.id == response_id, FormResponse.organization_id == org_id)
        .first()
    )
    if not response:
        raise ResponseNotFoundError()
    return response
