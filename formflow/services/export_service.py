"""Streaming export of submitted form responses."""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterator, Sequence
from uuid import UUID

from sqlalchemy.orm import Session, selectinload

from formflow.db.models import FormInvitation, FormResponse

CSV_DANGEROUS_PREFIXES = ("=", "+", "-", "@")
EXPORT_BATCH_SIZE = 200

CSV_HEADERS = [
    "response_id",
    "application_id",
    "form_name",
    "submitted_at",
    "position",
    "question",
    "field_type",
    "answer",
    "file_url",
]


@dataclass(frozen=True)
class ExportAnswer:
    question: str
    field_type: str
    answer: str | None
    file_url: str | None


@dataclass(frozen=True)
class ExportRow:
    response_id: UUID
    application_id: UUID
    form_name: str | None
    submitted_at: datetime
    answers: list[ExportAnswer]


def _csv_safe(value: str) -> str:
    if value and value.startswith(CSV_DANGEROUS_PREFIXES):
        return f"'{value}"
    return value


def _serialize_csv_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _write_csv_row(values: Sequence[Any]) -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow([_csv_safe(_serialize_csv_value(value)) for value in values])
    return output.getvalue()


def _ordered_answers(snapshot: dict[str, Any], response: FormResponse) -> list[ExportAnswer]:
    """Follow the snapshot's question order; unanswered questions come out blank."""
    by_field = {str(a.field_id): a for a in response.answers}
    ordered: list[ExportAnswer] = []
    for field in snapshot.get("fields", []):
        answer = by_field.pop(field["id"], None)
        ordered.append(ExportAnswer(
            question=field["label"],
            field_type=field["type"],
            answer=answer.answer if answer else None,
            file_url=answer.file_url if answer else None,
        ))
    # Answers always come from the snapshot, so anything left over is unexpected
    for answer in sorted(by_field.values(), key=lambda a: a.position):
        ordered.append(ExportAnswer(
            question=answer.question,
            field_type=answer.field_type,
            answer=answer.answer,
            file_url=answer.file_url,
        ))
    return ordered


def iter_response_rows(
    db: Session,
    org_id: UUID,
    form_id: UUID | None = None,
    application_id: UUID | None = None,
    submitted_from: datetime | None = None,
    submitted_to: datetime | None = None,
) -> Iterator[ExportRow]:
    """
    Yield one row per response, oldest first, without loading the whole set.

    ``submitted_from`` is inclusive, ``submitted_to`` exclusive. Question text
    and types come from each invitation's snapshot, so edits to or deletion
    of the template do not change the export.
    """
    query = (
        db.query(FormResponse, FormInvitation.field_snapshot)
        .join(FormInvitation, FormInvitation.id == FormResponse.invitation_id)
        .options(selectinload(FormResponse.answers))
        .filter(FormResponse.organization_id == org_id)
    )
    if form_id:
        query = query.filter(FormResponse.form_id == form_id)
    if application_id:
        query = query.filter(FormResponse.application_id == application_id)
    if submitted_from:
        query = query.filter(FormResponse.submitted_at >= submitted_from)
    if submitted_to:
        query = query.filter(FormResponse.submitted_at < submitted_to)

    query = query.order_by(FormResponse.submitted_at.asc(), FormResponse.id.asc())
    for response, snapshot in query.yield_per(EXPORT_BATCH_SIZE):
        snapshot = snapshot or {}
        yield ExportRow(
            response_id=response.id,
            application_id=response.application_id,
            form_name=snapshot.get("form_name"),
            submitted_at=response.submitted_at,
            answers=_ordered_answers(snapshot, response),
        )


def stream_responses_csv(
    db: Session,
    org_id: UUID,
    form_id: UUID | None = None,
    application_id: UUID | None = None,
    submitted_from: datetime | None = None,
    submitted_to: datetime | None = None,
) -> Iterator[str]:
    """CSV with a header line, then one line per question of each response."""
    yield _write_csv_row(CSV_HEADERS)
    rows = iter_response_rows(
        db,
        org_id,
        form_id=form_id,
        application_id=application_id,
        submitted_from=submitted_from,
        submitted_to=submitted_to,
    )
    for row in rows:
        for position, answer in enumerate(row.answers):
            yield _write_csv_row([
                row.response_id,
                row.application_id,
                row.form_name,
                row.submitted_at,
                position,
                answer.question,
                answer.field_type,
                answer.answer,
                answer.file_url,
            ])
