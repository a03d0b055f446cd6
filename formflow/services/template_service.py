"""Form template service: CRUD, field validation and snapshots."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Iterable

from sqlalchemy import or_
from sqlalchemy.orm import Session, selectinload

from formflow.core.config import settings
from formflow.core.structured_logging import build_log_context
from formflow.db.enums import FormFieldType, FormInvitationStatus
from formflow.db.models import FormField, FormInvitation, FormResponse, FormTemplate
from formflow.services.exceptions import (
    FieldLimitExceededError,
    FormValidationError,
    TemplateAccessDeniedError,
    TemplateInUseError,
    TemplateNotFoundError,
)

logger = logging.getLogger(__name__)

NAME_MAX_LENGTH = 200
LABEL_MAX_LENGTH = 500
_FIELD_TYPES = {t.value for t in FormFieldType}


# =============================================================================
# Validation
# =============================================================================

def _get(field: Any, key: str, default: Any = None) -> Any:
    if isinstance(field, dict):
        return field.get(key, default)
    return getattr(field, key, default)


def validate_name(name: str | None) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise FormValidationError(
            "Template name is required.",
            details=[{"field": "name", "message": "Name must not be empty."}],
        )
    if len(cleaned) > NAME_MAX_LENGTH:
        raise FormValidationError(
            "Template name is too long.",
            details=[{
                "field": "name",
                "message": f"Name must be at most {NAME_MAX_LENGTH} characters.",
            }],
        )
    return cleaned


def validate_fields(fields: Iterable[Any] | None) -> list[dict[str, Any]]:
    """
    Validate and normalize a template's field list.

    Accepts dicts or objects with type/label/required/options attributes.
    Any client-sent ``order`` is ignored; order is the array position.
    Every problem is collected so the caller can fix them in one pass.
    """
    items = list(fields or [])
    if not items:
        raise FormValidationError(
            "A form needs at least one field.",
            details=[{"field": "fields", "message": "At least one field is required."}],
        )
    if len(items) > settings.FORM_MAX_FIELDS:
        raise FieldLimitExceededError(
            f"A form can have at most {settings.FORM_MAX_FIELDS} fields (got {len(items)}).",
            details=[{
                "field": "fields",
                "message": f"Maximum is {settings.FORM_MAX_FIELDS} fields.",
            }],
        )

    details: list[dict[str, str]] = []
    normalized: list[dict[str, Any]] = []
    for index, field in enumerate(items):
        path = f"fields[{index}]"
        field_type = _get(field, "type")
        label = (_get(field, "label") or "").strip()
        options = _get(field, "options")

        if field_type not in _FIELD_TYPES:
            details.append({
                "field": f"{path}.type",
                "message": f"Unknown field type '{field_type}'.",
            })
        if not label:
            details.append({"field": f"{path}.label", "message": "Label must not be empty."})
        elif len(label) > LABEL_MAX_LENGTH:
            details.append({
                "field": f"{path}.label",
                "message": f"Label must be at most {LABEL_MAX_LENGTH} characters.",
            })

        cleaned_options: list[str] | None = None
        if field_type == FormFieldType.SELECT.value:
            cleaned_options = [str(o).strip() for o in (options or [])]
            if not cleaned_options:
                details.append({
                    "field": f"{path}.options",
                    "message": "Select fields need at least one option.",
                })
            elif any(not o for o in cleaned_options):
                details.append({
                    "field": f"{path}.options",
                    "message": "Options must not be empty.",
                })
        elif options:
            details.append({
                "field": f"{path}.options",
                "message": "Only select fields can have options.",
            })

        normalized.append({
            "type": field_type,
            "label": label,
            "required": bool(_get(field, "required", False)),
            "options": cleaned_options,
            "order": index,
        })

    if details:
        raise FormValidationError("Invalid form fields.", details=details)
    return normalized


def _build_fields(normalized: list[dict[str, Any]]) -> list[FormField]:
    return [FormField(**field) for field in normalized]


# =============================================================================
# CRUD
# =============================================================================

def create_template(
    db: Session,
    org_id: uuid.UUID,
    user_id: uuid.UUID,
    name: str,
    description: str | None,
    fields: Iterable[Any],
    is_published: bool = True,
) -> FormTemplate:
    cleaned_name = validate_name(name)
    normalized = validate_fields(fields)

    template = FormTemplate(
        organization_id=org_id,
        name=cleaned_name,
        description=description or None,
        is_published=is_published,
        created_by_user_id=user_id,
        updated_by_user_id=user_id,
    )
    template.fields = _build_fields(normalized)
    db.add(template)
    db.commit()
    db.refresh(template)

    logger.info(
        "form_template_created",
        extra=build_log_context(user_id=user_id, org_id=org_id, form_id=template.id),
    )
    return template


def update_template(
    db: Session,
    template: FormTemplate,
    user_id: uuid.UUID,
    name: str | None = None,
    description: str | None = None,
    is_published: bool | None = None,
    fields: Iterable[Any] | None = None,
) -> FormTemplate:
    """
    Apply a partial update. When ``fields`` is given the whole list is replaced.

    Issued invitations carry their own snapshot, so edits only reach
    invitations created afterwards.
    """
    if name is not None:
        template.name = validate_name(name)
    if description is not None:
        template.description = description or None
    if is_published is not None:
        template.is_published = is_published
    if fields is not None:
        normalized = validate_fields(fields)
        # Flush the removals first so (form_id, order) stays unique
        template.fields.clear()
        db.flush()
        template.fields.extend(_build_fields(normalized))
    template.updated_by_user_id = user_id

    db.commit()
    db.refresh(template)

    logger.info(
        "form_template_updated",
        extra=build_log_context(
            user_id=user_id, org_id=template.organization_id, form_id=template.id
        ),
    )
    return template


def get_template(db: Session, org_id: uuid.UUID, template_id: uuid.UUID) -> FormTemplate:
    template = (
        db.query(FormTemplate)
        .options(selectinload(FormTemplate.fields))
        .filter(FormTemplate.id == template_id, FormTemplate.organization_id == org_id)
        .first()
    )
    if not template:
        raise TemplateNotFoundError()
    return template


def list_templates(
    db: Session,
    org_id: uuid.UUID,
    user_id: uuid.UUID,
    include_all: bool = False,
) -> list[FormTemplate]:
    """Published templates plus the caller's own drafts; admins see the whole org."""
    query = (
        db.query(FormTemplate)
        .options(selectinload(FormTemplate.fields))
        .filter(FormTemplate.organization_id == org_id)
    )
    if not include_all:
        query = query.filter(
            or_(
                FormTemplate.is_published.is_(True),
                FormTemplate.created_by_user_id == user_id,
            )
        )
    return query.order_by(FormTemplate.updated_at.desc()).all()


def ensure_can_use(template: FormTemplate, user_id: uuid.UUID, include_all: bool = False) -> None:
    if include_all or template.is_published or template.created_by_user_id == user_id:
        return
    raise TemplateAccessDeniedError()


def ensure_can_edit(template: FormTemplate, user_id: uuid.UUID, include_all: bool = False) -> None:
    if include_all or template.created_by_user_id == user_id:
        return
    raise TemplateAccessDeniedError("You can only modify templates you created.")


def count_active_invitations(db: Session, template_id: uuid.UUID) -> int:
    return (
        db.query(FormInvitation)
        .filter(
            FormInvitation.form_id == template_id,
            FormInvitation.status.in_(FormInvitationStatus.active_values()),
        )
        .count()
    )


def delete_template(db: Session, template: FormTemplate) -> None:
    """
    Delete a template that no candidate is still working on.

    Answered, expired and failed invitations keep their snapshot and
    responses; only their link to the template is cleared.
    """
    active = count_active_invitations(db, template.id)
    if active:
        raise TemplateInUseError(active_invitations=active)

    db.query(FormInvitation).filter(FormInvitation.form_id == template.id).update(
        {FormInvitation.form_id: None}, synchronize_session=False
    )
    db.query(FormResponse).filter(FormResponse.form_id == template.id).update(
        {FormResponse.form_id: None}, synchronize_session=False
    )
    org_id, template_id = template.organization_id, template.id
    db.delete(template)
    db.commit()

    logger.info(
        "form_template_deleted",
        extra=build_log_context(org_id=org_id, form_id=template_id),
    )


def append_suggested_fields(
    db: Session,
    template: FormTemplate,
    user_id: uuid.UUID,
    suggested: Iterable[Any],
) -> FormTemplate:
    """Append suggested fields after the existing ones, as if added by hand."""
    existing = [
        {
            "type": f.type,
            "label": f.label,
            "required": f.required,
            "options": f.options,
        }
        for f in template.fields
    ]
    return update_template(db, template, user_id, fields=existing + list(suggested))


# =============================================================================
# Snapshots
# =============================================================================

def build_field_snapshot(template: FormTemplate) -> dict[str, Any]:
    """Serialize the template's current fields into an owned, immutable copy."""
    return {
        "form_name": template.name,
        "form_description": template.description,
        "fields": [
            {
                "id": str(field.id),
                "type": field.type,
                "label": field.label,
                "required": field.required,
                "options": list(field.options) if field.options else None,
                "order": field.order,
            }
            for field in sorted(template.fields, key=lambda f: f.order)
        ],
    }
