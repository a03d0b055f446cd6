"""SQLAlchemy ORM models."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from formflow.db.base import Base
from formflow.db.enums import FormInvitationStatus, Role

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

_ACTIVE_STATUS_SQL = text(
    "status IN ({})".format(
        ", ".join(f"'{value}'" for value in FormInvitationStatus.active_values())
    )
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Tenancy
# =============================================================================

class Organization(Base):
    """Tenant boundary for templates, applications and invitations."""

    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=_utcnow, server_default=func.now(), nullable=False
    )


class Recruiter(Base):
    """Authenticated staff member who builds forms and sends invitations."""

    __tablename__ = "recruiters"
    __table_args__ = (Index("idx_recruiters_org", "organization_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(
        String(50), default=Role.RECRUITER.value, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    token_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=_utcnow, server_default=func.now(), nullable=False
    )

    organization: Mapped["Organization"] = relationship()


class Application(Base):
    """A candidate's application; only the columns the form engine reads."""

    __tablename__ = "applications"
    __table_args__ = (Index("idx_applications_org", "organization_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    candidate_name: Mapped[str] = mapped_column(String(255), nullable=False)
    candidate_email: Mapped[str] = mapped_column(String(255), nullable=False)
    job_title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=_utcnow, server_default=func.now(), nullable=False
    )


# =============================================================================
# Form templates
# =============================================================================

class FormTemplate(Base):
    """Recruiter-defined form with an ordered list of fields."""

    __tablename__ = "form_templates"
    __table_args__ = (
        Index("idx_form_templates_org", "organization_id"),
        Index("idx_form_templates_org_published", "organization_id", "is_published"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_published: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("recruiters.id", ondelete="SET NULL"), nullable=True
    )
    updated_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("recruiters.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        default=_utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
        nullable=False,
    )

    fields: Mapped[list["FormField"]] = relationship(
        back_populates="form",
        order_by="FormField.order",
        cascade="all, delete-orphan",
    )


class FormField(Base):
    """A single question of a form template."""

    __tablename__ = "form_fields"
    __table_args__ = (
        UniqueConstraint("form_id", "order", name="uq_form_field_order"),
        Index("idx_form_fields_form", "form_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    form_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("form_templates.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    label: Mapped[str] = mapped_column(String(500), nullable=False)
    required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Only populated for select fields
    options: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    order: Mapped[int] = mapped_column(Integer, nullable=False)

    form: Mapped["FormTemplate"] = relationship(back_populates="fields")


# =============================================================================
# Invitations and responses
# =============================================================================

class FormInvitation(Base):
    """Single-use, expiring, tokenized request for a candidate to fill a form."""

    __tablename__ = "form_invitations"
    __table_args__ = (
        UniqueConstraint("token", name="uq_form_invitation_token"),
        Index("idx_form_invitations_org", "organization_id"),
        Index("idx_form_invitations_application", "application_id"),
        Index("idx_form_invitations_status_expiry", "status", "expires_at"),
        Index("idx_form_invitations_sender_created", "sent_by_user_id", "created_at"),
        # At most one active invitation per (application, form)
        Index(
            "uq_form_invitations_active_pair",
            "application_id",
            "form_id",
            unique=True,
            postgresql_where=_ACTIVE_STATUS_SQL,
            sqlite_where=_ACTIVE_STATUS_SQL,
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    application_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("applications.id", ondelete="CASCADE"), nullable=False
    )
    # Nulled when the template is deleted; the snapshot keeps the history
    form_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("form_templates.id", ondelete="SET NULL"), nullable=True
    )
    token: Mapped[str] = mapped_column(String(255), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=FormInvitationStatus.PENDING.value, nullable=False
    )
    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    viewed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    answered_at: Mapped[datetime | None] = mapped_column(nullable=True)
    reminder_sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    sent_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("recruiters.id", ondelete="SET NULL"), nullable=True
    )
    field_snapshot: Mapped[dict] = mapped_column(JSONType, nullable=False)
    custom_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    resent_from_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("form_invitations.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        default=_utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
        nullable=False,
    )

    application: Mapped["Application"] = relationship()
    form: Mapped["FormTemplate | None"] = relationship()
    response: Mapped["FormResponse | None"] = relationship(
        back_populates="invitation", uselist=False
    )


class FormResponse(Base):
    """A candidate's submitted answers; exactly one per answered invitation."""

    __tablename__ = "form_responses"
    __table_args__ = (
        UniqueConstraint("invitation_id", name="uq_form_response_invitation"),
        Index("idx_form_responses_org_submitted", "organization_id", "submitted_at"),
        Index("idx_form_responses_application", "application_id"),
        Index("idx_form_responses_form", "form_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    invitation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("form_invitations.id", ondelete="CASCADE"), nullable=False
    )
    application_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("applications.id", ondelete="CASCADE"), nullable=False
    )
    form_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("form_templates.id", ondelete="SET NULL"), nullable=True
    )
    submitted_at: Mapped[datetime] = mapped_column(
        default=_utcnow, server_default=func.now(), nullable=False
    )

    invitation: Mapped["FormInvitation"] = relationship(back_populates="response")
    answers: Mapped[list["FormResponseAnswer"]] = relationship(
        back_populates="response",
        order_by="FormResponseAnswer.position",
        cascade="all, delete-orphan",
    )


class FormResponseAnswer(Base):
    """One answer, with the question wording copied from the snapshot."""

    __tablename__ = "form_response_answers"
    __table_args__ = (
        UniqueConstraint("response_id", "field_id", name="uq_form_response_answer_field"),
        Index("idx_form_response_answers_response", "response_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    response_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("form_responses.id", ondelete="CASCADE"), nullable=False
    )
    field_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    question: Mapped[str] = mapped_column(String(500), nullable=False)
    field_type: Mapped[str] = mapped_column(String(20), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    answer: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    response: Mapped["FormResponse"] = relationship(back_populates="answers")


# =============================================================================
# Quotas
# =============================================================================

class QuotaCounter(Base):
    """Per-recruiter, per-day, per-kind usage counter."""

    __tablename__ = "quota_counters"
    __table_args__ = (
        UniqueConstraint(
            "recruiter_id", "bucket_date", "kind", name="uq_quota_counter_bucket"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    recruiter_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    bucket_date: Mapped[date] = mapped_column(Date, nullable=False)
    kind: Mapped[str] = mapped_column(String(30), nullable=False)
    used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=_utcnow, server_default=func.now(), nullable=False
    )
