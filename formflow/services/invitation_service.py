"""Form invitation engine: issue, resend, remind, resolve and expire.

An invitation owns a snapshot of the template's fields taken when it is
issued, so later template edits or deletion never change what the candidate
sees or how the answers are exported.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from formflow.core.config import settings
from formflow.core.structured_logging import build_log_context
from formflow.db.enums import FormInvitationStatus as Status
from formflow.db.enums import QuotaKind
from formflow.db.models import Application, FormInvitation, FormResponse
from formflow.services import template_service, token_service
from formflow.services.email_service import DeliveryResult, EmailSender
from formflow.services.exceptions import (
    AlreadyAnsweredError,
    ApplicationNotFoundError,
    DuplicateActiveInvitationError,
    FormValidationError,
    InvalidTransitionError,
    InvitationFailedError,
    InvitationNotFoundError,
    QuotaExceededError,
    TemplateNotFoundError,
    TokenExpiredError,
)
from formflow.services.invitation_state import transition
from formflow.services.quota_service import QuotaLedger, require_quota

logger = logging.getLogger(__name__)

RESENDABLE_STATUSES = {Status.FAILED.value, Status.EXPIRED.value}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_past_expiry(invitation: FormInvitation, now: datetime | None = None) -> bool:
    return _as_utc(invitation.expires_at) < (now or _now())


def build_form_url(token: str) -> str:
    return f"{settings.FRONTEND_URL.rstrip('/')}/form/{token}"


# =============================================================================
# Lookups
# =============================================================================

def get_application(db: Session, org_id: uuid.UUID, application_id: uuid.UUID) -> Application:
    application = (
        db.query(Application)
        .filter(Application.id == application_id, Application.organization_id == org_id)
        .first()
    )
    if not application:
        raise ApplicationNotFoundError()
    return application


def get_invitation(db: Session, org_id: uuid.UUID, invitation_id: uuid.UUID) -> FormInvitation:
    invitation = (
        db.query(FormInvitation)
        .filter(
            FormInvitation.id == invitation_id,
            FormInvitation.organization_id == org_id,
        )
        .first()
    )
    if not invitation:
        raise InvitationNotFoundError()
    return invitation


def find_active_invitation(
    db: Session, application_id: uuid.UUID, form_id: uuid.UUID
) -> FormInvitation | None:
    return (
        db.query(FormInvitation)
        .filter(
            FormInvitation.application_id == application_id,
            FormInvitation.form_id == form_id,
            FormInvitation.status.in_(Status.active_values()),
        )
        .first()
    )


def list_invitations(
    db: Session, org_id: uuid.UUID, application_id: uuid.UUID
) -> list[FormInvitation]:
    get_application(db, org_id, application_id)
    return (
        db.query(FormInvitation)
        .filter(
            FormInvitation.organization_id == org_id,
            FormInvitation.application_id == application_id,
        )
        .order_by(FormInvitation.created_at.desc())
        .all()
    )


# =============================================================================
# Delivery
# =============================================================================

def _render_email(
    application: Application,
    snapshot: dict[str, Any],
    custom_message: str | None,
    form_url: str,
    expires_at: datetime,
    reminder: bool = False,
) -> tuple[str, str]:
    form_name = snapshot.get("form_name") or "Form"
    if reminder:
        subject = f"Reminder: {form_name}"
    else:
        subject = f"Please complete: {form_name}"

    lines = [f"Hi {application.candidate_name},"]
    if application.job_title:
        lines.append(
            f"As part of your application for {application.job_title}, "
            f"we'd like you to fill out \"{form_name}\"."
        )
    else:
        lines.append(f"We'd like you to fill out \"{form_name}\".")
    if custom_message:
        lines.append(custom_message)
    lines.append(f"Open the form here: {form_url}")
    lines.append(
        f"This link is personal and expires on {_as_utc(expires_at):%B %d, %Y at %H:%M UTC}."
    )
    return subject, "\n\n".join(lines)


def _deliver(
    sender: EmailSender,
    invitation: FormInvitation,
    application: Application,
    reminder: bool = False,
) -> DeliveryResult:
    subject, body = _render_email(
        application,
        invitation.field_snapshot,
        invitation.custom_message,
        build_form_url(invitation.token),
        invitation.expires_at,
        reminder=reminder,
    )
    suffix = "reminder" if reminder else "invite"
    try:
        return sender.send(
            application.candidate_email,
            subject,
            body,
            idempotency_key=f"form-{suffix}-{invitation.id}",
        )
    except Exception as e:
        # A sender bug must still end the invitation in a recorded state
        logger.exception(
            "form_invitation_delivery_error",
            extra=build_log_context(invitation_id=invitation.id),
        )
        return DeliveryResult(success=False, error=f"Delivery error: {type(e).__name__}")


# =============================================================================
# Issue / resend
# =============================================================================

def _create_and_deliver(
    db: Session,
    sender: EmailSender,
    ledger: QuotaLedger,
    *,
    org_id: uuid.UUID,
    user_id: uuid.UUID,
    application: Application,
    form_id: uuid.UUID,
    snapshot: dict[str, Any],
    custom_message: str | None,
    resent_from_id: uuid.UUID | None = None,
) -> FormInvitation:
    existing = find_active_invitation(db, application.id, form_id)
    # An active row past its expiry is expired here instead of blocking
    if existing and not _expire_if_due(db, existing):
        raise DuplicateActiveInvitationError(existing.id)

    # Consumed even if delivery fails below
    require_quota(ledger, user_id, QuotaKind.INVITATIONS_SENT)

    now = _now()
    invitation = FormInvitation(
        organization_id=org_id,
        application_id=application.id,
        form_id=form_id,
        token=token_service.issue_unique(db),
        expires_at=now + timedelta(days=settings.FORM_INVITE_EXPIRY_DAYS),
        status=Status.PENDING.value,
        sent_by_user_id=user_id,
        field_snapshot=snapshot,
        custom_message=custom_message,
        resent_from_id=resent_from_id,
    )
    db.add(invitation)
    try:
        db.commit()
    except IntegrityError:
        # Lost a race on the active-pair unique index
        db.rollback()
        existing = find_active_invitation(db, application.id, form_id)
        if existing:
            raise DuplicateActiveInvitationError(existing.id)
        raise
    db.refresh(invitation)

    context = build_log_context(
        user_id=user_id,
        org_id=org_id,
        invitation_id=invitation.id,
        form_id=form_id,
        application_id=application.id,
    )
    result = _deliver(sender, invitation, application)
    try:
        if result.success:
            transition(db, invitation, Status.SENT, expected=[Status.PENDING], sent_at=_now())
            logger.info("form_invitation_sent", extra=context)
        else:
            transition(
                db,
                invitation,
                Status.FAILED,
                expected=[Status.PENDING],
                error_message=result.error or "Email delivery failed",
            )
            logger.warning("form_invitation_delivery_failed", extra=context)
    except InvalidTransitionError:
        # The candidate opened the link before send() returned
        if invitation.status == Status.PENDING.value:
            raise
        _record_late_delivery(db, invitation, result)
        logger.info(
            "form_invitation_opened_before_delivery_confirmed",
            extra={**context, "status": invitation.status},
        )
    db.commit()
    db.refresh(invitation)
    return invitation


def _record_late_delivery(db: Session, invitation: FormInvitation, result: DeliveryResult) -> None:
    """Record the delivery outcome on a row that already moved past ``pending``."""
    if result.success:
        stmt = (
            update(FormInvitation)
            .where(FormInvitation.id == invitation.id, FormInvitation.sent_at.is_(None))
            .values(sent_at=_now())
        )
    else:
        stmt = (
            update(FormInvitation)
            .where(FormInvitation.id == invitation.id)
            .values(error_message=result.error or "Email delivery failed")
        )
    db.execute(stmt.execution_options(synchronize_session="fetch"))


def issue_invitation(
    db: Session,
    sender: EmailSender,
    ledger: QuotaLedger,
    org_id: uuid.UUID,
    user_id: uuid.UUID,
    application_id: uuid.UUID,
    form_id: uuid.UUID,
    custom_message: str | None = None,
    include_all: bool = False,
) -> FormInvitation:
    """
    Issue a new invitation and hand the link to the email sender.

    Order of checks: ownership, duplicate active invitation, then quota.
    The row is committed as ``pending`` before delivery; the delivery
    outcome moves it to ``sent`` or ``failed``.
    """
    application = get_application(db, org_id, application_id)
    template = template_service.get_template(db, org_id, form_id)
    template_service.ensure_can_use(template, user_id, include_all)

    return _create_and_deliver(
        db,
        sender,
        ledger,
        org_id=org_id,
        user_id=user_id,
        application=application,
        form_id=template.id,
        snapshot=template_service.build_field_snapshot(template),
        custom_message=custom_message,
    )


def _expire_if_due(db: Session, invitation: FormInvitation) -> bool:
    """Mark an active, past-expiry invitation expired. Returns True if it is expired now."""
    if invitation.status == Status.EXPIRED.value:
        return True
    if invitation.status not in Status.active_values() or not is_past_expiry(invitation):
        return False
    try:
        transition(db, invitation, Status.EXPIRED)
    except InvalidTransitionError:
        # Someone else moved it first; report what it is now
        return invitation.status == Status.EXPIRED.value
    db.commit()
    return True


def resend_invitation(
    db: Session,
    sender: EmailSender,
    ledger: QuotaLedger,
    org_id: uuid.UUID,
    user_id: uuid.UUID,
    invitation_id: uuid.UUID,
    custom_message: str | None = None,
    refresh_snapshot: bool = True,
    include_all: bool = False,
) -> FormInvitation:
    """
    Create a replacement for a failed or expired invitation.

    The old row is left as it is; the new one points back to it through
    ``resent_from_id``.
    """
    old = get_invitation(db, org_id, invitation_id)
    _expire_if_due(db, old)
    if old.status not in RESENDABLE_STATUSES:
        raise InvalidTransitionError(
            old.status,
            "resent",
            message="Only failed or expired invitations can be resent.",
        )
    if old.form_id is None:
        raise TemplateNotFoundError("The form template was deleted. Issue a new invitation instead.")

    application = get_application(db, org_id, old.application_id)
    snapshot = old.field_snapshot
    if refresh_snapshot:
        template = template_service.get_template(db, org_id, old.form_id)
        template_service.ensure_can_use(template, user_id, include_all)
        snapshot = template_service.build_field_snapshot(template)

    invitation = _create_and_deliver(
        db,
        sender,
        ledger,
        org_id=org_id,
        user_id=user_id,
        application=application,
        form_id=old.form_id,
        snapshot=snapshot,
        custom_message=custom_message if custom_message is not None else old.custom_message,
        resent_from_id=old.id,
    )
    logger.info(
        "form_invitation_resent",
        extra={
            **build_log_context(user_id=user_id, org_id=org_id, invitation_id=invitation.id),
            "resent_from_id": str(old.id),
        },
    )
    return invitation


def send_reminder(
    db: Session,
    sender: EmailSender,
    ledger: QuotaLedger,
    org_id: uuid.UUID,
    user_id: uuid.UUID,
    invitation_id: uuid.UUID,
) -> FormInvitation:
    """
    Re-send the same link for an invitation that is still open.

    A failed reminder leaves the status alone and records the error;
    ``reminder_sent_at`` is only set when delivery succeeds.
    """
    invitation = get_invitation(db, org_id, invitation_id)
    if _expire_if_due(db, invitation) or invitation.status not in (
        Status.SENT.value,
        Status.VIEWED.value,
    ):
        raise InvalidTransitionError(
            invitation.status,
            "reminded",
            message="Reminders can only be sent for invitations awaiting a response.",
        )

    application = get_application(db, org_id, invitation.application_id)
    require_quota(ledger, user_id, QuotaKind.INVITATIONS_SENT)

    context = build_log_context(user_id=user_id, org_id=org_id, invitation_id=invitation.id)
    result = _deliver(sender, invitation, application, reminder=True)
    values: dict[str, Any] = {"updated_at": _now()}
    if result.success:
        values.update(reminder_sent_at=_now(), error_message=None)
        logger.info("form_invitation_reminder_sent", extra=context)
    else:
        values["error_message"] = result.error or "Email delivery failed"
        logger.warning("form_invitation_reminder_failed", extra=context)
    db.execute(
        update(FormInvitation)
        .where(FormInvitation.id == invitation.id)
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    db.commit()
    db.refresh(invitation)
    return invitation


# =============================================================================
# Bulk
# =============================================================================

@dataclass
class BulkItem:
    application_id: uuid.UUID
    status: str  # created | skipped | failed | quota_exceeded
    invitation_id: uuid.UUID | None = None
    reason: str | None = None


@dataclass
class BulkResult:
    items: list[BulkItem] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for item in self.items if item.status == status)


def issue_bulk(
    db: Session,
    sender: EmailSender,
    ledger: QuotaLedger,
    org_id: uuid.UUID,
    user_id: uuid.UUID,
    form_id: uuid.UUID,
    application_ids: list[uuid.UUID],
    custom_message: str | None = None,
    include_all: bool = False,
) -> BulkResult:
    """
    Issue one form to many applications, reporting an outcome per application.

    Once the daily quota runs out the remaining applications are reported as
    ``quota_exceeded`` without further attempts.
    """
    unique_ids = list(dict.fromkeys(application_ids))
    if len(unique_ids) > settings.FORM_BULK_MAX_APPLICATIONS:
        raise FormValidationError(
            f"At most {settings.FORM_BULK_MAX_APPLICATIONS} applications per request.",
            details=[{
                "field": "application_ids",
                "message": f"Maximum is {settings.FORM_BULK_MAX_APPLICATIONS}.",
            }],
        )

    # Fail fast on the template rather than once per application
    template = template_service.get_template(db, org_id, form_id)
    template_service.ensure_can_use(template, user_id, include_all)

    result = BulkResult()
    quota_exhausted = False
    for application_id in unique_ids:
        if quota_exhausted:
            result.items.append(BulkItem(application_id, "quota_exceeded", reason="Daily limit reached"))
            continue
        try:
            invitation = issue_invitation(
                db,
                sender,
                ledger,
                org_id,
                user_id,
                application_id,
                form_id,
                custom_message=custom_message,
                include_all=include_all,
            )
        except DuplicateActiveInvitationError as e:
            result.items.append(BulkItem(
                application_id,
                "skipped",
                invitation_id=e.existing_invitation_id,
                reason="Active invitation already exists",
            ))
        except ApplicationNotFoundError:
            result.items.append(BulkItem(application_id, "skipped", reason="Application not found"))
        except QuotaExceededError:
            quota_exhausted = True
            result.items.append(BulkItem(application_id, "quota_exceeded", reason="Daily limit reached"))
        else:
            if invitation.status == Status.FAILED.value:
                result.items.append(BulkItem(
                    application_id,
                    "failed",
                    invitation_id=invitation.id,
                    reason=invitation.error_message,
                ))
            else:
                result.items.append(BulkItem(application_id, "created", invitation_id=invitation.id))

    logger.info(
        "form_invitation_bulk_issued",
        extra={
            **build_log_context(user_id=user_id, org_id=org_id, form_id=form_id),
            "created": result.count("created"),
            "skipped": result.count("skipped"),
            "failed": result.count("failed"),
            "quota_exceeded": result.count("quota_exceeded"),
        },
    )
    return result


# =============================================================================
# Public resolution
# =============================================================================

@dataclass(frozen=True)
class ResolvedInvitation:
    invitation: FormInvitation
    snapshot: dict[str, Any]
    expires_at: datetime
    status: str


def ensure_open(db: Session, invitation: FormInvitation) -> None:
    """
    Raise the error matching a closed invitation, expiring it if it is due.

    Checked in order: answered, failed, expired (status or past expiry).
    """
    if invitation.status == Status.ANSWERED.value:
        response_id = (
            db.query(FormResponse.id)
            .filter(FormResponse.invitation_id == invitation.id)
            .scalar()
        )
        raise AlreadyAnsweredError(response_id)
    if invitation.status == Status.FAILED.value:
        raise InvitationFailedError()
    if _expire_if_due(db, invitation):
        raise TokenExpiredError()


def resolve_invitation(db: Session, token: str) -> ResolvedInvitation:
    """
    Open an invitation from its public token.

    First resolution moves pending/sent to viewed; later ones change nothing.
    """
    invitation = token_service.validate(db, token)
    ensure_open(db, invitation)

    if invitation.status in (Status.PENDING.value, Status.SENT.value):
        try:
            transition(
                db,
                invitation,
                Status.VIEWED,
                expected=[Status.PENDING, Status.SENT],
                viewed_at=_now(),
            )
            db.commit()
            logger.info(
                "form_invitation_viewed",
                extra=build_log_context(invitation_id=invitation.id),
            )
        except InvalidTransitionError:
            db.rollback()
            db.refresh(invitation)
            ensure_open(db, invitation)

    return ResolvedInvitation(
        invitation=invitation,
        snapshot=invitation.field_snapshot,
        expires_at=_as_utc(invitation.expires_at),
        status=invitation.status,
    )


# =============================================================================
# Sweep
# =============================================================================

def expire_stale_invitations(db: Session, now: datetime | None = None) -> int:
    """
    Mark every active invitation past its expiry as expired.

    One conditional UPDATE; safe to run repeatedly or concurrently, and
    terminal rows are never touched.
    """
    now = now or _now()
    result = db.execute(
        update(FormInvitation)
        .where(
            FormInvitation.status.in_(Status.active_values()),
            FormInvitation.expires_at < now,
        )
        .values(status=Status.EXPIRED.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    expired = result.rowcount or 0
    if expired:
        logger.info("form_invitations_expired", extra={"count": expired})
    return expired
