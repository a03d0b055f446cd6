"""Recruiter endpoints: templates, invitations, quota, responses and export."""

from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response, StreamingResponse
from sqlalchemy.orm import Session

from formflow.core.config import settings
from formflow.core.deps import get_current_session, get_db, require_csrf_header
from formflow.core.rate_limit import limiter
from formflow.db.enums import QuotaKind
from formflow.schemas.auth import UserSession
from formflow.schemas.forms import (
    AISuggestRequest,
    AISuggestResponse,
    BulkInvitationCreate,
    BulkInvitationItem,
    BulkInvitationResult,
    FormFieldInput,
    FormResponseList,
    FormResponseListItem,
    FormTemplateCreate,
    FormTemplateRead,
    FormTemplateSummary,
    FormTemplateUpdate,
    InvitationCreate,
    InvitationCreateResponse,
    InvitationRead,
    InvitationResend,
    QuotaRead,
    ResponseAnswerRead,
    ResponseDetail,
    ResponseSummary,
)
from formflow.services import (
    ai_suggestion_service,
    export_service,
    invitation_service,
    response_service,
    template_service,
)
from formflow.services.ai_suggestion_service import FieldSuggester, get_field_suggester
from formflow.services.email_service import EmailSender, get_email_sender
from formflow.services.quota_service import QuotaLedger, get_quota_ledger

router = APIRouter(prefix="/forms", tags=["forms"])


def _invitation_read(invitation) -> InvitationRead:
    data = InvitationRead.model_validate(invitation)
    data.form_name = (invitation.field_snapshot or {}).get("form_name")
    return data


def _invitation_created(invitation) -> InvitationCreateResponse:
    return InvitationCreateResponse(
        **_invitation_read(invitation).model_dump(),
        form_url=invitation_service.build_form_url(invitation.token),
    )


def _response_summary(response) -> ResponseSummary:
    data = ResponseSummary.model_validate(response)
    data.form_name = response_service.response_form_name(response)
    return data


# =============================================================================
# Templates
# =============================================================================

@router.get("/templates", response_model=list[FormTemplateSummary])
def list_templates(
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Published templates plus your own; admins see every template."""
    return template_service.list_templates(
        db, session.org_id, session.user_id, include_all=session.can_see_all_templates
    )


@router.post(
    "/templates",
    response_model=FormTemplateRead,
    status_code=201,
    dependencies=[Depends(require_csrf_header)],
)
def create_template(
    data: FormTemplateCreate,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    return template_service.create_template(
        db,
        org_id=session.org_id,
        user_id=session.user_id,
        name=data.name,
        description=data.description,
        fields=data.fields,
        is_published=data.is_published,
    )


@router.get("/templates/{template_id}", response_model=FormTemplateRead)
def get_template(
    template_id: UUID,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    template = template_service.get_template(db, session.org_id, template_id)
    template_service.ensure_can_use(
        template, session.user_id, session.can_see_all_templates
    )
    return template


@router.get("/templates/{template_id}/responses", response_model=FormResponseList)
def list_template_responses(
    template_id: UUID,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Responses collected with this template, newest first."""
    template = template_service.get_template(db, session.org_id, template_id)
    template_service.ensure_can_use(
        template, session.user_id, session.can_see_all_templates
    )
    rows = response_service.list_form_responses(db, session.org_id, template.id)
    return FormResponseList(
        form_id=template.id,
        form_name=template.name,
        responses=[
            FormResponseListItem(
                id=response.id,
                submitted_at=response.submitted_at,
                invitation_id=response.invitation_id,
                application_id=response.application_id,
                candidate_name=application.candidate_name,
                candidate_email=application.candidate_email,
            )
            for response, application in rows
        ],
        total=len(rows),
    )


@router.patch(
    "/templates/{template_id}",
    response_model=FormTemplateRead,
    dependencies=[Depends(require_csrf_header)],
)
def update_template(
    template_id: UUID,
    data: FormTemplateUpdate,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Edits apply to invitations issued from now on."""
    template = template_service.get_template(db, session.org_id, template_id)
    template_service.ensure_can_edit(
        template, session.user_id, session.can_see_all_templates
    )
    return template_service.update_template(
        db,
        template,
        session.user_id,
        name=data.name,
        description=data.description,
        is_published=data.is_published,
        fields=data.fields,
    )


@router.delete(
    "/templates/{template_id}",
    status_code=204,
    dependencies=[Depends(require_csrf_header)],
)
def delete_template(
    template_id: UUID,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    template = template_service.get_template(db, session.org_id, template_id)
    template_service.ensure_can_edit(
        template, session.user_id, session.can_see_all_templates
    )
    template_service.delete_template(db, template)
    return Response(status_code=204)


@router.post(
    "/ai-suggest",
    response_model=AISuggestResponse,
    dependencies=[Depends(require_csrf_header)],
)
@limiter.limit(f"{settings.RATE_LIMIT_AI}/minute")
def ai_suggest(
    request: Request,
    data: AISuggestRequest,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
    suggester: FieldSuggester = Depends(get_field_suggester),
    ledger: QuotaLedger = Depends(get_quota_ledger),
):
    """Suggest screening questions; with form_id they are appended to that template."""
    result = ai_suggestion_service.suggest_fields(
        db,
        suggester,
        ledger,
        session.org_id,
        session.user_id,
        ai_suggestion_service.SuggestionContext(
            job_title=data.job_title,
            job_description=data.job_description,
            goals=data.goals,
        ),
        form_id=data.form_id,
        include_all=session.can_see_all_templates,
    )
    return AISuggestResponse(
        fields=[FormFieldInput(**f) for f in result.fields],
        remaining=result.quota.remaining,
        limit=result.quota.limit,
        form=FormTemplateRead.model_validate(result.template) if result.template else None,
    )


# =============================================================================
# Invitations
# =============================================================================

@router.get("/invitations/quota", response_model=list[QuotaRead])
def get_quota(
    session: UserSession = Depends(get_current_session),
    ledger: QuotaLedger = Depends(get_quota_ledger),
):
    """Today's usage for invitation sends and AI suggestions."""
    statuses = [ledger.peek(session.user_id, kind) for kind in QuotaKind]
    return [
        QuotaRead(
            kind=s.kind,
            limit=s.limit,
            used=s.used,
            remaining=s.remaining,
            reset_at=s.reset_at,
        )
        for s in statuses
    ]


@router.post(
    "/invitations",
    response_model=InvitationCreateResponse,
    status_code=201,
    dependencies=[Depends(require_csrf_header)],
)
def create_invitation(
    data: InvitationCreate,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
    sender: EmailSender = Depends(get_email_sender),
    ledger: QuotaLedger = Depends(get_quota_ledger),
):
    """
    Send a form to a candidate.

    A delivery failure still returns 201; the invitation comes back with
    status ``failed`` and can be resent.
    """
    invitation = invitation_service.issue_invitation(
        db,
        sender,
        ledger,
        org_id=session.org_id,
        user_id=session.user_id,
        application_id=data.application_id,
        form_id=data.form_id,
        custom_message=data.custom_message,
        include_all=session.can_see_all_templates,
    )
    return _invitation_created(invitation)


@router.post(
    "/invitations/bulk",
    response_model=BulkInvitationResult,
    dependencies=[Depends(require_csrf_header)],
)
@limiter.limit(f"{settings.RATE_LIMIT_BULK}/minute")
def create_bulk_invitations(
    request: Request,
    data: BulkInvitationCreate,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
    sender: EmailSender = Depends(get_email_sender),
    ledger: QuotaLedger = Depends(get_quota_ledger),
):
    result = invitation_service.issue_bulk(
        db,
        sender,
        ledger,
        org_id=session.org_id,
        user_id=session.user_id,
        form_id=data.form_id,
        application_ids=data.application_ids,
        custom_message=data.custom_message,
        include_all=session.can_see_all_templates,
    )
    return BulkInvitationResult(
        created=result.count("created"),
        skipped=result.count("skipped"),
        failed=result.count("failed"),
        quota_exceeded=result.count("quota_exceeded"),
        items=[
            BulkInvitationItem(
                application_id=item.application_id,
                status=item.status,
                invitation_id=item.invitation_id,
                reason=item.reason,
            )
            for item in result.items
        ],
    )


@router.get("/invitations", response_model=list[InvitationRead])
def list_invitations(
    application_id: UUID = Query(...),
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    invitations = invitation_service.list_invitations(db, session.org_id, application_id)
    return [_invitation_read(inv) for inv in invitations]


@router.post(
    "/invitations/{invitation_id}/resend",
    response_model=InvitationCreateResponse,
    status_code=201,
    dependencies=[Depends(require_csrf_header)],
)
def resend_invitation(
    invitation_id: UUID,
    data: InvitationResend | None = None,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
    sender: EmailSender = Depends(get_email_sender),
    ledger: QuotaLedger = Depends(get_quota_ledger),
):
    """Replace a failed or expired invitation with a new link."""
    data = data or InvitationResend()
    invitation = invitation_service.resend_invitation(
        db,
        sender,
        ledger,
        org_id=session.org_id,
        user_id=session.user_id,
        invitation_id=invitation_id,
        custom_message=data.custom_message,
        refresh_snapshot=data.refresh_snapshot,
        include_all=session.can_see_all_templates,
    )
    return _invitation_created(invitation)


@router.post(
    "/invitations/{invitation_id}/remind",
    response_model=InvitationRead,
    dependencies=[Depends(require_csrf_header)],
)
def remind_invitation(
    invitation_id: UUID,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
    sender: EmailSender = Depends(get_email_sender),
    ledger: QuotaLedger = Depends(get_quota_ledger),
):
    invitation = invitation_service.send_reminder(
        db,
        sender,
        ledger,
        org_id=session.org_id,
        user_id=session.user_id,
        invitation_id=invitation_id,
    )
    return _invitation_read(invitation)


# =============================================================================
# Responses
# =============================================================================

@router.get("/responses", response_model=list[ResponseSummary])
def list_responses(
    application_id: UUID = Query(...),
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    responses = response_service.list_responses(db, session.org_id, application_id)
    return [_response_summary(r) for r in responses]


@router.get("/responses/{response_id}", response_model=ResponseDetail)
def get_response(
    response_id: UUID,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    response = response_service.get_response_detail(db, session.org_id, response_id)
    summary = _response_summary(response)
    return ResponseDetail(
        **summary.model_dump(),
        answers=[ResponseAnswerRead.model_validate(a) for a in response.answers],
    )


@router.get("/export", response_class=StreamingResponse)
@limiter.limit("5/minute")
def export_responses(
    request: Request,
    form_id: UUID | None = Query(None),
    application_id: UUID | None = Query(None),
    submitted_from: datetime | None = Query(None, alias="from"),
    submitted_to: datetime | None = Query(None, alias="to"),
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
) -> StreamingResponse:
    """Export responses as CSV, one line per question."""
    filename = (
        f"form_responses_{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}.csv"
    )
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return StreamingResponse(
        export_service.stream_responses_csv(
            db,
            session.org_id,
            form_id=form_id,
            application_id=application_id,
            submitted_from=submitted_from,
            submitted_to=submitted_to,
        ),
        media_type="text/csv",
        headers=headers,
    )
