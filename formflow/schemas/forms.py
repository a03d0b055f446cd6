"""Schemas for form templates, invitations and responses."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Templates
# =============================================================================

class FormFieldInput(BaseModel):
    # type/label/options are checked by the template service so errors carry
    # field-level detail instead of a generic 422
    type: str
    label: str = ""
    required: bool = False
    options: list[str] | None = None
    order: int | None = None  # ignored; order follows array position


class FormFieldRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    label: str
    required: bool
    options: list[str] | None
    order: int


class FormTemplateCreate(BaseModel):
    name: str = Field(..., max_length=200)
    description: str | None = None
    is_published: bool = True
    fields: list[FormFieldInput] = Field(default_factory=list)


class FormTemplateUpdate(BaseModel):
    name: str | None = Field(None, max_length=200)
    description: str | None = None
    is_published: bool | None = None
    fields: list[FormFieldInput] | None = None


class FormTemplateSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    is_published: bool
    created_by_user_id: UUID | None
    created_at: datetime
    updated_at: datetime


class FormTemplateRead(FormTemplateSummary):
    fields: list[FormFieldRead]


class AISuggestRequest(BaseModel):
    form_id: UUID | None = None  # when set, suggestions are appended to this template
    job_title: str | None = Field(None, max_length=255)
    job_description: str | None = Field(None, max_length=20_000)
    goals: list[str] = Field(default_factory=list, max_length=10)


class AISuggestResponse(BaseModel):
    fields: list[FormFieldInput]
    remaining: int
    limit: int
    form: FormTemplateRead | None = None


# =============================================================================
# Invitations
# =============================================================================

class InvitationCreate(BaseModel):
    application_id: UUID
    form_id: UUID
    custom_message: str | None = Field(None, max_length=2000)


class InvitationResend(BaseModel):
    custom_message: str | None = Field(None, max_length=2000)
    refresh_snapshot: bool = True


class BulkInvitationCreate(BaseModel):
    form_id: UUID
    application_ids: list[UUID] = Field(..., min_length=1)
    custom_message: str | None = Field(None, max_length=2000)


class BulkInvitationItem(BaseModel):
    application_id: UUID
    status: str  # created | skipped | failed | quota_exceeded
    invitation_id: UUID | None = None
    reason: str | None = None


class BulkInvitationResult(BaseModel):
    created: int
    skipped: int
    failed: int
    quota_exceeded: int
    items: list[BulkInvitationItem]


class InvitationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    application_id: UUID
    form_id: UUID | None
    status: str
    expires_at: datetime
    sent_at: datetime | None
    viewed_at: datetime | None
    answered_at: datetime | None
    reminder_sent_at: datetime | None
    sent_by_user_id: UUID | None
    custom_message: str | None
    error_message: str | None
    resent_from_id: UUID | None
    created_at: datetime
    form_name: str | None = None


class InvitationCreateResponse(InvitationRead):
    form_url: str


class QuotaRead(BaseModel):
    kind: str
    limit: int
    used: int
    remaining: int
    reset_at: datetime


# =============================================================================
# Public (candidate) surface
# =============================================================================

class SnapshotField(BaseModel):
    id: UUID
    type: str
    label: str
    required: bool
    options: list[str] | None = None
    order: int


class PublicFormRead(BaseModel):
    form_name: str
    form_description: str | None
    custom_message: str | None
    expires_at: datetime
    status: str
    fields: list[SnapshotField]


class AnswerInput(BaseModel):
    field_id: UUID
    answer: str | None = None
    file_url: str | None = None


class SubmitRequest(BaseModel):
    answers: list[AnswerInput]


class SubmitResponse(BaseModel):
    response_id: UUID
    submitted_at: datetime
    message: str = "Thank you! Your answers have been submitted."


class UploadResponse(BaseModel):
    url: str
    filename: str
    size_bytes: int


# =============================================================================
# Responses
# =============================================================================

class ResponseAnswerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    field_id: UUID
    question: str
    field_type: str
    position: int
    answer: str | None
    file_url: str | None


class ResponseSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invitation_id: UUID
    application_id: UUID
    form_id: UUID | None
    submitted_at: datetime
    form_name: str | None = None


class ResponseDetail(ResponseSummary):
    answers: list[ResponseAnswerRead]


class FormResponseListItem(BaseModel):
    id: UUID
    submitted_at: datetime
    invitation_id: UUID
    application_id: UUID
    candidate_name: str
    candidate_email: str


class FormResponseList(BaseModel):
    form_id: UUID
    form_name: str
    responses: list[FormResponseListItem]
    total: int
