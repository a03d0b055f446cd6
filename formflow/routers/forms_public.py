"""Public form endpoints for candidates (token-authenticated, rate limited)."""

from fastapi import APIRouter, Depends, File, UploadFile
from sqlalchemy.orm import Session

from formflow.core.config import settings
from formflow.core.deps import get_db
from formflow.core.rate_limit import FORM_READ, FORM_SUBMIT, enforce_public_rate_limit
from formflow.schemas.forms import (
    PublicFormRead,
    SnapshotField,
    SubmitRequest,
    SubmitResponse,
    UploadResponse,
)
from formflow.services import invitation_service, response_service

router = APIRouter(prefix="/forms/public", tags=["forms-public"])


@router.get(
    "/{token}",
    response_model=PublicFormRead,
    dependencies=[Depends(enforce_public_rate_limit(FORM_READ))],
)
def get_public_form(token: str, db: Session = Depends(get_db)):
    """Open the form. The first successful call marks the invitation viewed."""
    resolved = invitation_service.resolve_invitation(db, token)
    snapshot = resolved.snapshot or {}
    return PublicFormRead(
        form_name=snapshot.get("form_name") or "",
        form_description=snapshot.get("form_description"),
        custom_message=resolved.invitation.custom_message,
        expires_at=resolved.expires_at,
        status=resolved.status,
        fields=[SnapshotField(**f) for f in snapshot.get("fields", [])],
    )


@router.post(
    "/{token}/upload",
    response_model=UploadResponse,
    status_code=201,
    dependencies=[Depends(enforce_public_rate_limit(FORM_SUBMIT))],
)
def upload_file(
    token: str,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
):
    """Store a file and return the URL to send as ``file_url`` on submit."""
    # One byte past the limit is enough to know it is too large
    data = file.file.read(settings.FORM_UPLOAD_MAX_BYTES + 1)
    stored = response_service.store_upload(
        db,
        token,
        filename=file.filename,
        content_type=file.content_type,
        data=data,
    )
    return UploadResponse(url=stored.url, filename=file.filename or "", size_bytes=len(data))


@router.post(
    "/{token}/submit",
    response_model=SubmitResponse,
    status_code=201,
    dependencies=[Depends(enforce_public_rate_limit(FORM_SUBMIT))],
)
def submit_form(token: str, data: SubmitRequest, db: Session = Depends(get_db)):
    response = response_service.submit_response(db, token, data.answers)
    return SubmitResponse(response_id=response.id, submitted_at=response.submitted_at)
