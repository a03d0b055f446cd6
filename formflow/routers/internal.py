"""
Internal endpoints for scheduled/cron operations.

Protected by X-Internal-Secret header.
Call from external cron (Render/Railway/GH Actions).
"""
import hmac

from fastapi import APIRouter, Header, HTTPException
from pydantic import BaseModel

from formflow.core.config import settings
from formflow.db.session import SessionLocal
from formflow.services import invitation_service


router = APIRouter(prefix="/internal/scheduled", tags=["internal"])


def verify_internal_secret(x_internal_secret: str = Header(...)):
    """Verify the internal secret header."""
    expected = settings.INTERNAL_SECRET
    if not expected:
        raise HTTPException(status_code=501, detail="INTERNAL_SECRET not configured")
    if not hmac.compare_digest(x_internal_secret, expected):
        raise HTTPException(status_code=403, detail="Invalid internal secret")


class ExpireInvitationsResponse(BaseModel):
    expired: int


@router.post("/expire-form-invitations", response_model=ExpireInvitationsResponse)
def expire_form_invitations(x_internal_secret: str = Header(...)):
    """
    Sweep invitations past their expiry into ``expired``.

    Idempotent: a second run finds nothing left to expire.
    """
    verify_internal_secret(x_internal_secret)

    with SessionLocal() as db:
        expired = invitation_service.expire_stale_invitations(db)

    return ExpireInvitationsResponse(expired=expired)
