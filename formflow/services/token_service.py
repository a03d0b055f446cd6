"""Invitation tokens: generation and constant-time validation."""

import hmac
import re
import secrets

from sqlalchemy.orm import Session

from formflow.db.models import FormInvitation
from formflow.services.exceptions import TokenNotFoundError

TOKEN_BYTES = 32  # 256 bits of entropy
TOKEN_LENGTH = 43  # len(token_urlsafe(32))
_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{%d}$" % TOKEN_LENGTH)


def issue() -> str:
    """Return a fresh URL-safe token with no sequential structure."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def issue_unique(db: Session) -> str:
    token = issue()
    while (
        db.query(FormInvitation.id).filter(FormInvitation.token == token).first()
        is not None
    ):
        token = issue()
    return token


def is_well_formed(token: str | None) -> bool:
    return bool(token) and _TOKEN_RE.match(token) is not None


def validate(db: Session, token: str | None) -> FormInvitation:
    """
    Look up an invitation by token.

    Malformed tokens are rejected without touching the database. The lookup
    uses the unique index on ``token``; the stored value is then compared in
    constant time. Whether the invitation is still usable is decided by the
    caller.

    Raises:
        TokenNotFoundError: No invitation carries this token
    """
    if not is_well_formed(token):
        raise TokenNotFoundError()

    invitation = db.query(FormInvitation).filter(FormInvitation.token == token).first()
    if invitation is None or not hmac.compare_digest(
        invitation.token.encode(), token.encode()
    ):
        raise TokenNotFoundError()
    return invitation
