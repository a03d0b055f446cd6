"""Recruiter session tokens (JWT in the session cookie)."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

import jwt

from formflow.core.config import settings

SESSION_ISSUER = "formflow"
SESSION_ALGORITHM = "HS256"


@dataclass(frozen=True)
class SessionClaims:
    user_id: UUID
    org_id: UUID
    role: str
    token_version: int


def create_session_token(
    user_id: UUID,
    org_id: UUID,
    role: str,
    token_version: int,
) -> str:
    """Sign a session for a recruiter with the current secret."""
    now = datetime.now(timezone.utc)
    payload = {
        "iss": SESSION_ISSUER,
        "sub": str(user_id),
        "org_id": str(org_id),
        "role": role,
        "ver": token_version,
        "iat": now,
        "exp": now + timedelta(hours=settings.JWT_EXPIRES_HOURS),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=SESSION_ALGORITHM)


def decode_session_token(token: str) -> SessionClaims:
    """
    Verify a session token and return its claims.

    The previous secret is still accepted while a rotation is in progress.

    Raises:
        jwt.InvalidTokenError: bad signature, expired, wrong issuer or
            malformed claims
    """
    payload = None
    last_error: jwt.InvalidTokenError = jwt.InvalidSignatureError("No signing secret configured")
    for secret in settings.jwt_secrets:
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[SESSION_ALGORITHM],
                issuer=SESSION_ISSUER,
                options={"require": ["exp", "iss", "sub"]},
            )
            break
        except jwt.InvalidSignatureError as e:
            last_error = e
    if payload is None:
        raise last_error

    try:
        return SessionClaims(
            user_id=UUID(payload["sub"]),
            org_id=UUID(payload["org_id"]),
            role=payload["role"],
            token_version=int(payload["ver"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise jwt.InvalidTokenError("Malformed session claims") from e
