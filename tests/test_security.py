"""Tests for recruiter session tokens."""

import uuid
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from formflow.core.config import settings
from formflow.core.security import create_session_token, decode_session_token


def _token(**overrides) -> str:
    payload = {
        "iss": "formflow",
        "sub": str(uuid.uuid4()),
        "org_id": str(uuid.uuid4()),
        "role": "recruiter",
        "ver": 1,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    payload.update(overrides)
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def test_round_trip_claims():
    user_id, org_id = uuid.uuid4(), uuid.uuid4()
    token = create_session_token(user_id=user_id, org_id=org_id, role="admin", token_version=3)

    claims = decode_session_token(token)

    assert claims.user_id == user_id
    assert claims.org_id == org_id
    assert claims.role == "admin"
    assert claims.token_version == 3


def test_previous_secret_accepted_during_rotation(monkeypatch):
    token = create_session_token(uuid.uuid4(), uuid.uuid4(), "recruiter", 1)
    old_secret = settings.JWT_SECRET
    monkeypatch.setattr(settings, "JWT_SECRET", "rotated-secret")
    monkeypatch.setattr(settings, "JWT_SECRET_PREVIOUS", old_secret)

    assert decode_session_token(token).role == "recruiter"


def test_unknown_secret_rejected(monkeypatch):
    token = create_session_token(uuid.uuid4(), uuid.uuid4(), "recruiter", 1)
    monkeypatch.setattr(settings, "JWT_SECRET", "rotated-secret")
    monkeypatch.setattr(settings, "JWT_SECRET_PREVIOUS", "")

    with pytest.raises(jwt.InvalidSignatureError):
        decode_session_token(token)


def test_expired_token_rejected():
    with pytest.raises(jwt.ExpiredSignatureError):
        decode_session_token(_token(exp=datetime.now(timezone.utc) - timedelta(minutes=1)))


def test_foreign_issuer_rejected():
    with pytest.raises(jwt.InvalidIssuerError):
        decode_session_token(_token(iss="someone-else"))


def test_malformed_claims_rejected():
    with pytest.raises(jwt.InvalidTokenError):
        decode_session_token(_token(sub="not-a-uuid"))


async def test_revoked_session_is_unauthorized(authed_client, db, test_user):
    test_user.token_version += 1
    db.commit()

    res = await authed_client.get("/forms/templates")
    assert res.status_code == 401
