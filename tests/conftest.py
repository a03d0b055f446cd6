"""
Test configuration and fixtures.

Provides:
- In-memory SQLite database, rebuilt for every test
- Organization / recruiter / application / template factories
- Fake email sender and AI suggester, in-memory quota ledger
- HTTPX AsyncClient with session cookie and CSRF header
"""
import os
import uuid
from dataclasses import dataclass, field
from typing import AsyncGenerator, Generator

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["TESTING"] = "1"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["EMAIL_BACKEND"] = "console"
os.environ["QUOTA_BACKEND"] = "memory"
os.environ["ENV"] = "test"
os.environ["SENTRY_DSN"] = ""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

from formflow.core.deps import COOKIE_NAME, get_db
from formflow.core.rate_limit import public_rate_limiter
from formflow.core.security import create_session_token
from formflow.db.base import Base
from formflow.db.enums import Role
from formflow.db.models import Application, FormTemplate, Organization, Recruiter
from formflow.db.session import SessionLocal, engine
from formflow.main import app
from formflow.services import template_service
from formflow.services.ai_suggestion_service import SuggestionContext, get_field_suggester
from formflow.services.email_service import DeliveryResult, get_email_sender
from formflow.services.quota_service import MemoryQuotaLedger, get_quota_ledger


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Fresh schema per test.

    The in-memory engine uses a single shared connection, so sessions opened
    by app code (internal endpoints, CLI) see the same data.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_public_rate_limiter():
    public_rate_limiter.reset()
    yield
    public_rate_limiter.reset()


def make_org(db: Session, name: str = "Test Organization") -> Organization:
    org = Organization(
        id=uuid.uuid4(),
        name=name,
        slug=f"test-org-{uuid.uuid4().hex[:8]}",
    )
    db.add(org)
    db.commit()
    return org


def make_recruiter(db: Session, org: Organization, role: Role = Role.RECRUITER) -> Recruiter:
    user = Recruiter(
        id=uuid.uuid4(),
        organization_id=org.id,
        email=f"recruiter-{uuid.uuid4().hex[:8]}@test.com",
        display_name="Test Recruiter",
        role=role.value,
    )
    db.add(user)
    db.commit()
    return user


def make_application(
    db: Session,
    org: Organization,
    candidate_name: str = "Jamie Candidate",
    job_title: str | None = "Backend Engineer",
) -> Application:
    application = Application(
        id=uuid.uuid4(),
        organization_id=org.id,
        candidate_name=candidate_name,
        candidate_email=f"candidate-{uuid.uuid4().hex[:8]}@example.com",
        job_title=job_title,
    )
    db.add(application)
    db.commit()
    return application


DEFAULT_FIELDS = [
    {"type": "short_text", "label": "Full name", "required": True},
    {"type": "email", "label": "Contact email", "required": True},
    {"type": "select", "label": "Preferred shift", "required": False, "options": ["Day", "Night"]},
    {"type": "yes_no", "label": "Can you relocate?", "required": False},
    {"type": "file", "label": "Resume", "required": False},
]


def make_template(
    db: Session,
    org: Organization,
    user: Recruiter,
    name: str = "Screening",
    fields: list[dict] | None = None,
    is_published: bool = True,
) -> FormTemplate:
    return template_service.create_template(
        db,
        org_id=org.id,
        user_id=user.id,
        name=name,
        description="Initial screening questions",
        fields=fields if fields is not None else DEFAULT_FIELDS,
        is_published=is_published,
    )


@pytest.fixture(scope="function")
def test_org(db: Session) -> Organization:
    return make_org(db)


@pytest.fixture(scope="function")
def test_user(db: Session, test_org: Organization) -> Recruiter:
    return make_recruiter(db, test_org)


@pytest.fixture(scope="function")
def test_application(db: Session, test_org: Organization) -> Application:
    return make_application(db, test_org)


@pytest.fixture(scope="function")
def test_template(db: Session, test_org: Organization, test_user: Recruiter) -> FormTemplate:
    return make_template(db, test_org, test_user)


# =============================================================================
# Collaborator fakes
# =============================================================================

@dataclass
class SentEmail:
    to_email: str
    subject: str
    body: str
    idempotency_key: str | None


@dataclass
class FakeEmailSender:
    """Records messages; flip ``fail`` or ``explode`` to simulate provider trouble."""
    key: str = "fake"
    fail: bool = False
    explode: bool = False
    sent: list[SentEmail] = field(default_factory=list)

    def send(self, to_email, subject, body, idempotency_key=None) -> DeliveryResult:
        if self.explode:
            raise RuntimeError("provider client crashed")
        if self.fail:
            return DeliveryResult(success=False, error="Mailbox unavailable")
        self.sent.append(SentEmail(to_email, subject, body, idempotency_key))
        return DeliveryResult(success=True, message_id=f"msg-{len(self.sent)}")


@dataclass
class FakeFieldSuggester:
    available: bool = True
    fields: list[dict] = field(default_factory=lambda: [
        {"type": "long_text", "label": "Describe a system you designed", "required": True, "options": None},
        {"type": "select", "label": "Years of Python", "required": False, "options": ["0-2", "3-5", "6+"]},
    ])
    calls: list[SuggestionContext] = field(default_factory=list)

    def is_available(self) -> bool:
        return self.available

    def suggest(self, context: SuggestionContext) -> list[dict]:
        self.calls.append(context)
        return [dict(f) for f in self.fields]


@pytest.fixture(scope="function")
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture(scope="function")
def quota_ledger() -> MemoryQuotaLedger:
    return MemoryQuotaLedger()


@pytest.fixture(scope="function")
def field_suggester() -> FakeFieldSuggester:
    return FakeFieldSuggester()


# =============================================================================
# Auth Fixtures
# =============================================================================

@dataclass
class TestAuth:
    """Test authentication context."""
    __test__ = False

    user: Recruiter
    org: Organization
    token: str
    cookie_name: str = COOKIE_NAME


def make_auth(user: Recruiter, org: Organization) -> TestAuth:
    token = create_session_token(
        user_id=user.id,
        org_id=org.id,
        role=user.role,
        token_version=user.token_version,
    )
    return TestAuth(user=user, org=org, token=token)


@pytest.fixture(scope="function")
def test_auth(test_user: Recruiter, test_org: Organization) -> TestAuth:
    """Create JWT token for test user."""
    return make_auth(test_user, test_org)


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def override_dependencies(db, email_sender, quota_ledger, field_suggester):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_email_sender] = lambda: email_sender
    app.dependency_overrides[get_quota_ledger] = lambda: quota_ledger
    app.dependency_overrides[get_field_suggester] = lambda: field_suggester
    yield
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def client(override_dependencies) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated client for the public candidate endpoints."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c


@pytest.fixture(scope="function")
async def authed_client(
    override_dependencies,
    test_auth: TestAuth,
) -> AsyncGenerator[AsyncClient, None]:
    """Authenticated client with session cookie and CSRF header."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        cookies={test_auth.cookie_name: test_auth.token},
        headers={"X-Requested-With": "XMLHttpRequest"},  # CSRF header
    ) as c:
        yield c


# =============================================================================
# Factories
# =============================================================================

@pytest.fixture(scope="function")
def application_factory(db: Session, test_org: Organization):
    def _create(org: Organization | None = None, **kwargs) -> Application:
        return make_application(db, org or test_org, **kwargs)
    return _create


@pytest.fixture(scope="function")
def template_factory(db: Session, test_org: Organization, test_user: Recruiter):
    def _create(user: Recruiter | None = None, org: Organization | None = None, **kwargs) -> FormTemplate:
        return make_template(db, org or test_org, user or test_user, **kwargs)
    return _create


@pytest.fixture(scope="function")
def other_user(db: Session, test_org: Organization) -> Recruiter:
    """Second recruiter in the same organization."""
    return make_recruiter(db, test_org)


@pytest.fixture(scope="function")
def admin_user(db: Session, test_org: Organization) -> Recruiter:
    return make_recruiter(db, test_org, role=Role.ADMIN)


@pytest.fixture(scope="function")
def other_org(db: Session) -> Organization:
    return make_org(db, name="Other Organization")
