"""Tests for per-recruiter daily quotas."""

import threading
import uuid
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from formflow.db.base import Base
from formflow.db.enums import QuotaKind
from formflow.db.models import QuotaCounter
from formflow.services.exceptions import QuotaExceededError
from formflow.services.quota_service import (
    DatabaseQuotaLedger,
    MemoryQuotaLedger,
    bucket_for,
    build_quota_ledger,
    require_quota,
    reset_time_for,
)

INVITES = QuotaKind.INVITATIONS_SENT
AI = QuotaKind.AI_SUGGESTIONS


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed SQLite so separate connections (and threads) share state."""
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'quota.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine)
    engine.dispose()


def test_bucket_is_utc_date():
    late_evening_new_york = datetime(2024, 3, 1, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
    assert bucket_for(late_evening_new_york) == date(2024, 3, 2)
    assert reset_time_for(date(2024, 3, 2)) == datetime(2024, 3, 3, tzinfo=timezone.utc)


def test_memory_ledger_stops_at_limit():
    ledger = MemoryQuotaLedger(limits={INVITES.value: 2})
    user_id = uuid.uuid4()

    first = ledger.try_consume(user_id, INVITES)
    second = ledger.try_consume(user_id, INVITES)
    third = ledger.try_consume(user_id, INVITES)

    assert (first.allowed, first.remaining) == (True, 1)
    assert (second.allowed, second.remaining) == (True, 0)
    assert third.allowed is False
    assert ledger.peek(user_id, INVITES).used == 2


def test_kinds_and_recruiters_are_independent():
    ledger = MemoryQuotaLedger(limits={INVITES.value: 1, AI.value: 1})
    alice, bob = uuid.uuid4(), uuid.uuid4()

    assert ledger.try_consume(alice, INVITES).allowed
    assert ledger.try_consume(alice, AI).allowed
    assert ledger.try_consume(bob, INVITES).allowed
    assert not ledger.try_consume(alice, INVITES).allowed


def test_next_day_starts_fresh():
    ledger = MemoryQuotaLedger(limits={INVITES.value: 1})
    user_id = uuid.uuid4()
    today = datetime(2024, 5, 10, 23, 59, tzinfo=timezone.utc)

    assert ledger.try_consume(user_id, INVITES, now=today).allowed
    assert not ledger.try_consume(user_id, INVITES, now=today).allowed
    assert ledger.try_consume(user_id, INVITES, now=today + timedelta(minutes=2)).allowed


def test_memory_ledger_forgets_previous_days():
    ledger = MemoryQuotaLedger(limits={INVITES.value: 5})
    day_one = datetime(2024, 5, 10, 9, tzinfo=timezone.utc)
    for _ in range(3):
        ledger.try_consume(uuid.uuid4(), INVITES, now=day_one)
    assert len(ledger._counts) == 3

    user_id = uuid.uuid4()
    ledger.try_consume(user_id, INVITES, now=day_one + timedelta(days=1))

    assert list(ledger._counts) == [(user_id, date(2024, 5, 11), INVITES.value)]
    assert list(ledger._locks) == [(user_id, date(2024, 5, 11), INVITES.value)]


def test_zero_limit_denies_everything():
    ledger = MemoryQuotaLedger(limits={AI.value: 0})
    decision = ledger.try_consume(uuid.uuid4(), AI)
    assert decision.allowed is False
    assert decision.remaining == 0


def test_memory_ledger_is_atomic_across_threads():
    ledger = MemoryQuotaLedger(limits={INVITES.value: 50})
    user_id = uuid.uuid4()
    results: list[bool] = []
    results_lock = threading.Lock()

    def worker():
        for _ in range(10):
            allowed = ledger.try_consume(user_id, INVITES).allowed
            with results_lock:
                results.append(allowed)

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 50
    assert ledger.peek(user_id, INVITES).used == 50


def test_database_ledger_persists_usage(file_session_factory):
    ledger = DatabaseQuotaLedger(file_session_factory, limits={INVITES.value: 3})
    user_id = uuid.uuid4()

    decisions = [ledger.try_consume(user_id, INVITES) for _ in range(4)]

    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert [d.used for d in decisions[:3]] == [1, 2, 3]

    # A new ledger over the same database sees the same count
    reopened = DatabaseQuotaLedger(file_session_factory, limits={INVITES.value: 3})
    status = reopened.peek(user_id, INVITES)
    assert (status.used, status.remaining) == (3, 0)

    with file_session_factory() as session:
        rows = session.query(QuotaCounter).filter(QuotaCounter.recruiter_id == user_id).all()
    assert len(rows) == 1
    assert rows[0].used == 3


def test_database_ledger_separates_days(file_session_factory):
    ledger = DatabaseQuotaLedger(file_session_factory, limits={AI.value: 1})
    user_id = uuid.uuid4()
    day_one = datetime(2024, 6, 1, 12, tzinfo=timezone.utc)

    assert ledger.try_consume(user_id, AI, now=day_one).allowed
    assert not ledger.try_consume(user_id, AI, now=day_one).allowed
    assert ledger.try_consume(user_id, AI, now=day_one + timedelta(days=1)).allowed


def test_database_ledger_zero_limit(file_session_factory):
    ledger = DatabaseQuotaLedger(file_session_factory, limits={AI.value: 0})
    assert ledger.try_consume(uuid.uuid4(), AI).allowed is False


def test_database_ledger_never_exceeds_limit_under_concurrency(file_session_factory):
    ledger = DatabaseQuotaLedger(file_session_factory, limits={INVITES.value: 5})
    user_id = uuid.uuid4()
    results: list[bool] = []
    results_lock = threading.Lock()
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        allowed = ledger.try_consume(user_id, INVITES).allowed
        with results_lock:
            results.append(allowed)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 5
    assert ledger.peek(user_id, INVITES).used == 5


def test_require_quota_raises_with_reset_time():
    ledger = MemoryQuotaLedger(limits={INVITES.value: 1})
    user_id = uuid.uuid4()
    require_quota(ledger, user_id, INVITES)

    with pytest.raises(QuotaExceededError) as exc_info:
        require_quota(ledger, user_id, INVITES)

    error = exc_info.value
    assert error.status_code == 429
    assert error.remaining == 0
    assert error.reset_at == reset_time_for(bucket_for())
    assert 0 <= error.retry_after_seconds <= 24 * 60 * 60
    assert error.to_dict()["code"] == "QUOTA_EXCEEDED"


def test_build_quota_ledger_backends():
    assert isinstance(build_quota_ledger("memory"), MemoryQuotaLedger)
    assert isinstance(build_quota_ledger("database"), DatabaseQuotaLedger)
    with pytest.raises(ValueError):
        build_quota_ledger("carrier-pigeon")


@pytest.mark.asyncio
async def test_quota_endpoint_reports_usage(authed_client, test_user, quota_ledger):
    quota_ledger.try_consume(test_user.id, INVITES)

    res = await authed_client.get("/forms/invitations/quota")
    assert res.status_code == 200
    by_kind = {q["kind"]: q for q in res.json()}
    assert by_kind["invitations_sent"]["used"] == 1
    assert by_kind["ai_suggestions"]["used"] == 0
    assert by_kind["invitations_sent"]["remaining"] == by_kind["invitations_sent"]["limit"] - 1
