"""Per-recruiter daily quotas (invitation sends, AI suggestions).

Counters are keyed by (recruiter, UTC date, kind). A new day is a new key, so
nothing is ever reset or deleted. Consumption is a single check-and-increment
step; there is no rollback once a unit is consumed.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Protocol

from sqlalchemy.orm import Session

from formflow.core.config import settings
from formflow.core.structured_logging import build_log_context
from formflow.db.enums import QuotaKind
from formflow.db.models import QuotaCounter
from formflow.services.exceptions import QuotaExceededError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaStatus:
    kind: str
    limit: int
    used: int
    remaining: int
    reset_at: datetime


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    kind: str
    limit: int
    used: int
    remaining: int
    reset_at: datetime


def bucket_for(now: datetime | None = None) -> date:
    """UTC calendar date the given moment counts against."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).date()


def reset_time_for(bucket: date) -> datetime:
    """Next UTC midnight after the bucket's day."""
    return datetime.combine(bucket + timedelta(days=1), time.min, tzinfo=timezone.utc)


def limit_for(kind: QuotaKind | str) -> int:
    kind = QuotaKind(kind)
    if kind == QuotaKind.AI_SUGGESTIONS:
        return settings.AI_SUGGESTION_DAILY_LIMIT
    return settings.FORM_INVITE_DAILY_LIMIT


def _decision(allowed: bool, kind: str, limit: int, used: int, bucket: date) -> QuotaDecision:
    return QuotaDecision(
        allowed=allowed,
        kind=kind,
        limit=limit,
        used=used,
        remaining=max(0, limit - used),
        reset_at=reset_time_for(bucket),
    )


class QuotaLedger(Protocol):
    def try_consume(
        self,
        recruiter_id: uuid.UUID,
        kind: QuotaKind | str,
        now: datetime | None = None,
    ) -> QuotaDecision: ...

    def peek(
        self,
        recruiter_id: uuid.UUID,
        kind: QuotaKind | str,
        now: datetime | None = None,
    ) -> QuotaStatus: ...


class DatabaseQuotaLedger:
    """
    Durable ledger backed by the quota_counters table.

    One statement per consumption:

        INSERT ... ON CONFLICT (recruiter_id, bucket_date, kind)
        DO UPDATE SET used = used + 1 WHERE used < :limit
        RETURNING used

    No returned row means the ceiling was already reached. Runs in its own
    short transaction so the unit stays consumed whatever the caller does next.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        limits: dict[str, int] | None = None,
    ) -> None:
        if session_factory is None:
            from formflow.db.session import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self._limits = limits

    def _limit(self, kind: str) -> int:
        if self._limits is not None and kind in self._limits:
            return self._limits[kind]
        return limit_for(kind)

    def _insert(self, session: Session):
        if session.get_bind().dialect.name == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            from sqlalchemy.dialects.sqlite import insert
        return insert

    def try_consume(
        self,
        recruiter_id: uuid.UUID,
        kind: QuotaKind | str,
        now: datetime | None = None,
    ) -> QuotaDecision:
        kind = QuotaKind(kind).value
        limit = self._limit(kind)
        bucket = bucket_for(now)

        with self._session_factory() as session:
            if limit <= 0:
                used = self._read_used(session, recruiter_id, kind, bucket)
                return _decision(False, kind, limit, used, bucket)

            insert = self._insert(session)
            stamp = datetime.now(timezone.utc)
            stmt = insert(QuotaCounter).values(
                id=uuid.uuid4(),
                recruiter_id=recruiter_id,
                bucket_date=bucket,
                kind=kind,
                used=1,
                updated_at=stamp,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[
                    QuotaCounter.recruiter_id,
                    QuotaCounter.bucket_date,
                    QuotaCounter.kind,
                ],
                set_={"used": QuotaCounter.used + 1, "updated_at": stamp},
                where=QuotaCounter.used < limit,
            ).returning(QuotaCounter.used)

            used = session.execute(stmt).scalar_one_or_none()
            session.commit()

        if used is None:
            logger.info(
                "quota_exhausted",
                extra={**build_log_context(user_id=recruiter_id), "kind": kind},
            )
            return _decision(False, kind, limit, limit, bucket)
        return _decision(True, kind, limit, used, bucket)

    def _read_used(
        self, session: Session, recruiter_id: uuid.UUID, kind: str, bucket: date
    ) -> int:
        used = (
            session.query(QuotaCounter.used)
            .filter(
                QuotaCounter.recruiter_id == recruiter_id,
                QuotaCounter.bucket_date == bucket,
                QuotaCounter.kind == kind,
            )
            .scalar()
        )
        return used or 0

    def peek(
        self,
        recruiter_id: uuid.UUID,
        kind: QuotaKind | str,
        now: datetime | None = None,
    ) -> QuotaStatus:
        kind = QuotaKind(kind).value
        limit = self._limit(kind)
        bucket = bucket_for(now)
        with self._session_factory() as session:
            used = self._read_used(session, recruiter_id, kind, bucket)
        return QuotaStatus(
            kind=kind,
            limit=limit,
            used=used,
            remaining=max(0, limit - used),
            reset_at=reset_time_for(bucket),
        )


class MemoryQuotaLedger:
    """
    In-process ledger for single-worker deployments and tests.

    Counts are lost on restart. A lock per bucket key makes check-and-increment
    atomic across threads. Earlier days are dropped when a newer bucket is
    first used.
    """

    def __init__(self, limits: dict[str, int] | None = None) -> None:
        self._limits = limits
        self._counts: dict[tuple[uuid.UUID, date, str], int] = {}
        self._locks: dict[tuple[uuid.UUID, date, str], threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _limit(self, kind: str) -> int:
        if self._limits is not None and kind in self._limits:
            return self._limits[kind]
        return limit_for(kind)

    def _lock_for(self, key: tuple[uuid.UUID, date, str]) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                self._prune_before(key[1])
                lock = self._locks[key] = threading.Lock()
            return lock

    def _prune_before(self, bucket: date) -> None:
        """Forget buckets older than ``bucket``; caller holds the registry lock."""
        for stale in [k for k in list(self._locks) if k[1] < bucket]:
            del self._locks[stale]
        for stale in [k for k in list(self._counts) if k[1] < bucket]:
            self._counts.pop(stale, None)

    def try_consume(
        self,
        recruiter_id: uuid.UUID,
        kind: QuotaKind | str,
        now: datetime | None = None,
    ) -> QuotaDecision:
        kind = QuotaKind(kind).value
        limit = self._limit(kind)
        bucket = bucket_for(now)
        key = (recruiter_id, bucket, kind)

        with self._lock_for(key):
            used = self._counts.get(key, 0)
            if limit <= 0 or used >= limit:
                return _decision(False, kind, limit, used, bucket)
            self._counts[key] = used + 1
            return _decision(True, kind, limit, used + 1, bucket)

    def peek(
        self,
        recruiter_id: uuid.UUID,
        kind: QuotaKind | str,
        now: datetime | None = None,
    ) -> QuotaStatus:
        kind = QuotaKind(kind).value
        limit = self._limit(kind)
        bucket = bucket_for(now)
        used = self._counts.get((recruiter_id, bucket, kind), 0)
        return QuotaStatus(
            kind=kind,
            limit=limit,
            used=used,
            remaining=max(0, limit - used),
            reset_at=reset_time_for(bucket),
        )


# =============================================================================
# Backend selection
# =============================================================================

_ledger: QuotaLedger | None = None


def build_quota_ledger(backend: str | None = None) -> QuotaLedger:
    backend = (backend or settings.QUOTA_BACKEND).lower()
    if backend == "memory":
        logger.warning("Using in-memory quota ledger; counts are per-process and not durable")
        return MemoryQuotaLedger()
    if backend != "database":
        raise ValueError(f"Unknown QUOTA_BACKEND '{backend}'")
    return DatabaseQuotaLedger()


def get_quota_ledger() -> QuotaLedger:
    """FastAPI dependency returning the process-wide ledger chosen at startup."""
    global _ledger
    if _ledger is None:
        _ledger = build_quota_ledger()
    return _ledger


def require_quota(
    ledger: QuotaLedger,
    recruiter_id: uuid.UUID,
    kind: QuotaKind | str,
) -> QuotaDecision:
    """Consume one unit or raise QuotaExceededError."""
    decision = ledger.try_consume(recruiter_id, kind)
    if not decision.allowed:
        if QuotaKind(kind) == QuotaKind.AI_SUGGESTIONS:
            message = "Daily AI suggestion limit reached. Please try again tomorrow."
        else:
            message = (
                f"Daily invitation limit reached ({decision.limit} per day). "
                "Please try again tomorrow."
            )
        raise QuotaExceededError(
            kind=decision.kind,
            limit=decision.limit,
            remaining=decision.remaining,
            reset_at=decision.reset_at,
            message=message,
        )
    return decision
