"""Rate limiter — per-user daily admission control.

Standard users get a fixed number of requests per local calendar day. Admins
are never limited and never counted. ``admit`` and ``record`` are separate
calls: two concurrent requests can both pass ``admit`` before either records,
so the limit is approximate under concurrency.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deepsearch.config import get_settings
from deepsearch.core.errors import AdmissionDenied, StorageUnavailable
from deepsearch.core.logging import get_logger
from deepsearch.database import TRANSIENT_DB_ERRORS
from deepsearch.models.user import User, UserRequest
from deepsearch.schemas.rate_limit import AdmissionResult

logger = get_logger(__name__)
settings = get_settings()


# ── Admission policies ──────────────────────────────────────────────


@dataclass(frozen=True)
class AdminPolicy:
    """Unlimited, uncounted."""


@dataclass(frozen=True)
class StandardPolicy:
    requests_today: int


AdmissionPolicy = AdminPolicy | StandardPolicy


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ── Rate limiter ────────────────────────────────────────────────────


class RateLimiter:
    """Daily request quota backed by the user_requests table."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        daily_limit: int | None = None,
        timezone: str | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_maker = session_maker
        self.daily_limit = daily_limit if daily_limit is not None else settings.daily_request_limit
        self._tz = ZoneInfo(timezone or settings.timezone)
        self._clock = clock

    def day_bounds(self, now: datetime) -> tuple[datetime, datetime]:
        """Local midnight of ``now``'s day and of the next day, in UTC."""
        local = now.astimezone(self._tz)
        start = local.replace(hour=0, minute=0, second=0, microsecond=0)
        end = start + timedelta(days=1)
        return start.astimezone(UTC), end.astimezone(UTC)

    async def _resolve_policy(
        self,
        db: AsyncSession,
        user_id: str,
        since: datetime,
    ) -> AdmissionPolicy:
        result = await db.execute(select(User.is_admin).where(User.id == user_id))
        if result.scalar_one_or_none():
            return AdminPolicy()

        result = await db.execute(
            select(func.count())
            .select_from(UserRequest)
            .where(UserRequest.user_id == user_id)
            .where(UserRequest.request_date >= since)
        )
        return StandardPolicy(requests_today=result.scalar_one())

    async def admit(self, user_id: str) -> AdmissionResult:
        """Decide whether ``user_id`` may make another request today."""
        start_of_day, reset_at = self.day_bounds(self._clock())

        try:
            async with self._session_maker() as db:
                policy = await self._resolve_policy(db, user_id, start_of_day)
        except TRANSIENT_DB_ERRORS as e:
            raise StorageUnavailable("rate_limiter.admit", e) from e

        if isinstance(policy, AdminPolicy):
            return AdmissionResult(allowed=True, requests_today=0, limit=None)

        count = policy.requests_today
        if count >= self.daily_limit:
            logger.info(
                "rate_limit_denied",
                user_id=user_id,
                requests_today=count,
                limit=self.daily_limit,
            )
            return AdmissionResult(
                allowed=False,
                reason=(
                    f"Daily limit of {self.daily_limit} requests exceeded. "
                    f"You have made {count} requests today."
                ),
                requests_today=count,
                limit=self.daily_limit,
                reset_at=reset_at,
            )

        return AdmissionResult(
            allowed=True,
            requests_today=count,
            limit=self.daily_limit,
            reset_at=reset_at,
        )

    async def check(self, user_id: str) -> AdmissionResult:
        """Like admit(), but raises AdmissionDenied instead of returning a denial."""
        decision = await self.admit(user_id)
        if not decision.allowed:
            raise AdmissionDenied(
                decision.reason or "Daily request limit exceeded",
                requests_today=decision.requests_today,
                limit=decision.limit or self.daily_limit,
                reset_at=decision.reset_at,
            )
        return decision

    async def record(self, user_id: str, endpoint: str) -> UserRequest:
        """Insert one request row. Call exactly once per admitted request."""
        entry = UserRequest(
            user_id=user_id,
            endpoint=endpoint,
            request_date=self._clock().astimezone(UTC),
        )
        try:
            async with self._session_maker() as db, db.begin():
                db.add(entry)
        except TRANSIENT_DB_ERRORS as e:
            raise StorageUnavailable("rate_limiter.record", e) from e
        return entry
