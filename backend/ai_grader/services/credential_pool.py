"""Scoring-service credential pool.

Decides which API key (if any) a job may use right now. Counters live in the
scoring_credentials table so every replica draws from one budget per key;
each mutation is a compare-and-set on the row's version column.

Quota is charged when a credential is acquired, not when the call finishes:
the request reaches the scoring service whatever its outcome. The window is a
sliding log of acquisition times, so no rolling window of `window_seconds`
ever holds more than `rpm_limit` acquisitions.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ai_grader.config import key_fingerprint
from ai_grader.models.base import as_utc, utcnow
from ai_grader.models.credential import ScoringCredential

logger = logging.getLogger(__name__)

SUCCESS = "success"
RATE_LIMITED = "rate_limited"
FAILURE = "failure"
OUTCOMES = (SUCCESS, RATE_LIMITED, FAILURE)

_ACQUIRE_PASSES = 3
_RELEASE_ATTEMPTS = 5
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class CredentialContentionError(RuntimeError):
    """Raised when a release keeps losing the compare-and-set race."""
    pass


@dataclass(frozen=True)
class CredentialLease:
    """A reserved credential. Hand it back with CredentialPool.release()."""
    id: int
    label: str
    api_key: str
    acquired_at: datetime


class CredentialPool:
    """Rolling-window rate limiting, reservation and backoff across API keys."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        api_keys: list[str],
        *,
        rpm_limit: int = 8,
        window_seconds: float = 60.0,
        max_in_flight: int = 1,
        backoff_base_seconds: float = 15.0,
        backoff_max_seconds: float = 300.0,
        lease_seconds: float = 120.0,
        clock=utcnow,
    ):
        self._session_factory = session_factory
        self._api_keys = list(api_keys)
        self.rpm_limit = rpm_limit
        self.window_seconds = window_seconds
        self.max_in_flight = max_in_flight
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.lease_seconds = lease_seconds
        self._clock = clock

    @property
    def size(self) -> int:
        return len(self._api_keys)

    @property
    def max_concurrency(self) -> int:
        return self.size * self.max_in_flight

    def backoff_seconds(self, penalty_count: int) -> float:
        """Exponential backoff keyed on the penalty count, capped."""
        if penalty_count <= 0:
            return 0.0
        return min(self.backoff_base_seconds * (2 ** (penalty_count - 1)), self.backoff_max_seconds)

    async def sync_credentials(self) -> None:
        """Make sure a counter row exists for every configured key.

        Safe to run from several replicas at once: a lost insert race is ignored.
        """
        if not self._api_keys:
            logger.warning("No grader API keys configured; AI grading cannot run")
            return
        for index, api_key in enumerate(self._api_keys):
            fingerprint = key_fingerprint(api_key)
            async with self._session_factory() as db:
                row = await db.get(ScoringCredential, index)
                if row is None:
                    db.add(ScoringCredential(
                        id=index,
                        label=f"key-{index + 1}",
                        key_fingerprint=fingerprint,
                        request_times=[],
                        request_count=0,
                        penalty_count=0,
                        in_flight=0,
                        version=0,
                    ))
                    try:
                        await db.commit()
                    except IntegrityError:
                        await db.rollback()
                elif row.key_fingerprint != fingerprint:
                    # Key rotated in config: the old counters describe a different key.
                    row.key_fingerprint = fingerprint
                    row.request_times = []
                    row.request_count = 0
                    row.window_start = None
                    row.penalty_count = 0
                    row.backoff_until = None
                    row.version = row.version + 1
                    await db.commit()
                    logger.info(f"Credential {row.label} key changed; counters reset")
        logger.info(
            f"Loaded {self.size} grader key(s), capacity {self.size * self.rpm_limit} RPM"
        )

    # ── Acquire / release ─────────────────────────────────────────

    async def acquire(self) -> Optional[CredentialLease]:
        """Reserve the least-recently-used eligible credential, or return None.

        Never waits for capacity: callers leave the job pending for a later round.
        """
        if not self._api_keys:
            return None

        for _ in range(_ACQUIRE_PASSES):
            now = self._clock()
            async with self._session_factory() as db:
                result = await db.execute(
                    select(ScoringCredential).where(ScoringCredential.id < self.size)
                )
                candidates = []
                for row in result.scalars().all():
                    times = self._window(row.request_times, now)
                    in_flight = self._live_in_flight(row, now)
                    backoff_until = as_utc(row.backoff_until)
                    if backoff_until is not None and backoff_until > now:
                        continue
                    if len(times) >= self.rpm_limit:
                        continue
                    if in_flight >= self.max_in_flight:
                        continue
                    candidates.append((row, times, in_flight))

                if not candidates:
                    logger.debug("No credential available (all saturated, reserved or backing off)")
                    return None

                candidates.sort(key=lambda c: (as_utc(c[0].last_used_at) or _EPOCH, c[0].id))
                for row, times, in_flight in candidates:
                    new_times = times + [now.timestamp()]
                    res = await db.execute(
                        update(ScoringCredential)
                        .where(
                            ScoringCredential.id == row.id,
                            ScoringCredential.version == row.version,
                        )
                        .values(
                            request_times=new_times,
                            request_count=len(new_times),
                            window_start=datetime.fromtimestamp(new_times[0], timezone.utc),
                            in_flight=in_flight + 1,
                            leased_at=now,
                            last_used_at=now,
                            version=row.version + 1,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    await db.commit()
                    if res.rowcount == 1:
                        logger.info(
                            f"Using {row.label} ({len(new_times)}/{self.rpm_limit} in window)"
                        )
                        return CredentialLease(
                            id=row.id,
                            label=row.label,
                            api_key=self._api_keys[row.id],
                            acquired_at=now,
                        )
            # Every candidate changed under us; re-read and try again.
        return None

    async def release(self, lease: CredentialLease, outcome: str) -> None:
        """Drop the reservation and apply the outcome's penalty policy."""
        if outcome not in OUTCOMES:
            raise ValueError(f"Unknown release outcome: {outcome}")

        for _ in range(_RELEASE_ATTEMPTS):
            now = self._clock()
            async with self._session_factory() as db:
                row = await db.get(ScoringCredential, lease.id)
                if row is None:
                    logger.warning(f"Released unknown credential {lease.id}")
                    return
                times = self._window(row.request_times, now)
                in_flight = self._live_in_flight(row, now)
                if self._holds_reservation(lease, row, now):
                    in_flight = max(in_flight - 1, 0)
                else:
                    logger.warning(
                        f"Late release of expired {row.label} lease from {lease.acquired_at}; "
                        f"reservation already reassigned"
                    )
                values = {
                    "request_times": times,
                    "request_count": len(times),
                    "window_start": datetime.fromtimestamp(times[0], timezone.utc) if times else None,
                    "in_flight": in_flight,
                    "leased_at": row.leased_at if in_flight else None,
                    "version": row.version + 1,
                }
                if outcome == SUCCESS:
                    values["backoff_until"] = None
                elif outcome == RATE_LIMITED:
                    penalty_count = (row.penalty_count or 0) + 1
                    delay = self.backoff_seconds(penalty_count)
                    values["penalty_count"] = penalty_count
                    values["backoff_until"] = now + timedelta(seconds=delay)

                res = await db.execute(
                    update(ScoringCredential)
                    .where(
                        ScoringCredential.id == row.id,
                        ScoringCredential.version == row.version,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                if res.rowcount == 1:
                    if outcome == RATE_LIMITED:
                        logger.warning(
                            f"{row.label} rate limited (penalty {values['penalty_count']}), "
                            f"backing off {self.backoff_seconds(values['penalty_count']):.0f}s"
                        )
                    return
        raise CredentialContentionError(f"Could not release credential {lease.id}")

    # ── Read-only ─────────────────────────────────────────────────

    async def stats(self) -> list[dict]:
        """Snapshot of every configured credential. Does not write."""
        now = self._clock()
        async with self._session_factory() as db:
            result = await db.execute(
                select(ScoringCredential)
                .where(ScoringCredential.id < self.size)
                .order_by(ScoringCredential.id)
            )
            rows = result.scalars().all()

        stats = []
        for row in rows:
            times = self._window(row.request_times, now)
            backoff_until = as_utc(row.backoff_until)
            remaining = (backoff_until - now).total_seconds() if backoff_until else 0.0
            stats.append({
                "id": row.id,
                "label": row.label,
                "key_fingerprint": row.key_fingerprint,
                "request_count": len(times),
                "max_per_window": self.rpm_limit,
                "utilization_percent": round(len(times) / self.rpm_limit * 100) if self.rpm_limit else 0,
                "window_start": datetime.fromtimestamp(times[0], timezone.utc) if times else None,
                "penalty_count": row.penalty_count or 0,
                "backoff_seconds_remaining": round(max(remaining, 0.0), 1),
                "in_flight": self._live_in_flight(row, now),
                "last_used_at": as_utc(row.last_used_at),
            })
        return stats

    # ── Helpers ───────────────────────────────────────────────────

    def _window(self, request_times: Optional[list], now: datetime) -> list[float]:
        """Acquisition times still inside the rolling window, oldest first."""
        cutoff = now.timestamp() - self.window_seconds
        return sorted(t for t in (request_times or []) if t > cutoff)

    def _holds_reservation(self, lease: CredentialLease, row: ScoringCredential, now: datetime) -> bool:
        """False once the lease expired and the credential was reserved again after it."""
        leased_at = as_utc(row.leased_at)
        expired = now - lease.acquired_at > timedelta(seconds=self.lease_seconds)
        return not (expired and leased_at is not None and leased_at > lease.acquired_at)

    def _live_in_flight(self, row: ScoringCredential, now: datetime) -> int:
        """Reservations, ignoring a lease abandoned by a crashed invocation."""
        in_flight = row.in_flight or 0
        leased_at = as_utc(row.leased_at)
        if in_flight and leased_at and now - leased_at > timedelta(seconds=self.lease_seconds):
            return 0
        return in_flight
