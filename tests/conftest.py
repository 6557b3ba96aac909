"""Shared fixtures: a throwaway SQLite database per test, a controllable clock
and a scripted scorer.

Environment is set before any ai_grader import because settings and the
module-level engine are built at import time.
"""
import asyncio
import itertools
import os
import tempfile
from datetime import datetime, timedelta, timezone

_DB_DIR = tempfile.mkdtemp(prefix="ai-grader-tests-")
os.environ.update({
    "DATABASE_URL": f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'routes.db')}",
    "GRADER_API_KEYS": "route-key-a,route-key-b,route-key-c",
    "GRADER_RETRY_DELAY_SECONDS": "0",
    "GRADER_REQUEUE_MIN_AGE_SECONDS": "0",
    "DRAIN_ROUND_PAUSE": "0",
    "LOG_LEVEL": "WARNING",
})
for _i in range(1, 7):
    os.environ[f"GEMINI_API_KEY_{_i}"] = ""

import pytest  # noqa: E402

from ai_grader.database import build_engine, build_session_factory  # noqa: E402
from ai_grader.models import Base  # noqa: E402
from ai_grader.services.credential_pool import CredentialPool  # noqa: E402
from ai_grader.services.dispatcher import Dispatcher  # noqa: E402
from ai_grader.services.drain_controller import DrainController  # noqa: E402
from ai_grader.services.job_store import JobStore  # noqa: E402
from ai_grader.services.scoring.base import BaseScorer  # noqa: E402

API_KEYS = [f"key-{c}" for c in "abcdef"]


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeScorer(BaseScorer):
    """Scripted scorer.

    - ``failures``: exceptions raised by successive calls, then normal scores.
    - ``key_failures``: api_key -> exception raised on that key's next call.
    - ``always_fail``: raised on every call.
    """

    def __init__(self, score: float = 85, delay: float = 0.0):
        self.score_value = score
        self.delay = delay
        self.failures: list[Exception] = []
        self.key_failures: dict[str, Exception] = {}
        self.always_fail: Exception | None = None
        self.calls: list[tuple[int, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def score(self, request, api_key):
        self.calls.append((request.job_id, api_key))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.always_fail is not None:
                raise self.always_fail
            if api_key in self.key_failures:
                raise self.key_failures.pop(api_key)
            if self.failures:
                raise self.failures.pop(0)
            return {
                "score": self.score_value,
                "accuracy": 34,
                "completeness": 26,
                "clarity": 17,
                "objectivity": 8,
                "feedback": "You identified the main findings.",
                "raw_response": '{"overall_score": 85}',
            }
        finally:
            self.in_flight -= 1


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'grader.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def store(session_factory, clock):
    return JobStore(session_factory, max_attempts=3, retry_delay_seconds=0, clock=clock)


@pytest.fixture
def make_pool(session_factory, clock):
    """Build and sync a pool; keyword arguments override the pool policy."""
    async def _make(api_keys=None, **policy):
        pool = CredentialPool(
            session_factory,
            API_KEYS if api_keys is None else api_keys,
            clock=clock,
            **policy,
        )
        await pool.sync_credentials()
        return pool
    return _make


@pytest.fixture
async def pool(make_pool):
    return await make_pool()


@pytest.fixture
def scorer():
    return FakeScorer()


@pytest.fixture
def dispatcher(store, pool, scorer):
    return Dispatcher(store, pool, scorer, scorer_timeout=5)


@pytest.fixture
def drain_controller(dispatcher):
    return DrainController(
        dispatcher, default_limit=6, default_rounds=2, round_pause=0, max_seconds=25,
    )


@pytest.fixture
def enqueue(store):
    """Enqueue a job for a fresh (result, question) pair."""
    counter = itertools.count(1)

    async def _enqueue(**overrides):
        n = next(counter)
        fields = {
            "result_id": 1000 + n,
            "question_id": 1,
            "teacher_findings": "Mitral valve prolapse with mild regurgitation.",
            "student_findings": f"Student answer {n}: mitral prolapse noted.",
        }
        fields.update(overrides)
        return await store.enqueue(**fields)
    return _enqueue
