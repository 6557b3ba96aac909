"""Wires settings into the grading services.

The runtime object only holds configuration and stateless service objects;
all queue and rate-limit state lives in the database, so building one per
process (or per serverless instance) is fine.
"""
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ai_grader.config import Settings, settings as app_settings
from ai_grader.services.credential_pool import CredentialPool
from ai_grader.services.dispatcher import Dispatcher
from ai_grader.services.drain_controller import DrainController
from ai_grader.services.job_store import JobStore
from ai_grader.services.monitor import Monitor
from ai_grader.services.scoring.base import BaseScorer

logger = logging.getLogger(__name__)


@dataclass
class GradingRuntime:
    store: JobStore
    pool: CredentialPool
    dispatcher: Dispatcher
    drain_controller: DrainController
    monitor: Monitor


def build_runtime(
    session_factory: async_sessionmaker[AsyncSession],
    scorer: BaseScorer,
    cfg: Settings,
    *,
    api_keys: Optional[list[str]] = None,
    clock=None,
) -> GradingRuntime:
    """Assemble store, pool, dispatcher, drain controller and monitor from settings."""
    clock_kwargs = {"clock": clock} if clock is not None else {}
    store = JobStore(
        session_factory,
        max_attempts=cfg.GRADER_MAX_ATTEMPTS,
        retry_delay_seconds=cfg.GRADER_RETRY_DELAY_SECONDS,
        requeue_min_age_seconds=cfg.GRADER_REQUEUE_MIN_AGE_SECONDS,
        **clock_kwargs,
    )
    pool = CredentialPool(
        session_factory,
        cfg.grader_api_keys() if api_keys is None else api_keys,
        rpm_limit=cfg.GRADER_RPM_PER_KEY,
        window_seconds=cfg.GRADER_WINDOW_SECONDS,
        max_in_flight=cfg.GRADER_MAX_IN_FLIGHT_PER_KEY,
        backoff_base_seconds=cfg.GRADER_BACKOFF_BASE_SECONDS,
        backoff_max_seconds=cfg.GRADER_BACKOFF_MAX_SECONDS,
        lease_seconds=cfg.GRADER_LEASE_SECONDS,
        **clock_kwargs,
    )
    dispatcher = Dispatcher(store, pool, scorer, scorer_timeout=cfg.GRADER_SCORER_TIMEOUT)
    drain_controller = DrainController(
        dispatcher,
        default_limit=cfg.DRAIN_DEFAULT_LIMIT,
        default_rounds=cfg.DRAIN_DEFAULT_ROUNDS,
        round_pause=cfg.DRAIN_ROUND_PAUSE,
        max_seconds=cfg.DRAIN_MAX_SECONDS,
        stale_job_seconds=cfg.STALE_JOB_SECONDS,
    )
    return GradingRuntime(
        store=store,
        pool=pool,
        dispatcher=dispatcher,
        drain_controller=drain_controller,
        monitor=Monitor(store, pool),
    )


@lru_cache
def get_runtime() -> GradingRuntime:
    """FastAPI dependency: the process-wide runtime backed by the app database."""
    from ai_grader.database import async_session
    from ai_grader.services.scoring.gemini_scorer import GeminiScorer

    scorer = GeminiScorer(app_settings.GEMINI_MODEL, temperature=app_settings.GRADER_TEMPERATURE)
    runtime = build_runtime(async_session, scorer, app_settings)
    logger.info(
        f"Grading runtime ready: {runtime.pool.size} key(s), "
        f"{app_settings.GRADER_RPM_PER_KEY} RPM per key, max {app_settings.GRADER_MAX_ATTEMPTS} attempts"
    )
    return runtime
