"""One bounded-concurrency grading round: claim, bind credential, score, write back.

Scorer failures are recorded on the job row and never leave the round.
Store failures (cannot read/write the queue at all) are re-raised once every
job of the round has settled, so the caller's drain invocation fails and is
retried from outside.
"""
import asyncio
import logging
import math
from dataclasses import asdict, dataclass, field

from ai_grader.models.job import ERROR
from ai_grader.services.credential_pool import FAILURE, RATE_LIMITED, SUCCESS, CredentialPool
from ai_grader.services.job_store import JobStore, safe_error_message
from ai_grader.services.parallel_engine import run_parallel
from ai_grader.services.scoring.base import (
    BaseScorer, MalformedScoreError, ScorerRateLimitError, ScorerTimeoutError, ScoringRequest,
)

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
RETRIED = "retried"
FAILED = "failed"
DEFERRED = "deferred"


def checked_payload(payload) -> dict:
    """Copy of a scorer payload with `score` coerced to a finite float.

    Raises MalformedScoreError when there is no usable score, so the job is
    retried instead of being stored as done without a grade.
    """
    if not isinstance(payload, dict):
        raise MalformedScoreError(f"Scorer returned {type(payload).__name__}, expected an object")
    raw = payload.get("score")
    if raw is None or isinstance(raw, bool):
        raise MalformedScoreError(f"Scorer payload has no score: {raw!r}")
    try:
        score = float(raw)
    except (TypeError, ValueError):
        raise MalformedScoreError(f"Scorer payload has a non-numeric score: {raw!r}") from None
    if not math.isfinite(score):
        raise MalformedScoreError(f"Scorer payload has a non-finite score: {raw!r}")
    return {**payload, "score": score}


@dataclass
class RoundResult:
    claimed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    deferred: int = 0
    job_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class Dispatcher:
    def __init__(
        self,
        store: JobStore,
        pool: CredentialPool,
        scorer: BaseScorer,
        *,
        scorer_timeout: float = 15.0,
    ):
        self.store = store
        self.pool = pool
        self.scorer = scorer
        self.scorer_timeout = scorer_timeout

    async def run_round(self, limit: int) -> RoundResult:
        """Claim up to `limit` jobs (capped at pool concurrency) and grade them in parallel."""
        capacity = self.pool.max_concurrency
        if capacity == 0:
            logger.warning("No grader credentials configured; skipping round")
            return RoundResult()
        if limit > capacity:
            logger.debug(f"Round limit {limit} capped to pool concurrency {capacity}")
            limit = capacity

        jobs = await self.store.claim_batch(limit)
        result = RoundResult(claimed=len(jobs), job_ids=[j.id for j in jobs])
        if not jobs:
            return result

        outcomes = await run_parallel(jobs, self._process_job, concurrency=capacity)

        store_errors = []
        for job, outcome in zip(jobs, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Job {job.id} could not be written back: {outcome!r}")
                store_errors.append(outcome)
            elif outcome == SUCCEEDED:
                result.succeeded += 1
            elif outcome == RETRIED:
                result.retried += 1
            elif outcome == FAILED:
                result.failed += 1
            elif outcome == DEFERRED:
                result.deferred += 1

        logger.info(
            f"Round finished: {result.claimed} claimed, {result.succeeded} ok, "
            f"{result.retried} retry, {result.failed} failed, {result.deferred} deferred"
        )
        if store_errors:
            raise store_errors[0]
        return result

    async def _process_job(self, index: int, job) -> str:
        lease = await self.pool.acquire()
        if lease is None:
            await self.store.defer(job.id, "no credential available")
            return DEFERRED

        request = ScoringRequest.from_job(job)
        try:
            payload = await self._score(request, lease.api_key)
        except ScorerRateLimitError as e:
            await self.pool.release(lease, RATE_LIMITED)
            return await self._retry(job.id, safe_error_message(e))
        except ScorerTimeoutError as e:
            await self.pool.release(lease, FAILURE)
            return await self._retry(job.id, str(e))
        except Exception as e:
            # Scorer errors, malformed payloads and network failures are all per-job.
            await self.pool.release(lease, FAILURE)
            return await self._retry(job.id, safe_error_message(e))

        await self.pool.release(lease, SUCCESS)
        payload["credential"] = lease.label
        await self.store.complete(job.id, payload, credential_id=lease.id)
        return SUCCEEDED

    async def _score(self, request: ScoringRequest, api_key: str) -> dict:
        try:
            payload = await asyncio.wait_for(
                self.scorer.score(request, api_key), timeout=self.scorer_timeout,
            )
        except asyncio.TimeoutError:
            raise ScorerTimeoutError(f"Scorer call timed out after {self.scorer_timeout:g}s") from None
        return checked_payload(payload)

    async def _retry(self, job_id: int, message: str) -> str:
        status = await self.store.retry(job_id, message)
        return FAILED if status == ERROR else RETRIED
