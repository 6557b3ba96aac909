"""Durable grading job bookkeeping.

Every state change goes through a conditional UPDATE guarded on the current
status, so two drain invocations (in this process or another replica) can
never both own a job. The claim additionally takes row locks with
SKIP LOCKED on dialects that support it, which lets concurrent claimers pick
disjoint rows instead of racing for the same ones.
"""
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ai_grader.models.base import as_utc, utcnow
from ai_grader.models.job import (
    DONE, ERROR, JOB_STATUSES, PENDING, PROCESSING, TERMINAL_STATUSES, GradingJob,
)

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000


class DuplicateJobError(Exception):
    """Raised when a job for the same answer is already queued."""

    def __init__(self, existing_id: Optional[int] = None):
        self.existing_id = existing_id
        super().__init__(f"Grading job already exists (id={existing_id})")


class JobNotFoundError(LookupError):
    pass


class RequeueTooSoonError(Exception):
    """The last job for this answer changed too recently to grade it again."""

    def __init__(self, job_id: int, retry_after: float):
        self.job_id = job_id
        self.retry_after = retry_after
        super().__init__(f"Job {job_id} was updated too recently; retry in {retry_after:.0f}s")


def safe_error_message(e: Exception, fallback: str = "Grading interrupted") -> str:
    """Extract a meaningful error message from an exception.

    Some exceptions (timeouts, cancellation races) produce an empty str(e).
    This helper falls back to the exception class name.
    """
    msg = str(e).strip()
    if not msg:
        msg = f"{type(e).__name__}: {fallback}"
    return msg[:MAX_ERROR_LENGTH]


class JobStore:
    """Race-safe access to the ai_queue table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_attempts: int = 3,
        retry_delay_seconds: float = 0.0,
        requeue_min_age_seconds: float = 0.0,
        clock=utcnow,
    ):
        self._session_factory = session_factory
        self.max_attempts = max_attempts
        self.retry_delay_seconds = retry_delay_seconds
        self.requeue_min_age_seconds = requeue_min_age_seconds
        self._clock = clock

    # ── Writes ────────────────────────────────────────────────────

    async def enqueue(self, **fields) -> GradingJob:
        """Insert a pending job.

        Raises DuplicateJobError if any job exists for the answer, graded or
        not. Use requeue() to grade a finished answer again.
        """
        async with self._session_factory() as db:
            existing = await self._find_duplicate(db, fields)
        if existing is not None:
            raise DuplicateJobError(existing.id)
        return await self._insert(fields)

    async def requeue(
        self,
        *,
        result_id: Optional[int] = None,
        question_id: Optional[int] = None,
        student_id: Optional[int] = None,
        exam_id: Optional[int] = None,
    ) -> GradingJob:
        """Queue a fresh pending job copied from the answer's latest finished job.

        The finished row is left as it is. Raises JobNotFoundError when the
        answer was never queued, DuplicateJobError while its latest job is
        still pending or processing, and RequeueTooSoonError inside the
        minimum age window.
        """
        identity = {
            "result_id": result_id, "question_id": question_id,
            "student_id": student_id, "exam_id": exam_id,
        }
        async with self._session_factory() as db:
            latest = await self._find_duplicate(db, identity)
        if latest is None:
            raise JobNotFoundError("No grading job found for this answer")
        if latest.status not in TERMINAL_STATUSES:
            raise DuplicateJobError(latest.id)

        age = (self._clock() - as_utc(latest.updated_at)).total_seconds()
        if age < self.requeue_min_age_seconds:
            raise RequeueTooSoonError(latest.id, self.requeue_min_age_seconds - age)

        job = await self._insert({
            "organization_id": latest.organization_id,
            "batch_id": latest.batch_id,
            "result_id": latest.result_id,
            "question_id": latest.question_id,
            "student_id": latest.student_id,
            "exam_id": latest.exam_id,
            "teacher_findings": latest.teacher_findings,
            "student_findings": latest.student_findings,
            "rubric": latest.rubric,
            "priority": latest.priority,
        })
        logger.info(f"Requeued job {latest.id} ({latest.status}) as job {job.id}")
        return job

    async def _insert(self, fields: dict) -> GradingJob:
        now = self._clock()
        job = GradingJob(
            **fields,
            status=PENDING,
            attempts=0,
            deferred_count=0,
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as db:
            db.add(job)
            try:
                await db.commit()
            except IntegrityError:
                # Lost a race: another active job for this answer was inserted first.
                await db.rollback()
                existing = await self._find_duplicate(db, fields)
                raise DuplicateJobError(existing.id if existing else None)
            await db.refresh(job)
        logger.info(f"Enqueued grading job {job.id} (priority={job.priority})")
        return job

    async def claim_batch(self, limit: int) -> list[GradingJob]:
        """Atomically move up to `limit` eligible pending jobs to processing.

        Order: priority desc, then oldest first. A row that another caller
        claims between our SELECT and UPDATE simply drops out of our batch.
        """
        if limit <= 0:
            return []
        now = self._clock()
        async with self._session_factory() as db:
            candidates = await db.execute(
                select(GradingJob.id)
                .where(
                    GradingJob.status == PENDING,
                    or_(GradingJob.available_at.is_(None), GradingJob.available_at <= now),
                )
                .order_by(GradingJob.priority.desc(), GradingJob.created_at, GradingJob.id)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            claimed_ids = []
            for job_id in candidates.scalars().all():
                res = await db.execute(
                    update(GradingJob)
                    .where(GradingJob.id == job_id, GradingJob.status == PENDING)
                    .values(status=PROCESSING, claimed_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount == 1:
                    claimed_ids.append(job_id)
            await db.commit()

            if not claimed_ids:
                return []
            result = await db.execute(
                select(GradingJob)
                .where(GradingJob.id.in_(claimed_ids))
                .order_by(GradingJob.priority.desc(), GradingJob.created_at, GradingJob.id)
            )
            jobs = list(result.scalars().all())
        logger.info(f"Claimed {len(jobs)} job(s): {[j.id for j in jobs]}")
        return jobs

    async def complete(self, job_id: int, result: dict, credential_id: Optional[int] = None) -> bool:
        """Mark a processing job done and store the scorer payload."""
        now = self._clock()
        score = result.get("score")
        async with self._session_factory() as db:
            res = await db.execute(
                update(GradingJob)
                .where(GradingJob.id == job_id, GradingJob.status == PROCESSING)
                .values(
                    status=DONE,
                    result=result,
                    score=score,
                    credential_id=credential_id,
                    completed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if res.rowcount != 1:
            logger.warning(f"Job {job_id} was no longer processing; result discarded")
            return False
        logger.info(f"Job {job_id} done (score={score})")
        return True

    async def retry(self, job_id: int, error_message: str) -> Optional[str]:
        """Charge one attempt. Requeue below max_attempts, otherwise fail terminally.

        Returns the new status, or None if the job was not in processing.
        """
        async with self._session_factory() as db:
            job = await db.get(GradingJob, job_id)
            if job is None or job.status != PROCESSING:
                logger.warning(f"Ignoring retry for job {job_id}: not processing")
                return None
            return await self._charge_attempt(db, job, error_message)

    async def defer(self, job_id: int, reason: str = "no credential available") -> bool:
        """Return a processing job to pending without charging an attempt."""
        now = self._clock()
        async with self._session_factory() as db:
            res = await db.execute(
                update(GradingJob)
                .where(GradingJob.id == job_id, GradingJob.status == PROCESSING)
                .values(
                    status=PENDING,
                    claimed_at=None,
                    deferred_count=GradingJob.deferred_count + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if res.rowcount == 1:
            logger.info(f"Job {job_id} deferred: {reason}")
            return True
        return False

    async def recover_stale_jobs(self, stale_seconds: float) -> int:
        """Charge an attempt to jobs stuck in processing longer than `stale_seconds`.

        Covers invocations that were killed mid-call and never wrote back.
        """
        cutoff = self._clock() - timedelta(seconds=stale_seconds)
        recovered = 0
        async with self._session_factory() as db:
            result = await db.execute(
                select(GradingJob).where(
                    and_(
                        GradingJob.status == PROCESSING,
                        GradingJob.claimed_at < cutoff,
                    )
                )
            )
            for job in result.scalars().all():
                msg = f"Recovered: job was processing for >{int(stale_seconds)}s"
                if await self._charge_attempt(db, job, msg) is not None:
                    recovered += 1
                    logger.warning(f"Recovered stale job {job.id} (claimed at {job.claimed_at})")
        if recovered:
            logger.info(f"Recovered {recovered} stale job(s)")
        return recovered

    async def _charge_attempt(self, db: AsyncSession, job: GradingJob, error_message: str) -> Optional[str]:
        now = self._clock()
        attempts = (job.attempts or 0) + 1
        message = (error_message or "Unknown error")[:MAX_ERROR_LENGTH]
        values = {"attempts": attempts, "last_error": message, "claimed_at": None, "updated_at": now}
        if attempts >= self.max_attempts:
            values.update(status=ERROR, completed_at=now)
        else:
            values.update(
                status=PENDING,
                available_at=now + timedelta(seconds=self.retry_delay_seconds * attempts),
            )
        res = await db.execute(
            update(GradingJob)
            .where(
                GradingJob.id == job.id,
                GradingJob.status == PROCESSING,
                GradingJob.attempts == job.attempts,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if res.rowcount != 1:
            return None
        if values["status"] == ERROR:
            logger.error(f"Job {job.id} marked error after {attempts} attempt(s): {message}")
        else:
            logger.warning(f"Job {job.id} will be retried (attempt {attempts}/{self.max_attempts}): {message}")
        return values["status"]

    # ── Reads ─────────────────────────────────────────────────────

    async def get(self, job_id: int) -> Optional[GradingJob]:
        async with self._session_factory() as db:
            return await db.get(GradingJob, job_id)

    async def latest_for(
        self,
        *,
        result_id: Optional[int] = None,
        question_id: Optional[int] = None,
        student_id: Optional[int] = None,
        exam_id: Optional[int] = None,
    ) -> Optional[GradingJob]:
        """Latest job for a result/question or student/exam pair."""
        async with self._session_factory() as db:
            return await self._find_duplicate(db, {
                "result_id": result_id, "question_id": question_id,
                "student_id": student_id, "exam_id": exam_id,
            })

    async def counts(self) -> dict:
        """Job counts per status, plus total."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(GradingJob.status, func.count()).group_by(GradingJob.status)
            )
            rows = result.all()
        counts = {status: 0 for status in JOB_STATUSES}
        for status, count in rows:
            counts[status] = int(count)
        counts["total"] = sum(counts[s] for s in JOB_STATUSES)
        return counts

    async def grades_by_credential(self) -> list[dict]:
        """Done-job count and mean score per credential."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(GradingJob.credential_id, func.count(), func.avg(GradingJob.score))
                .where(GradingJob.status == DONE)
                .group_by(GradingJob.credential_id)
                .order_by(GradingJob.credential_id)
            )
            rows = result.all()
        return [
            {
                "credential_id": credential_id,
                "count": int(count),
                "avg_score": round(float(avg), 2) if avg is not None else None,
            }
            for credential_id, count, avg in rows
        ]

    @staticmethod
    async def _find_duplicate(db: AsyncSession, fields: dict) -> Optional[GradingJob]:
        clauses = []
        if fields.get("result_id") is not None and fields.get("question_id") is not None:
            clauses.append(and_(
                GradingJob.result_id == fields["result_id"],
                GradingJob.question_id == fields["question_id"],
            ))
        if fields.get("student_id") is not None and fields.get("exam_id") is not None:
            clauses.append(and_(
                GradingJob.student_id == fields["student_id"],
                GradingJob.exam_id == fields["exam_id"],
            ))
        if not clauses:
            return None
        result = await db.execute(
            select(GradingJob).where(or_(*clauses)).order_by(GradingJob.id.desc()).limit(1)
        )
        return result.scalar_one_or_none()
