"""Read-only queue and credential statistics for operators and the auto-drain poller."""
from ai_grader.services.credential_pool import CredentialPool
from ai_grader.services.job_store import JobStore


class Monitor:
    def __init__(self, store: JobStore, pool: CredentialPool):
        self.store = store
        self.pool = pool

    async def queue_stats(self) -> dict:
        """{pending, processing, done, error, total}."""
        return await self.store.counts()

    async def credential_stats(self) -> list[dict]:
        return await self.pool.stats()

    def configuration(self) -> dict:
        return {
            "total_keys": self.pool.size,
            "max_concurrency": self.pool.max_concurrency,
            "rpm_per_key": self.pool.rpm_limit,
            "total_rpm": self.pool.size * self.pool.rpm_limit,
            "window_seconds": self.pool.window_seconds,
        }

    async def grades_by_credential(self) -> list[dict]:
        return await self.store.grades_by_credential()
