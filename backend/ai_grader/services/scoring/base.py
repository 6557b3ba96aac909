"""Scorer contract and error taxonomy.

The dispatcher only relies on this module: any scorer that raises these
errors can be plugged in (Gemini in production, fakes in tests).
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

DEFAULT_RUBRIC = {"accuracy": 40, "completeness": 30, "clarity": 20, "objectivity": 10}


class ScorerError(Exception):
    """Scoring call failed. The job is retried, the credential is not penalized."""
    pass


class ScorerRateLimitError(ScorerError):
    """The scoring service reported quota exhaustion for the key used."""
    pass


class ScorerTimeoutError(ScorerError, TimeoutError):
    """Raised when a scoring call exceeds the configured timeout."""
    pass


class MalformedScoreError(ScorerError):
    """The service answered but the payload could not be turned into a score."""
    pass


@dataclass
class ScoringRequest:
    job_id: int
    teacher_findings: str
    student_findings: str
    rubric: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_RUBRIC))

    @classmethod
    def from_job(cls, job) -> "ScoringRequest":
        return cls(
            job_id=job.id,
            teacher_findings=job.teacher_findings or "",
            student_findings=job.student_findings or "",
            rubric=normalize_rubric(job.rubric),
        )


def normalize_rubric(rubric: Optional[Dict[str, Any]]) -> Dict[str, float]:
    """Fill missing or unparseable weights from the default rubric."""
    weights = dict(DEFAULT_RUBRIC)
    for key in DEFAULT_RUBRIC:
        if rubric and rubric.get(key) is not None:
            try:
                weights[key] = float(rubric[key])
            except (TypeError, ValueError):
                pass
    return weights


class BaseScorer(ABC):
    """Abstract async scorer."""

    @abstractmethod
    async def score(self, request: ScoringRequest, api_key: str) -> Dict[str, Any]:
        """Grade one answer with the given key.

        Returns a payload with at least ``score`` and ``feedback``.
        """
        pass
