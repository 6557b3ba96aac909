"""Scoring-service clients used by the dispatcher."""
from ai_grader.services.scoring.base import (
    BaseScorer,
    MalformedScoreError,
    ScorerError,
    ScorerRateLimitError,
    ScorerTimeoutError,
    ScoringRequest,
)

__all__ = [
    "BaseScorer",
    "MalformedScoreError",
    "ScorerError",
    "ScorerRateLimitError",
    "ScorerTimeoutError",
    "ScoringRequest",
]
