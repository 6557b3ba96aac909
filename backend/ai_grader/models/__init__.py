"""Import all models so SQLAlchemy metadata knows about them."""
from ai_grader.models.base import Base
from ai_grader.models.job import GradingJob
from ai_grader.models.credential import ScoringCredential

__all__ = ["Base", "GradingJob", "ScoringCredential"]
