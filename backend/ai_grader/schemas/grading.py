"""Grading queue request/response schemas."""
import json
from datetime import datetime
from typing import Any, Optional

from pydantic import field_validator, model_validator

from ai_grader.schemas.base import CamelModel, CamelORMModel

# Keys stripped from job results in API responses to reduce payload size
_STRIPPED_RESULT_KEYS = {"raw_response"}


def _explanation_text(value: Any) -> str:
    """Pull the instructor explanation out of the shapes the exam UI sends.

    Accepts plain text, ``{"explanation": "..."}`` or
    ``{"explanation": {"text": "..."}}`` (as a dict or a JSON string).
    """
    if value is None:
        return ""
    data = value
    if isinstance(value, str):
        try:
            data = json.loads(value)
        except (json.JSONDecodeError, ValueError):
            return value
    if isinstance(data, dict):
        explanation = data.get("explanation")
        if isinstance(explanation, dict) and explanation.get("text"):
            return str(explanation["text"])
        if isinstance(explanation, str):
            return explanation
        return json.dumps(data)
    if isinstance(data, str):
        return data
    return value if isinstance(value, str) else json.dumps(data)


class RubricWeights(CamelModel):
    accuracy: float = 40
    completeness: float = 30
    clarity: float = 20
    objectivity: float = 10


class JobSubmit(CamelModel):
    organization_id: Optional[int] = None
    batch_id: Optional[int] = None
    result_id: Optional[int] = None
    question_id: Optional[int] = None
    student_id: Optional[int] = None
    exam_id: Optional[int] = None
    teacher_findings: str = ""
    student_findings: str
    rubric: Optional[RubricWeights] = None
    priority: int = 0

    @field_validator("teacher_findings", mode="before")
    @classmethod
    def normalize_teacher_findings(cls, v):
        return _explanation_text(v)

    @model_validator(mode="after")
    def require_answer_identity(self):
        """A job must name the answer it grades, or duplicates cannot be detected."""
        has_result = self.result_id is not None and self.question_id is not None
        has_exam = self.student_id is not None and self.exam_id is not None
        if not (has_result or has_exam):
            raise ValueError("Provide resultId and questionId, or studentId and examId")
        if not self.student_findings.strip():
            raise ValueError("studentFindings must not be empty")
        return self

    def to_job_fields(self) -> dict:
        fields = self.model_dump(exclude={"rubric"})
        fields["rubric"] = self.rubric.model_dump() if self.rubric else None
        return fields


class RequeueRequest(CamelModel):
    result_id: Optional[int] = None
    question_id: Optional[int] = None
    student_id: Optional[int] = None
    exam_id: Optional[int] = None

    @model_validator(mode="after")
    def require_answer_identity(self):
        if not (
            (self.result_id is not None and self.question_id is not None)
            or (self.student_id is not None and self.exam_id is not None)
        ):
            raise ValueError("Provide resultId and questionId, or studentId and examId")
        return self


class SubmitResponse(CamelModel):
    message: str
    job_id: int


class JobResponse(CamelORMModel):
    id: int
    organization_id: Optional[int] = None
    batch_id: Optional[int] = None
    result_id: Optional[int] = None
    question_id: Optional[int] = None
    student_id: Optional[int] = None
    exam_id: Optional[int] = None
    status: str
    priority: int
    attempts: int
    deferred_count: int
    last_error: Optional[str] = None
    score: Optional[float] = None
    credential_id: Optional[int] = None
    result: Optional[dict] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def strip_large_result(self):
        """Remove the raw model text from results to reduce response size."""
        if self.result:
            self.result = {k: v for k, v in self.result.items() if k not in _STRIPPED_RESULT_KEYS}
        return self


class QueueCounts(CamelModel):
    pending: int = 0
    processing: int = 0
    done: int = 0
    error: int = 0
    total: int = 0


class DrainSummaryResponse(CamelModel):
    status: str = "ok"
    rounds_run: int
    processed: int
    succeeded: int
    retried: int
    failed: int
    deferred: int
    recovered: int
    job_ids: list[int]
    elapsed_ms: float
    message: str


class CredentialStat(CamelModel):
    id: int
    label: str
    key_fingerprint: str
    request_count: int
    max_per_window: int
    utilization_percent: int
    window_start: Optional[datetime] = None
    penalty_count: int
    backoff_seconds_remaining: float
    in_flight: int
    last_used_at: Optional[datetime] = None


class WorkerConfiguration(CamelModel):
    total_keys: int
    max_concurrency: int
    rpm_per_key: int
    total_rpm: int
    window_seconds: float


class WorkerStatusResponse(CamelModel):
    status: str = "ok"
    timestamp: datetime
    ai_worker_queue: QueueCounts
    configuration: WorkerConfiguration


class ApiKeyStatsResponse(CamelModel):
    status: str = "ok"
    timestamp: datetime
    configuration: WorkerConfiguration
    key_utilization: list[CredentialStat]


class GradesByKeyRow(CamelModel):
    credential_id: Optional[int] = None
    count: int
    avg_score: Optional[float] = None


class GradesByKeyResponse(CamelModel):
    status: str = "ok"
    timestamp: datetime
    data: list[GradesByKeyRow]
