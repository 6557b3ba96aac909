"""Grading job model - one row per (student answer, question) grading request."""
from datetime import datetime

from sqlalchemy import JSON, DateTime, Float, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from ai_grader.models.base import Base, TimestampMixin

PENDING = "pending"
PROCESSING = "processing"
DONE = "done"
ERROR = "error"

JOB_STATUSES = (PENDING, PROCESSING, DONE, ERROR)
TERMINAL_STATUSES = (DONE, ERROR)


class GradingJob(Base, TimestampMixin):
    __tablename__ = "ai_queue"
    # One active (pending or processing) job per answer. Finished rows stay as
    # history, so a requeued answer can hold several of them.
    __table_args__ = (
        Index(
            "uq_ai_queue_active_result_question", "result_id", "question_id", unique=True,
            postgresql_where=text("status IN ('pending', 'processing')"),
            sqlite_where=text("status IN ('pending', 'processing')"),
        ),
        Index(
            "uq_ai_queue_active_student_exam", "student_id", "exam_id", unique=True,
            postgresql_where=text("status IN ('pending', 'processing')"),
            sqlite_where=text("status IN ('pending', 'processing')"),
        ),
        Index("ix_ai_queue_claim_order", "status", "priority", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Informational references into the exam platform; not enforced here.
    organization_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    batch_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    result_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    question_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    student_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    exam_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Payload
    teacher_findings: Mapped[str] = mapped_column(Text, default="")
    student_findings: Mapped[str] = mapped_column(Text, default="")
    rubric: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # Queue state
    status: Mapped[str] = mapped_column(String(20), default=PENDING, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    deferred_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    available_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Outcome
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    score: Mapped[float | None] = mapped_column(Float, nullable=True)
    credential_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
