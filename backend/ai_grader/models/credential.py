"""Scoring credential model - rate-limit counters for one scoring-service key.

The key itself lives in configuration; this row only holds the shared
counters so every replica sees the same budget.
"""
from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from ai_grader.models.base import Base


class ScoringCredential(Base):
    __tablename__ = "scoring_credentials"

    # Position of the key in Settings.grader_api_keys()
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    label: Mapped[str] = mapped_column(String(50))
    key_fingerprint: Mapped[str] = mapped_column(String(16), default="")

    # Rolling window: epoch seconds of acquisitions still inside the window
    request_times: Mapped[list] = mapped_column(JSON, default=list)
    request_count: Mapped[int] = mapped_column(Integer, default=0)
    window_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Backoff
    penalty_count: Mapped[int] = mapped_column(Integer, default=0)
    backoff_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Reservation
    in_flight: Mapped[int] = mapped_column(Integer, default=0)
    leased_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Compare-and-set token; bumped on every mutation
    version: Mapped[int] = mapped_column(Integer, default=0)
