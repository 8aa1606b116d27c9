"""SQLAlchemy ORM models for the append-only audit store."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from form_broker.db.base import Base


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ApiLog(Base):
    """
    One request/response pair handled by the broker.

    Written by the request logging middleware; retained for
    AUDIT_RETENTION_HOURS and swept hourly.
    """

    __tablename__ = "api_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(default=_now_utc, nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    path: Mapped[str] = mapped_column(String(500), nullable=False)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    context_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    form_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        Index("ix_api_logs_timestamp", "timestamp"),
        Index("ix_api_logs_path", "path"),
        Index("ix_api_logs_context_id", "context_id"),
        Index("ix_api_logs_status_code", "status_code"),
    )


class SubmissionLog(Base):
    """Outcome of one form submission saga (success or hard abort)."""

    __tablename__ = "submission_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(default=_now_utc, nullable=False)
    form_id: Mapped[str] = mapped_column(String(255), nullable=False)
    context_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tracking_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    business_record_ids: Mapped[list | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    relationship_ids: Mapped[list | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    form_data: Mapped[dict | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    mapping_rules: Mapped[dict | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    is_duplicate: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    warning_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_submission_logs_timestamp", "timestamp"),
        Index("ix_submission_logs_form_id", "form_id"),
        Index("ix_submission_logs_context_id", "context_id"),
    )
