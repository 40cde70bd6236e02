"""Scheduled report jobs and their append-only run history.

Job timestamps (next_run_at, last_run_at, running_since) are naive wall-clock
values in settings.SCHEDULER_TIMEZONE.
"""
from __future__ import annotations

import enum
from datetime import datetime, time

from sqlalchemy import JSON, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin


class ScheduleType(str, enum.Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"


class RunStatus(str, enum.Enum):
    success = "success"
    failed = "failed"


class ScheduledReportJob(TimestampMixin, Base):
    __tablename__ = "scheduled_reports"

    __table_args__ = (
        Index("ix_scheduled_reports_due", "is_active", "next_run_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    report_type: Mapped[str] = mapped_column(String(50))
    schedule_type: Mapped[ScheduleType]
    schedule_time: Mapped[time]
    # weekly: 0=Sunday..6=Saturday; monthly: day of month 1..31
    schedule_day: Mapped[int | None] = mapped_column(default=None)
    recipients: Mapped[list] = mapped_column(JSON, default=list)
    filters: Mapped[dict] = mapped_column(JSON, default=dict)
    format: Mapped[str] = mapped_column(String(10), default="csv")
    is_active: Mapped[bool] = mapped_column(default=True)

    next_run_at: Mapped[datetime]
    last_run_at: Mapped[datetime | None] = mapped_column(default=None)
    last_run_status: Mapped[RunStatus | None] = mapped_column(default=None)
    running_since: Mapped[datetime | None] = mapped_column(default=None)

    def __repr__(self) -> str:
        return f"<ScheduledReportJob {self.id} {self.name} {self.schedule_type.value}>"


class ReportRunHistory(Base):
    __tablename__ = "report_history"

    __table_args__ = (
        Index("ix_report_history_job_sent", "job_id", "sent_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    job_id: Mapped[int | None] = mapped_column(
        ForeignKey("scheduled_reports.id", ondelete="SET NULL")
    )
    report_type: Mapped[str] = mapped_column(String(50))
    recipients: Mapped[list] = mapped_column(JSON, default=list)
    status: Mapped[RunStatus]
    error_message: Mapped[str | None] = mapped_column(Text, default=None)
    sent_at: Mapped[datetime]
