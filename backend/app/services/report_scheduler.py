"""Scheduled report runner.

Job lifecycle::

    scheduled --(due)--> running --(success|failure)--> scheduled

A job is due when ``is_active`` and ``next_run_at <= now``. Claiming is a
conditional UPDATE that sets ``running_since`` and advances ``next_run_at``
in one statement, so two runner processes can never both execute the same
slot. A failed run is not retried early; it waits for its next natural
slot. Weekly ``schedule_day`` uses 0=Sunday .. 6=Saturday.

A claim left behind by a crashed process is cleared by editing the job,
by ``release_job``, or (when a lease is configured) by lease expiry. A
claim whose finalize step failed is cleared by the same runner on its
next tick.
"""

from __future__ import annotations

import asyncio
import calendar
import logging
from datetime import datetime, time, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from errors import InvalidTransitionError, NotFoundError, ValidationError
from models.scheduled_report import (
    ReportRunHistory,
    RunStatus,
    ScheduledReportJob,
    ScheduleType,
)
from services.reports import ReportExecutor

logger = logging.getLogger("devsync.report_scheduler")

REPORT_FORMATS = ("csv", "html")
DEFAULT_SCHEDULE_DAY = 1  # Monday for weekly, the 1st for monthly

JOB_FIELDS = (
    "name", "report_type", "schedule_type", "schedule_time", "schedule_day",
    "recipients", "filters", "format", "is_active",
)


def scheduler_now() -> datetime:
    return datetime.now(ZoneInfo(settings.SCHEDULER_TIMEZONE)).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Next-run computation
# ---------------------------------------------------------------------------

def parse_schedule_time(value: time | str) -> time:
    if isinstance(value, time):
        return value.replace(microsecond=0)
    try:
        return time.fromisoformat(value).replace(microsecond=0)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid schedule_time: {value!r} (expected HH:MM)") from None


def _month_slot(year: int, month: int, day: int, at: time) -> datetime:
    # Day-of-month past the end of a short month runs on its last day.
    last_day = calendar.monthrange(year, month)[1]
    return datetime(year, month, min(day, last_day), at.hour, at.minute, at.second)


def compute_next_run(
    schedule_type: ScheduleType | str,
    schedule_time: time | str,
    schedule_day: int | None = None,
    from_: datetime | None = None,
) -> datetime:
    """First slot strictly after ``from_`` for the given schedule."""
    schedule_type = ScheduleType(schedule_type)
    at = parse_schedule_time(schedule_time)
    base = from_ or scheduler_now()
    candidate = datetime.combine(base.date(), at)

    if schedule_type == ScheduleType.daily:
        if candidate <= base:
            candidate += timedelta(days=1)
        return candidate

    target = DEFAULT_SCHEDULE_DAY if schedule_day is None else schedule_day

    if schedule_type == ScheduleType.weekly:
        current = (candidate.weekday() + 1) % 7  # Python Monday=0 -> Sunday=0
        candidate += timedelta(days=(target - current) % 7)
        if candidate <= base:
            candidate += timedelta(days=7)
        return candidate

    candidate = _month_slot(base.year, base.month, target, at)
    if candidate <= base:
        year, month = (base.year + 1, 1) if base.month == 12 else (base.year, base.month + 1)
        candidate = _month_slot(year, month, target, at)
    return candidate


def validate_schedule(schedule_type: ScheduleType | str, schedule_day: int | None) -> ScheduleType:
    try:
        schedule_type = ScheduleType(schedule_type)
    except ValueError:
        raise ValidationError(f"Invalid schedule_type: {schedule_type}") from None
    if schedule_day is None or schedule_type == ScheduleType.daily:
        return schedule_type
    if schedule_type == ScheduleType.weekly and not 0 <= schedule_day <= 6:
        raise ValidationError("Weekly schedule_day must be 0 (Sunday) .. 6 (Saturday)")
    if schedule_type == ScheduleType.monthly and not 1 <= schedule_day <= 31:
        raise ValidationError("Monthly schedule_day must be 1 .. 31")
    return schedule_type


def _validate_job_fields(data: dict) -> None:
    if not (data.get("name") or "").strip():
        raise ValidationError("name is required")
    if not (data.get("report_type") or "").strip():
        raise ValidationError("report_type is required")
    if not data.get("recipients"):
        raise ValidationError("At least one recipient is required")
    if data.get("format", "csv") not in REPORT_FORMATS:
        raise ValidationError(f"format must be one of {', '.join(REPORT_FORMATS)}")
    data["schedule_type"] = validate_schedule(data.get("schedule_type"), data.get("schedule_day"))
    data["schedule_time"] = parse_schedule_time(data.get("schedule_time"))


# ---------------------------------------------------------------------------
# Job CRUD
# ---------------------------------------------------------------------------

async def get_job(session: AsyncSession, job_id: int) -> ScheduledReportJob:
    job = await session.get(ScheduledReportJob, job_id)
    if job is None:
        raise NotFoundError(f"Scheduled report {job_id} not found")
    return job


async def list_jobs(session: AsyncSession) -> list[tuple[ScheduledReportJob, int]]:
    runs = (
        select(func.count(ReportRunHistory.id))
        .where(ReportRunHistory.job_id == ScheduledReportJob.id)
        .correlate(ScheduledReportJob)
        .scalar_subquery()
    )
    stmt = select(ScheduledReportJob, runs).order_by(
        ScheduledReportJob.created_at.desc(), ScheduledReportJob.id.desc()
    )
    result = await session.execute(stmt)
    return [(job, count or 0) for job, count in result.all()]


async def create_job(session: AsyncSession, data: dict, *, now: datetime | None = None) -> ScheduledReportJob:
    data = {k: v for k, v in data.items() if k in JOB_FIELDS}
    data.setdefault("format", "csv")
    data.setdefault("filters", {})
    _validate_job_fields(data)

    job = ScheduledReportJob(
        **data,
        next_run_at=compute_next_run(
            data["schedule_type"], data["schedule_time"], data.get("schedule_day"), now
        ),
    )
    session.add(job)
    await session.flush()
    logger.info("Scheduled report created: id=%d name=%s next=%s", job.id, job.name, job.next_run_at)
    return job


async def update_job(
    session: AsyncSession,
    job_id: int,
    changes: dict,
    *,
    now: datetime | None = None,
) -> ScheduledReportJob:
    job = await get_job(session, job_id)
    merged = {field: getattr(job, field) for field in JOB_FIELDS}
    merged.update({k: v for k, v in changes.items() if k in JOB_FIELDS and v is not None})
    _validate_job_fields(merged)

    for field, value in merged.items():
        setattr(job, field, value)
    job.next_run_at = compute_next_run(job.schedule_type, job.schedule_time, job.schedule_day, now)
    if job.running_since is not None:
        # Editing is the operator's way out of a claim left behind by a crashed run.
        logger.warning("Scheduled report %d: releasing claim from %s", job.id, job.running_since)
        job.running_since = None
    await session.flush()
    logger.info("Scheduled report updated: id=%d next=%s", job.id, job.next_run_at)
    return job


async def release_job(session: AsyncSession, job_id: int) -> ScheduledReportJob:
    """Return a job stuck in ``running`` to ``scheduled`` without editing it."""
    job = await get_job(session, job_id)
    if job.running_since is None:
        raise InvalidTransitionError(f"Scheduled report {job_id} is not running")
    logger.warning("Scheduled report %d: releasing claim from %s", job.id, job.running_since)
    job.running_since = None
    await session.flush()
    return job


async def delete_job(session: AsyncSession, job_id: int) -> None:
    job = await get_job(session, job_id)
    await session.delete(job)
    await session.flush()
    logger.info("Scheduled report deleted: id=%d", job_id)


async def list_history(
    session: AsyncSession, job_id: int | None = None, limit: int = 50
) -> list[ReportRunHistory]:
    stmt = (
        select(ReportRunHistory)
        .order_by(ReportRunHistory.sent_at.desc(), ReportRunHistory.id.desc())
        .limit(limit)
    )
    if job_id is not None:
        stmt = stmt.where(ReportRunHistory.job_id == job_id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class ReportScheduler:
    """Polls the job table and runs due reports. One instance per process;
    instances share nothing but the database."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        executor: ReportExecutor,
        *,
        interval: int = 60,
        lease_seconds: int | None = None,
    ):
        self.session_factory = session_factory
        self.executor = executor
        self.interval = interval
        self.lease_seconds = lease_seconds
        # job_id -> running_since of claims whose finalize step failed
        self._unreleased: dict[int, datetime] = {}
        self._running = False

    async def start(self) -> None:
        self._running = True
        logger.info(
            "ReportScheduler started (check every %ds, lease=%s)",
            self.interval, f"{self.lease_seconds}s" if self.lease_seconds else "none",
        )
        while self._running:
            try:
                await self.run_due()
            except Exception as exc:
                logger.error("ReportScheduler cycle error: %s", exc, exc_info=True)
            await asyncio.sleep(self.interval)

    async def stop(self) -> None:
        self._running = False
        logger.info("ReportScheduler stopped")

    # ------------------------------------------------------------------

    def _not_running(self, now: datetime):
        free = ScheduledReportJob.running_since.is_(None)
        if self.lease_seconds:
            stale = ScheduledReportJob.running_since < now - timedelta(seconds=self.lease_seconds)
            return or_(free, stale)
        return free

    async def run_due(self, now: datetime | None = None) -> list[ReportRunHistory]:
        now = now or scheduler_now()
        if self._unreleased:
            await self._release_unreleased()
        async with self.session_factory() as session:
            stmt = (
                select(ScheduledReportJob.id)
                .where(
                    and_(
                        ScheduledReportJob.is_active == True,  # noqa: E712
                        ScheduledReportJob.next_run_at <= now,
                        self._not_running(now),
                    )
                )
                .order_by(ScheduledReportJob.next_run_at, ScheduledReportJob.id)
            )
            due_ids = list((await session.execute(stmt)).scalars().all())

        outcomes: list[ReportRunHistory] = []
        for job_id in due_ids:
            try:
                job = await self._claim(job_id, now, manual=False)
                if job is None:
                    logger.debug("Job %d claimed elsewhere, skipping", job_id)
                    continue
                outcomes.append(await self._execute_and_record(job, now))
            except Exception as exc:
                logger.error("Scheduled report %d failed to run: %s", job_id, exc, exc_info=True)

        if due_ids:
            logger.info("Processed due reports: %d due, %d run", len(due_ids), len(outcomes))
        return outcomes

    async def run_job(self, job_id: int, now: datetime | None = None) -> ReportRunHistory:
        """Run one job immediately, regardless of its schedule."""
        now = now or scheduler_now()
        job = await self._claim(job_id, now, manual=True)
        return await self._execute_and_record(job, now)

    async def _claim(self, job_id: int, now: datetime, *, manual: bool) -> ScheduledReportJob | None:
        async with self.session_factory() as session:
            job = await get_job(session, job_id)
            conditions = [ScheduledReportJob.id == job_id, self._not_running(now)]
            if not manual:
                conditions += [
                    ScheduledReportJob.is_active == True,  # noqa: E712
                    ScheduledReportJob.next_run_at == job.next_run_at,
                    ScheduledReportJob.next_run_at <= now,
                ]
            next_run = compute_next_run(job.schedule_type, job.schedule_time, job.schedule_day, now)
            stmt = (
                update(ScheduledReportJob)
                .where(*conditions)
                .values(running_since=now, next_run_at=next_run)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            if result.rowcount == 0:
                await session.rollback()
                if manual:
                    raise InvalidTransitionError(f"Scheduled report {job_id} is already running")
                return None
            await session.commit()
            return await session.get(ScheduledReportJob, job_id, populate_existing=True)

    async def _execute_and_record(self, job: ScheduledReportJob, now: datetime) -> ReportRunHistory:
        logger.info("Running scheduled report %d (%s, %s)", job.id, job.name, job.report_type)
        error: str | None = None
        try:
            async with self.session_factory() as session:
                await self.executor.execute(session, job)
        except Exception as exc:
            error = str(exc) or type(exc).__name__

        status = RunStatus.failed if error else RunStatus.success
        try:
            entry = await self._finalize(job, now, status, error)
        except Exception:
            self._unreleased[job.id] = job.running_since
            logger.error("Scheduled report %d: could not record run, claim kept until next tick", job.id)
            raise

        if error:
            logger.error("Scheduled report %d failed: %s", job.id, error)
        else:
            logger.info("Scheduled report %d sent to %s", job.id, ", ".join(job.recipients or []))
        return entry

    async def _finalize(
        self, job: ScheduledReportJob, now: datetime, status: RunStatus, error: str | None
    ) -> ReportRunHistory:
        async with self.session_factory() as session:
            await session.execute(
                update(ScheduledReportJob)
                .where(ScheduledReportJob.id == job.id)
                .values(
                    running_since=None,
                    last_run_at=now,
                    last_run_status=status,
                    next_run_at=compute_next_run(
                        job.schedule_type, job.schedule_time, job.schedule_day, now
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            entry = ReportRunHistory(
                job_id=job.id,
                report_type=job.report_type,
                recipients=list(job.recipients or []),
                status=status,
                error_message=error,
                sent_at=now,
            )
            session.add(entry)
            await session.commit()
        return entry

    async def _release_unreleased(self) -> None:
        """Clear claims left by a failed finalize, if nobody has reclaimed them since."""
        for job_id, claimed_at in list(self._unreleased.items()):
            try:
                async with self.session_factory() as session:
                    await session.execute(
                        update(ScheduledReportJob)
                        .where(
                            ScheduledReportJob.id == job_id,
                            ScheduledReportJob.running_since == claimed_at,
                        )
                        .values(running_since=None, last_run_status=RunStatus.failed)
                        .execution_options(synchronize_session=False)
                    )
                    await session.commit()
            except Exception as exc:
                logger.warning("Scheduled report %d: release failed, retrying next tick: %s", job_id, exc)
                continue
            del self._unreleased[job_id]
            logger.info("Scheduled report %d: stale claim released", job_id)
