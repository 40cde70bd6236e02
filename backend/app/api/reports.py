"""Scheduled reports API: job CRUD, manual run, run history."""

from __future__ import annotations

from datetime import datetime, time

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from models import RunStatus, ScheduleType, get_session
from services import report_scheduler

router = APIRouter(prefix="/api/reports", tags=["reports"])


# ---------------------------------------------------------------------------
#  Pydantic schemas
# ---------------------------------------------------------------------------

class JobCreate(BaseModel):
    name: str
    report_type: str
    schedule_type: ScheduleType
    schedule_time: time
    schedule_day: int | None = None
    recipients: list[str]
    filters: dict = {}
    format: str = "csv"
    is_active: bool = True


class JobUpdate(BaseModel):
    name: str | None = None
    report_type: str | None = None
    schedule_type: ScheduleType | None = None
    schedule_time: time | None = None
    schedule_day: int | None = None
    recipients: list[str] | None = None
    filters: dict | None = None
    format: str | None = None
    is_active: bool | None = None


class JobOut(BaseModel):
    id: int
    name: str
    report_type: str
    schedule_type: ScheduleType
    schedule_time: time
    schedule_day: int | None
    recipients: list[str]
    filters: dict
    format: str
    is_active: bool
    next_run_at: datetime
    last_run_at: datetime | None
    last_run_status: RunStatus | None
    running_since: datetime | None
    run_count: int = 0
    model_config = {"from_attributes": True}


class HistoryOut(BaseModel):
    id: int
    job_id: int | None
    report_type: str
    recipients: list[str]
    status: RunStatus
    error_message: str | None
    sent_at: datetime
    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
#  Jobs
# ---------------------------------------------------------------------------

@router.get("/scheduled", response_model=list[JobOut])
async def list_jobs(session: AsyncSession = Depends(get_session)):
    rows = await report_scheduler.list_jobs(session)
    out = []
    for job, run_count in rows:
        item = JobOut.model_validate(job)
        item.run_count = run_count
        out.append(item)
    return out


@router.get("/scheduled/{job_id}", response_model=JobOut)
async def get_job(job_id: int, session: AsyncSession = Depends(get_session)):
    return await report_scheduler.get_job(session, job_id)


@router.post("/scheduled", response_model=JobOut, status_code=201)
async def create_job(data: JobCreate, session: AsyncSession = Depends(get_session)):
    job = await report_scheduler.create_job(session, data.model_dump())
    await session.commit()
    return job


@router.patch("/scheduled/{job_id}", response_model=JobOut)
async def update_job(job_id: int, data: JobUpdate, session: AsyncSession = Depends(get_session)):
    job = await report_scheduler.update_job(session, job_id, data.model_dump(exclude_unset=True))
    await session.commit()
    return job


@router.delete("/scheduled/{job_id}", status_code=204)
async def delete_job(job_id: int, session: AsyncSession = Depends(get_session)):
    await report_scheduler.delete_job(session, job_id)
    await session.commit()


@router.post("/scheduled/{job_id}/release", response_model=JobOut)
async def release_job(job_id: int, session: AsyncSession = Depends(get_session)):
    """Clear a claim left by a crashed run. 409 if the job is not running."""
    job = await report_scheduler.release_job(session, job_id)
    await session.commit()
    return job


@router.post("/scheduled/{job_id}/run", response_model=HistoryOut)
async def run_job(job_id: int, request: Request):
    scheduler = getattr(request.app.state, "report_scheduler", None)
    if scheduler is None:
        raise HTTPException(503, "Report scheduler not initialized")
    return await scheduler.run_job(job_id)


# ---------------------------------------------------------------------------
#  History
# ---------------------------------------------------------------------------

@router.get("/history", response_model=list[HistoryOut])
async def history(
    job_id: int | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
):
    return await report_scheduler.list_history(session, job_id, limit)
