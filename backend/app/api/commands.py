"""Command queue API: enqueue, consumer claim/report, queue inspection."""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models import CommandStatus, get_session
from services import command_queue

router = APIRouter(prefix="/api/commands", tags=["commands"])

logger = logging.getLogger("devsync.commands")


class CommandCreate(BaseModel):
    device_serial: str
    payload: str
    sequence: int = 1


class CommandOut(BaseModel):
    id: int
    device_serial: str
    kind: str | None
    payload: str
    status: CommandStatus
    sequence: int
    retry_count: int
    response: str | None
    created_at: datetime
    executed_at: datetime | None
    model_config = {"from_attributes": True}


class CommandResult(BaseModel):
    status: CommandStatus
    response: str | None = None


class CommandFailure(BaseModel):
    response: str | None = None


@router.post("", response_model=CommandOut, status_code=201)
async def enqueue_command(data: CommandCreate, session: AsyncSession = Depends(get_session)):
    command_id = await command_queue.enqueue(
        session, data.device_serial, data.payload, data.sequence
    )
    await session.commit()
    return await command_queue.get_command(session, command_id)


@router.get("/pending/{device_serial}", response_model=list[CommandOut])
async def list_pending(device_serial: str, session: AsyncSession = Depends(get_session)):
    return await command_queue.list_pending(session, device_serial)


@router.get("/stats")
async def queue_stats(
    device: str | None = Query(None),
    session: AsyncSession = Depends(get_session),
):
    return await command_queue.queue_stats(session, device)


@router.get("/dead-letter", response_model=list[CommandOut])
async def dead_letters(
    device: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
):
    return await command_queue.list_dead_letters(session, device, limit)


@router.get("/{command_id}", response_model=CommandOut)
async def get_command(command_id: int, session: AsyncSession = Depends(get_session)):
    return await command_queue.get_command(session, command_id)


@router.post("/{command_id}/result", response_model=CommandOut)
async def mark_terminal(
    command_id: int,
    data: CommandResult,
    session: AsyncSession = Depends(get_session),
):
    """Consumer reports a final outcome. 409 if the command is no longer pending."""
    cmd = await command_queue.mark_terminal(session, command_id, data.status, data.response)
    await session.commit()
    return cmd


@router.post("/{command_id}/failure", response_model=CommandOut)
async def record_failure(
    command_id: int,
    data: CommandFailure,
    session: AsyncSession = Depends(get_session),
):
    """Consumer reports a failed attempt; the retry cap decides if it is final."""
    cmd = await command_queue.record_failure(
        session, command_id, data.response, max_retries=settings.COMMAND_MAX_RETRIES
    )
    await session.commit()
    return cmd
