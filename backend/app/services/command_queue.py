"""Command record store: durable per-device queue of outbound instructions.

Writers (the fan-out dispatcher, operators) append ``pending`` rows; the
external protocol handler claims them and reports an outcome. Every status
change is a conditional UPDATE on ``status='pending'`` so two consumers can
never both terminalize the same command. Functions here never commit; the
caller owns the transaction.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from errors import InvalidTransitionError, NotFoundError, ValidationError
from models.base import utcnow
from models.device import Device
from models.device_command import CommandStatus, DeviceCommand
from services.device_payloads import DevicePayload, PayloadCodec, default_codec

logger = logging.getLogger("devsync.command_queue")


async def enqueue(
    session: AsyncSession,
    device_serial: str,
    payload: str | DevicePayload,
    sequence: int = 1,
    *,
    codec: PayloadCodec = default_codec,
) -> int:
    if not device_serial or not device_serial.strip():
        raise ValidationError("device_serial is required")

    kind = None
    if not isinstance(payload, str):
        kind = payload.kind
        payload = codec.encode(payload)
    if not payload or not payload.strip():
        raise ValidationError("payload is required")

    exists = await session.scalar(
        select(Device.id).where(Device.serial == device_serial)
    )
    if exists is None:
        raise NotFoundError(f"Device {device_serial} not found")

    cmd = DeviceCommand(
        device_serial=device_serial,
        kind=kind,
        payload=payload,
        status=CommandStatus.pending,
        sequence=sequence,
    )
    session.add(cmd)
    await session.flush()
    logger.info(
        "Command queued: id=%d device=%s kind=%s seq=%d",
        cmd.id, device_serial, kind or "raw", sequence,
    )
    return cmd.id


async def list_pending(session: AsyncSession, device_serial: str) -> list[DeviceCommand]:
    """Pending commands in delivery order. ``sequence`` is a soft hint only."""
    stmt = (
        select(DeviceCommand)
        .where(
            DeviceCommand.device_serial == device_serial,
            DeviceCommand.status == CommandStatus.pending,
        )
        .order_by(
            DeviceCommand.sequence.asc(),
            DeviceCommand.created_at.asc(),
            DeviceCommand.id.asc(),
        )
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_command(session: AsyncSession, command_id: int) -> DeviceCommand:
    cmd = await session.get(DeviceCommand, command_id)
    if cmd is None:
        raise NotFoundError(f"Command {command_id} not found")
    return cmd


async def mark_terminal(
    session: AsyncSession,
    command_id: int,
    status: CommandStatus | str,
    response: str | None = None,
    *,
    now: datetime | None = None,
) -> DeviceCommand:
    try:
        status = CommandStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown command status: {status}") from None
    if status == CommandStatus.pending:
        raise ValidationError("Terminal status required (success, failed or dead_letter)")

    stmt = (
        update(DeviceCommand)
        .where(
            DeviceCommand.id == command_id,
            DeviceCommand.status == CommandStatus.pending,
        )
        .values(status=status, response=response, executed_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount == 0:
        current = await get_command(session, command_id)
        raise InvalidTransitionError(
            f"Command {command_id} is {current.status.value}, not pending"
        )

    cmd = await session.get(DeviceCommand, command_id, populate_existing=True)
    logger.info("Command %d -> %s (device=%s)", command_id, status.value, cmd.device_serial)
    return cmd


async def record_failure(
    session: AsyncSession,
    command_id: int,
    response: str | None = None,
    *,
    max_retries: int | None = None,
    now: datetime | None = None,
) -> DeviceCommand:
    """Count one failed delivery attempt and apply the dead-letter policy.

    Without a retry cap the failure is terminal (``failed``). With a cap the
    command stays pending for another attempt until ``retry_count`` reaches
    it, then becomes ``dead_letter``.
    """
    cmd = await get_command(session, command_id)
    if cmd.status != CommandStatus.pending:
        raise InvalidTransitionError(
            f"Command {command_id} is {cmd.status.value}, not pending"
        )

    seen_retries = cmd.retry_count
    retries = seen_retries + 1
    if max_retries is None:
        new_status = CommandStatus.failed
    elif retries >= max_retries:
        new_status = CommandStatus.dead_letter
    else:
        new_status = CommandStatus.pending

    values: dict = {"retry_count": retries, "status": new_status, "response": response}
    if new_status != CommandStatus.pending:
        values["executed_at"] = now or utcnow()

    stmt = (
        update(DeviceCommand)
        .where(
            DeviceCommand.id == command_id,
            DeviceCommand.status == CommandStatus.pending,
            DeviceCommand.retry_count == seen_retries,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount == 0:
        raise InvalidTransitionError(f"Command {command_id} changed concurrently")

    cmd = await session.get(DeviceCommand, command_id, populate_existing=True)
    if new_status == CommandStatus.dead_letter:
        logger.error(
            "Command %d moved to dead letter after %d attempts (device=%s)",
            command_id, retries, cmd.device_serial,
        )
    elif new_status == CommandStatus.pending:
        logger.warning(
            "Command %d failed, attempt %d/%d (device=%s)",
            command_id, retries, max_retries, cmd.device_serial,
        )
    else:
        logger.warning("Command %d failed (device=%s)", command_id, cmd.device_serial)
    return cmd


async def expire_stale(
    session: AsyncSession,
    ttl_seconds: int,
    *,
    now: datetime | None = None,
) -> int:
    """Dead-letter every command that has been pending longer than the TTL."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=ttl_seconds)
    stmt = (
        update(DeviceCommand)
        .where(
            DeviceCommand.status == CommandStatus.pending,
            DeviceCommand.created_at < cutoff,
        )
        .values(status=CommandStatus.dead_letter, response="expired", executed_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount:
        logger.warning("Expired %d stale pending commands (ttl=%ds)", result.rowcount, ttl_seconds)
    return result.rowcount


async def queue_stats(session: AsyncSession, device_serial: str | None = None) -> dict:
    stmt = select(DeviceCommand.status, func.count(DeviceCommand.id)).group_by(
        DeviceCommand.status
    )
    if device_serial:
        stmt = stmt.where(DeviceCommand.device_serial == device_serial)
    result = await session.execute(stmt)

    stats = {s.value: 0 for s in CommandStatus}
    stats["total"] = 0
    for status, count in result.all():
        stats[CommandStatus(status).value] = count
        stats["total"] += count
    return stats


async def list_dead_letters(
    session: AsyncSession,
    device_serial: str | None = None,
    limit: int = 50,
) -> list[DeviceCommand]:
    stmt = (
        select(DeviceCommand)
        .where(DeviceCommand.status == CommandStatus.dead_letter)
        .order_by(DeviceCommand.executed_at.desc(), DeviceCommand.id.desc())
        .limit(limit)
    )
    if device_serial:
        stmt = stmt.where(DeviceCommand.device_serial == device_serial)
    result = await session.execute(stmt)
    return list(result.scalars().all())


class CommandExpiryWorker:
    """Background task: dead-letters commands stuck in pending past the TTL."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl_seconds: int,
        check_interval: int = 60,
    ):
        self.session_factory = session_factory
        self.ttl_seconds = ttl_seconds
        self.check_interval = check_interval
        self._running = False

    async def start(self) -> None:
        self._running = True
        logger.info(
            "CommandExpiryWorker started (ttl=%ds, check every %ds)",
            self.ttl_seconds, self.check_interval,
        )
        while self._running:
            try:
                await self.run_once()
            except Exception as exc:
                logger.error("CommandExpiryWorker cycle error: %s", exc, exc_info=True)
            await asyncio.sleep(self.check_interval)

    async def stop(self) -> None:
        self._running = False
        logger.info("CommandExpiryWorker stopped")

    async def run_once(self) -> int:
        async with self.session_factory() as session:
            expired = await expire_stale(session, self.ttl_seconds)
            await session.commit()
        return expired
