"""Device health scoring.

Composite 0-100 score from four capped step functions:

    online          0-30   device reports online
    recency         0-25   minutes since last_activity
    command success 0-25   success share of terminal commands, trailing 24h
    queue backlog   0-20   pending commands still waiting for the device

A device whose status is not online is always reported ``offline`` no
matter what the number says. Health reads never raise for a device:
unknown serials and per-device query errors yield a zero/offline result.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime, timedelta

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from models.base import utcnow
from models.device import Device, DeviceStatus
from models.device_command import FAILURE_STATUSES, CommandStatus, DeviceCommand

logger = logging.getLogger("devsync.health")

ONLINE_MAX = 30
RECENCY_MAX = 25
SUCCESS_MAX = 25
BACKLOG_MAX = 20

HEALTHY_MIN = 80
WARNING_MIN = 50

SUCCESS_WINDOW = timedelta(hours=24)

# Connectivity errors abort the pass instead of degrading one device.
CONNECTIVITY_ERRORS = (DisconnectionError, InterfaceError, OperationalError)


class HealthStatus(str, enum.Enum):
    healthy = "healthy"
    warning = "warning"
    critical = "critical"
    offline = "offline"


class HealthFactors(BaseModel):
    online: int = 0
    recency: int = 0
    command_success: int = 0
    queue_backlog: int = 0


class HealthAssessment(BaseModel):
    device_serial: str
    device_name: str | None = None
    score: int = 0
    status: HealthStatus = HealthStatus.offline
    factors: HealthFactors = HealthFactors()
    idle_minutes: int | None = None
    success_count: int = 0
    failure_count: int = 0
    pending_count: int = 0
    error: str | None = None


# ---------------------------------------------------------------------------
# Factor step functions
# ---------------------------------------------------------------------------

def online_factor(status: DeviceStatus) -> int:
    return ONLINE_MAX if status == DeviceStatus.online else 0


def recency_factor(idle_minutes: float | None) -> int:
    if idle_minutes is None:
        return 0
    if idle_minutes <= 5:
        return 25
    if idle_minutes <= 15:
        return 20
    if idle_minutes <= 30:
        return 10
    return 0


def success_factor(success_count: int, failure_count: int) -> int:
    terminal = success_count + failure_count
    if terminal == 0:
        return SUCCESS_MAX
    return round(SUCCESS_MAX * success_count / terminal)


def backlog_factor(pending_count: int) -> int:
    if pending_count > 100:
        return 0
    if pending_count > 50:
        return 5
    if pending_count > 20:
        return 10
    if pending_count > 10:
        return 15
    return BACKLOG_MAX


def health_status(is_online: bool, score: int) -> HealthStatus:
    if not is_online:
        return HealthStatus.offline
    if score >= HEALTHY_MIN:
        return HealthStatus.healthy
    if score >= WARNING_MIN:
        return HealthStatus.warning
    return HealthStatus.critical


# ---------------------------------------------------------------------------
# Scorer
# ---------------------------------------------------------------------------

class HealthScorer:
    """Computes HealthAssessment objects. Uses the session read-only."""

    async def score(
        self,
        session: AsyncSession,
        device_serial: str,
        now: datetime | None = None,
    ) -> HealthAssessment:
        now = now or utcnow()
        device = await session.scalar(select(Device).where(Device.serial == device_serial))
        if device is None:
            return HealthAssessment(device_serial=device_serial)
        return await self._score_isolated(session, device, now)

    async def score_all(
        self,
        session: AsyncSession,
        now: datetime | None = None,
    ) -> list[HealthAssessment]:
        now = now or utcnow()
        result = await session.execute(select(Device.serial).order_by(Device.id))
        serials = list(result.scalars().all())
        # Re-select per device: an isolated failure rolls back and expires rows.
        return [await self.score(session, serial, now) for serial in serials]

    async def _score_isolated(
        self, session: AsyncSession, device: Device, now: datetime
    ) -> HealthAssessment:
        serial, name = device.serial, device.name
        try:
            return await self._compute(session, device, now)
        except CONNECTIVITY_ERRORS:
            raise
        except Exception as exc:
            logger.error("Health score failed for %s: %s", serial, exc, exc_info=True)
            await session.rollback()
            return HealthAssessment(device_serial=serial, device_name=name, error=str(exc))

    async def _compute(
        self, session: AsyncSession, device: Device, now: datetime
    ) -> HealthAssessment:
        is_online = device.status == DeviceStatus.online

        idle_minutes = None
        if device.last_activity is not None:
            idle_minutes = max((now - device.last_activity).total_seconds() / 60, 0.0)

        window = await session.execute(
            select(
                func.count(DeviceCommand.id).filter(
                    DeviceCommand.status == CommandStatus.success
                ),
                func.count(DeviceCommand.id).filter(
                    DeviceCommand.status.in_(FAILURE_STATUSES)
                ),
            ).where(
                DeviceCommand.device_serial == device.serial,
                DeviceCommand.created_at > now - SUCCESS_WINDOW,
            )
        )
        success_count, failure_count = window.one()

        pending_count = await session.scalar(
            select(func.count(DeviceCommand.id)).where(
                DeviceCommand.device_serial == device.serial,
                DeviceCommand.status == CommandStatus.pending,
            )
        )

        factors = HealthFactors(
            online=online_factor(device.status),
            recency=recency_factor(idle_minutes),
            command_success=success_factor(success_count or 0, failure_count or 0),
            queue_backlog=backlog_factor(pending_count or 0),
        )
        total = (
            factors.online + factors.recency + factors.command_success + factors.queue_backlog
        )
        return HealthAssessment(
            device_serial=device.serial,
            device_name=device.name,
            score=total,
            status=health_status(is_online, total),
            factors=factors,
            idle_minutes=round(idle_minutes) if idle_minutes is not None else None,
            success_count=success_count or 0,
            failure_count=failure_count or 0,
            pending_count=pending_count or 0,
        )

    async def system_summary(self, session: AsyncSession, now: datetime | None = None) -> dict:
        """Fleet-wide device availability and last-hour command outcomes."""
        now = now or utcnow()
        hour_ago = now - timedelta(hours=1)

        devices = (
            await session.execute(
                select(
                    func.count(Device.id),
                    func.count(Device.id).filter(Device.status == DeviceStatus.online),
                    func.count(Device.id).filter(Device.last_activity > now - timedelta(minutes=5)),
                )
            )
        ).one()
        total, online, active_now = (v or 0 for v in devices)

        commands = (
            await session.execute(
                select(
                    func.count(DeviceCommand.id).filter(
                        DeviceCommand.status == CommandStatus.pending
                    ),
                    func.count(DeviceCommand.id).filter(
                        DeviceCommand.status == CommandStatus.success,
                        DeviceCommand.executed_at > hour_ago,
                    ),
                    func.count(DeviceCommand.id).filter(
                        DeviceCommand.status.in_(FAILURE_STATUSES),
                        DeviceCommand.executed_at > hour_ago,
                    ),
                    func.count(DeviceCommand.id).filter(
                        DeviceCommand.status == CommandStatus.dead_letter
                    ),
                )
            )
        ).one()
        pending, success_1h, failed_1h, dead_letter = (v or 0 for v in commands)

        device_health = round(100 * online / total) if total else 0
        finished = success_1h + failed_1h
        command_health = round(100 * success_1h / finished) if finished else 100

        return {
            "overall_health": round((device_health + command_health) / 2),
            "devices": {
                "total": total,
                "online": online,
                "offline": total - online,
                "active_now": active_now,
                "health_percentage": device_health,
            },
            "commands": {
                "pending": pending,
                "success_last_hour": success_1h,
                "failed_last_hour": failed_1h,
                "dead_letter_total": dead_letter,
                "success_rate": command_health,
            },
            "timestamp": now,
        }
