"""Threshold alerts over device heartbeats and the command log.

Three independent rules, re-evaluated on every pass:
1. device_offline    (high)   - status still says online, silent > 30 min
2. high_failure_rate (medium) - > 5 failures in the last hour and > 30% of that hour's commands
3. sync_delayed      (medium) - > 50 pending commands

There is no de-duplication: a persisting condition is re-emitted each pass
and the delivery side is responsible for debouncing.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from datetime import datetime, timedelta

from pydantic import BaseModel
from redis.asyncio import Redis
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.base import utcnow
from models.device import Device, DeviceStatus
from models.device_command import FAILURE_STATUSES, CommandStatus, DeviceCommand
from services.health_scorer import CONNECTIVITY_ERRORS

logger = logging.getLogger("devsync.alerts")

OFFLINE_AFTER = timedelta(minutes=30)
FAILURE_WINDOW = timedelta(hours=1)
FAILURE_MIN_COUNT = 5
FAILURE_RATE_PCT = 30.0
BACKLOG_THRESHOLD = 50


class AlertType(str, enum.Enum):
    device_offline = "device_offline"
    high_failure_rate = "high_failure_rate"
    sync_delayed = "sync_delayed"


class AlertSeverity(str, enum.Enum):
    high = "high"
    medium = "medium"


class Alert(BaseModel):
    type: AlertType
    severity: AlertSeverity
    device: str
    device_name: str | None = None
    message: str
    timestamp: datetime


class AlertEvaluator:

    async def evaluate(self, session: AsyncSession, now: datetime | None = None) -> list[Alert]:
        now = now or utcnow()
        alerts: list[Alert] = []
        for rule in (self._offline_devices, self._high_failure_rates, self._backlogs):
            try:
                alerts.extend(await rule(session, now))
            except CONNECTIVITY_ERRORS:
                raise
            except Exception as exc:
                logger.error("Alert rule %s failed: %s", rule.__name__, exc, exc_info=True)
                await session.rollback()

        if alerts:
            logger.warning("Alerts generated: %d", len(alerts))
        return alerts

    async def _offline_devices(self, session: AsyncSession, now: datetime) -> list[Alert]:
        stmt = (
            select(Device.serial, Device.name, Device.last_activity)
            .where(
                Device.status == DeviceStatus.online,
                Device.last_activity < now - OFFLINE_AFTER,
            )
            .order_by(Device.id)
        )
        alerts = []
        for serial, name, last_activity in (await session.execute(stmt)).all():
            minutes = round((now - last_activity).total_seconds() / 60)
            alerts.append(Alert(
                type=AlertType.device_offline,
                severity=AlertSeverity.high,
                device=serial,
                device_name=name,
                message=f"Device {name} has been unresponsive for {minutes} minutes",
                timestamp=now,
            ))
        return alerts

    async def _high_failure_rates(self, session: AsyncSession, now: datetime) -> list[Alert]:
        failures = func.count(DeviceCommand.id).filter(DeviceCommand.status.in_(FAILURE_STATUSES))
        total = func.count(DeviceCommand.id)
        stmt = (
            select(DeviceCommand.device_serial, failures, total)
            .where(DeviceCommand.created_at > now - FAILURE_WINDOW)
            .group_by(DeviceCommand.device_serial)
            .having(failures > FAILURE_MIN_COUNT)
            .order_by(DeviceCommand.device_serial)
        )
        alerts = []
        for serial, failed, count in (await session.execute(stmt)).all():
            rate = 100.0 * failed / count
            if rate <= FAILURE_RATE_PCT:
                continue
            alerts.append(Alert(
                type=AlertType.high_failure_rate,
                severity=AlertSeverity.medium,
                device=serial,
                message=(
                    f"Device {serial} has {rate:.2f}% command failure rate "
                    f"({failed}/{count})"
                ),
                timestamp=now,
            ))
        return alerts

    async def _backlogs(self, session: AsyncSession, now: datetime) -> list[Alert]:
        pending = func.count(DeviceCommand.id)
        stmt = (
            select(DeviceCommand.device_serial, pending)
            .where(DeviceCommand.status == CommandStatus.pending)
            .group_by(DeviceCommand.device_serial)
            .having(pending > BACKLOG_THRESHOLD)
            .order_by(DeviceCommand.device_serial)
        )
        return [
            Alert(
                type=AlertType.sync_delayed,
                severity=AlertSeverity.medium,
                device=serial,
                message=f"Device {serial} has {count} pending commands",
                timestamp=now,
            )
            for serial, count in (await session.execute(stmt)).all()
        ]


class HealthMonitor:
    """Background task: evaluates alerts every ``interval`` seconds and
    publishes each one to Redis for the notification side."""

    def __init__(
        self,
        redis: Redis,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        interval: int = 300,
        channel: str = "device:alerts",
        evaluator: AlertEvaluator | None = None,
    ):
        self.redis = redis
        self.session_factory = session_factory
        self.interval = interval
        self.channel = channel
        self.evaluator = evaluator or AlertEvaluator()
        self.last_alerts: list[Alert] = []
        self.last_run_at: datetime | None = None
        self._running = False

    async def start(self) -> None:
        self._running = True
        logger.info(
            "HealthMonitor started (check every %ds, channel=%s)",
            self.interval, self.channel,
        )
        while self._running:
            try:
                await self.run_once()
            except Exception as exc:
                logger.error("HealthMonitor cycle error: %s", exc, exc_info=True)
            await asyncio.sleep(self.interval)

    async def stop(self) -> None:
        self._running = False
        logger.info("HealthMonitor stopped")

    async def run_once(self) -> list[Alert]:
        async with self.session_factory() as session:
            alerts = await self.evaluator.evaluate(session)
        self.last_alerts = alerts
        self.last_run_at = utcnow()
        for alert in alerts:
            await self._publish(alert)
        return alerts

    async def _publish(self, alert: Alert) -> None:
        try:
            await self.redis.publish(self.channel, alert.model_dump_json())
        except Exception as exc:
            logger.error("Failed to publish %s alert for %s: %s", alert.type.value, alert.device, exc)
