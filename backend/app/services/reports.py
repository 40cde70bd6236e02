"""Report generation and hand-off for scheduled jobs.

Generators turn (report_type, filters) into structured data. Delivery hands
that data to the notification side (email rendering and transport live
there) through a Redis outbox channel.
"""

from __future__ import annotations

import json
import logging
from typing import Awaitable, Callable, Protocol

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from errors import ExecutionError
from models.scheduled_report import ScheduledReportJob
from services.health_scorer import HealthScorer

logger = logging.getLogger("devsync.reports")

ReportGenerator = Callable[[AsyncSession, dict], Awaitable[dict]]


class ReportRegistry:
    """report_type -> async generator(session, filters) -> dict."""

    def __init__(self) -> None:
        self._generators: dict[str, ReportGenerator] = {}

    def register(self, report_type: str, generator: ReportGenerator) -> None:
        self._generators[report_type] = generator

    def types(self) -> list[str]:
        return sorted(self._generators)

    async def generate(self, session: AsyncSession, report_type: str, filters: dict) -> dict:
        generator = self._generators.get(report_type)
        if generator is None:
            raise ExecutionError(f"Unknown report type: {report_type}")
        return await generator(session, filters)


async def device_health_report(session: AsyncSession, filters: dict) -> dict:
    scorer = HealthScorer()
    assessments = await scorer.score_all(session)
    wanted = filters.get("status")
    if wanted:
        assessments = [a for a in assessments if a.status.value == wanted]
    summary = await scorer.system_summary(session)
    return {
        "title": "Device Health",
        "summary": summary,
        "rows": [a.model_dump(mode="json") for a in assessments],
    }


def default_registry() -> ReportRegistry:
    registry = ReportRegistry()
    registry.register("device-health", device_health_report)
    return registry


class ReportDelivery(Protocol):
    async def deliver(
        self, recipients: list[str], subject: str, report: dict, fmt: str
    ) -> None: ...


class RedisReportDelivery:
    """Publishes finished reports to the outbox channel read by the mailer."""

    def __init__(self, redis: Redis, channel: str = "reports:outbox"):
        self.redis = redis
        self.channel = channel

    async def deliver(
        self, recipients: list[str], subject: str, report: dict, fmt: str
    ) -> None:
        message = json.dumps(
            {
                "type": "scheduled_report",
                "recipients": recipients,
                "subject": subject,
                "format": fmt,
                "report": report,
            },
            default=str,
        )
        receivers = await self.redis.publish(self.channel, message)
        if not receivers:
            raise ExecutionError(f"No delivery consumer subscribed to {self.channel}")
        logger.info("Report '%s' handed to %d consumer(s)", subject, receivers)


class ReportExecutor:

    def __init__(self, registry: ReportRegistry, delivery: ReportDelivery):
        self.registry = registry
        self.delivery = delivery

    async def execute(self, session: AsyncSession, job: ScheduledReportJob) -> None:
        try:
            report = await self.registry.generate(session, job.report_type, job.filters or {})
            await self.delivery.deliver(list(job.recipients or []), job.name, report, job.format)
        except ExecutionError:
            raise
        except Exception as exc:
            raise ExecutionError(f"{job.report_type} report failed: {exc}") from exc
