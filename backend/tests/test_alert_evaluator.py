"""Threshold alerts and the background monitor that publishes them."""

import json
from datetime import timedelta

from conftest import NOW
from models import CommandStatus, DeviceStatus
from services.alert_evaluator import AlertEvaluator, AlertSeverity, AlertType, HealthMonitor


class TestOfflineRule:

    async def test_only_silent_online_devices_alert(self, session, make_device):
        await make_device("D1", name="Lobby", status=DeviceStatus.online,
                          last_activity=NOW - timedelta(minutes=40))
        await make_device("D2", status=DeviceStatus.offline,
                          last_activity=NOW - timedelta(hours=5))
        await make_device("D3", status=DeviceStatus.online,
                          last_activity=NOW - timedelta(minutes=10))

        alerts = await AlertEvaluator().evaluate(session, now=NOW)

        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.type == AlertType.device_offline
        assert alert.severity == AlertSeverity.high
        assert alert.device == "D1"
        assert alert.message == "Device Lobby has been unresponsive for 40 minutes"
        assert alert.timestamp == NOW

    async def test_never_seen_device_does_not_alert(self, session, make_device):
        await make_device("D1", status=DeviceStatus.online, last_activity=None)
        assert await AlertEvaluator().evaluate(session, now=NOW) == []


class TestFailureRateRule:

    async def test_high_failure_rate(self, session, make_device, make_command):
        await make_device("D1", last_activity=NOW)
        for _ in range(6):
            await make_command("D1", CommandStatus.failed, created_at=NOW - timedelta(minutes=10))
        for _ in range(4):
            await make_command("D1", CommandStatus.success, created_at=NOW - timedelta(minutes=10))

        alerts = await AlertEvaluator().evaluate(session, now=NOW)

        assert [a.type for a in alerts] == [AlertType.high_failure_rate]
        assert alerts[0].severity == AlertSeverity.medium
        assert alerts[0].message == "Device D1 has 60.00% command failure rate (6/10)"

    async def test_five_failures_is_not_enough(self, session, make_device, make_command):
        await make_device("D1", last_activity=NOW)
        for _ in range(5):
            await make_command("D1", CommandStatus.failed, created_at=NOW - timedelta(minutes=10))
        assert await AlertEvaluator().evaluate(session, now=NOW) == []

    async def test_low_rate_does_not_alert(self, session, make_device, make_command):
        await make_device("D1", last_activity=NOW)
        for _ in range(6):
            await make_command("D1", CommandStatus.failed, created_at=NOW - timedelta(minutes=10))
        for _ in range(20):
            await make_command("D1", CommandStatus.success, created_at=NOW - timedelta(minutes=10))
        assert await AlertEvaluator().evaluate(session, now=NOW) == []

    async def test_old_failures_ignored(self, session, make_device, make_command):
        await make_device("D1", last_activity=NOW)
        for _ in range(10):
            await make_command("D1", CommandStatus.failed, created_at=NOW - timedelta(hours=2))
        assert await AlertEvaluator().evaluate(session, now=NOW) == []


class TestBacklogRule:

    async def test_backlog_over_threshold(self, session, make_device, make_command):
        await make_device("D1", last_activity=NOW)
        await make_device("D2", last_activity=NOW)
        for _ in range(51):
            await make_command("D1", created_at=NOW - timedelta(days=1))
        for _ in range(50):
            await make_command("D2", created_at=NOW - timedelta(days=1))

        alerts = await AlertEvaluator().evaluate(session, now=NOW)

        assert len(alerts) == 1
        assert alerts[0].type == AlertType.sync_delayed
        assert alerts[0].device == "D1"
        assert alerts[0].message == "Device D1 has 51 pending commands"


class TestHealthMonitor:

    async def test_run_once_publishes_each_alert(self, session, session_factory, make_device, redis):
        await make_device("D1", last_activity=NOW - timedelta(days=1))
        await make_device("D2", last_activity=NOW - timedelta(days=1))

        monitor = HealthMonitor(redis, session_factory, channel="test:alerts")
        alerts = await monitor.run_once()

        assert len(alerts) == 2
        assert monitor.last_alerts == alerts
        assert monitor.last_run_at is not None
        assert redis.publish.await_count == 2
        channel, body = redis.publish.await_args_list[0].args
        assert channel == "test:alerts"
        assert json.loads(body)["type"] == "device_offline"

    async def test_publish_error_does_not_abort_pass(self, session, session_factory, make_device, redis):
        await make_device("D1", last_activity=NOW - timedelta(days=1))
        redis.publish.side_effect = ConnectionError("redis down")

        monitor = HealthMonitor(redis, session_factory)
        alerts = await monitor.run_once()

        assert len(alerts) == 1
        assert monitor.last_alerts == alerts
