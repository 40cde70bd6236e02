from models.base import Base, async_session, engine, get_session, utcnow
from models.device import Device, DeviceDirection, DeviceStatus
from models.employee import Employee, EmployeeStatus
from models.device_command import (
    CommandStatus,
    DeviceCommand,
    FAILURE_STATUSES,
    TERMINAL_STATUSES,
)
from models.scheduled_report import (
    ReportRunHistory,
    RunStatus,
    ScheduledReportJob,
    ScheduleType,
)

__all__ = [
    "Base",
    "async_session",
    "engine",
    "get_session",
    "utcnow",
    "Device",
    "DeviceDirection",
    "DeviceStatus",
    "Employee",
    "EmployeeStatus",
    "CommandStatus",
    "DeviceCommand",
    "FAILURE_STATUSES",
    "TERMINAL_STATUSES",
    "ReportRunHistory",
    "RunStatus",
    "ScheduledReportJob",
    "ScheduleType",
]
