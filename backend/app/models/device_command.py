"""Outbound device command log.

Rows are created ``pending`` and move once to a terminal status.
Nothing ever deletes from this table; it doubles as the sync audit trail.
"""
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, utcnow


class CommandStatus(str, enum.Enum):
    pending = "pending"
    success = "success"
    failed = "failed"
    dead_letter = "dead_letter"


TERMINAL_STATUSES = (CommandStatus.success, CommandStatus.failed, CommandStatus.dead_letter)
FAILURE_STATUSES = (CommandStatus.failed, CommandStatus.dead_letter)


class DeviceCommand(Base):
    __tablename__ = "device_commands"

    __table_args__ = (
        Index("ix_device_commands_device_status", "device_serial", "status"),
        Index("ix_device_commands_device_created", "device_serial", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    device_serial: Mapped[str] = mapped_column(
        ForeignKey("devices.serial", ondelete="RESTRICT")
    )
    kind: Mapped[str | None] = mapped_column(String(32), default=None)  # "upsert_user"
    payload: Mapped[str] = mapped_column(Text)
    status: Mapped[CommandStatus] = mapped_column(default=CommandStatus.pending)
    sequence: Mapped[int] = mapped_column(default=1)
    retry_count: Mapped[int] = mapped_column(default=0)
    response: Mapped[str | None] = mapped_column(Text, default=None)

    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    executed_at: Mapped[datetime | None] = mapped_column(default=None)

    def __repr__(self) -> str:
        return f"<DeviceCommand {self.id} {self.device_serial} {self.status.value}>"
