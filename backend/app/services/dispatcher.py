"""Fan-out dispatcher: one roster change -> one command per (employee, device).

Runs inside the caller's transaction and never commits, so the employee
mutation and the sync intent land (or roll back) together. Hardware
delivery happens later, out of process.
"""

from __future__ import annotations

import enum
import logging
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from errors import ValidationError
from models.device import Device
from models.device_command import CommandStatus, DeviceCommand
from models.employee import Employee
from services.device_payloads import (
    DeleteUser,
    DevicePayload,
    PayloadCodec,
    UpsertUser,
    default_codec,
)

logger = logging.getLogger("devsync.dispatcher")


class RosterAction(str, enum.Enum):
    UPSERT = "upsert"
    REMOVE = "remove"


def build_payload(employee: Employee, action: RosterAction = RosterAction.UPSERT) -> DevicePayload:
    if action == RosterAction.REMOVE:
        return DeleteUser(code=employee.employee_code)
    return UpsertUser(
        code=employee.employee_code,
        name=employee.name,
        privilege=employee.privilege or 0,
        credential=employee.password or "",
        card=employee.card_number or "",
    )


async def device_roster(session: AsyncSession) -> list[str]:
    result = await session.execute(select(Device.serial).order_by(Device.id))
    return list(result.scalars().all())


async def dispatch_roster_change(
    session: AsyncSession,
    affected_employees: Iterable[Employee],
    action: RosterAction = RosterAction.UPSERT,
    *,
    codec: PayloadCodec = default_codec,
    sequence: int = 1,
) -> int:
    """Queue one command per affected employee per known device.

    Returns the number of commands created (employees x devices). An empty
    device roster is legal and queues nothing.
    """
    employees = list(affected_employees)
    if not employees:
        raise ValidationError("Roster change must affect at least one employee")

    serials = await device_roster(session)
    commands: list[DeviceCommand] = []
    for emp in employees:
        payload = build_payload(emp, action)
        wire = codec.encode(payload)
        for serial in serials:
            commands.append(
                DeviceCommand(
                    device_serial=serial,
                    kind=payload.kind,
                    payload=wire,
                    status=CommandStatus.pending,
                    sequence=sequence,
                )
            )

    session.add_all(commands)
    await session.flush()

    logger.info(
        "Roster %s fan-out: %d employees x %d devices = %d commands",
        action.value, len(employees), len(serials), len(commands),
    )
    return len(commands)
