"""Personnel mutations that must be mirrored onto every terminal.

Each operation is one transaction: the employee rows change and the
per-device sync commands are queued together, or neither happens.
"""

from __future__ import annotations

import enum
import logging
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from errors import InvalidTransitionError, NotFoundError, ValidationError
from models.base import utcnow
from models.employee import Employee, EmployeeStatus
from services.dispatcher import RosterAction, dispatch_roster_change

logger = logging.getLogger("devsync.roster")


class TransferType(str, enum.Enum):
    department = "department"
    area = "area"
    position = "position"


@asynccontextmanager
async def _roster_transaction(session: AsyncSession):
    try:
        yield
        await session.commit()
    except Exception:
        await session.rollback()
        raise


def _result(employees: list[Employee], queued: int) -> dict:
    return {
        "employees": employees,
        "commands_queued": queued,
        "device_count": queued // len(employees) if employees else 0,
    }


async def transfer_employees(
    session: AsyncSession,
    ids: list[int],
    transfer_type: TransferType | str,
    target: int | str,
) -> dict:
    if not ids:
        raise ValidationError("No employees selected")
    try:
        transfer_type = TransferType(transfer_type)
    except ValueError:
        raise ValidationError(f"Invalid transfer type: {transfer_type}") from None
    if target is None or target == "":
        raise ValidationError("Transfer target is required")
    if transfer_type != TransferType.position:
        try:
            target = int(target)
        except (TypeError, ValueError):
            raise ValidationError(f"{transfer_type.value} target must be an id") from None

    async with _roster_transaction(session):
        result = await session.execute(select(Employee).where(Employee.id.in_(ids)))
        employees = list(result.scalars().all())
        missing = set(ids) - {e.id for e in employees}
        if missing:
            raise NotFoundError(f"Employees not found: {sorted(missing)}")

        for emp in employees:
            if transfer_type == TransferType.department:
                emp.department_id = target
            elif transfer_type == TransferType.area:
                emp.area_id = target
            else:
                emp.designation = str(target)

        queued = await dispatch_roster_change(session, employees)

    logger.info(
        "Transferred %d employees (%s -> %s), %d sync commands queued",
        len(employees), transfer_type.value, target, queued,
    )
    return _result(employees, queued)


async def transfer_area(session: AsyncSession, from_area_id: int, to_area_id: int) -> dict:
    """Move everyone in one area to another (bulk mode)."""
    async with _roster_transaction(session):
        result = await session.execute(
            select(Employee).where(Employee.area_id == from_area_id).order_by(Employee.id)
        )
        employees = list(result.scalars().all())
        for emp in employees:
            emp.area_id = to_area_id
        # Fails with ValidationError on an empty area and rolls back.
        queued = await dispatch_roster_change(session, employees)

    logger.info(
        "Bulk area transfer %d -> %d: %d employees, %d sync commands queued",
        from_area_id, to_area_id, len(employees), queued,
    )
    return _result(employees, queued)


async def resign_employee(
    session: AsyncSession,
    employee_code: str,
    reason: str | None = None,
    resigned_at: datetime | None = None,
) -> dict:
    async with _roster_transaction(session):
        emp = await session.scalar(
            select(Employee).where(Employee.employee_code == employee_code)
        )
        if emp is None:
            raise NotFoundError(f"Employee {employee_code} not found")
        if emp.status == EmployeeStatus.resigned:
            raise InvalidTransitionError(f"Employee {employee_code} already resigned")

        emp.status = EmployeeStatus.resigned
        emp.department_id = None
        emp.resigned_at = resigned_at or utcnow()
        emp.resignation_reason = reason

        queued = await dispatch_roster_change(session, [emp], RosterAction.REMOVE)

    logger.info("Employee %s resigned, %d removal commands queued", employee_code, queued)
    return _result([emp], queued)


async def rehire_employee(session: AsyncSession, employee_id: int) -> dict:
    async with _roster_transaction(session):
        emp = await session.get(Employee, employee_id)
        if emp is None:
            raise NotFoundError(f"Employee {employee_id} not found")

        emp.status = EmployeeStatus.active
        emp.resigned_at = None
        emp.resignation_reason = None

        queued = await dispatch_roster_change(session, [emp])

    logger.info("Employee %s rehired, %d sync commands queued", emp.employee_code, queued)
    return _result([emp], queued)
