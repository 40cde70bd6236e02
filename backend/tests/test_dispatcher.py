"""Fan-out of roster changes into per-device commands."""

import pytest
from sqlalchemy import func, select

from errors import ValidationError
from models import CommandStatus, DeviceCommand
from services.dispatcher import RosterAction, build_payload, device_roster, dispatch_roster_change


async def _count(session, **filters):
    stmt = select(func.count(DeviceCommand.id))
    for column, value in filters.items():
        stmt = stmt.where(getattr(DeviceCommand, column) == value)
    return await session.scalar(stmt)


class TestBuildPayload:

    async def test_upsert_carries_credentials(self, make_employee):
        emp = await make_employee("1001", "Ana", privilege=14, password="77", card_number="C9")
        payload = build_payload(emp)
        assert payload.kind == "upsert_user"
        assert (payload.code, payload.name, payload.privilege) == ("1001", "Ana", 14)
        assert (payload.credential, payload.card) == ("77", "C9")

    async def test_remove(self, make_employee):
        emp = await make_employee("1001")
        payload = build_payload(emp, RosterAction.REMOVE)
        assert payload.kind == "delete_user"
        assert payload.code == "1001"


class TestDispatchRosterChange:

    async def test_one_command_per_employee_per_device(self, session, make_device, make_employee):
        for serial in ("D1", "D2", "D3", "D4"):
            await make_device(serial)
        employees = [await make_employee(code) for code in ("E1", "E2", "E3")]

        queued = await dispatch_roster_change(session, employees)
        await session.commit()

        assert queued == 12
        assert await _count(session) == 12
        assert await _count(session, status=CommandStatus.pending) == 12
        for serial in ("D1", "D2", "D3", "D4"):
            assert await _count(session, device_serial=serial) == 3

        rows = (await session.execute(
            select(DeviceCommand.payload).where(DeviceCommand.device_serial == "D2")
        )).scalars().all()
        assert sorted(p.split("\t")[0] for p in rows) == [
            "DATA UPDATE USERINFO PIN=E1",
            "DATA UPDATE USERINFO PIN=E2",
            "DATA UPDATE USERINFO PIN=E3",
        ]

    async def test_rollback_discards_commands(self, session, make_device, make_employee):
        await make_device("D1")
        await make_device("D2")
        emp = await make_employee("E1")

        assert await dispatch_roster_change(session, [emp]) == 2
        await session.rollback()

        assert await _count(session) == 0

    async def test_empty_device_roster_is_not_an_error(self, session, make_employee):
        emp = await make_employee("E1")
        assert await dispatch_roster_change(session, [emp]) == 0
        assert await _count(session) == 0

    async def test_no_employees_rejected(self, session, make_device):
        await make_device("D1")
        with pytest.raises(ValidationError):
            await dispatch_roster_change(session, [])

    async def test_remove_action_queues_deletes(self, session, make_device, make_employee):
        await make_device("D1")
        emp = await make_employee("E7")

        await dispatch_roster_change(session, [emp], RosterAction.REMOVE)

        cmd = await session.scalar(select(DeviceCommand))
        assert cmd.kind == "delete_user"
        assert cmd.payload == "DATA DELETE USERINFO PIN=E7"

    async def test_device_roster_order(self, session, make_device):
        await make_device("B")
        await make_device("A")
        assert await device_roster(session) == ["B", "A"]
