"""Personnel transfer, resignation and rehire with atomic device sync."""

import pytest
from sqlalchemy import func, select

from errors import InvalidTransitionError, NotFoundError, ValidationError
from models import DeviceCommand, Employee, EmployeeStatus
from services import device_payloads, roster


async def _command_count(session, kind=None):
    stmt = select(func.count(DeviceCommand.id))
    if kind:
        stmt = stmt.where(DeviceCommand.kind == kind)
    return await session.scalar(stmt)


async def _employee(session, code):
    return await session.scalar(select(Employee).where(Employee.employee_code == code))


@pytest.fixture
async def two_devices(make_device):
    await make_device("D1")
    await make_device("D2")


class TestTransfer:

    async def test_department_transfer(self, session, two_devices, make_employee):
        a = await make_employee("E1", department_id=1)
        b = await make_employee("E2", department_id=1)

        result = await roster.transfer_employees(session, [a.id, b.id], "department", "5")

        assert result["commands_queued"] == 4
        assert result["device_count"] == 2
        assert {e.department_id for e in result["employees"]} == {5}
        assert await _command_count(session, "upsert_user") == 4

    async def test_position_transfer_keeps_text(self, session, two_devices, make_employee):
        a = await make_employee("E1")
        result = await roster.transfer_employees(session, [a.id], "position", "Supervisor")
        assert result["employees"][0].designation == "Supervisor"

    async def test_missing_employee_rolls_back(self, session, two_devices, make_employee):
        a = await make_employee("E1", department_id=1)

        with pytest.raises(NotFoundError):
            await roster.transfer_employees(session, [a.id, 999], "department", 5)

        assert await _command_count(session) == 0
        assert (await _employee(session, "E1")).department_id == 1

    async def test_failed_fan_out_rolls_back_mutation(
        self, session, two_devices, make_employee, monkeypatch,
    ):
        a = await make_employee("E1", department_id=1)
        b = await make_employee("E2", department_id=1)

        def broken_encode(payload):
            raise RuntimeError("codec failure")

        monkeypatch.setattr(device_payloads.default_codec, "encode", broken_encode)

        with pytest.raises(RuntimeError):
            await roster.transfer_employees(session, [a.id, b.id], "department", 5)

        assert await _command_count(session) == 0
        assert (await _employee(session, "E1")).department_id == 1
        assert (await _employee(session, "E2")).department_id == 1

    async def test_failed_resign_fan_out_keeps_employee_active(
        self, session, two_devices, make_employee, monkeypatch,
    ):
        await make_employee("E1", department_id=3)

        async def broken_flush(*args, **kwargs):
            raise RuntimeError("insert failed")

        monkeypatch.setattr(session, "flush", broken_flush)

        with pytest.raises(RuntimeError):
            await roster.resign_employee(session, "E1")

        monkeypatch.undo()
        emp = await _employee(session, "E1")
        assert emp.status == EmployeeStatus.active
        assert emp.department_id == 3
        assert await _command_count(session) == 0

    @pytest.mark.parametrize(
        "ids, transfer_type, target",
        [([], "department", 1), ([1], "floor", 1), ([1], "area", ""), ([1], "area", "north")],
    )
    async def test_invalid_request(self, session, ids, transfer_type, target):
        with pytest.raises(ValidationError):
            await roster.transfer_employees(session, ids, transfer_type, target)

    async def test_bulk_area(self, session, two_devices, make_employee):
        await make_employee("E1", area_id=3)
        await make_employee("E2", area_id=3)
        await make_employee("E3", area_id=4)

        result = await roster.transfer_area(session, 3, 8)

        assert [e.employee_code for e in result["employees"]] == ["E1", "E2"]
        assert result["commands_queued"] == 4
        assert (await _employee(session, "E3")).area_id == 4

    async def test_bulk_area_empty(self, session, two_devices):
        with pytest.raises(ValidationError):
            await roster.transfer_area(session, 42, 8)
        assert await _command_count(session) == 0


class TestResignRehire:

    async def test_resign_queues_removal(self, session, two_devices, make_employee):
        await make_employee("E1", department_id=2)

        result = await roster.resign_employee(session, "E1", reason="Relocated")

        emp = result["employees"][0]
        assert emp.status == EmployeeStatus.resigned
        assert emp.department_id is None
        assert emp.resignation_reason == "Relocated"
        assert emp.resigned_at is not None
        assert await _command_count(session, "delete_user") == 2

    async def test_resign_twice(self, session, two_devices, make_employee):
        await make_employee("E1")
        await roster.resign_employee(session, "E1")

        with pytest.raises(InvalidTransitionError):
            await roster.resign_employee(session, "E1")
        assert await _command_count(session) == 2

    async def test_resign_unknown(self, session):
        with pytest.raises(NotFoundError):
            await roster.resign_employee(session, "NOPE")

    async def test_rehire(self, session, two_devices, make_employee):
        emp = await make_employee("E1")
        await roster.resign_employee(session, "E1", reason="x")

        result = await roster.rehire_employee(session, emp.id)

        emp = result["employees"][0]
        assert emp.status == EmployeeStatus.active
        assert emp.resigned_at is None
        assert emp.resignation_reason is None
        assert await _command_count(session, "upsert_user") == 2

    async def test_rehire_unknown(self, session):
        with pytest.raises(NotFoundError):
            await roster.rehire_employee(session, 404)
