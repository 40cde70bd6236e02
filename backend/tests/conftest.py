"""
Test configuration.

Every test gets its own in-memory SQLite database (aiosqlite, single shared
connection) with the full schema created from the ORM metadata. Redis is an
AsyncMock; nothing here needs a running server.
"""

import os

# Set test environment before any app imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"

from datetime import datetime
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from models import Base, Device, DeviceCommand, DeviceStatus, Employee, CommandStatus

NOW = datetime(2024, 1, 1, 12, 0, 0)


@pytest.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def redis():
    mock = AsyncMock()
    mock.publish.return_value = 1
    return mock


@pytest.fixture
def make_device(session):
    """Insert and commit a device."""
    async def _make(serial, name=None, status=DeviceStatus.online, last_activity=None):
        device = Device(
            serial=serial,
            name=name or f"Gate {serial}",
            status=status,
            last_activity=last_activity,
        )
        session.add(device)
        await session.commit()
        return device
    return _make


@pytest.fixture
def make_employee(session):
    """Insert and commit an active employee."""
    async def _make(code, name=None, **fields):
        emp = Employee(employee_code=code, name=name or f"Employee {code}", **fields)
        session.add(emp)
        await session.commit()
        return emp
    return _make


@pytest.fixture
def make_command(session):
    """Insert a command row directly, bypassing the queue API (for fixed timestamps)."""
    async def _make(serial, status=CommandStatus.pending, created_at=NOW, executed_at=None,
                    payload="DATA QUERY USERINFO"):
        cmd = DeviceCommand(
            device_serial=serial,
            payload=payload,
            status=status,
            created_at=created_at,
            executed_at=executed_at,
        )
        session.add(cmd)
        await session.flush()
        return cmd
    return _make
