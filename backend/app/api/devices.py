import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from models import Device, DeviceDirection, DeviceStatus, get_session, utcnow

logger = logging.getLogger("devsync.devices")

router = APIRouter(prefix="/api/devices", tags=["devices"])


# --- Schemas ---

class DeviceCreate(BaseModel):
    serial: str
    name: str
    direction: DeviceDirection = DeviceDirection.BOTH
    ip_address: str | None = None


class DeviceOut(BaseModel):
    id: int
    serial: str
    name: str
    status: DeviceStatus
    last_activity: datetime | None
    direction: DeviceDirection
    ip_address: str | None

    model_config = {"from_attributes": True}


# --- Endpoints ---

@router.get("", response_model=list[DeviceOut])
async def list_devices(
    status: DeviceStatus | None = Query(None),
    session: AsyncSession = Depends(get_session),
):
    stmt = select(Device).order_by(Device.id)
    if status is not None:
        stmt = stmt.where(Device.status == status)
    result = await session.execute(stmt)
    return result.scalars().all()


@router.get("/{serial}", response_model=DeviceOut)
async def get_device(serial: str, session: AsyncSession = Depends(get_session)):
    device = await session.scalar(select(Device).where(Device.serial == serial))
    if not device:
        raise HTTPException(404, "Device not found")
    return device


@router.post("", response_model=DeviceOut, status_code=201)
async def register_device(data: DeviceCreate, session: AsyncSession = Depends(get_session)):
    if not data.serial.strip():
        raise HTTPException(400, "serial is required")
    device = Device(**data.model_dump())
    session.add(device)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise HTTPException(409, f"Device {data.serial} already registered")
    await session.refresh(device)
    logger.info("Device registered: %s (%s)", device.serial, device.name)
    return device


@router.post("/{serial}/heartbeat", response_model=DeviceOut)
async def record_activity(serial: str, session: AsyncSession = Depends(get_session)):
    """Called by the protocol handler on every successful exchange."""
    result = await session.execute(
        update(Device)
        .where(Device.serial == serial)
        .values(status=DeviceStatus.online, last_activity=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await session.rollback()
        raise HTTPException(404, "Device not found")
    await session.commit()
    return await session.scalar(select(Device).where(Device.serial == serial))


@router.post("/{serial}/offline", response_model=DeviceOut)
async def mark_offline(serial: str, session: AsyncSession = Depends(get_session)):
    device = await session.scalar(select(Device).where(Device.serial == serial))
    if not device:
        raise HTTPException(404, "Device not found")
    device.status = DeviceStatus.offline
    await session.commit()
    await session.refresh(device)
    return device
