"""Personnel roster mutations that fan out device sync commands."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from models import EmployeeStatus, get_session
from services import roster
from services.roster import TransferType

router = APIRouter(prefix="/api/personnel", tags=["personnel"])


# ---------------------------------------------------------------------------
#  Pydantic schemas
# ---------------------------------------------------------------------------

class TransferRequest(BaseModel):
    ids: list[int]
    type: TransferType
    target_id: int | str


class AreaTransferRequest(BaseModel):
    from_area_id: int
    target_area_id: int


class ResignRequest(BaseModel):
    employee_code: str
    reason: str | None = None
    resignation_date: datetime | None = None


class RehireRequest(BaseModel):
    employee_id: int


class EmployeeOut(BaseModel):
    id: int
    employee_code: str
    name: str
    department_id: int | None
    area_id: int | None
    designation: str | None
    status: EmployeeStatus
    model_config = {"from_attributes": True}


class RosterChangeOut(BaseModel):
    message: str
    transferred: int
    commands_queued: int
    device_count: int
    employees: list[EmployeeOut]


def _response(result: dict, verb: str) -> RosterChangeOut:
    count = len(result["employees"])
    return RosterChangeOut(
        message=(
            f"{verb} {count} employees successfully. "
            f"Sync commands queued for {result['device_count']} devices."
        ),
        transferred=count,
        commands_queued=result["commands_queued"],
        device_count=result["device_count"],
        employees=result["employees"],
    )


# ---------------------------------------------------------------------------
#  Endpoints
# ---------------------------------------------------------------------------

@router.post("/transfer", response_model=RosterChangeOut)
async def transfer(data: TransferRequest, session: AsyncSession = Depends(get_session)):
    result = await roster.transfer_employees(session, data.ids, data.type, data.target_id)
    return _response(result, "Transferred")


@router.post("/transfer/area", response_model=RosterChangeOut)
async def transfer_area(data: AreaTransferRequest, session: AsyncSession = Depends(get_session)):
    result = await roster.transfer_area(session, data.from_area_id, data.target_area_id)
    return _response(result, "Transferred")


@router.post("/resign", response_model=RosterChangeOut)
async def resign(data: ResignRequest, session: AsyncSession = Depends(get_session)):
    result = await roster.resign_employee(
        session, data.employee_code, data.reason, data.resignation_date
    )
    return _response(result, "Resigned")


@router.post("/rehire", response_model=RosterChangeOut)
async def rehire(data: RehireRequest, session: AsyncSession = Depends(get_session)):
    result = await roster.rehire_employee(session, data.employee_id)
    return _response(result, "Rehired")
