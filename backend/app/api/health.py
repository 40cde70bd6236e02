"""Device health and alert read API."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from models import get_session
from services.alert_evaluator import Alert, AlertEvaluator
from services.health_scorer import HealthAssessment, HealthScorer

router = APIRouter(prefix="/api/health", tags=["health"])

scorer = HealthScorer()
evaluator = AlertEvaluator()


@router.get("/devices", response_model=list[HealthAssessment])
async def all_devices_health(session: AsyncSession = Depends(get_session)):
    return await scorer.score_all(session)


@router.get("/devices/{serial}", response_model=HealthAssessment)
async def device_health(serial: str, session: AsyncSession = Depends(get_session)):
    return await scorer.score(session, serial)


@router.get("/alerts", response_model=list[Alert])
async def current_alerts(session: AsyncSession = Depends(get_session)):
    return await evaluator.evaluate(session)


@router.get("/alerts/last")
async def last_published_alerts(request: Request):
    """Alerts from the background monitor's most recent pass."""
    monitor = getattr(request.app.state, "health_monitor", None)
    if monitor is None:
        return {"last_run_at": None, "alerts": []}
    return {
        "last_run_at": monitor.last_run_at,
        "alerts": [a.model_dump(mode="json") for a in monitor.last_alerts],
    }


@router.get("/summary")
async def system_summary(session: AsyncSession = Depends(get_session)):
    return await scorer.system_summary(session)
