import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.asyncio import Redis

from config import settings
from errors import ExecutionError, InvalidTransitionError, NotFoundError, ValidationError
from models import async_session, engine
from api.devices import router as devices_router
from api.commands import router as commands_router
from api.personnel import router as personnel_router
from api.health import router as health_router
from api.reports import router as reports_router
from core.websocket import router as ws_router, alerts_to_ws_bridge
from services.alert_evaluator import HealthMonitor
from services.command_queue import CommandExpiryWorker
from services.report_scheduler import ReportScheduler
from services.reports import RedisReportDelivery, ReportExecutor, default_registry

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("devsync.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Device sync backend starting... DEBUG=%s", settings.DEBUG)

    # Redis
    redis = Redis.from_url(settings.REDIS_URL, decode_responses=False)
    app.state.redis = redis
    logger.info("Redis connected: %s", settings.REDIS_URL)

    # Alert evaluator
    monitor = HealthMonitor(
        redis, async_session,
        interval=settings.ALERT_CHECK_INTERVAL,
        channel=settings.ALERTS_CHANNEL,
    )
    app.state.health_monitor = monitor
    monitor_task = asyncio.create_task(monitor.start())

    # Alerts → WebSocket bridge
    alerts_bridge_task = asyncio.create_task(alerts_to_ws_bridge(redis, settings.ALERTS_CHANNEL))

    # Scheduled reports
    executor = ReportExecutor(
        default_registry(),
        RedisReportDelivery(redis, settings.REPORTS_OUTBOX_CHANNEL),
    )
    scheduler = ReportScheduler(
        async_session, executor,
        interval=settings.REPORT_CHECK_INTERVAL,
        lease_seconds=settings.REPORT_JOB_LEASE_SECONDS,
    )
    app.state.report_scheduler = scheduler
    scheduler_task = asyncio.create_task(scheduler.start())
    if settings.REPORT_JOB_LEASE_SECONDS is None:
        logger.warning(
            "REPORT_JOB_LEASE_SECONDS not set; a crashed run stays 'running' "
            "until the job is edited or released"
        )

    all_tasks = [monitor_task, alerts_bridge_task, scheduler_task]
    workers = [monitor, scheduler]

    # Stuck pending commands
    if settings.COMMAND_PENDING_TTL:
        expiry = CommandExpiryWorker(
            async_session,
            ttl_seconds=settings.COMMAND_PENDING_TTL,
            check_interval=settings.COMMAND_EXPIRY_CHECK_INTERVAL,
        )
        workers.append(expiry)
        all_tasks.append(asyncio.create_task(expiry.start()))
    else:
        logger.warning("COMMAND_PENDING_TTL not set; pending commands never expire")
    if settings.COMMAND_MAX_RETRIES is None:
        logger.warning("COMMAND_MAX_RETRIES not set; every reported failure is final")

    yield

    # Shutdown
    logger.info("Device sync backend shutting down...")
    for worker in workers:
        await worker.stop()
    for t in all_tasks:
        t.cancel()
    for t in all_tasks:
        try:
            await t
        except asyncio.CancelledError:
            pass

    await redis.close()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Device Sync API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Domain errors → HTTP ---

ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    InvalidTransitionError: 409,
    ExecutionError: 502,
}


def _error_handler(status_code: int):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})
    return handler


for exc_class, status_code in ERROR_STATUS.items():
    app.add_exception_handler(exc_class, _error_handler(status_code))


app.include_router(devices_router)
app.include_router(commands_router)
app.include_router(personnel_router)
app.include_router(health_router)
app.include_router(reports_router)
app.include_router(ws_router)


@app.get("/health")
async def health():
    return {"status": "ok", "version": "1.0.0"}
