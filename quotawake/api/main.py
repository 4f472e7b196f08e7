"""FastAPI control surface for the auto-trigger controller.

The controller is built once at startup and shared across requests.  The
same AsyncIOScheduler hosts the calendar trigger job and the periodic
quota-reset check.
"""

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore[import-untyped]
from fastapi import FastAPI, HTTPException, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from quotawake.config import get_settings
from quotawake.errors import ConfigurationError
from quotawake.models import (
    AutoTriggerState,
    ModelInfo,
    ScheduleConfig,
    SchedulePreset,
    TriggerNowResult,
    TriggerRecord,
    active_mode,
)
from quotawake.observability.metrics import APP_INFO
from quotawake.schedule.calendar import ApschedulerCalendar, next_runs
from quotawake.trigger.controller import AutoTriggerController, build_controller

logger = logging.getLogger(__name__)

QUOTA_CHECK_JOB_ID = "quota_reset_check"


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class TriggerRequest(BaseModel):
    """Request body for POST /trigger."""

    models: list[str] | None = None
    prompt: str | None = None
    accounts: list[str] | None = None
    max_output_tokens: int | None = None


class CheckResponse(BaseModel):
    """Response body for POST /check."""

    triggered: int
    records: list[TriggerRecord]


class CrontabRequest(BaseModel):
    """Request body for POST /crontab/validate."""

    crontab: str


class CrontabResponse(BaseModel):
    """Response body for POST /crontab/validate."""

    valid: bool
    description: str | None = None
    error: str | None = None
    next_runs: list[str] = []


class ScheduleResponse(BaseModel):
    """Response body for schedule endpoints."""

    schedule: ScheduleConfig
    crontab: str
    description: str
    next_trigger_time: str | None = None


class HealthResponse(BaseModel):
    """Response body for GET /health."""

    status: str
    mode: str
    accounts: int


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


def _controller(request: Request) -> AutoTriggerController:
    return request.app.state.controller


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the controller, restore the saved schedule, and start the quota check job."""
    settings = get_settings()
    logging.getLogger("quotawake").setLevel(settings.log_level.upper())
    APP_INFO.info({"version": "0.1.0", "data_dir": settings.data_dir})

    scheduler = AsyncIOScheduler()
    scheduler.start()

    logger.info("Building auto-trigger controller...")
    try:
        controller = build_controller(settings, calendar=ApschedulerCalendar(scheduler))
        await controller.initialize()
    except Exception:
        logger.exception("Failed to build controller at startup")
        scheduler.shutdown(wait=False)
        raise
    app.state.controller = controller

    async def _quota_check_job() -> None:
        try:
            await controller.check_and_trigger_on_quota_reset()
        except Exception:
            logger.exception("Periodic quota reset check failed")

    scheduler.add_job(
        _quota_check_job,
        trigger=IntervalTrigger(seconds=settings.quota_check_interval_seconds),
        id=QUOTA_CHECK_JOB_ID,
        name="Quota reset check",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    logger.info("Quota reset check every %ds", settings.quota_check_interval_seconds)

    yield

    controller.dispose()
    scheduler.shutdown(wait=False)
    logger.info("Shutting down quota-wake")


app = FastAPI(title="quota-wake", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in exposition format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    """Report whether any account is authorized and which schedule mode is active."""
    controller = _controller(request)
    auth = await controller.authorization_status()
    return HealthResponse(
        status="healthy" if auth.is_authorized else "degraded",
        mode=active_mode(controller.get_schedule()).value,
        accounts=len(auth.accounts),
    )


@app.get("/state", response_model=AutoTriggerState)
async def get_state(request: Request) -> AutoTriggerState:
    """Snapshot of accounts, schedule, recent triggers and available models."""
    return await _controller(request).get_state()


@app.get("/schedule", response_model=ScheduleResponse)
async def get_schedule(request: Request) -> ScheduleResponse:
    controller = _controller(request)
    config = controller.get_schedule()
    return ScheduleResponse(
        schedule=config,
        crontab=config.crontab or controller.config_to_crontab(config),
        description=controller.describe_schedule(config),
        next_trigger_time=controller.next_trigger_time(),
    )


@app.put("/schedule", response_model=ScheduleResponse)
async def save_schedule(config: ScheduleConfig, request: Request) -> ScheduleResponse:
    """Validate, persist and apply a schedule. Invalid schedules are rejected with 400."""
    controller = _controller(request)
    try:
        await controller.save_schedule(config)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return await get_schedule(request)


@app.get("/schedule/presets", response_model=list[SchedulePreset])
async def presets(request: Request) -> list[SchedulePreset]:
    return _controller(request).get_presets()


@app.post("/crontab/validate", response_model=CrontabResponse)
async def validate_crontab(body: CrontabRequest, request: Request) -> CrontabResponse:
    valid, description, error = _controller(request).validate_crontab(body.crontab)
    if not valid:
        return CrontabResponse(valid=False, error=error)
    return CrontabResponse(
        valid=True,
        description=description,
        next_runs=[dt.isoformat() for dt in next_runs(body.crontab, 5)],
    )


@app.post("/trigger", response_model=TriggerNowResult)
async def trigger(request: Request, body: TriggerRequest | None = None) -> TriggerNowResult:
    """Manually trigger keep-alive requests now."""
    body = body or TriggerRequest()
    start = time.monotonic()
    result = await _controller(request).trigger_now(
        models=body.models,
        prompt=body.prompt,
        accounts=body.accounts,
        max_output_tokens=body.max_output_tokens,
    )
    logger.info("Manual trigger finished in %.1fs (success=%s)", time.monotonic() - start, result.success)
    return result


@app.post("/check", response_model=CheckResponse)
async def check(request: Request) -> CheckResponse:
    """Run one quota-reset check pass immediately."""
    records = await _controller(request).check_and_trigger_on_quota_reset()
    return CheckResponse(triggered=len(records), records=records)


@app.get("/models", response_model=list[ModelInfo])
async def models(request: Request, refresh: bool = False) -> list[ModelInfo]:
    return await _controller(request).available_models(force_refresh=refresh)


@app.delete("/history", status_code=204)
async def clear_history(request: Request) -> Response:
    await _controller(request).clear_history()
    return Response(status_code=204)


@app.post("/accounts/{email}/activate", status_code=204)
async def activate_account(email: str, request: Request) -> Response:
    try:
        await _controller(request).switch_account(email)
    except ConfigurationError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.delete("/accounts/{email}", status_code=204)
async def remove_account(email: str, request: Request) -> Response:
    await _controller(request).remove_account(email)
    return Response(status_code=204)


@app.delete("/accounts", status_code=204)
async def revoke_all(request: Request) -> Response:
    await _controller(request).revoke_authorization()
    return Response(status_code=204)
