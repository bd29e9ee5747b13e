import logging
import uuid

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.async_db import get_async_db, get_session_factory
from app.models import MeasurementStatus, RunStatus, RunType
from app.monetization_schemas import (
    AgentReportOut,
    ExecutionSummaryOut,
    ForecastAccuracyOut,
    ForecastGenerateOut,
    ForecastOut,
    ImpactMeasurementOut,
    ImpactSummaryOut,
    OpportunityOut,
    QueueDecisionRequest,
    QueueOut,
    RunHistoryOut,
    RunJobRequest,
    RunSummaryOut,
)
from app.services.monetization.action_queue import ActionQueue
from app.services.monetization.errors import InvalidStateError, NotFoundError
from app.services.monetization.executor import ActionExecutor
from app.services.monetization.forecaster import RevenueForecaster
from app.services.monetization.impact import ImpactTracker
from app.services.monetization.orchestrator import AgentOrchestrator
from app.settings import settings

logger = logging.getLogger(__name__)

monetization_router = APIRouter(prefix="/api/monetization", tags=["monetization"])


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def require_admin(
    x_admin_token: str | None = Header(None, alias="X-Admin-Token"),
    x_reviewer: str | None = Header(None, alias="X-Reviewer"),
) -> str | None:
    """Check the admin token and return the reviewer.

    Requests are refused while no token is configured.
    """
    if not settings.ADMIN_API_TOKEN:
        raise HTTPException(status_code=500, detail="ADMIN_API_TOKEN not configured")
    if x_admin_token != settings.ADMIN_API_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid admin token")
    return x_reviewer


def require_cron_secret(
    x_cron_secret: str | None = Header(None, alias="X-Cron-Secret"),
    authorization: str | None = Header(None),
) -> None:
    if not settings.CRON_SECRET:
        raise HTTPException(status_code=500, detail="CRON_SECRET not configured")
    token = x_cron_secret
    if not token and authorization and authorization.startswith("Bearer "):
        token = authorization[7:]
    if token != settings.CRON_SECRET:
        raise HTTPException(status_code=401, detail="Invalid cron secret")


def get_orchestrator(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AgentOrchestrator:
    """Build the orchestrator with the default jobs. Overridden in tests."""
    return AgentOrchestrator(session_factory)


_queue = ActionQueue()
_forecaster = RevenueForecaster()
_impact = ImpactTracker()


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


@monetization_router.get("/queue", response_model=QueueOut)
async def get_queue(
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_async_db),
    _reviewer: str | None = Depends(require_admin),
):
    opportunities = await _queue.get_pending_opportunities(db, limit=limit)
    stats = await _queue.get_queue_stats(db)
    return {"opportunities": opportunities, "stats": stats}


@monetization_router.get("/queue/{opportunity_id}", response_model=OpportunityOut)
async def get_opportunity(
    opportunity_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_db),
    _reviewer: str | None = Depends(require_admin),
):
    try:
        return await _queue.get_opportunity(db, opportunity_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc


@monetization_router.post("/queue", response_model=OpportunityOut)
async def decide_opportunity(
    payload: QueueDecisionRequest,
    db: AsyncSession = Depends(get_async_db),
    reviewer: str | None = Depends(require_admin),
):
    if not reviewer:
        raise HTTPException(status_code=400, detail="X-Reviewer header is required")
    try:
        if payload.action == "approve":
            return await _queue.approve_opportunity(db, payload.opportunity_id, reviewer)
        return await _queue.reject_opportunity(
            db, payload.opportunity_id, reviewer, reason=payload.reason
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc
    except InvalidStateError as exc:
        raise HTTPException(status_code=409, detail=exc.message) from exc


@monetization_router.post("/queue/execute", response_model=ExecutionSummaryOut)
async def execute_approved(
    db: AsyncSession = Depends(get_async_db),
    _reviewer: str | None = Depends(require_admin),
):
    return await ActionExecutor(queue=_queue).execute_approved(db)


# ---------------------------------------------------------------------------
# Agent runs
# ---------------------------------------------------------------------------


@monetization_router.post("/agent/run", response_model=RunSummaryOut | AgentReportOut)
async def run_agent(
    payload: RunJobRequest,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
    _reviewer: str | None = Depends(require_admin),
):
    if payload.job_type == RunType.REPORT:
        return await orchestrator.generate_report()
    summary = await orchestrator.trigger(payload.job_type)
    if summary.status == RunStatus.FAILED:
        body = RunSummaryOut.model_validate(summary, from_attributes=True)
        return JSONResponse(status_code=500, content=jsonable_encoder(body))
    return summary


@monetization_router.get("/agent/report", response_model=AgentReportOut)
async def agent_report(
    hours: int = Query(default=24, ge=1, le=24 * 30),
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
    _reviewer: str | None = Depends(require_admin),
):
    return await orchestrator.generate_report(hours=hours)


@monetization_router.get("/agent/status")
async def agent_status(
    db: AsyncSession = Depends(get_async_db),
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
    _reviewer: str | None = Depends(require_admin),
):
    last_runs = await orchestrator.get_last_run_times(db)
    return {"last_run_times": jsonable_encoder(last_runs)}


@monetization_router.get("/history", response_model=RunHistoryOut)
async def run_history(
    days: int = Query(default=7, ge=1, le=365),
    run_type: RunType | None = None,
    status: RunStatus | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_async_db),
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
    _reviewer: str | None = Depends(require_admin),
):
    return await orchestrator.get_run_history(
        db, days=days, run_type=run_type, status=status, page=page, limit=limit
    )


# ---------------------------------------------------------------------------
# Forecasts
# ---------------------------------------------------------------------------


@monetization_router.get("/forecasts", response_model=list[ForecastOut])
async def list_forecasts(
    limit: int = Query(default=12, ge=1, le=36),
    db: AsyncSession = Depends(get_async_db),
    _reviewer: str | None = Depends(require_admin),
):
    return await _forecaster.list_forecasts(db, limit=limit)


@monetization_router.post("/forecasts/generate", response_model=ForecastGenerateOut)
async def generate_forecasts(
    months_ahead: int = Query(default=3, ge=1, le=12),
    db: AsyncSession = Depends(get_async_db),
    _reviewer: str | None = Depends(require_admin),
):
    written = await _forecaster.generate_forecast(db, months_ahead=months_ahead)
    forecasts = await _forecaster.list_forecasts(db)
    return {"forecasts_written": written, "forecasts": forecasts}


@monetization_router.get("/forecasts/accuracy", response_model=ForecastAccuracyOut)
async def forecast_accuracy(
    db: AsyncSession = Depends(get_async_db),
    _reviewer: str | None = Depends(require_admin),
):
    return await _forecaster.get_forecast_accuracy(db)


# ---------------------------------------------------------------------------
# Impact
# ---------------------------------------------------------------------------


@monetization_router.get("/impact", response_model=ImpactSummaryOut)
async def impact_summary(
    db: AsyncSession = Depends(get_async_db),
    _reviewer: str | None = Depends(require_admin),
):
    return await _impact.get_impact_summary(db)


@monetization_router.get("/impact/measurements", response_model=list[ImpactMeasurementOut])
async def impact_measurements(
    limit: int = Query(default=20, ge=1, le=100),
    status: MeasurementStatus | None = None,
    db: AsyncSession = Depends(get_async_db),
    _reviewer: str | None = Depends(require_admin),
):
    return await _impact.list_measurements(db, limit=limit, status=status)


# ---------------------------------------------------------------------------
# Scheduler entry point
# ---------------------------------------------------------------------------


@monetization_router.post("/cron/agent")
async def cron_agent(
    _: None = Depends(require_cron_secret),
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
):
    summary = await orchestrator.trigger(RunType.FULL)
    logger.info("Cron full run %s finished %s", summary.id, summary.status)
    body = RunSummaryOut.model_validate(summary, from_attributes=True)
    return {"status": "ok" if summary.status == RunStatus.COMPLETED else "failed", "run": body}
