"""Agent orchestrator: runs monetization jobs and keeps their audit trail.

Every tracked job gets an ``AgentRun`` row that is written RUNNING before the
job starts and finalized COMPLETED or FAILED afterwards, each in its own
session so a failing job never loses its audit row.

A FULL run executes the sub-jobs in a fixed order, each as a child run with
its own error boundary. One failing sub-job is recorded and the sequence
continues; the FULL run only fails when every sub-job failed.

REPORT is read-only: it summarizes recent runs and the queue and never
writes an ``AgentRun`` row.
"""

from __future__ import annotations

import logging
import math
import uuid as uuid_mod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import Row, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models import AgentRun, RunStatus, RunType
from app.services.monetization.action_queue import ActionQueue, QueueStats
from app.services.monetization.forecaster import RevenueForecaster
from app.services.monetization.impact import ImpactTracker
from app.services.monetization.metrics_sync import MetricsSyncJob
from app.services.monetization.rpm_analysis import RpmAnalyzer
from app.services.monetization.scanner import OpportunityScanner
from app.services.monetization.sources import MetricsSource, build_default_source
from app.settings import settings

logger = logging.getLogger(__name__)

FULL_SEQUENCE: tuple[RunType, ...] = (
    RunType.METRICS_SYNC,
    RunType.OPPORTUNITY_SCAN,
    RunType.RPM_ANALYSIS,
    RunType.FORECAST,
    RunType.CLEANUP,
)


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class JobOutcome:
    """What a job reports back to the orchestrator."""

    items_processed: int = 0
    opportunities_found: int = 0
    summary: str = ""


JobFn = Callable[[], Awaitable[JobOutcome]]


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def duration_ms(started_at: datetime | None, completed_at: datetime | None) -> int | None:
    start, end = _as_utc(started_at), _as_utc(completed_at)
    if start is None or end is None:
        return None
    return int((end - start).total_seconds() * 1000)


@dataclass
class RunSummary:
    id: str
    run_type: str
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    items_processed: int = 0
    opportunities_found: int = 0
    errors_encountered: int = 0
    log_summary: str | None = None
    error_details: dict[str, Any] | None = None
    parent_run_id: str | None = None
    duration_ms: int | None = None
    sub_runs: list["RunSummary"] = field(default_factory=list)

    @classmethod
    def from_run(cls, run: AgentRun) -> "RunSummary":
        return cls(
            id=str(run.id),
            run_type=run.run_type,
            status=run.status,
            started_at=_as_utc(run.started_at),
            completed_at=_as_utc(run.completed_at),
            items_processed=run.items_processed,
            opportunities_found=run.opportunities_found,
            errors_encountered=run.errors_encountered,
            log_summary=run.log_summary,
            error_details=run.error_details,
            parent_run_id=str(run.parent_run_id) if run.parent_run_id else None,
            duration_ms=duration_ms(run.started_at, run.completed_at),
        )


@dataclass
class AgentReport:
    generated_at: datetime
    hours: int
    last_run_times: dict[str, datetime | None] = field(default_factory=dict)
    queue_stats: QueueStats | None = None
    recent_jobs: list[RunSummary] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class RunTypeStats:
    run_type: str
    count: int
    success_rate: float


@dataclass
class RunHistoryStats:
    total_runs: int = 0
    success_rate: float = 0.0
    avg_duration_ms: int = 0
    total_opportunities: int = 0
    by_type: list[RunTypeStats] = field(default_factory=list)


@dataclass
class RunHistory:
    runs: list[RunSummary]
    total: int
    page: int
    limit: int
    total_pages: int
    stats: RunHistoryStats


# ---------------------------------------------------------------------------
# AgentOrchestrator
# ---------------------------------------------------------------------------


class AgentOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        jobs: dict[RunType, JobFn] | None = None,
        *,
        source: MetricsSource | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.queue = ActionQueue()
        self.forecaster = RevenueForecaster()
        self.impact = ImpactTracker()
        self._source = source
        self.jobs: dict[RunType, JobFn] = {
            RunType.METRICS_SYNC: self._metrics_sync,
            RunType.OPPORTUNITY_SCAN: self._opportunity_scan,
            RunType.RPM_ANALYSIS: self._rpm_analysis,
            RunType.FORECAST: self._forecast,
            RunType.CLEANUP: self._cleanup,
        }
        if jobs:
            self.jobs.update(jobs)

    # ---- default jobs ---------------------------------------------------------

    async def _metrics_sync(self) -> JobOutcome:
        job = MetricsSyncJob(self.session_factory, self._source or build_default_source())
        result = await job.sync_yesterday()
        return JobOutcome(
            items_processed=result.pages_synced,
            summary=(
                f"Synced {result.pages_synced} pages over {len(result.dates_synced)} dates; "
                f"{result.pages_failed} pages and {len(result.dates_failed)} dates failed"
            ),
        )

    async def _opportunity_scan(self) -> JobOutcome:
        result = await OpportunityScanner(self.session_factory).scan()
        return JobOutcome(
            items_processed=result.items_scanned,
            opportunities_found=result.opportunities_created,
            summary=(
                f"Scanned {result.items_scanned} items: {result.hits} hits, "
                f"{result.discarded} below confidence floor, "
                f"{result.opportunities_created} new opportunities"
            ),
        )

    async def _rpm_analysis(self) -> JobOutcome:
        result = await RpmAnalyzer(self.session_factory).analyze()
        return JobOutcome(
            items_processed=result.items_scanned,
            opportunities_found=result.opportunities_created,
            summary=(
                f"Analyzed {result.items_scanned} pages: {result.hits} hits, "
                f"{result.opportunities_created} new opportunities"
            ),
        )

    async def _forecast(self) -> JobOutcome:
        async with self.session_factory() as db:
            actuals = await self.forecaster.update_actuals(db)
            written = await self.forecaster.generate_forecast(
                db, months_ahead=settings.FORECAST_MONTHS_AHEAD
            )
        return JobOutcome(
            items_processed=written + actuals,
            summary=f"Updated {actuals} actuals; wrote {written} forecasts",
        )

    async def _cleanup(self) -> JobOutcome:
        async with self.session_factory() as db:
            expired = await self.queue.expire_old_opportunities(
                db, older_than_days=settings.OPPORTUNITY_EXPIRY_DAYS
            )
            measured = await self.impact.process_pending(db)
        return JobOutcome(
            items_processed=expired + measured.processed,
            summary=(
                f"Expired {expired} opportunities; measured {measured.processed} actions "
                f"({measured.completed} complete, {measured.inconclusive} inconclusive)"
            ),
        )

    # ---- run bookkeeping ------------------------------------------------------

    async def _start_run(
        self, run_type: RunType, parent_run_id: uuid_mod.UUID | None = None
    ) -> uuid_mod.UUID:
        async with self.session_factory() as db:
            run = AgentRun(
                run_type=run_type,
                status=RunStatus.RUNNING,
                parent_run_id=parent_run_id,
                started_at=datetime.now(timezone.utc),
            )
            db.add(run)
            await db.commit()
            return run.id

    async def _finish_run(
        self,
        run_id: uuid_mod.UUID,
        *,
        status: RunStatus,
        items_processed: int = 0,
        opportunities_found: int = 0,
        errors_encountered: int = 0,
        log_summary: str | None = None,
        error_details: dict[str, Any] | None = None,
    ) -> RunSummary:
        async with self.session_factory() as db:
            run = await db.get(AgentRun, run_id)
            run.status = status
            run.completed_at = datetime.now(timezone.utc)
            run.items_processed = items_processed
            run.opportunities_found = opportunities_found
            run.errors_encountered = errors_encountered
            run.log_summary = log_summary
            run.error_details = error_details if status == RunStatus.FAILED else None
            await db.commit()
            return RunSummary.from_run(run)

    async def _run_tracked(
        self, run_type: RunType, parent_run_id: uuid_mod.UUID | None = None
    ) -> tuple[RunSummary, Exception | None]:
        job = self.jobs.get(run_type)
        if job is None:
            raise ValueError(f"No job registered for run type '{run_type}'")

        run_id = await self._start_run(run_type, parent_run_id)
        logger.info("Starting %s run %s", run_type, run_id)
        try:
            outcome = await job()
        except Exception as exc:
            logger.exception("%s run %s failed", run_type, run_id)
            summary = await self._finish_run(
                run_id,
                status=RunStatus.FAILED,
                errors_encountered=1,
                log_summary=f"{run_type} failed: {exc}",
                error_details={
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                    "job": str(run_type),
                    **({"details": exc.details} if getattr(exc, "details", None) else {}),
                },
            )
            return summary, exc
        except BaseException as exc:
            logger.warning("%s run %s interrupted by %s", run_type, run_id, type(exc).__name__)
            await self._finish_run(
                run_id,
                status=RunStatus.FAILED,
                errors_encountered=1,
                log_summary=f"{run_type} interrupted",
                error_details={
                    "error": str(exc) or "interrupted",
                    "error_type": type(exc).__name__,
                    "job": str(run_type),
                },
            )
            raise

        summary = await self._finish_run(
            run_id,
            status=RunStatus.COMPLETED,
            items_processed=outcome.items_processed,
            opportunities_found=outcome.opportunities_found,
            log_summary=outcome.summary or None,
        )
        logger.info("Completed %s run %s: %s", run_type, run_id, outcome.summary)
        return summary, None

    async def _run_full(self) -> RunSummary:
        full_id = await self._start_run(RunType.FULL)
        logger.info("Starting full run %s", full_id)

        children: list[RunSummary] = []
        run_type = FULL_SEQUENCE[0]
        try:
            for run_type in FULL_SEQUENCE:
                summary, _exc = await self._run_tracked(run_type, parent_run_id=full_id)
                children.append(summary)
        except BaseException as exc:
            # The interrupted sub-job has already been finalized by _run_tracked.
            await self._finish_run(
                full_id,
                status=RunStatus.FAILED,
                items_processed=sum(c.items_processed for c in children),
                opportunities_found=sum(c.opportunities_found for c in children),
                errors_encountered=sum(1 for c in children if c.status == RunStatus.FAILED) + 1,
                log_summary=f"Full run interrupted during {run_type}",
                error_details={
                    "error": f"Interrupted during {run_type}",
                    "error_type": type(exc).__name__,
                    "job": str(RunType.FULL),
                    "completed_sub_jobs": [c.run_type for c in children],
                },
            )
            raise

        failed = [c for c in children if c.status == RunStatus.FAILED]
        lines = [
            f"{c.run_type}: {c.status}" + (f" ({c.error_details['error']})" if c.error_details else "")
            for c in children
        ]
        status = RunStatus.FAILED if len(failed) == len(children) else RunStatus.COMPLETED
        summary = await self._finish_run(
            full_id,
            status=status,
            items_processed=sum(c.items_processed for c in children),
            opportunities_found=sum(c.opportunities_found for c in children),
            errors_encountered=len(failed),
            log_summary="\n".join(lines),
            error_details={
                "error": "All sub-jobs failed",
                "error_type": "FullRunFailure",
                "job": str(RunType.FULL),
                "sub_jobs": [
                    {"run_type": c.run_type, "run_id": c.id, **(c.error_details or {})}
                    for c in failed
                ],
            },
        )
        summary.sub_runs = children
        logger.info(
            "Full run %s %s with %d failed sub-jobs", full_id, summary.status, len(failed)
        )
        return summary

    # ---- public API -----------------------------------------------------------

    async def run_job(self, job_type: RunType | str) -> RunSummary | AgentReport:
        """Run one job. A failed single job re-raises after its run is recorded."""
        job_type = RunType(job_type)
        if job_type == RunType.REPORT:
            return await self.generate_report()
        if job_type == RunType.FULL:
            return await self._run_full()
        summary, exc = await self._run_tracked(job_type)
        if exc is not None:
            raise exc
        return summary

    async def trigger(self, job_type: RunType | str) -> RunSummary | AgentReport:
        """Like ``run_job`` but returns failed summaries instead of raising."""
        job_type = RunType(job_type)
        if job_type == RunType.REPORT:
            return await self.generate_report()
        if job_type == RunType.FULL:
            return await self._run_full()
        summary, _exc = await self._run_tracked(job_type)
        return summary

    async def get_last_run_times(self, db: AsyncSession) -> dict[str, datetime | None]:
        rows = (
            await db.execute(
                select(AgentRun.run_type, func.max(AgentRun.started_at)).group_by(AgentRun.run_type)
            )
        ).all()
        latest = {run_type: _as_utc(started) for run_type, started in rows}
        return {
            run_type.value: latest.get(run_type.value)
            for run_type in RunType
            if run_type != RunType.REPORT
        }

    async def generate_report(self, hours: int = 24, limit: int = 20) -> AgentReport:
        now = datetime.now(timezone.utc)
        report = AgentReport(generated_at=now, hours=hours)
        async with self.session_factory() as db:
            try:
                report.queue_stats = await self.queue.get_queue_stats(db)
            except Exception as exc:
                logger.exception("Report: queue stats unavailable")
                report.errors.append(f"queue_stats: {exc}")
            try:
                report.last_run_times = await self.get_last_run_times(db)
            except Exception as exc:
                logger.exception("Report: last run times unavailable")
                report.errors.append(f"last_run_times: {exc}")
            try:
                runs = (
                    await db.execute(
                        select(AgentRun)
                        .where(AgentRun.started_at >= now - timedelta(hours=hours))
                        .order_by(AgentRun.started_at.desc())
                        .limit(limit)
                    )
                ).scalars().all()
                report.recent_jobs = [RunSummary.from_run(run) for run in runs]
            except Exception as exc:
                logger.exception("Report: recent jobs unavailable")
                report.errors.append(f"recent_jobs: {exc}")
        return report

    async def get_run_history(
        self,
        db: AsyncSession,
        *,
        days: int = 7,
        run_type: str | None = None,
        status: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> RunHistory:
        """One page of runs plus stats over every run matching the filters.

        Paging and aggregation both happen in the database.
        """
        since = datetime.now(timezone.utc) - timedelta(days=days)
        filters = [AgentRun.started_at >= since]
        if run_type:
            filters.append(AgentRun.run_type == run_type)
        if status:
            filters.append(AgentRun.status == status)

        duration = _duration_ms_expr(db.get_bind().dialect.name)
        grouped = (
            await db.execute(
                select(
                    AgentRun.run_type,
                    func.count(),
                    func.sum(case((AgentRun.status == RunStatus.COMPLETED, 1), else_=0)),
                    func.sum(
                        case((AgentRun.parent_run_id.is_(None), AgentRun.opportunities_found), else_=0)
                    ),
                    func.sum(duration),
                    func.count(AgentRun.completed_at),
                )
                .where(*filters)
                .group_by(AgentRun.run_type)
            )
        ).all()
        stats = _history_stats(grouped)

        page = max(1, page)
        runs = (
            await db.execute(
                select(AgentRun)
                .where(*filters)
                .order_by(AgentRun.started_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
        ).scalars().all()

        total = stats.total_runs
        return RunHistory(
            runs=[RunSummary.from_run(run) for run in runs],
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if limit else 0,
            stats=stats,
        )


def _duration_ms_expr(dialect_name: str):
    """SQL expression for a run's duration in milliseconds (NULL while running)."""
    if dialect_name == "sqlite":
        return (
            func.julianday(AgentRun.completed_at) - func.julianday(AgentRun.started_at)
        ) * 86400000.0
    return func.extract("epoch", AgentRun.completed_at - AgentRun.started_at) * 1000


def _history_stats(grouped: Sequence[Row]) -> RunHistoryStats:
    """Fold per-run-type aggregate rows into the history stats.

    Each row is ``(run_type, runs, completed, top_level_opportunities,
    total_duration_ms, finished_runs)``.
    """
    if not grouped:
        return RunHistoryStats()

    def rate(done: int, count: int) -> float:
        return round(done / count * 100, 1) if count else 0.0

    total = completed = opportunities = finished = 0
    duration_total = 0.0
    by_type: list[RunTypeStats] = []
    for key, count, done, found, durations, ended in sorted(grouped, key=lambda r: r[0]):
        count, done = int(count), int(done or 0)
        total += count
        completed += done
        opportunities += int(found or 0)
        duration_total += float(durations or 0)
        finished += int(ended or 0)
        by_type.append(RunTypeStats(run_type=key, count=count, success_rate=rate(done, count)))

    return RunHistoryStats(
        total_runs=total,
        success_rate=rate(completed, total),
        avg_duration_ms=round(duration_total / finished) if finished else 0,
        total_opportunities=opportunities,
        by_type=by_type,
    )
