#!/usr/bin/env python3
"""Run monetization agent jobs and manage the review queue from a shell.

Usage:
    # Run a single job (metrics_sync, opportunity_scan, rpm_analysis,
    # forecast, cleanup) or the full sequence
    python3 scripts/run_agent.py run full

    # Summary of the last 24 hours
    python3 scripts/run_agent.py report --hours 24

    # Review queue
    python3 scripts/run_agent.py queue list --limit 20
    python3 scripts/run_agent.py queue approve <opportunity-id> --reviewer ops@example.com
    python3 scripts/run_agent.py queue reject <opportunity-id> --reviewer ops@example.com --reason "duplicate"
    python3 scripts/run_agent.py queue execute

    # Forecasts
    python3 scripts/run_agent.py forecast generate --months 3
    python3 scripts/run_agent.py forecast accuracy

    # Measured impact of executed actions
    python3 scripts/run_agent.py impact process
    python3 scripts/run_agent.py impact summary
    python3 scripts/run_agent.py impact list --limit 20

Settings (DATABASE_URL, ANALYTICS_*) are read from .env in the repository root.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import os
import sys

# Ensure app is importable when running from any directory
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from app.async_db import AsyncSessionLocal
from app.models import RunStatus, RunType
from app.services.monetization.action_queue import ActionQueue
from app.services.monetization.errors import MonetizationError
from app.services.monetization.executor import ActionExecutor
from app.services.monetization.forecaster import RevenueForecaster
from app.services.monetization.impact import ImpactTracker
from app.services.monetization.orchestrator import AgentOrchestrator
from app.settings import settings


def _dump(value) -> None:
    if dataclasses.is_dataclass(value):
        value = dataclasses.asdict(value)
    print(json.dumps(value, indent=2, default=str))


async def cmd_run(args: argparse.Namespace) -> int:
    orchestrator = AgentOrchestrator(AsyncSessionLocal)
    summary = await orchestrator.trigger(args.job)
    _dump(summary)
    return 1 if getattr(summary, "status", None) == RunStatus.FAILED else 0


async def cmd_report(args: argparse.Namespace) -> int:
    orchestrator = AgentOrchestrator(AsyncSessionLocal)
    _dump(await orchestrator.generate_report(hours=args.hours))
    return 0


async def cmd_queue(args: argparse.Namespace) -> int:
    queue = ActionQueue()
    async with AsyncSessionLocal() as db:
        if args.queue_command == "list":
            for opp in await queue.get_pending_opportunities(db, limit=args.limit):
                print(
                    f"{opp.id}  p={opp.priority:<2} c={opp.confidence:.2f}  "
                    f"{opp.opportunity_type:<28} {opp.title}"
                )
            _dump(await queue.get_queue_stats(db))
        elif args.queue_command == "approve":
            opp = await queue.approve_opportunity(db, args.opportunity_id, args.reviewer)
            print(f"Approved {opp.id} ({len(opp.actions)} actions)")
        elif args.queue_command == "reject":
            opp = await queue.reject_opportunity(
                db, args.opportunity_id, args.reviewer, reason=args.reason
            )
            print(f"Rejected {opp.id}")
        elif args.queue_command == "execute":
            _dump(await ActionExecutor(queue=queue).execute_approved(db))
    return 0


async def cmd_forecast(args: argparse.Namespace) -> int:
    forecaster = RevenueForecaster()
    async with AsyncSessionLocal() as db:
        if args.forecast_command == "generate":
            updated = await forecaster.update_actuals(db)
            written = await forecaster.generate_forecast(db, months_ahead=args.months)
            print(f"Recorded {updated} actuals, wrote {written} forecasts")
            for f in await forecaster.list_forecasts(db):
                print(
                    f"{f.forecast_month}  ${f.forecasted_total_revenue:>10.2f}  "
                    f"confidence={f.confidence_level:.2f}  actual={f.actual_total_revenue}"
                )
        else:
            _dump(await forecaster.get_forecast_accuracy(db))
    return 0


async def cmd_impact(args: argparse.Namespace) -> int:
    tracker = ImpactTracker()
    async with AsyncSessionLocal() as db:
        if args.impact_command == "process":
            _dump(await tracker.process_pending(db))
        elif args.impact_command == "summary":
            _dump(await tracker.get_impact_summary(db))
        else:
            for m in await tracker.list_measurements(db, limit=args.limit):
                change = "-" if m.percent_impact is None else f"{m.percent_impact:+.1f}%"
                print(
                    f"{m.action_id}  {m.action_type:<20} {m.measurement_type:<16} "
                    f"{m.status:<12} ends={m.end_date}  change={change}"
                )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Monetization agent jobs")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a job")
    run.add_argument(
        "job", choices=[t.value for t in RunType if t != RunType.REPORT], help="Job to run"
    )

    report = sub.add_parser("report", help="Summarize recent runs and the queue")
    report.add_argument("--hours", type=int, default=24)

    queue = sub.add_parser("queue", help="Review queue")
    queue_sub = queue.add_subparsers(dest="queue_command", required=True)
    listing = queue_sub.add_parser("list")
    listing.add_argument("--limit", type=int, default=50)
    for name in ("approve", "reject"):
        decide = queue_sub.add_parser(name)
        decide.add_argument("opportunity_id")
        decide.add_argument("--reviewer", required=True)
        if name == "reject":
            decide.add_argument("--reason")
    queue_sub.add_parser("execute")

    forecast = sub.add_parser("forecast", help="Revenue forecasts")
    forecast_sub = forecast.add_subparsers(dest="forecast_command", required=True)
    generate = forecast_sub.add_parser("generate")
    generate.add_argument("--months", type=int, default=settings.FORECAST_MONTHS_AHEAD)
    forecast_sub.add_parser("accuracy")

    impact = sub.add_parser("impact", help="Measured impact of executed actions")
    impact_sub = impact.add_subparsers(dest="impact_command", required=True)
    impact_sub.add_parser("process")
    impact_sub.add_parser("summary")
    impact_list = impact_sub.add_parser("list")
    impact_list.add_argument("--limit", type=int, default=20)

    return parser


COMMANDS = {
    "run": cmd_run,
    "report": cmd_report,
    "queue": cmd_queue,
    "forecast": cmd_forecast,
    "impact": cmd_impact,
}


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(COMMANDS[args.command](args))
    except MonetizationError as exc:
        print(f"ERROR: {exc.message}", file=sys.stderr)
        if exc.details:
            print(json.dumps(exc.details, indent=2, default=str), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
