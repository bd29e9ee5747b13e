"""Action executor: hands approved actions to their handlers.

Each action type maps to an async handler that performs (or records) the
change and returns a result payload. A successful handler marks the action
EXECUTED and opens its impact measurement in the same commit; once every
action of an opportunity has executed, the opportunity moves to IMPLEMENTED.
A failing or missing handler leaves the action APPROVED with the error in
``execution_result`` so it is retried next time.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Action, ActionStatus, ActionType
from app.services.monetization.action_queue import ActionQueue
from app.services.monetization.impact import ImpactTracker

logger = logging.getLogger(__name__)

ActionHandler = Callable[[Action], Awaitable[dict[str, Any]]]


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class ActionRecord:
    success: bool
    action_id: str
    action_type: str
    error: str | None = None
    result: dict[str, Any] | None = None


@dataclass
class ExecutionSummary:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    opportunities_implemented: int = 0
    records: list[ActionRecord] = field(default_factory=list)


async def record_advisory(action: Action) -> dict[str, Any]:
    """Default handler: record the change for a human to apply."""
    return {"mode": "advisory", "action_type": action.action_type, "payload": action.action_data}


def default_handlers() -> dict[str, ActionHandler]:
    return {action_type.value: record_advisory for action_type in ActionType}


# ---------------------------------------------------------------------------
# ActionExecutor
# ---------------------------------------------------------------------------


class ActionExecutor:
    def __init__(
        self,
        handlers: dict[str, ActionHandler] | None = None,
        queue: ActionQueue | None = None,
        tracker: ImpactTracker | None = None,
    ) -> None:
        self.handlers = handlers if handlers is not None else default_handlers()
        self.queue = queue or ActionQueue()
        self.tracker = tracker or ImpactTracker()

    async def execute_action(self, db: AsyncSession, action: Action) -> ActionRecord:
        handler = self.handlers.get(action.action_type)
        if handler is None:
            error = f"No handler registered for action type '{action.action_type}'"
            action.execution_result = {"error": error}
            await db.commit()
            return ActionRecord(False, str(action.id), action.action_type, error=error)

        try:
            result = await handler(action)
        except Exception as exc:
            logger.exception("Action %s (%s) failed", action.id, action.action_type)
            action.execution_result = {"error": str(exc), "error_type": type(exc).__name__}
            await db.commit()
            return ActionRecord(False, str(action.id), action.action_type, error=str(exc))

        action.status = ActionStatus.EXECUTED
        action.executed_at = datetime.now(timezone.utc)
        action.execution_result = result
        await self.tracker.open_measurement(db, action)
        await db.commit()
        return ActionRecord(True, str(action.id), action.action_type, result=result)

    async def execute_approved(self, db: AsyncSession) -> ExecutionSummary:
        summary = ExecutionSummary()
        actions = await self.queue.get_approved_actions(db)
        touched: list = []

        for action in actions:
            record = await self.execute_action(db, action)
            summary.total += 1
            summary.records.append(record)
            if record.success:
                summary.succeeded += 1
            else:
                summary.failed += 1
            if action.opportunity_id not in touched:
                touched.append(action.opportunity_id)

        for opportunity_id in touched:
            remaining = (
                await db.execute(
                    select(Action.id).where(
                        Action.opportunity_id == opportunity_id,
                        Action.status != ActionStatus.EXECUTED,
                    )
                )
            ).first()
            if remaining is None:
                await self.queue.mark_implemented(db, opportunity_id)
                summary.opportunities_implemented += 1

        logger.info(
            "Executed %d/%d approved actions, %d opportunities implemented",
            summary.succeeded,
            summary.total,
            summary.opportunities_implemented,
        )
        return summary
