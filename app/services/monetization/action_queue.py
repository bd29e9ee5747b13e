"""Action queue: the approval workflow for monetization opportunities.

Opportunities enter as PENDING together with their child actions. An
administrator approves or rejects them; the decision cascades to every child
action inside the same transaction. Approved actions are later executed by
the action executor, after which the opportunity becomes IMPLEMENTED.

State machine::

    Opportunity: PENDING -> APPROVED -> IMPLEMENTED
                 PENDING -> REJECTED
                 PENDING -> EXPIRED
    Action:      PENDING -> APPROVED -> EXECUTED
                 PENDING -> REJECTED
"""

from __future__ import annotations

import logging
import uuid as uuid_mod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models import Action, ActionStatus, Opportunity, OpportunityStatus
from app.services.monetization.errors import InvalidStateError, NotFoundError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Input / output dataclasses
# ---------------------------------------------------------------------------


@dataclass
class ActionDraft:
    action_type: str
    action_data: dict[str, Any] = field(default_factory=dict)


@dataclass
class OpportunityDraft:
    opportunity_type: str
    title: str
    confidence: float
    description: str = ""
    priority: int = 5
    estimated_revenue_impact: float | None = None
    page_url: str | None = None
    subject_id: str | None = None
    category: str | None = None


@dataclass
class QueuedOpportunity:
    opportunity: Opportunity
    created: bool


@dataclass
class QueueStats:
    pending: int = 0
    approved: int = 0
    rejected: int = 0
    implemented: int = 0
    expired: int = 0
    total_estimated_impact: float = 0.0


def _to_uuid(value: uuid_mod.UUID | str) -> uuid_mod.UUID:
    return value if isinstance(value, uuid_mod.UUID) else uuid_mod.UUID(str(value))


# ---------------------------------------------------------------------------
# ActionQueue
# ---------------------------------------------------------------------------


class ActionQueue:
    """Creates, lists and resolves opportunities. Every method takes the
    session to work in and commits its own writes."""

    # ---- creation -------------------------------------------------------------

    async def create_opportunity(
        self,
        db: AsyncSession,
        draft: OpportunityDraft,
        actions: list[ActionDraft],
    ) -> QueuedOpportunity:
        """Queue *draft* as PENDING with its actions.

        A PENDING opportunity for the same page and type is reused instead of
        duplicated; it is refreshed when the new finding is more confident.
        """
        if not actions:
            raise ValueError("An opportunity needs at least one action")
        if not 0 <= draft.priority <= 10:
            raise ValueError(f"priority must be within 0-10, got {draft.priority}")
        if not 0.0 <= draft.confidence <= 1.0:
            raise ValueError(f"confidence must be within 0-1, got {draft.confidence}")

        if draft.page_url:
            existing = (
                await db.execute(
                    select(Opportunity)
                    .where(
                        Opportunity.page_url == draft.page_url,
                        Opportunity.opportunity_type == draft.opportunity_type,
                        Opportunity.status == OpportunityStatus.PENDING,
                    )
                    .options(selectinload(Opportunity.actions))
                )
            ).scalars().first()
            if existing is not None:
                if draft.confidence > existing.confidence:
                    existing.title = draft.title
                    existing.description = draft.description
                    existing.priority = draft.priority
                    existing.confidence = draft.confidence
                    existing.estimated_revenue_impact = draft.estimated_revenue_impact
                    await db.commit()
                return QueuedOpportunity(opportunity=existing, created=False)

        opportunity = Opportunity(
            opportunity_type=draft.opportunity_type,
            title=draft.title,
            description=draft.description,
            priority=draft.priority,
            confidence=draft.confidence,
            estimated_revenue_impact=draft.estimated_revenue_impact,
            page_url=draft.page_url,
            subject_id=draft.subject_id,
            category=draft.category,
            status=OpportunityStatus.PENDING,
            actions=[
                Action(
                    position=index,
                    action_type=action.action_type,
                    action_data=action.action_data,
                    status=ActionStatus.PENDING,
                )
                for index, action in enumerate(actions)
            ],
        )
        db.add(opportunity)
        await db.commit()
        return QueuedOpportunity(opportunity=opportunity, created=True)

    # ---- queries --------------------------------------------------------------

    async def get_opportunity(
        self, db: AsyncSession, opportunity_id: uuid_mod.UUID | str
    ) -> Opportunity:
        result = await db.execute(
            select(Opportunity)
            .where(Opportunity.id == _to_uuid(opportunity_id))
            .options(selectinload(Opportunity.actions))
            .execution_options(populate_existing=True)
        )
        opportunity = result.scalars().first()
        if opportunity is None:
            raise NotFoundError(
                f"Opportunity {opportunity_id} not found",
                details={"opportunity_id": str(opportunity_id)},
            )
        return opportunity

    async def get_pending_opportunities(
        self, db: AsyncSession, limit: int = 50
    ) -> list[Opportunity]:
        result = await db.execute(
            select(Opportunity)
            .where(Opportunity.status == OpportunityStatus.PENDING)
            .order_by(
                Opportunity.priority.desc(),
                Opportunity.confidence.desc(),
                Opportunity.created_at.asc(),
            )
            .limit(limit)
            .options(selectinload(Opportunity.actions))
        )
        return list(result.scalars().all())

    async def get_queue_stats(self, db: AsyncSession) -> QueueStats:
        counts = dict(
            (
                await db.execute(
                    select(Opportunity.status, func.count()).group_by(Opportunity.status)
                )
            ).all()
        )
        impact = (
            await db.execute(
                select(func.coalesce(func.sum(Opportunity.estimated_revenue_impact), 0.0)).where(
                    Opportunity.status == OpportunityStatus.PENDING
                )
            )
        ).scalar_one()
        return QueueStats(
            pending=counts.get(OpportunityStatus.PENDING, 0),
            approved=counts.get(OpportunityStatus.APPROVED, 0),
            rejected=counts.get(OpportunityStatus.REJECTED, 0),
            implemented=counts.get(OpportunityStatus.IMPLEMENTED, 0),
            expired=counts.get(OpportunityStatus.EXPIRED, 0),
            total_estimated_impact=float(impact or 0.0),
        )

    async def get_approved_actions(self, db: AsyncSession) -> list[Action]:
        """APPROVED actions not yet executed, oldest opportunity first."""
        result = await db.execute(
            select(Action)
            .join(Opportunity, Action.opportunity_id == Opportunity.id)
            .where(
                Action.status == ActionStatus.APPROVED,
                Opportunity.status == OpportunityStatus.APPROVED,
            )
            .order_by(Opportunity.reviewed_at.asc(), Action.position.asc())
        )
        return list(result.scalars().all())

    # ---- review decisions -----------------------------------------------------

    async def _resolve(
        self,
        db: AsyncSession,
        opportunity_id: uuid_mod.UUID | str,
        *,
        new_status: OpportunityStatus,
        action_status: ActionStatus,
        reviewer: str,
        reason: str | None = None,
    ) -> Opportunity:
        oid = _to_uuid(opportunity_id)
        current = (
            await db.execute(select(Opportunity.status).where(Opportunity.id == oid))
        ).scalar_one_or_none()
        if current is None:
            raise NotFoundError(
                f"Opportunity {opportunity_id} not found",
                details={"opportunity_id": str(opportunity_id)},
            )
        if current != OpportunityStatus.PENDING:
            raise InvalidStateError(
                f"Opportunity {opportunity_id} is {current}, expected pending",
                details={"opportunity_id": str(opportunity_id), "status": str(current)},
            )

        values: dict[str, Any] = {
            "status": new_status,
            "reviewed_at": datetime.now(timezone.utc),
            "reviewed_by": reviewer,
        }
        if reason is not None:
            values["rejection_reason"] = reason

        try:
            # Conditional on PENDING so a concurrent reviewer cannot double-apply.
            result = await db.execute(
                update(Opportunity)
                .where(Opportunity.id == oid, Opportunity.status == OpportunityStatus.PENDING)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidStateError(
                    f"Opportunity {opportunity_id} was resolved concurrently",
                    details={"opportunity_id": str(opportunity_id)},
                )
            await db.execute(
                update(Action)
                .where(Action.opportunity_id == oid)
                .values(status=action_status)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info("Opportunity %s %s by %s", oid, new_status, reviewer)
        return await self.get_opportunity(db, oid)

    async def approve_opportunity(
        self, db: AsyncSession, opportunity_id: uuid_mod.UUID | str, reviewer: str
    ) -> Opportunity:
        return await self._resolve(
            db,
            opportunity_id,
            new_status=OpportunityStatus.APPROVED,
            action_status=ActionStatus.APPROVED,
            reviewer=reviewer,
        )

    async def reject_opportunity(
        self,
        db: AsyncSession,
        opportunity_id: uuid_mod.UUID | str,
        reviewer: str,
        reason: str | None = None,
    ) -> Opportunity:
        return await self._resolve(
            db,
            opportunity_id,
            new_status=OpportunityStatus.REJECTED,
            action_status=ActionStatus.REJECTED,
            reviewer=reviewer,
            reason=reason,
        )

    # ---- lifecycle ------------------------------------------------------------

    async def expire_old_opportunities(
        self, db: AsyncSession, older_than_days: int = 30
    ) -> int:
        """Mark PENDING opportunities created before the cutoff as EXPIRED.

        Child actions are left PENDING.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
        result = await db.execute(
            update(Opportunity)
            .where(
                Opportunity.status == OpportunityStatus.PENDING,
                Opportunity.created_at < cutoff,
            )
            .values(status=OpportunityStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        expired = result.rowcount or 0
        if expired:
            logger.info("Expired %d stale opportunities", expired)
        return expired

    async def mark_implemented(
        self, db: AsyncSession, opportunity_id: uuid_mod.UUID | str
    ) -> Opportunity:
        """APPROVED -> IMPLEMENTED once every child action has executed."""
        opportunity = await self.get_opportunity(db, opportunity_id)
        if opportunity.status != OpportunityStatus.APPROVED:
            raise InvalidStateError(
                f"Opportunity {opportunity_id} is {opportunity.status}, expected approved",
                details={"opportunity_id": str(opportunity_id), "status": opportunity.status},
            )
        remaining = [a for a in opportunity.actions if a.status != ActionStatus.EXECUTED]
        if remaining:
            raise InvalidStateError(
                f"Opportunity {opportunity_id} has {len(remaining)} unexecuted actions",
                details={
                    "opportunity_id": str(opportunity_id),
                    "pending_actions": [str(a.id) for a in remaining],
                },
            )
        opportunity.status = OpportunityStatus.IMPLEMENTED
        opportunity.implemented_at = datetime.now(timezone.utc)
        await db.commit()
        return opportunity
