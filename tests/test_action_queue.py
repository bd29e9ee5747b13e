"""Tests for the ActionQueue approval workflow."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import event, select

from app.models import Action, ActionStatus, Opportunity, OpportunityStatus
from app.services.monetization.action_queue import ActionQueue
from app.services.monetization.errors import InvalidStateError, NotFoundError
from tests.conftest import make_actions, make_draft


queue = ActionQueue()


async def _create(factory, actions: int = 1, **overrides) -> Opportunity:
    async with factory() as db:
        queued = await queue.create_opportunity(db, make_draft(**overrides), make_actions(actions))
        return queued.opportunity


async def _action_statuses(factory, opportunity_id) -> list[str]:
    async with factory() as db:
        result = await db.execute(
            select(Action.status)
            .where(Action.opportunity_id == opportunity_id)
            .order_by(Action.position)
        )
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


class TestCreateOpportunity:
    @pytest.mark.asyncio
    async def test_creates_pending_with_actions(self, session_factory):
        opp = await _create(session_factory, actions=3)
        assert opp.status == OpportunityStatus.PENDING
        assert [a.position for a in opp.actions] == [0, 1, 2]
        assert await _action_statuses(session_factory, opp.id) == ["pending"] * 3

    @pytest.mark.asyncio
    async def test_requires_actions(self, session_factory):
        async with session_factory() as db:
            with pytest.raises(ValueError):
                await queue.create_opportunity(db, make_draft(), [])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field,value", [("priority", 11), ("priority", -1), ("confidence", 1.5)])
    async def test_rejects_out_of_range(self, session_factory, field, value):
        async with session_factory() as db:
            with pytest.raises(ValueError):
                await queue.create_opportunity(db, make_draft(**{field: value}), make_actions())

    @pytest.mark.asyncio
    async def test_dedupes_pending_same_page_and_type(self, session_factory):
        first = await _create(session_factory, page_url="/content/a", confidence=0.6)
        async with session_factory() as db:
            queued = await queue.create_opportunity(
                db,
                make_draft(page_url="/content/a", confidence=0.8, title="Better"),
                make_actions(),
            )
        assert queued.created is False
        assert queued.opportunity.id == first.id

        async with session_factory() as db:
            opp = await queue.get_opportunity(db, first.id)
            assert opp.confidence == pytest.approx(0.8)
            assert opp.title == "Better"
            count = len((await db.execute(select(Opportunity))).scalars().all())
        assert count == 1

    @pytest.mark.asyncio
    async def test_dedupe_keeps_higher_confidence(self, session_factory):
        first = await _create(session_factory, page_url="/content/a", confidence=0.8)
        async with session_factory() as db:
            await queue.create_opportunity(
                db, make_draft(page_url="/content/a", confidence=0.6), make_actions()
            )
            opp = await queue.get_opportunity(db, first.id)
        assert opp.confidence == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_different_type_is_not_deduped(self, session_factory):
        await _create(session_factory, page_url="/content/a")
        async with session_factory() as db:
            queued = await queue.create_opportunity(
                db,
                make_draft(page_url="/content/a", opportunity_type="content_expansion"),
                make_actions(),
            )
        assert queued.created is True


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    @pytest.mark.asyncio
    async def test_pending_ordering(self, session_factory):
        await _create(session_factory, priority=3, confidence=0.9)
        await _create(session_factory, priority=9, confidence=0.5)
        await _create(session_factory, priority=9, confidence=0.8)

        async with session_factory() as db:
            pending = await queue.get_pending_opportunities(db, limit=10)
        assert [(o.priority, o.confidence) for o in pending] == [(9, 0.8), (9, 0.5), (3, 0.9)]

    @pytest.mark.asyncio
    async def test_pending_respects_limit_and_status(self, session_factory):
        for _ in range(3):
            await _create(session_factory)
        approved = await _create(session_factory, priority=10)
        async with session_factory() as db:
            await queue.approve_opportunity(db, approved.id, "ops")
            pending = await queue.get_pending_opportunities(db, limit=2)
        assert len(pending) == 2
        assert all(o.status == OpportunityStatus.PENDING for o in pending)

    @pytest.mark.asyncio
    async def test_queue_stats(self, session_factory):
        await _create(session_factory, estimated_revenue_impact=10.0)
        await _create(session_factory, estimated_revenue_impact=None)
        a = await _create(session_factory, estimated_revenue_impact=100.0)
        r = await _create(session_factory, estimated_revenue_impact=50.0)
        async with session_factory() as db:
            await queue.approve_opportunity(db, a.id, "ops")
            await queue.reject_opportunity(db, r.id, "ops")
            stats = await queue.get_queue_stats(db)

        assert stats.pending == 2
        assert stats.approved == 1
        assert stats.rejected == 1
        assert stats.implemented == 0
        assert stats.expired == 0
        assert stats.total_estimated_impact == pytest.approx(10.0)

    @pytest.mark.asyncio
    async def test_get_opportunity_not_found(self, session_factory):
        async with session_factory() as db:
            with pytest.raises(NotFoundError):
                await queue.get_opportunity(db, uuid.uuid4())


# ---------------------------------------------------------------------------
# Approve / reject cascade
# ---------------------------------------------------------------------------


class TestReview:
    @pytest.mark.asyncio
    async def test_approve_cascades_to_all_actions(self, session_factory):
        opp = await _create(session_factory, actions=4)
        async with session_factory() as db:
            approved = await queue.approve_opportunity(db, opp.id, "ops@example.com")

        assert approved.status == OpportunityStatus.APPROVED
        assert approved.reviewed_by == "ops@example.com"
        assert approved.reviewed_at is not None
        assert [a.status for a in approved.actions] == [ActionStatus.APPROVED] * 4
        assert await _action_statuses(session_factory, opp.id) == ["approved"] * 4

    @pytest.mark.asyncio
    async def test_reject_cascades_with_reason(self, session_factory):
        opp = await _create(session_factory, actions=2)
        async with session_factory() as db:
            rejected = await queue.reject_opportunity(db, opp.id, "ops", reason="not relevant")

        assert rejected.status == OpportunityStatus.REJECTED
        assert rejected.rejection_reason == "not relevant"
        assert await _action_statuses(session_factory, opp.id) == ["rejected"] * 2

    @pytest.mark.asyncio
    async def test_second_decision_is_invalid_state(self, session_factory):
        opp = await _create(session_factory, actions=2)
        async with session_factory() as db:
            await queue.approve_opportunity(db, opp.id, "first")
            with pytest.raises(InvalidStateError):
                await queue.approve_opportunity(db, opp.id, "second")
            with pytest.raises(InvalidStateError):
                await queue.reject_opportunity(db, opp.id, "second")
            current = await queue.get_opportunity(db, opp.id)

        assert current.status == OpportunityStatus.APPROVED
        assert current.reviewed_by == "first"
        assert await _action_statuses(session_factory, opp.id) == ["approved"] * 2

    @pytest.mark.asyncio
    async def test_unknown_opportunity_not_found(self, session_factory):
        async with session_factory() as db:
            with pytest.raises(NotFoundError):
                await queue.approve_opportunity(db, uuid.uuid4(), "ops")
            with pytest.raises(NotFoundError):
                await queue.reject_opportunity(db, uuid.uuid4(), "ops")

    @pytest.mark.asyncio
    async def test_failed_cascade_rolls_back_the_decision(self, session_factory):
        opp = await _create(session_factory, actions=3)
        engine = session_factory.kw["bind"].sync_engine

        def fail_action_update(conn, cursor, statement, parameters, context, executemany):
            if statement.startswith("UPDATE monetization_actions"):
                raise RuntimeError("action update failed")

        event.listen(engine, "before_cursor_execute", fail_action_update)
        try:
            async with session_factory() as db:
                with pytest.raises(RuntimeError):
                    await queue.approve_opportunity(db, opp.id, "ops@example.com")
        finally:
            event.remove(engine, "before_cursor_execute", fail_action_update)

        async with session_factory() as db:
            current = await queue.get_opportunity(db, opp.id)
        assert current.status == OpportunityStatus.PENDING
        assert current.reviewed_by is None
        assert current.reviewed_at is None
        assert await _action_statuses(session_factory, opp.id) == ["pending"] * 3


# ---------------------------------------------------------------------------
# Expiry and implementation
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_expire_only_old_pending(self, session_factory):
        old = await _create(session_factory, actions=2)
        fresh = await _create(session_factory)
        old_approved = await _create(session_factory)
        async with session_factory() as db:
            await queue.approve_opportunity(db, old_approved.id, "ops")
            for opp_id in (old.id, old_approved.id):
                row = await db.get(Opportunity, opp_id)
                row.created_at = datetime.now(timezone.utc) - timedelta(days=45)
            await db.commit()

            assert await queue.expire_old_opportunities(db, older_than_days=30) == 1
            assert await queue.expire_old_opportunities(db, older_than_days=30) == 0

            assert (await queue.get_opportunity(db, old.id)).status == OpportunityStatus.EXPIRED
            assert (await queue.get_opportunity(db, fresh.id)).status == OpportunityStatus.PENDING
            assert (
                await queue.get_opportunity(db, old_approved.id)
            ).status == OpportunityStatus.APPROVED

        # Child actions of an expired opportunity stay pending.
        assert await _action_statuses(session_factory, old.id) == ["pending", "pending"]

    @pytest.mark.asyncio
    async def test_approved_actions_listed(self, session_factory):
        opp = await _create(session_factory, actions=2)
        await _create(session_factory)
        async with session_factory() as db:
            await queue.approve_opportunity(db, opp.id, "ops")
            actions = await queue.get_approved_actions(db)
        assert len(actions) == 2
        assert {a.opportunity_id for a in actions} == {opp.id}

    @pytest.mark.asyncio
    async def test_mark_implemented_requires_executed_actions(self, session_factory):
        opp = await _create(session_factory, actions=2)
        async with session_factory() as db:
            await queue.approve_opportunity(db, opp.id, "ops")
            with pytest.raises(InvalidStateError):
                await queue.mark_implemented(db, opp.id)

            for action in (await queue.get_opportunity(db, opp.id)).actions:
                action.status = ActionStatus.EXECUTED
            await db.commit()

            implemented = await queue.mark_implemented(db, opp.id)
        assert implemented.status == OpportunityStatus.IMPLEMENTED
        assert implemented.implemented_at is not None

    @pytest.mark.asyncio
    async def test_mark_implemented_rejects_pending(self, session_factory):
        opp = await _create(session_factory)
        async with session_factory() as db:
            with pytest.raises(InvalidStateError):
                await queue.mark_implemented(db, opp.id)
