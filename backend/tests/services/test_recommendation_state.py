"""Tests for the recommendation state machine."""

import uuid
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.core.exceptions import InvalidTransitionError, RecommendationNotFoundError
from app.crud import optimization_history as history_crud
from app.crud import recommendation as recommendation_crud
from app.models.approval_request import ApprovalRequest, ApprovalStatus
from app.models.optimization_history import HistoryStatus, OptimizationHistory
from app.models.recommendation import ExecutionMode, Recommendation, RecommendationStatus
from app.schemas.recommendation import ApprovalDecision, MutationResult
from app.services.recommendation_state import can_transition

from conftest import TENANT_ID

S = RecommendationStatus


async def _history(session_factory, recommendation_id):
    async with session_factory() as session:
        return await history_crud.get_history_for_recommendation(session, recommendation_id)


async def _status(session_factory, recommendation_id):
    async with session_factory() as session:
        recommendation = await recommendation_crud.get_recommendation(session, recommendation_id)
        return recommendation.status


class TestTransitionTable:
    """Test the allowed status transitions."""

    @pytest.mark.parametrize(
        "current,target",
        [
            (S.PENDING, S.APPROVED),
            (S.PENDING, S.REJECTED),
            (S.PENDING, S.EXECUTED),
            (S.PENDING, S.FAILED),
            (S.APPROVED, S.EXECUTED),
            (S.APPROVED, S.FAILED),
        ],
    )
    def test_allowed(self, current, target):
        """Test legal transitions."""
        assert can_transition(current, target) is True

    @pytest.mark.parametrize(
        "current,target",
        [
            (S.APPROVED, S.REJECTED),
            (S.APPROVED, S.PENDING),
            (S.EXECUTED, S.FAILED),
            (S.REJECTED, S.APPROVED),
            (S.FAILED, S.EXECUTED),
            ("bogus", S.APPROVED),
        ],
    )
    def test_rejected(self, current, target):
        """Test terminal and backwards transitions are illegal."""
        assert can_transition(current, target) is False


class TestCreate:
    """Test guarded creation."""

    @pytest.mark.asyncio
    async def test_create_pending_hitl_opens_approval_request(
        self, state_machine, make_draft, session_factory, broadcaster
    ):
        """Test a HITL recommendation is pending with an open approval request and an event."""
        events = broadcaster.subscribe()

        created = await state_machine.create(make_draft(), ExecutionMode.HITL)

        assert created.status == S.PENDING.value
        assert created.execution_mode == ExecutionMode.HITL.value
        async with session_factory() as session:
            requests = (await session.execute(select(ApprovalRequest))).scalars().all()
        assert len(requests) == 1
        assert requests[0].status == ApprovalStatus.PENDING.value

        event = events.get_nowait()
        assert event.type == "recommendation_created"
        assert event.recommendation_id == created.id
        assert event.resource_id == "vol-0001"
        assert event.status == S.PENDING
        assert event.tenant_id == TENANT_ID

    @pytest.mark.asyncio
    async def test_autonomous_create_opens_no_approval_request(self, state_machine, make_draft, session_factory):
        """Test autonomous recommendations skip the approval request."""
        await state_machine.create(make_draft(), ExecutionMode.AUTONOMOUS)

        async with session_factory() as session:
            requests = (await session.execute(select(ApprovalRequest))).scalars().all()
        assert requests == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("existing_status", [S.PENDING, S.APPROVED])
    async def test_active_record_blocks_second_create(
        self, state_machine, make_draft, session_factory, existing_status
    ):
        """Test a pending or approved record for the resource blocks creation."""
        first = await state_machine.create(make_draft(), ExecutionMode.HITL)
        if existing_status == S.APPROVED:
            await state_machine.approve(first.id, approved_by="cfo")

        second = await state_machine.create(make_draft(monthly_savings=99.0), ExecutionMode.HITL)

        assert second is None
        async with session_factory() as session:
            rows = (await session.execute(select(Recommendation))).scalars().all()
        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_terminal_record_allows_new_create(self, state_machine, make_draft):
        """Test a rejected record no longer blocks the resource."""
        first = await state_machine.create(make_draft(), ExecutionMode.HITL)
        await state_machine.reject(first.id, rejected_by="cfo")

        second = await state_machine.create(make_draft(), ExecutionMode.HITL)

        assert second is not None
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_unique_index_is_the_authoritative_guard(self, state_machine, make_draft):
        """Test a racing insert that slips past the lookup is turned into a dedupe hit."""
        await state_machine.create(make_draft(), ExecutionMode.HITL)

        with patch.object(recommendation_crud, "get_active_for_resource", AsyncMock(return_value=None)):
            second = await state_machine.create(make_draft(), ExecutionMode.HITL)

        assert second is None
        assert await state_machine.list_active_resource_ids(TENANT_ID) == {"vol-0001"}


class TestApproveReject:
    """Test human decisions."""

    @pytest.mark.asyncio
    async def test_approve_hitl_waits_for_execution(self, state_machine, make_draft, session_factory):
        """Test approving a HITL record leaves it approved and closes the request."""
        created = await state_machine.create(make_draft(), ExecutionMode.HITL)

        approved = await state_machine.approve(created.id, approved_by="head-of-platform", comments="ok")

        assert approved.status == S.APPROVED.value
        async with session_factory() as session:
            request = (await session.execute(select(ApprovalRequest))).scalar_one()
        assert request.status == ApprovalStatus.APPROVED.value
        assert request.approved_by == "head-of-platform"
        assert request.comments == "ok"
        assert request.decision_date is not None
        assert await _history(session_factory, created.id) == []

    @pytest.mark.asyncio
    async def test_approve_autonomous_executes_immediately(self, state_machine, make_draft, session_factory):
        """Test approving an autonomous record runs it straight away."""
        created = await state_machine.create(make_draft(), ExecutionMode.AUTONOMOUS)

        result = await state_machine.approve(created.id, approved_by="ops")

        assert result.status == S.EXECUTED.value
        history = await _history(session_factory, created.id)
        assert len(history) == 1
        assert history[0].executed_by == "ops"

    @pytest.mark.asyncio
    async def test_reject_is_terminal(self, state_machine, make_draft):
        """Test a rejected record cannot be approved or executed."""
        created = await state_machine.create(make_draft(), ExecutionMode.HITL)
        await state_machine.reject(created.id, rejected_by="cfo")

        with pytest.raises(InvalidTransitionError) as exc_info:
            await state_machine.approve(created.id, approved_by="cfo")
        assert exc_info.value.current == "rejected"

        with pytest.raises(InvalidTransitionError):
            await state_machine.execute(created.id, executed_by="agent")

    @pytest.mark.asyncio
    async def test_unknown_recommendation(self, state_machine):
        """Test deciding on a missing record raises not-found."""
        with pytest.raises(RecommendationNotFoundError):
            await state_machine.approve(uuid.uuid4(), approved_by="cfo")

    @pytest.mark.asyncio
    async def test_wrong_tenant_is_not_found(self, state_machine, make_draft):
        """Test a decision scoped to another tenant does not see the record."""
        created = await state_machine.create(make_draft(), ExecutionMode.HITL)

        with pytest.raises(RecommendationNotFoundError):
            await state_machine.reject(created.id, rejected_by="cfo", tenant_id="someone-else")

    @pytest.mark.asyncio
    async def test_process_decision(self, state_machine, make_draft):
        """Test external decisions route to approve/reject."""
        created = await state_machine.create(make_draft(), ExecutionMode.HITL)

        result = await state_machine.process_decision(
            ApprovalDecision(
                recommendation_id=created.id,
                tenant_id=TENANT_ID,
                decision=ApprovalStatus.REJECTED,
                decided_by="cfo",
            )
        )

        assert result.status == S.REJECTED.value


class TestExecute:
    """Test execution and the history ledger."""

    @pytest.mark.asyncio
    async def test_execute_records_one_success_entry(self, state_machine, make_draft, session_factory, broadcaster):
        """Test success flips the status and appends exactly one history entry."""
        created = await state_machine.create(make_draft(), ExecutionMode.AUTONOMOUS)
        events = broadcaster.subscribe()

        result = await state_machine.execute(created.id, executed_by="autonomous-agent")

        assert result.status == S.EXECUTED.value
        history = await _history(session_factory, created.id)
        assert len(history) == 1
        assert history[0].status == HistoryStatus.SUCCESS.value
        assert history[0].before_config == {"state": "available", "size": 100}
        assert history[0].after_config == {"action": "DELETE"}
        assert history[0].actual_savings == 40.0
        assert events.get_nowait().type == "recommendation_executed"

    @pytest.mark.asyncio
    async def test_pending_hitl_cannot_execute(self, state_machine, make_draft, session_factory):
        """Test a HITL record must be approved before execution."""
        created = await state_machine.create(make_draft(), ExecutionMode.HITL)

        with pytest.raises(InvalidTransitionError):
            await state_machine.execute(created.id, executed_by="agent")

        assert await _status(session_factory, created.id) == S.PENDING.value

    @pytest.mark.asyncio
    async def test_mutation_failure_records_failed_entry(self, state_machine, make_draft, session_factory):
        """Test a failed mutation moves the record to failed without raising."""
        state_machine.mutation_executor = AsyncMock()
        state_machine.mutation_executor.apply.return_value = MutationResult(
            success=False, error_message="AccessDenied"
        )
        created = await state_machine.create(make_draft(), ExecutionMode.AUTONOMOUS)

        result = await state_machine.execute(created.id, executed_by="agent")

        assert result.status == S.FAILED.value
        history = await _history(session_factory, created.id)
        assert len(history) == 1
        assert history[0].status == HistoryStatus.FAILED.value
        assert history[0].error_message == "AccessDenied"

    @pytest.mark.asyncio
    async def test_mutation_exception_records_failed_entry(self, state_machine, make_draft, session_factory):
        """Test an exception from the executor is recorded, not raised."""
        state_machine.mutation_executor = AsyncMock()
        state_machine.mutation_executor.apply.side_effect = RuntimeError("throttled")
        created = await state_machine.create(make_draft(), ExecutionMode.AUTONOMOUS)

        result = await state_machine.execute(created.id, executed_by="agent")

        assert result.status == S.FAILED.value
        history = await _history(session_factory, created.id)
        assert history[0].error_message == "throttled"

    @pytest.mark.asyncio
    async def test_executed_record_cannot_run_twice(self, state_machine, make_draft, session_factory):
        """Test a second execution is refused and adds no history."""
        created = await state_machine.create(make_draft(), ExecutionMode.AUTONOMOUS)
        await state_machine.execute(created.id, executed_by="agent")

        with pytest.raises(InvalidTransitionError):
            await state_machine.execute(created.id, executed_by="agent")

        assert len(await _history(session_factory, created.id)) == 1

    @pytest.mark.asyncio
    async def test_history_entries_are_immutable(self, state_machine, make_draft, session_factory):
        """Test history rows refuse updates."""
        created = await state_machine.create(make_draft(), ExecutionMode.AUTONOMOUS)
        await state_machine.execute(created.id, executed_by="agent")

        async with session_factory() as session:
            entry = (await session.execute(select(OptimizationHistory))).scalar_one()
            entry.error_message = "rewritten"
            with pytest.raises(ValueError, match="append-only"):
                await session.flush()
            await session.rollback()


class TestExecutionConsistency:
    """Fault injection between the status flip and the history append."""

    @pytest.mark.asyncio
    async def test_transient_fault_mid_unit_of_work_is_retried(self, state_machine, make_draft, session_factory):
        """Test a fault after the status flip rolls back and the retry writes both."""
        created = await state_machine.create(make_draft(), ExecutionMode.AUTONOMOUS)
        real_append = history_crud.append_history_entry
        calls = 0

        async def flaky_append(*args, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise OperationalError("INSERT INTO optimization_history", {}, Exception("deadlock detected"))
            return await real_append(*args, **kwargs)

        with patch.object(history_crud, "append_history_entry", flaky_append):
            result = await state_machine.execute(created.id, executed_by="agent")

        assert calls == 2
        assert result.status == S.EXECUTED.value
        assert await _status(session_factory, created.id) == S.EXECUTED.value
        assert len(await _history(session_factory, created.id)) == 1

    @pytest.mark.asyncio
    async def test_exhausted_fault_leaves_status_and_ledger_untouched(
        self, state_machine, make_draft, session_factory
    ):
        """Test neither the status flip nor a history entry survives an exhausted retry."""
        created = await state_machine.create(make_draft(), ExecutionMode.AUTONOMOUS)
        failing_append = AsyncMock(
            side_effect=OperationalError("INSERT INTO optimization_history", {}, Exception("deadlock detected"))
        )

        with patch.object(history_crud, "append_history_entry", failing_append):
            with pytest.raises(OperationalError):
                await state_machine.execute(created.id, executed_by="agent")

        assert failing_append.await_count == 3
        assert await _status(session_factory, created.id) == S.PENDING.value
        assert await _history(session_factory, created.id) == []

    @pytest.mark.asyncio
    async def test_non_transient_fault_is_not_retried(self, state_machine, make_draft, session_factory):
        """Test a non-transient fault propagates on the first attempt and rolls back."""
        created = await state_machine.create(make_draft(), ExecutionMode.AUTONOMOUS)
        failing_append = AsyncMock(side_effect=ValueError("disk full"))

        with patch.object(history_crud, "append_history_entry", failing_append):
            with pytest.raises(ValueError):
                await state_machine.execute(created.id, executed_by="agent")

        assert failing_append.await_count == 1
        assert await _status(session_factory, created.id) == S.PENDING.value


class TestNotifications:
    """Test fire-and-forget notifications."""

    @pytest.mark.asyncio
    async def test_every_transition_notifies(self, state_machine, make_draft, notifier):
        """Test create, approve and execute each reach the notifier."""
        created = await state_machine.create(make_draft(), ExecutionMode.AUTONOMOUS)
        await state_machine.approve(created.id, approved_by="ops")
        await state_machine.wait_for_notifications()

        types = [c.args[0].type for c in notifier.notify.await_args_list]
        assert types == ["recommendation_created", "recommendation_approved", "recommendation_executed"]

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_propagate(self, state_machine, make_draft, notifier):
        """Test a broken notifier never fails the transition."""
        notifier.notify.side_effect = RuntimeError("webhook down")

        created = await state_machine.create(make_draft(), ExecutionMode.HITL)
        await state_machine.wait_for_notifications()

        assert created is not None
