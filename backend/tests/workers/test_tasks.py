"""Tests for the Celery tasks driving the agent."""

import asyncio
import random
import uuid

import pytest

from app.agent import build_agent
from app.models.recommendation import ExecutionMode
from app.schemas.resource import CloudResourceCreate
from app.workers.celery_app import celery_app
from app.workers.tasks import _process_approval_decision_async, _run_agent_cycle_async

from conftest import TENANT_ID


class SlowNotifier:
    """Notifier that delivers after yielding to the loop."""

    def __init__(self):
        self.delivered: list[str] = []

    async def notify(self, event) -> None:
        await asyncio.sleep(0.01)
        self.delivered.append(event.type)


@pytest.fixture
def agent(test_settings, session_factory, notifier):
    return build_agent(test_settings, session_factory, notifier=notifier, rng=random.Random(3))


class TestCeleryConfiguration:
    """Test task registration and the beat schedule."""

    def test_cycle_is_scheduled(self):
        """Test the agent cycle runs on the beat schedule."""
        entry = celery_app.conf.beat_schedule["run-agent-cycle"]

        assert entry["task"] == "app.workers.tasks.run_agent_cycle"
        assert entry["schedule"] > 0

    def test_tasks_are_registered(self):
        """Test both tasks are registered under stable names."""
        assert "app.workers.tasks.run_agent_cycle" in celery_app.tasks
        assert "app.workers.tasks.process_approval_decision" in celery_app.tasks


class TestRunAgentCycle:
    """Test the cycle task body."""

    @pytest.mark.asyncio
    async def test_first_run_seeds_configuration(self, agent, seed_resources):
        """Test the task starts the agent and returns the cycle summary."""
        await seed_resources(
            CloudResourceCreate(
                resource_id="i-idle",
                resource_type="ec2",
                utilization_metrics={"cpu": 2, "memory": 3},
                monthly_cost=80.0,
            )
        )

        result = await _run_agent_cycle_async(agent=agent)

        assert agent.started is True
        assert result["status"] == "completed"
        assert result["cycle_number"] == 1
        assert result["created"] == 1

    @pytest.mark.asyncio
    async def test_overlapping_run_is_skipped(self, agent):
        """Test the task reports a skip while a cycle is in progress."""
        agent.runner._running = True

        result = await _run_agent_cycle_async(agent=agent)

        assert result == {"status": "skipped"}


class TestProcessApprovalDecision:
    """Test the approval task body."""

    @pytest.mark.asyncio
    async def test_approval_is_applied(self, agent, make_draft):
        """Test an approval moves a HITL recommendation to approved."""
        created = await agent.state_machine.create(make_draft(), ExecutionMode.HITL)

        result = await _process_approval_decision_async(
            str(created.id), "approved", "head-of-platform", agent=agent
        )

        assert result["status"] == "approved"
        assert result["execution_mode"] == "hitl"

    @pytest.mark.asyncio
    async def test_unknown_recommendation_returns_error(self, agent):
        """Test domain errors are returned rather than raised."""
        result = await _process_approval_decision_async(
            str(uuid.uuid4()), "rejected", "cfo", tenant_id=TENANT_ID, agent=agent
        )

        assert result["status"] == "error"
        assert result["error"] == "Recommendation not found"

    @pytest.mark.asyncio
    async def test_decision_on_terminal_record_returns_error(self, agent, make_draft):
        """Test an illegal transition is reported as an error."""
        created = await agent.state_machine.create(make_draft(), ExecutionMode.HITL)
        await agent.state_machine.reject(created.id, rejected_by="cfo")

        result = await _process_approval_decision_async(str(created.id), "approved", "cfo", agent=agent)

        assert result["status"] == "error"
        assert "Cannot transition" in result["error"]


class TestNotificationDelivery:
    """Test task bodies return only after their notifications are delivered."""

    @pytest.mark.asyncio
    async def test_cycle_task_flushes_notifications(self, test_settings, session_factory, seed_resources):
        """Test notifications from a cycle are delivered before the task returns."""
        notifier = SlowNotifier()
        agent = build_agent(test_settings, session_factory, notifier=notifier, rng=random.Random(3))
        await seed_resources(
            CloudResourceCreate(
                resource_id="i-idle",
                resource_type="ec2",
                utilization_metrics={"cpu": 2, "memory": 3},
                monthly_cost=80.0,
            )
        )

        result = await _run_agent_cycle_async(agent=agent)

        assert result["created"] == 1
        assert "recommendation_created" in notifier.delivered
        assert not agent.state_machine._notification_tasks

    @pytest.mark.asyncio
    async def test_approval_task_flushes_notifications(self, test_settings, session_factory, make_draft):
        """Test the approval notification is delivered before the task returns."""
        notifier = SlowNotifier()
        agent = build_agent(test_settings, session_factory, notifier=notifier, rng=random.Random(3))
        created = await agent.state_machine.create(make_draft(), ExecutionMode.HITL)
        await agent.state_machine.wait_for_notifications()
        notifier.delivered.clear()

        await _process_approval_decision_async(str(created.id), "approved", "cfo", agent=agent)

        assert notifier.delivered == ["recommendation_approved"]
