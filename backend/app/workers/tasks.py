"""Celery tasks driving the agent cycle and approval decisions."""

import asyncio
from typing import Any

import structlog

from app.agent import Agent, build_agent
from app.core.config import settings
from app.core.database import AsyncSessionLocal
from app.core.exceptions import FinOpsAgentError
from app.schemas.recommendation import ApprovalDecision
from app.workers.celery_app import celery_app

logger = structlog.get_logger()

# One agent per worker process; its reentrancy flag spans the tasks it runs
_agent: Agent | None = None


def get_agent() -> Agent:
    """Return the worker's agent, building it on first use."""
    global _agent
    if _agent is None:
        _agent = build_agent(settings, AsyncSessionLocal)
    return _agent


async def _ensure_started(agent: Agent) -> None:
    if not agent.started:
        await agent.start()


def _get_event_loop() -> asyncio.AbstractEventLoop:
    """Get or create the event loop for the Celery solo/prefork pool."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_closed():
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
    return loop


@celery_app.task(name="app.workers.tasks.run_agent_cycle")
def run_agent_cycle() -> dict[str, Any]:
    """
    Run one agent cycle.

    Returns:
        Dict with the cycle summary, or ``{"status": "skipped"}`` when a cycle
        was already running or failed
    """
    return _get_event_loop().run_until_complete(_run_agent_cycle_async())


async def _run_agent_cycle_async(agent: Agent | None = None) -> dict[str, Any]:
    agent = agent or get_agent()
    await _ensure_started(agent)

    try:
        summary = await agent.runner.tick()
    finally:
        # run_until_complete returns once this coroutine does; flush notifications first
        await agent.state_machine.wait_for_notifications()
    if summary is None:
        return {"status": "skipped"}
    return {"status": "completed", **summary.model_dump()}


@celery_app.task(name="app.workers.tasks.process_approval_decision")
def process_approval_decision(
    recommendation_id: str,
    decision: str,
    decided_by: str,
    tenant_id: str | None = None,
    comments: str | None = None,
) -> dict[str, Any]:
    """
    Apply a human approval decision to a recommendation.

    Args:
        recommendation_id: Recommendation UUID
        decision: "approved" or "rejected"
        decided_by: Approver identity
        tenant_id: Tenant owning the recommendation
        comments: Optional reviewer comments

    Returns:
        Dict with the resulting recommendation status or the error
    """
    return _get_event_loop().run_until_complete(
        _process_approval_decision_async(
            recommendation_id, decision, decided_by, tenant_id, comments
        )
    )


async def _process_approval_decision_async(
    recommendation_id: str,
    decision: str,
    decided_by: str,
    tenant_id: str | None = None,
    comments: str | None = None,
    agent: Agent | None = None,
) -> dict[str, Any]:
    agent = agent or get_agent()
    approval = ApprovalDecision(
        recommendation_id=recommendation_id,
        tenant_id=tenant_id or agent.runner.tenant_id,
        decision=decision,
        decided_by=decided_by,
        comments=comments,
    )

    try:
        recommendation = await agent.state_machine.process_decision(approval)
    except FinOpsAgentError as e:
        logger.warning(
            "approval.rejected_decision",
            recommendation_id=recommendation_id,
            decision=decision,
            error=e.message,
            details=e.details,
        )
        return {"recommendation_id": recommendation_id, "status": "error", "error": e.message}
    finally:
        await agent.state_machine.wait_for_notifications()

    return {
        "recommendation_id": str(recommendation.id),
        "status": recommendation.status,
        "execution_mode": recommendation.execution_mode,
    }
