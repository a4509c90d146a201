"""Recommendation lifecycle: creation with dedupe, approval, rejection, execution."""

import asyncio
import uuid
from typing import Any, Awaitable, Callable

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidTransitionError, RecommendationNotFoundError
from app.crud import approval_request as approval_crud
from app.crud import optimization_history as history_crud
from app.crud import recommendation as recommendation_crud
from app.models.approval_request import ApprovalStatus
from app.models.optimization_history import HistoryStatus
from app.models.recommendation import ExecutionMode, Recommendation, RecommendationStatus
from app.schemas.recommendation import (
    ApprovalDecision,
    MutationResult,
    RecommendationDraft,
    RecommendationEvent,
    RecommendationRead,
)
from app.services.collaborators import EventBroadcaster, MutationExecutor, Notifier
from app.services.transaction import run_in_transaction

logger = structlog.get_logger()

S = RecommendationStatus

ALLOWED_TRANSITIONS: dict[RecommendationStatus, frozenset[RecommendationStatus]] = {
    S.PENDING: frozenset({S.APPROVED, S.REJECTED, S.EXECUTED, S.FAILED}),
    S.APPROVED: frozenset({S.EXECUTED, S.FAILED}),
    S.EXECUTED: frozenset(),
    S.REJECTED: frozenset(),
    S.FAILED: frozenset(),
}

EVENT_CREATED = "recommendation_created"
EVENT_APPROVED = "recommendation_approved"
EVENT_REJECTED = "recommendation_rejected"
EVENT_EXECUTED = "recommendation_executed"
EVENT_FAILED = "recommendation_failed"
EVENT_APPROVAL_REQUESTED = "approval_requested"


def can_transition(current: str | RecommendationStatus, target: str | RecommendationStatus) -> bool:
    """Whether ``current -> target`` is a legal status change."""
    try:
        return RecommendationStatus(target) in ALLOWED_TRANSITIONS[RecommendationStatus(current)]
    except (ValueError, KeyError):
        return False


def ensure_transition(
    current: str | RecommendationStatus,
    target: str | RecommendationStatus,
    recommendation_id: uuid.UUID | None = None,
) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is legal."""
    if not can_transition(current, target):
        raise InvalidTransitionError(
            current.value if isinstance(current, RecommendationStatus) else str(current),
            target.value if isinstance(target, RecommendationStatus) else str(target),
            str(recommendation_id) if recommendation_id else None,
        )


def is_executable(recommendation: Recommendation | RecommendationRead) -> bool:
    """Approved records, and pending records classified autonomous, may be executed."""
    if recommendation.status == S.APPROVED.value:
        return True
    return (
        recommendation.status == S.PENDING.value
        and recommendation.execution_mode == ExecutionMode.AUTONOMOUS.value
    )


class RecommendationStateMachine:
    """
    Drives recommendations through their lifecycle.

    Every status change is committed through the transactional executor, and
    entering ``executed`` or ``failed`` appends exactly one history entry in the
    same transaction. Each transition is published on the event broadcaster and
    sent to the notifier without waiting for delivery.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        mutation_executor: MutationExecutor,
        broadcaster: EventBroadcaster,
        notifier: Notifier,
        requested_by: str = "autonomous-agent",
        max_retries: int = 3,
        base_delay: float = 0.1,
        max_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.mutation_executor = mutation_executor
        self.broadcaster = broadcaster
        self.notifier = notifier
        self.requested_by = requested_by
        self._retry: dict[str, Any] = {
            "max_retries": max_retries,
            "base_delay": base_delay,
            "max_delay": max_delay,
            "sleep": sleep,
        }
        self._notification_tasks: set[asyncio.Task] = set()

    async def create(
        self, draft: RecommendationDraft, execution_mode: ExecutionMode
    ) -> RecommendationRead | None:
        """
        Insert a pending recommendation unless the resource already has an active one.

        Args:
            draft: Classified recommendation draft
            execution_mode: Resolved execution mode

        Returns:
            The created recommendation, or None on a dedupe hit
        """

        async def work(session: AsyncSession) -> RecommendationRead | None:
            existing = await recommendation_crud.get_active_for_resource(
                session, draft.tenant_id, draft.resource_id
            )
            if existing is not None:
                return None
            recommendation = await recommendation_crud.create_recommendation(session, draft, execution_mode)
            if execution_mode == ExecutionMode.HITL:
                await approval_crud.open_approval_request(session, recommendation, self.requested_by)
            return RecommendationRead.model_validate(recommendation)

        try:
            created = await run_in_transaction(self.session_factory, work, **self._retry)
        except IntegrityError as e:
            # A concurrent writer won the race on the partial unique index
            logger.info(
                "recommendation.deduplicated",
                tenant_id=draft.tenant_id,
                resource_id=draft.resource_id,
                guard="unique_index",
                error=str(e.orig) if e.orig is not None else str(e),
            )
            return None

        if created is None:
            logger.info(
                "recommendation.deduplicated",
                tenant_id=draft.tenant_id,
                resource_id=draft.resource_id,
                guard="active_lookup",
            )
            return None

        logger.info(
            "recommendation.created",
            recommendation_id=str(created.id),
            tenant_id=created.tenant_id,
            resource_id=created.resource_id,
            type=created.type,
            risk_level=created.risk_level,
            execution_mode=created.execution_mode,
            projected_monthly_savings=created.projected_monthly_savings,
        )
        await self._emit(EVENT_CREATED, created)
        return created

    async def approve(
        self,
        recommendation_id: uuid.UUID,
        approved_by: str,
        comments: str | None = None,
        tenant_id: str | None = None,
    ) -> RecommendationRead:
        """
        Approve a pending recommendation.

        The approval request is closed in the same transaction. A record
        classified autonomous is executed immediately; HITL records wait for the
        next cycle to pick them up.

        Raises:
            RecommendationNotFoundError: If the recommendation does not exist
            InvalidTransitionError: If it is not pending
        """
        approved = await self._decide(
            recommendation_id, S.APPROVED, ApprovalStatus.APPROVED, approved_by, comments, tenant_id
        )
        await self._emit(EVENT_APPROVED, approved)

        if approved.execution_mode == ExecutionMode.AUTONOMOUS.value:
            return await self.execute(approved.id, executed_by=approved_by)
        return approved

    async def reject(
        self,
        recommendation_id: uuid.UUID,
        rejected_by: str,
        comments: str | None = None,
        tenant_id: str | None = None,
    ) -> RecommendationRead:
        """Reject a pending recommendation (terminal)."""
        rejected = await self._decide(
            recommendation_id, S.REJECTED, ApprovalStatus.REJECTED, rejected_by, comments, tenant_id
        )
        await self._emit(EVENT_REJECTED, rejected)
        return rejected

    async def process_decision(self, decision: ApprovalDecision) -> RecommendationRead:
        """Apply an external approval decision."""
        if decision.decision == ApprovalStatus.APPROVED:
            return await self.approve(
                decision.recommendation_id, decision.decided_by, decision.comments, decision.tenant_id
            )
        if decision.decision == ApprovalStatus.REJECTED:
            return await self.reject(
                decision.recommendation_id, decision.decided_by, decision.comments, decision.tenant_id
            )
        raise InvalidTransitionError(S.PENDING.value, decision.decision.value, str(decision.recommendation_id))

    async def execute(self, recommendation_id: uuid.UUID, executed_by: str) -> RecommendationRead:
        """
        Apply a recommendation and record the outcome.

        A mutation failure moves the record to ``failed`` with a failed history
        entry; it is returned, not raised.

        Raises:
            RecommendationNotFoundError: If the recommendation does not exist
            InvalidTransitionError: If it is neither approved nor autonomous-pending
        """
        recommendation = await self.get(recommendation_id)
        if not is_executable(recommendation):
            raise InvalidTransitionError(
                recommendation.status, S.EXECUTED.value, str(recommendation_id)
            )

        try:
            result = await self.mutation_executor.apply(recommendation)
        except Exception as e:
            logger.error(
                "recommendation.mutation_error",
                recommendation_id=str(recommendation_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            result = MutationResult(success=False, error_message=str(e) or type(e).__name__)

        target = S.EXECUTED if result.success else S.FAILED

        async def work(session: AsyncSession) -> RecommendationRead:
            current = await self._load_for_update(session, recommendation_id)
            ensure_transition(current.status, target, recommendation_id)
            await recommendation_crud.set_status(session, current, target)
            if result.success:
                await history_crud.append_history_entry(
                    session,
                    current,
                    executed_by=executed_by,
                    status=HistoryStatus.SUCCESS,
                    after_config=result.after_config,
                    actual_savings=result.actual_savings,
                )
            else:
                await history_crud.append_history_entry(
                    session,
                    current,
                    executed_by=executed_by,
                    status=HistoryStatus.FAILED,
                    error_message=result.error_message or "Mutation failed",
                )
            return RecommendationRead.model_validate(current)

        updated = await run_in_transaction(self.session_factory, work, **self._retry)

        if result.success:
            logger.info(
                "recommendation.executed",
                recommendation_id=str(updated.id),
                resource_id=updated.resource_id,
                executed_by=executed_by,
                actual_savings=result.actual_savings,
            )
            await self._emit(EVENT_EXECUTED, updated)
        else:
            logger.warning(
                "recommendation.execution_failed",
                recommendation_id=str(updated.id),
                resource_id=updated.resource_id,
                executed_by=executed_by,
                error=result.error_message,
            )
            await self._emit(EVENT_FAILED, updated, error=result.error_message)
        return updated

    async def request_approval(self, recommendation: RecommendationRead) -> None:
        """Tell the approval collaborator a HITL recommendation is waiting."""
        await self._emit(EVENT_APPROVAL_REQUESTED, recommendation)

    async def get(self, recommendation_id: uuid.UUID) -> RecommendationRead:
        async with self.session_factory() as session:
            recommendation = await recommendation_crud.get_recommendation(session, recommendation_id)
            if recommendation is None:
                raise RecommendationNotFoundError(
                    "Recommendation not found", details=str(recommendation_id)
                )
            return RecommendationRead.model_validate(recommendation)

    async def list_active_resource_ids(self, tenant_id: str) -> set[str]:
        """Resource ids with a pending or approved recommendation."""
        async with self.session_factory() as session:
            return await recommendation_crud.get_active_resource_ids(session, tenant_id)

    async def list_executable(self, tenant_id: str, limit: int = 100) -> list[RecommendationRead]:
        """Approved recommendations, plus autonomous ones left pending, oldest first."""
        async with self.session_factory() as session:
            records = await recommendation_crud.get_executable_recommendations(
                session, tenant_id, limit=limit
            )
            return [RecommendationRead.model_validate(r) for r in records]

    async def wait_for_notifications(self) -> None:
        """Wait for in-flight notifications (used on shutdown)."""
        if self._notification_tasks:
            await asyncio.gather(*list(self._notification_tasks), return_exceptions=True)

    async def _decide(
        self,
        recommendation_id: uuid.UUID,
        target: RecommendationStatus,
        approval_status: ApprovalStatus,
        decided_by: str,
        comments: str | None,
        tenant_id: str | None,
    ) -> RecommendationRead:
        async def work(session: AsyncSession) -> RecommendationRead:
            recommendation = await self._load_for_update(session, recommendation_id, tenant_id)
            ensure_transition(recommendation.status, target, recommendation_id)
            await recommendation_crud.set_status(session, recommendation, target)
            await approval_crud.close_approval_request(
                session, recommendation.id, approval_status, decided_by, comments
            )
            return RecommendationRead.model_validate(recommendation)

        decided = await run_in_transaction(self.session_factory, work, **self._retry)
        logger.info(
            f"recommendation.{target.value}",
            recommendation_id=str(recommendation_id),
            decided_by=decided_by,
        )
        return decided

    async def _load_for_update(
        self, session: AsyncSession, recommendation_id: uuid.UUID, tenant_id: str | None = None
    ) -> Recommendation:
        recommendation = await recommendation_crud.get_recommendation(
            session, recommendation_id, for_update=True
        )
        if recommendation is None or (tenant_id is not None and recommendation.tenant_id != tenant_id):
            raise RecommendationNotFoundError("Recommendation not found", details=str(recommendation_id))
        return recommendation

    async def _emit(
        self, event_type: str, recommendation: RecommendationRead, error: str | None = None
    ) -> None:
        event = RecommendationEvent(
            type=event_type,
            recommendation_id=recommendation.id,
            resource_id=recommendation.resource_id,
            status=RecommendationStatus(recommendation.status),
            tenant_id=recommendation.tenant_id,
            execution_mode=recommendation.execution_mode,
            title=recommendation.title,
            projected_monthly_savings=recommendation.projected_monthly_savings,
            error=error,
        )

        try:
            await self.broadcaster.publish(event)
        except Exception as e:
            logger.warning("event.publish_failed", event_type=event_type, error=str(e))

        task = asyncio.create_task(self._notify(event))
        self._notification_tasks.add(task)
        task.add_done_callback(self._notification_tasks.discard)

    async def _notify(self, event: RecommendationEvent) -> None:
        try:
            await self.notifier.notify(event)
        except Exception as e:
            logger.warning(
                "notification.failed",
                event_type=event.type,
                recommendation_id=str(event.recommendation_id),
                error=str(e),
            )
