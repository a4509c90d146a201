"""CRUD operations for the append-only optimization history."""

import uuid
from typing import Any

from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import utcnow
from app.models.optimization_history import HistoryStatus, OptimizationHistory
from app.models.recommendation import Recommendation


async def append_history_entry(
    db: AsyncSession,
    recommendation: Recommendation,
    executed_by: str,
    status: HistoryStatus,
    after_config: dict[str, Any] | None = None,
    actual_savings: float | None = None,
    error_message: str | None = None,
) -> OptimizationHistory:
    """
    Append one execution record for a recommendation.

    Args:
        db: Database session
        recommendation: Executed recommendation
        executed_by: Actor that ran the execution
        status: Outcome of the attempt
        after_config: Resulting configuration (success only)
        actual_savings: Realized monthly savings (success only)
        error_message: Failure reason (failure only)

    Returns:
        Created history entry
    """
    entry = OptimizationHistory(
        tenant_id=recommendation.tenant_id,
        recommendation_id=recommendation.id,
        executed_by=executed_by,
        execution_date=utcnow(),
        before_config=dict(recommendation.current_config or {}),
        after_config=dict(after_config or {}),
        actual_savings=actual_savings,
        status=status.value,
        error_message=error_message,
    )
    db.add(entry)
    await db.flush()
    return entry


async def get_history_for_recommendation(
    db: AsyncSession, recommendation_id: uuid.UUID
) -> list[OptimizationHistory]:
    """List history entries for one recommendation, oldest first."""
    result = await db.execute(
        select(OptimizationHistory)
        .where(OptimizationHistory.recommendation_id == recommendation_id)
        .order_by(OptimizationHistory.execution_date)
    )
    return list(result.scalars().all())


async def list_history(
    db: AsyncSession, tenant_id: str, skip: int = 0, limit: int = 100
) -> list[OptimizationHistory]:
    """List a tenant's execution history, newest first."""
    result = await db.execute(
        select(OptimizationHistory)
        .where(OptimizationHistory.tenant_id == tenant_id)
        .order_by(desc(OptimizationHistory.execution_date))
        .offset(skip)
        .limit(limit)
    )
    return list(result.scalars().all())
