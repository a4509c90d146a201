"""CRUD operations for recommendations.

Functions flush but never commit; the caller owns the unit of work.
"""

import uuid

from sqlalchemy import and_, desc, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.recommendation import ACTIVE_STATUSES, ExecutionMode, Recommendation, RecommendationStatus
from app.schemas.recommendation import RecommendationDraft


async def create_recommendation(
    db: AsyncSession, draft: RecommendationDraft, execution_mode: ExecutionMode
) -> Recommendation:
    """
    Insert a new pending recommendation.

    Args:
        db: Database session
        draft: Classified recommendation draft
        execution_mode: Resolved execution mode

    Returns:
        Created recommendation object

    Raises:
        sqlalchemy.exc.IntegrityError: If an active recommendation already exists
            for the same resource
    """
    recommendation = Recommendation(
        tenant_id=draft.tenant_id,
        resource_id=draft.resource_id,
        resource_type=draft.resource_type,
        type=draft.type.value,
        priority=draft.priority.value,
        title=draft.title,
        description=draft.description,
        current_config=draft.current_config,
        recommended_config=draft.recommended_config,
        projected_monthly_savings=draft.projected_monthly_savings,
        calculation_metadata=draft.calculation_metadata,
        risk_level=draft.risk_level,
        execution_mode=execution_mode.value,
        status=RecommendationStatus.PENDING.value,
        source=draft.source.value,
    )
    db.add(recommendation)
    await db.flush()
    return recommendation


async def get_recommendation(
    db: AsyncSession, recommendation_id: uuid.UUID, for_update: bool = False
) -> Recommendation | None:
    """
    Get recommendation by ID.

    Args:
        db: Database session
        recommendation_id: Recommendation UUID
        for_update: Lock the row until the transaction ends (ignored by SQLite)

    Returns:
        Recommendation object or None if not found
    """
    query = select(Recommendation).where(Recommendation.id == recommendation_id)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def get_active_for_resource(
    db: AsyncSession, tenant_id: str, resource_id: str
) -> Recommendation | None:
    """Return the pending or approved recommendation for a resource, if any."""
    result = await db.execute(
        select(Recommendation).where(
            Recommendation.tenant_id == tenant_id,
            Recommendation.resource_id == resource_id,
            Recommendation.status.in_(ACTIVE_STATUSES),
        )
    )
    return result.scalars().first()


async def get_active_resource_ids(db: AsyncSession, tenant_id: str) -> set[str]:
    """Resource identifiers that currently have a pending or approved recommendation."""
    result = await db.execute(
        select(Recommendation.resource_id).where(
            Recommendation.tenant_id == tenant_id,
            Recommendation.status.in_(ACTIVE_STATUSES),
        )
    )
    return set(result.scalars().all())


async def get_executable_recommendations(
    db: AsyncSession, tenant_id: str, limit: int = 100
) -> list[Recommendation]:
    """
    List recommendations waiting for execution, oldest first.

    Covers approved records and autonomous records still pending because
    their execution never completed.

    Args:
        db: Database session
        tenant_id: Tenant identifier
        limit: Maximum number of records to return

    Returns:
        List of recommendation objects
    """
    result = await db.execute(
        select(Recommendation)
        .where(
            Recommendation.tenant_id == tenant_id,
            or_(
                Recommendation.status == RecommendationStatus.APPROVED.value,
                and_(
                    Recommendation.status == RecommendationStatus.PENDING.value,
                    Recommendation.execution_mode == ExecutionMode.AUTONOMOUS.value,
                ),
            ),
        )
        .order_by(Recommendation.created_at, Recommendation.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_recommendations(
    db: AsyncSession, tenant_id: str, skip: int = 0, limit: int = 100
) -> list[Recommendation]:
    """List a tenant's recommendations, newest first."""
    result = await db.execute(
        select(Recommendation)
        .where(Recommendation.tenant_id == tenant_id)
        .order_by(desc(Recommendation.created_at))
        .offset(skip)
        .limit(limit)
    )
    return list(result.scalars().all())


async def count_by_status(db: AsyncSession, tenant_id: str) -> dict[str, int]:
    """Count a tenant's recommendations grouped by status."""
    result = await db.execute(
        select(Recommendation.status, func.count(Recommendation.id))
        .where(Recommendation.tenant_id == tenant_id)
        .group_by(Recommendation.status)
    )
    return {status: count for status, count in result.all()}


async def set_status(
    db: AsyncSession, recommendation: Recommendation, status: RecommendationStatus
) -> Recommendation:
    """Write a new status onto the recommendation; transition rules are checked by the caller."""
    recommendation.status = status.value
    await db.flush()
    return recommendation
