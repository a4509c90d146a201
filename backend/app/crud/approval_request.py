"""CRUD operations for approval requests."""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import utcnow
from app.models.approval_request import ApprovalRequest, ApprovalStatus
from app.models.recommendation import Recommendation


async def open_approval_request(
    db: AsyncSession, recommendation: Recommendation, requested_by: str
) -> ApprovalRequest:
    """Open a pending approval request for a HITL recommendation."""
    request = ApprovalRequest(
        tenant_id=recommendation.tenant_id,
        recommendation_id=recommendation.id,
        requested_by=requested_by,
        status=ApprovalStatus.PENDING.value,
    )
    db.add(request)
    await db.flush()
    return request


async def get_pending_request(
    db: AsyncSession, recommendation_id: uuid.UUID
) -> ApprovalRequest | None:
    """Return the open approval request for a recommendation, if any."""
    result = await db.execute(
        select(ApprovalRequest).where(
            ApprovalRequest.recommendation_id == recommendation_id,
            ApprovalRequest.status == ApprovalStatus.PENDING.value,
        )
    )
    return result.scalars().first()


async def close_approval_request(
    db: AsyncSession,
    recommendation_id: uuid.UUID,
    status: ApprovalStatus,
    decided_by: str,
    comments: str | None = None,
) -> ApprovalRequest | None:
    """
    Record the decision on the open approval request.

    Args:
        db: Database session
        recommendation_id: Recommendation UUID
        status: APPROVED or REJECTED
        decided_by: Approver identity
        comments: Optional reviewer comments

    Returns:
        Closed approval request, or None if no request was open
    """
    request = await get_pending_request(db, recommendation_id)
    if request is None:
        return None
    request.status = status.value
    request.approved_by = decided_by
    request.decision_date = utcnow()
    request.comments = comments
    await db.flush()
    return request


async def list_pending_requests(db: AsyncSession, tenant_id: str) -> list[ApprovalRequest]:
    """List a tenant's open approval requests, oldest first."""
    result = await db.execute(
        select(ApprovalRequest)
        .where(
            ApprovalRequest.tenant_id == tenant_id,
            ApprovalRequest.status == ApprovalStatus.PENDING.value,
        )
        .order_by(ApprovalRequest.created_at)
    )
    return list(result.scalars().all())
