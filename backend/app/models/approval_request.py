"""Approval request model for human-in-the-loop recommendations."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from app.core.database import Base


class ApprovalStatus(str, Enum):
    """Approval request status enumeration."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalRequest(Base):
    """Request for a human decision on a HITL recommendation."""

    __tablename__ = "approval_requests"
    __table_args__ = (
        Index("idx_approval_requests_tenant_status", "tenant_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    tenant_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    recommendation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("recommendations.id"),
        nullable=False,
        index=True,
    )
    requested_by: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    approver_role: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        default="Head of Cloud Platform",
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ApprovalStatus.PENDING.value,
    )
    approved_by: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    decision_date: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )
    comments: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        nullable=False,
    )

    # Relationships
    recommendation: Mapped["Recommendation"] = relationship(  # type: ignore  # noqa: F821
        "Recommendation",
        back_populates="approval_requests",
    )

    def __repr__(self) -> str:
        """String representation."""
        return f"<ApprovalRequest {self.recommendation_id} - {self.status}>"
