"""Recommendation database model."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, Float, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from app.core.database import Base


class RecommendationType(str, Enum):
    """Remediation type tags."""

    DELETE_UNATTACHED = "delete-unattached"
    RELEASE_ADDRESS = "release-address"
    DELETE_ORPHANED = "delete-orphaned"
    DELETE_UNUSED = "delete-unused"
    SNAPSHOT_CLEANUP = "snapshot-cleanup"
    VOLUME_RIGHTSIZING = "volume-rightsizing"
    STORAGE_TIERING = "storage-tiering"
    LAMBDA_RIGHTSIZING = "lambda-rightsizing"
    GATEWAY_CONSOLIDATION = "gateway-consolidation"
    LB_CONSOLIDATION = "lb-consolidation"
    RIGHTSIZING = "rightsizing"
    SCHEDULING = "scheduling"


class RecommendationStatus(str, Enum):
    """Recommendation lifecycle status."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"
    FAILED = "failed"


# Statuses covered by the one-active-recommendation-per-resource rule
ACTIVE_STATUSES = (RecommendationStatus.PENDING.value, RecommendationStatus.APPROVED.value)

_ACTIVE_WHERE = text("status IN ('pending', 'approved')")


class ExecutionMode(str, Enum):
    """How a recommendation is allowed to reach execution."""

    AUTONOMOUS = "autonomous"
    HITL = "hitl"


class Priority(str, Enum):
    """Recommendation priority derived from risk."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"


class RecommendationSource(str, Enum):
    """Which analysis path produced the recommendation."""

    HEURISTIC = "heuristic"
    AI = "ai"


class Recommendation(Base):
    """
    Remediation opportunity for a single resource.

    Rows are never deleted; status transitions form the audit trail.
    """

    __tablename__ = "recommendations"
    # Fetch server-generated timestamps on flush; lazy refresh is unavailable under asyncio
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        # Authoritative dedupe guard: one pending/approved row per resource
        Index(
            "uq_recommendations_active_resource",
            "tenant_id",
            "resource_id",
            unique=True,
            postgresql_where=_ACTIVE_WHERE,
            sqlite_where=_ACTIVE_WHERE,
        ),
        Index("idx_recommendations_tenant_status", "tenant_id", "status"),
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
    resource_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    resource_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
    )
    priority: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=Priority.MEDIUM.value,
    )
    title: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
    )
    current_config: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )
    recommended_config: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )
    projected_monthly_savings: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.0,
    )
    calculation_metadata: Mapped[dict | None] = mapped_column(
        JSON,
        nullable=True,
    )
    risk_level: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=5,
    )
    execution_mode: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ExecutionMode.HITL.value,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=RecommendationStatus.PENDING.value,
    )
    source: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=RecommendationSource.HEURISTIC.value,
    )
    created_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # Relationships
    history: Mapped[list["OptimizationHistory"]] = relationship(  # type: ignore  # noqa: F821
        "OptimizationHistory",
        back_populates="recommendation",
        order_by="OptimizationHistory.execution_date",
    )
    approval_requests: Mapped[list["ApprovalRequest"]] = relationship(  # type: ignore  # noqa: F821
        "ApprovalRequest",
        back_populates="recommendation",
    )

    @property
    def projected_annual_savings(self) -> float:
        """Annualized projected savings."""
        return self.projected_monthly_savings * 12

    def __repr__(self) -> str:
        """String representation."""
        return f"<Recommendation {self.id} {self.type} - {self.status}>"
