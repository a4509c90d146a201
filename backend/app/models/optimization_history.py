"""Optimization history (execution ledger) model."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, Float, ForeignKey, Index, String, Text, Uuid, event
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from app.core.database import Base


class HistoryStatus(str, Enum):
    """Outcome of an execution attempt."""

    SUCCESS = "success"
    FAILED = "failed"


class OptimizationHistory(Base):
    """
    Append-only record of one execution attempt.

    Written in the same unit of work as the recommendation status change.
    """

    __tablename__ = "optimization_history"
    __table_args__ = (
        Index("idx_optimization_history_tenant_created", "tenant_id", "created_at"),
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
    executed_by: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    execution_date: Mapped[datetime] = mapped_column(
        nullable=False,
    )
    before_config: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )
    after_config: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )
    actual_savings: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    error_message: Mapped[str | None] = mapped_column(
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
        back_populates="history",
    )

    def __repr__(self) -> str:
        """String representation."""
        return f"<OptimizationHistory {self.recommendation_id} - {self.status}>"


@event.listens_for(OptimizationHistory, "before_update")
def _reject_history_update(mapper, connection, target: OptimizationHistory) -> None:
    """History rows are immutable once written."""
    raise ValueError(f"OptimizationHistory {target.id} is append-only and cannot be updated")
