"""Recommendation Pydantic schemas."""

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.models.approval_request import ApprovalStatus
from app.models.recommendation import (
    Priority,
    RecommendationSource,
    RecommendationStatus,
    RecommendationType,
)


class RecommendationDraft(BaseModel):
    """Classified candidate ready to be handed to the state machine."""

    tenant_id: str
    resource_id: str
    resource_type: str
    type: RecommendationType
    priority: Priority = Priority.MEDIUM
    title: str
    description: str = ""
    current_config: dict[str, Any] = Field(default_factory=dict)
    recommended_config: dict[str, Any] = Field(default_factory=dict)
    projected_monthly_savings: float = Field(ge=0)
    risk_level: int = Field(ge=0, le=10)
    calculation_metadata: dict[str, Any] | None = None
    source: RecommendationSource = RecommendationSource.HEURISTIC

    @property
    def projected_annual_savings(self) -> float:
        return self.projected_monthly_savings * 12


class ExecutionCandidate(BaseModel):
    """The inputs the execution-mode resolver is allowed to look at."""

    model_config = ConfigDict(frozen=True)

    type: str
    risk_level: int = Field(ge=0, le=10)
    projected_annual_savings: float

    @classmethod
    def from_draft(cls, draft: RecommendationDraft) -> "ExecutionCandidate":
        return cls(
            type=draft.type.value,
            risk_level=draft.risk_level,
            projected_annual_savings=draft.projected_annual_savings,
        )


class RawRecommendation(BaseModel):
    """Recommendation as returned by the AI producer, before classification."""

    resource_id: str
    type: str
    title: str | None = None
    description: str | None = None
    recommended_config: dict[str, Any] = Field(default_factory=dict)
    projected_monthly_savings: float | None = None
    risk_level: int | None = None


class RecommendationRead(BaseModel):
    """Detached, read-only view of a recommendation."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: str
    resource_id: str
    resource_type: str
    type: str
    priority: str
    title: str
    description: str
    current_config: dict[str, Any]
    recommended_config: dict[str, Any]
    projected_monthly_savings: float
    risk_level: int
    execution_mode: str
    status: str
    source: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class RecommendationEvent(BaseModel):
    """Broadcast payload emitted on every recommendation state change."""

    type: str = Field(description="Event name, e.g. recommendation_created, recommendation_executed")
    recommendation_id: uuid.UUID
    resource_id: str
    status: RecommendationStatus
    tenant_id: str
    execution_mode: str | None = None
    title: str | None = None
    projected_monthly_savings: float | None = None
    error: str | None = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ApprovalDecision(BaseModel):
    """External approval event re-entering the state machine."""

    recommendation_id: uuid.UUID
    tenant_id: str
    decision: ApprovalStatus
    decided_by: str
    comments: str | None = None


class MutationResult(BaseModel):
    """Outcome reported by the cloud mutation executor."""

    success: bool
    after_config: dict[str, Any] = Field(default_factory=dict)
    actual_savings: float | None = None
    error_message: str | None = None


class ContextItem(BaseModel):
    """Item returned by the vector-context store."""

    id: str
    content: str = ""
    score: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
