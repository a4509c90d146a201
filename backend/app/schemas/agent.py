"""Agent configuration and cycle reporting schemas."""

from pydantic import BaseModel, ConfigDict, Field, StrictBool

from app.models.recommendation import RecommendationType


class AgentConfiguration(BaseModel):
    """
    Snapshot of the runtime agent configuration.

    Instances are immutable; the config store swaps in a new snapshot on
    reload instead of mutating a shared one.
    """

    model_config = ConfigDict(frozen=True)

    autonomous_mode: StrictBool = False
    ai_mode: StrictBool = False
    max_autonomous_risk_level: int = Field(default=5, ge=0, le=10)
    approval_required_above_savings: float = Field(
        default=10000.0,
        ge=0,
        description="Projected annual savings (USD) above which approval is always required",
    )
    auto_execute_types: tuple[RecommendationType, ...] = ()

    def allows_type(self, recommendation_type: str) -> bool:
        """Whether the type is on the autonomous allow-list."""
        return any(t.value == recommendation_type for t in self.auto_execute_types)


class CycleSummary(BaseModel):
    """Counters reported by one agent cycle."""

    cycle_number: int
    resources_scanned: int = 0
    wasteful_resources: int = 0
    selected: int = 0
    created: int = 0
    deduplicated: int = 0
    skipped_no_cost: int = 0
    autonomous: int = 0
    hitl: int = 0
    executed: int = 0
    failed: int = 0
    errors: int = 0
    drained: int = 0
    ai_recommendations: int = 0
    total_monthly_savings: float = 0.0
    duration_seconds: float = 0.0
