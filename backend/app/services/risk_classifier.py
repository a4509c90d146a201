"""Recommendation classification, risk scoring, savings estimation and execution-mode resolution."""

import math
import random
from typing import Any, NamedTuple

import structlog
from pydantic import ValidationError

from app.models.cloud_resource import ResourceType
from app.models.recommendation import ExecutionMode, Priority, RecommendationSource, RecommendationType
from app.schemas.agent import AgentConfiguration
from app.schemas.recommendation import ExecutionCandidate, RawRecommendation, RecommendationDraft
from app.schemas.resource import (
    BlockVolumeMetrics,
    FunctionMetrics,
    GatewayMetrics,
    LoadBalancerMetrics,
    ResourceSnapshot,
    SnapshotMetrics,
)

logger = structlog.get_logger()

RT = RecommendationType

# Low (2-4): deleting clearly unused resources or reversible config changes
# Medium (5-6): changes that affect resource configuration or availability
# High (7-8): changes that affect routing / traffic
RISK_BY_TYPE: dict[RecommendationType, int] = {
    RT.DELETE_UNATTACHED: 2,
    RT.RELEASE_ADDRESS: 2,
    RT.DELETE_ORPHANED: 3,
    RT.DELETE_UNUSED: 4,
    RT.SNAPSHOT_CLEANUP: 4,
    RT.STORAGE_TIERING: 4,
    RT.LAMBDA_RIGHTSIZING: 4,
    RT.VOLUME_RIGHTSIZING: 5,
    RT.RIGHTSIZING: 6,
    RT.SCHEDULING: 6,
    RT.GATEWAY_CONSOLIDATION: 7,
    RT.LB_CONSOLIDATION: 7,
}
DEFAULT_RISK_LEVEL = 5

# (low, high) fraction of monthly cost saved
SAVINGS_BANDS: dict[RecommendationType, tuple[float, float]] = {
    RT.DELETE_UNATTACHED: (1.0, 1.0),
    RT.RELEASE_ADDRESS: (1.0, 1.0),
    RT.DELETE_ORPHANED: (1.0, 1.0),
    RT.DELETE_UNUSED: (1.0, 1.0),
    RT.SNAPSHOT_CLEANUP: (1.0, 1.0),
    RT.RIGHTSIZING: (0.30, 0.60),
    RT.SCHEDULING: (0.50, 0.70),
    RT.STORAGE_TIERING: (0.60, 0.80),
    RT.VOLUME_RIGHTSIZING: (0.20, 0.40),
    RT.LAMBDA_RIGHTSIZING: (0.30, 0.50),
    RT.GATEWAY_CONSOLIDATION: (0.40, 0.60),
    RT.LB_CONSOLIDATION: (0.40, 0.60),
}
DEFAULT_SAVINGS_BAND = (0.20, 0.40)

REDSHIFT_RIGHTSIZING_PROBABILITY = 0.7
GATEWAY_IDLE_DELETE_PERCENT = 90.0
FUNCTION_DELETE_INVOCATIONS = 100

_TITLES: dict[RecommendationType, str] = {
    RT.RIGHTSIZING: "Downsize Underutilized {rtype} Instance",
    RT.SCHEDULING: "Enable Scheduled Shutdown for {rtype}",
    RT.STORAGE_TIERING: "Move {rtype} Data to Cold Storage",
    RT.DELETE_UNATTACHED: "Delete Unattached Block Volume",
    RT.VOLUME_RIGHTSIZING: "Downgrade Block Volume Type",
    RT.DELETE_ORPHANED: "Delete Orphaned Volume Snapshot",
    RT.SNAPSHOT_CLEANUP: "Clean Up Aged Volume Snapshot",
    RT.RELEASE_ADDRESS: "Release Unassociated Static IP",
    RT.DELETE_UNUSED: "Delete Unused {rtype}",
    RT.GATEWAY_CONSOLIDATION: "Consolidate Gateway Traffic",
    RT.LB_CONSOLIDATION: "Consolidate Load Balancer Resources",
    RT.LAMBDA_RIGHTSIZING: "Right-Size Function Memory Allocation",
}


class SavingsEstimate(NamedTuple):
    """Projected monthly savings and the fraction of cost it represents."""

    monthly_savings: float
    percentage: float


def _metrics_or_none(snapshot: ResourceSnapshot):
    try:
        return snapshot.parsed_metrics()
    except ValidationError:
        return None


def _volume_view(snapshot: ResourceSnapshot) -> BlockVolumeMetrics:
    # Attachment state lives in config, so it is readable even without metrics
    return BlockVolumeMetrics.from_maps(snapshot.config, snapshot.metrics or {})


def classify(snapshot: ResourceSnapshot, rng: random.Random | None = None) -> RecommendationType:
    """
    Map a resource to the remediation type to recommend.

    Args:
        snapshot: Resource snapshot
        rng: Random source (only warehouse clusters use it)

    Returns:
        Recommendation type
    """
    rng = rng or random.Random()
    metrics = _metrics_or_none(snapshot)
    rtype = snapshot.resource_type

    if rtype == ResourceType.EBS.value:
        try:
            volume = _volume_view(snapshot)
        except ValidationError:
            return RT.VOLUME_RIGHTSIZING
        return RT.DELETE_UNATTACHED if volume.is_unattached else RT.VOLUME_RIGHTSIZING

    if rtype == ResourceType.EBS_SNAPSHOT.value:
        if isinstance(metrics, SnapshotMetrics) and metrics.is_orphaned:
            return RT.DELETE_ORPHANED
        return RT.SNAPSHOT_CLEANUP

    if rtype == ResourceType.ELASTIC_IP.value:
        return RT.RELEASE_ADDRESS

    if rtype == ResourceType.NAT_GATEWAY.value:
        if (
            isinstance(metrics, GatewayMetrics)
            and metrics.idle_time_percent is not None
            and metrics.idle_time_percent > GATEWAY_IDLE_DELETE_PERCENT
        ):
            return RT.DELETE_UNUSED
        return RT.GATEWAY_CONSOLIDATION

    if rtype == ResourceType.LOAD_BALANCER.value:
        if isinstance(metrics, LoadBalancerMetrics) and metrics.healthy_host_count == 0:
            return RT.DELETE_UNUSED
        return RT.LB_CONSOLIDATION

    if rtype == ResourceType.S3.value:
        return RT.STORAGE_TIERING

    if rtype == ResourceType.LAMBDA.value:
        if (
            isinstance(metrics, FunctionMetrics)
            and metrics.invocations is not None
            and metrics.invocations < FUNCTION_DELETE_INVOCATIONS
        ):
            return RT.DELETE_UNUSED
        return RT.LAMBDA_RIGHTSIZING

    if rtype == ResourceType.REDSHIFT.value:
        # Scheduling fits dev clusters, rightsizing fits production ones
        return RT.RIGHTSIZING if rng.random() < REDSHIFT_RIGHTSIZING_PROBABILITY else RT.SCHEDULING

    # EC2, RDS and unknown types
    return RT.RIGHTSIZING


def risk_of(recommendation_type: str | RecommendationType) -> int:
    """Return the fixed 0-10 risk score for a recommendation type."""
    try:
        return RISK_BY_TYPE[RecommendationType(recommendation_type)]
    except (ValueError, KeyError):
        return DEFAULT_RISK_LEVEL


def priority_for_risk(risk_level: int) -> Priority:
    """Map a risk score to a priority bucket."""
    if risk_level <= 3:
        return Priority.MEDIUM
    if risk_level <= 6:
        return Priority.HIGH
    return Priority.CRITICAL


def savings_band(recommendation_type: str | RecommendationType) -> tuple[float, float]:
    """Return the (low, high) savings fraction for a recommendation type."""
    try:
        return SAVINGS_BANDS[RecommendationType(recommendation_type)]
    except (ValueError, KeyError):
        return DEFAULT_SAVINGS_BAND


def estimate_savings(
    recommendation_type: str | RecommendationType,
    monthly_cost: float,
    rng: random.Random | None = None,
) -> SavingsEstimate:
    """
    Estimate monthly savings as a random fraction of cost within the type's band.

    The result is floored to whole cents so it never exceeds
    ``monthly_cost * high`` and is never negative.

    Args:
        recommendation_type: Recommendation type
        monthly_cost: Resource monthly cost (USD)
        rng: Random source

    Returns:
        SavingsEstimate(monthly_savings, percentage)
    """
    rng = rng or random.Random()
    low, high = savings_band(recommendation_type)
    percentage = low if low == high else rng.uniform(low, high)
    percentage = min(max(percentage, low), high)

    if not math.isfinite(monthly_cost) or monthly_cost <= 0:
        return SavingsEstimate(0.0, percentage)

    monthly_savings = math.floor(monthly_cost * percentage * 100) / 100
    return SavingsEstimate(max(monthly_savings, 0.0), percentage)


def resolve_execution_mode(candidate: ExecutionCandidate, config: AgentConfiguration) -> ExecutionMode:
    """
    Decide whether a candidate may execute without human approval.

    Pure function of its two arguments. Autonomous requires all of: the global
    toggle on, risk at or below the configured maximum, projected annual
    savings at or below the approval ceiling, and the type on the allow-list.

    Args:
        candidate: Type, risk and projected annual savings of the recommendation
        config: Agent configuration snapshot

    Returns:
        ExecutionMode.AUTONOMOUS or ExecutionMode.HITL
    """
    if not config.autonomous_mode:
        return ExecutionMode.HITL
    if candidate.risk_level > config.max_autonomous_risk_level:
        return ExecutionMode.HITL
    if candidate.projected_annual_savings > config.approval_required_above_savings:
        return ExecutionMode.HITL
    if not config.allows_type(candidate.type):
        return ExecutionMode.HITL
    return ExecutionMode.AUTONOMOUS


def _format_savings(monthly_savings: float) -> str:
    if monthly_savings < 1000:
        return f"${monthly_savings:.0f}"
    return f"${monthly_savings / 1000:.0f}K"


def build_title(recommendation_type: RecommendationType, resource_type: str) -> str:
    template = _TITLES.get(recommendation_type, "Optimize {rtype} Configuration")
    return template.format(rtype=resource_type)


def build_description(
    recommendation_type: RecommendationType,
    snapshot: ResourceSnapshot,
    monthly_savings: float,
    reason: str | None = None,
) -> str:
    """Human-readable justification for the recommendation."""
    savings = _format_savings(monthly_savings)
    metrics = snapshot.metrics or {}
    config = snapshot.config or {}

    if recommendation_type == RT.RIGHTSIZING:
        detail = reason or "low utilization"
        return f"Resource shows {detail}. Recommend downsizing to reduce costs by approximately {savings}/month."
    if recommendation_type == RT.SCHEDULING:
        return (
            "Resource usage patterns suggest potential for scheduled shutdown during "
            f"off-peak hours. Estimated savings: {savings}/month."
        )
    if recommendation_type == RT.STORAGE_TIERING:
        age = metrics.get("avgObjectAgeDays", metrics.get("avg_object_age_days", 0))
        return (
            f"Bucket has no lifecycle policy and objects average {age} days old. "
            f"Moving cold data to archival storage could save {savings}/month."
        )
    if recommendation_type == RT.DELETE_UNATTACHED:
        return f"Block volume is unattached and incurring storage costs. Delete it to save {savings}/month."
    if recommendation_type == RT.VOLUME_RIGHTSIZING:
        return f"Block volume uses a legacy volume class. Migrate to gp3 to save {savings}/month."
    if recommendation_type == RT.DELETE_ORPHANED:
        return f"Snapshot's source volume no longer exists. Delete this orphaned snapshot to save {savings}/month."
    if recommendation_type == RT.SNAPSHOT_CLEANUP:
        age = metrics.get("ageInDays", metrics.get("age_in_days", 0))
        return f"Snapshot is {age} days old. Apply a lifecycle policy or delete to save {savings}/month."
    if recommendation_type == RT.RELEASE_ADDRESS:
        return f"Static IP is not associated with a running attachment. Release it to save {savings}/month."
    if recommendation_type == RT.LAMBDA_RIGHTSIZING:
        allocated = config.get("memorySize", config.get("memory_size", 0))
        return f"Function is over-provisioned ({allocated}MB allocated). Reduce memory to save {savings}/month."
    if recommendation_type in (RT.GATEWAY_CONSOLIDATION, RT.LB_CONSOLIDATION):
        return f"Low traffic detected. Consolidate with other instances to save {savings}/month."
    if recommendation_type == RT.DELETE_UNUSED:
        return f"{snapshot.resource_type} is unused. Delete to save {savings}/month."
    return f"Resource analysis indicates optimization opportunity. Estimated savings: {savings}/month."


def build_recommended_config(
    recommendation_type: RecommendationType, snapshot: ResourceSnapshot
) -> dict[str, Any]:
    """Target configuration recorded as the 'after' snapshot."""
    current = dict(snapshot.config or {})
    metrics = snapshot.metrics or {}

    if recommendation_type == RT.RIGHTSIZING:
        return {**current, "instanceSize": "reduced", "recommendation": "Downsize by 1-2 tiers"}
    if recommendation_type == RT.SCHEDULING:
        return {**current, "schedule": "Mon-Fri 8AM-6PM", "autoShutdown": True}
    if recommendation_type == RT.STORAGE_TIERING:
        return {**current, "storageClass": "GLACIER", "tieringEnabled": True, "lifecycleRules": True}
    if recommendation_type in (RT.DELETE_UNATTACHED, RT.DELETE_ORPHANED, RT.DELETE_UNUSED):
        return {"action": "DELETE", "previousState": current, "reason": "Resource is unused/orphaned"}
    if recommendation_type == RT.VOLUME_RIGHTSIZING:
        return {**current, "volumeType": "gp3", "iops": min(3000, current.get("iops") or 3000)}
    if recommendation_type == RT.SNAPSHOT_CLEANUP:
        return {
            "action": "DELETE_OR_ARCHIVE",
            "lifecyclePolicy": {"deleteAfterDays": 90, "archiveAfterDays": 30},
        }
    if recommendation_type == RT.RELEASE_ADDRESS:
        return {"action": "RELEASE", "previousState": current, "reason": "Static IP is unassociated"}
    if recommendation_type == RT.LAMBDA_RIGHTSIZING:
        current_memory = current.get("memorySize") or current.get("memory_size") or 1024
        used = metrics.get("maxMemoryUsedMB") or metrics.get("max_memory_used_mb") or current_memory
        # 1.5x observed peak, rounded up to a 64MB step, never below 128MB
        recommended = max(128, math.ceil(used * 1.5 / 64) * 64)
        return {**current, "memorySize": recommended}
    if recommendation_type == RT.GATEWAY_CONSOLIDATION:
        return {**current, "recommendation": "Consolidate with other gateways or use VPC endpoints"}
    if recommendation_type == RT.LB_CONSOLIDATION:
        return {**current, "recommendation": "Consolidate targets or delete if unused"}
    return {**current, "optimized": True}


def build_candidate(
    snapshot: ResourceSnapshot,
    rng: random.Random | None = None,
    reason: str | None = None,
) -> RecommendationDraft | None:
    """
    Classify a wasteful resource into a recommendation draft.

    Resources with missing, zero or negative monthly cost are skipped.

    Args:
        snapshot: Wasteful resource snapshot
        rng: Random source for type choice and savings band
        reason: Waste detector reason, used in the description

    Returns:
        RecommendationDraft, or None if the resource has no usable cost
    """
    rng = rng or random.Random()
    cost = snapshot.monthly_cost or 0.0
    if not math.isfinite(cost) or cost <= 0:
        logger.info(
            "classifier.skipped_no_cost",
            resource_id=snapshot.resource_id,
            monthly_cost=snapshot.monthly_cost,
        )
        return None

    recommendation_type = classify(snapshot, rng)
    risk_level = risk_of(recommendation_type)
    estimate = estimate_savings(recommendation_type, cost, rng)

    return RecommendationDraft(
        tenant_id=snapshot.tenant_id,
        resource_id=snapshot.resource_id,
        resource_type=snapshot.resource_type,
        type=recommendation_type,
        priority=priority_for_risk(risk_level),
        title=build_title(recommendation_type, snapshot.resource_type),
        description=build_description(recommendation_type, snapshot, estimate.monthly_savings, reason),
        current_config=dict(snapshot.config or {}),
        recommended_config=build_recommended_config(recommendation_type, snapshot),
        projected_monthly_savings=estimate.monthly_savings,
        risk_level=risk_level,
        calculation_metadata={
            "resource_monthly_cost": cost,
            "savings_percentage": round(estimate.percentage * 100, 2),
            "methodology": "Heuristics-based analysis using utilization patterns and cost data",
            "detection_reason": reason,
        },
        source=RecommendationSource.HEURISTIC,
    )


def build_candidate_from_raw(
    raw: RawRecommendation,
    snapshot: ResourceSnapshot,
    rng: random.Random | None = None,
) -> RecommendationDraft | None:
    """
    Normalize an AI-produced recommendation into a draft.

    Risk always comes from the fixed table. An unknown type is replaced by the
    heuristic classification. Producer savings are capped at the type's band
    and floored to cents; missing or unusable savings are estimated.

    Returns:
        RecommendationDraft, or None if the resource has no usable cost
    """
    rng = rng or random.Random()
    cost = snapshot.monthly_cost or 0.0
    if not math.isfinite(cost) or cost <= 0:
        logger.info("classifier.skipped_no_cost", resource_id=snapshot.resource_id, source="ai")
        return None

    try:
        recommendation_type = RecommendationType(raw.type)
    except ValueError:
        recommendation_type = classify(snapshot, rng)
        logger.info(
            "classifier.ai_type_replaced",
            resource_id=snapshot.resource_id,
            proposed=raw.type,
            replacement=recommendation_type.value,
        )

    risk_level = risk_of(recommendation_type)
    proposed = raw.projected_monthly_savings
    if proposed is not None and math.isfinite(proposed) and proposed >= 0:
        _, high = savings_band(recommendation_type)
        monthly_savings = math.floor(min(proposed, cost * high) * 100) / 100
        percentage = monthly_savings / cost
    else:
        monthly_savings, percentage = estimate_savings(recommendation_type, cost, rng)

    return RecommendationDraft(
        tenant_id=snapshot.tenant_id,
        resource_id=snapshot.resource_id,
        resource_type=snapshot.resource_type,
        type=recommendation_type,
        priority=priority_for_risk(risk_level),
        title=raw.title or build_title(recommendation_type, snapshot.resource_type),
        description=raw.description or build_description(recommendation_type, snapshot, monthly_savings),
        current_config=dict(snapshot.config or {}),
        recommended_config=raw.recommended_config or build_recommended_config(recommendation_type, snapshot),
        projected_monthly_savings=monthly_savings,
        risk_level=risk_level,
        calculation_metadata={
            "resource_monthly_cost": cost,
            "savings_percentage": round(percentage * 100, 2),
            "methodology": "AI analysis normalized to heuristic risk and savings bands",
        },
        source=RecommendationSource.AI,
    )
