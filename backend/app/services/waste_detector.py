"""Per-resource-type waste detection rules."""

from typing import Callable, Iterable, NamedTuple

import structlog
from pydantic import ValidationError

from app.models.cloud_resource import ResourceType
from app.schemas.resource import (
    BlockVolumeMetrics,
    BucketMetrics,
    ComputeMetrics,
    DatabaseMetrics,
    FunctionMetrics,
    GatewayMetrics,
    LoadBalancerMetrics,
    ResourceMetrics,
    ResourceSnapshot,
    SnapshotMetrics,
    StaticIpMetrics,
)

logger = structlog.get_logger()

# Thresholds (all comparisons are strict)
CPU_THRESHOLD_PERCENT = 20.0
MEMORY_THRESHOLD_PERCENT = 20.0
FUNCTION_MEMORY_THRESHOLD_PERCENT = 50.0
SNAPSHOT_MAX_AGE_DAYS = 90.0
GATEWAY_MIN_BYTES = 1073741824  # 1 GiB in the measurement window
LEGACY_VOLUME_TYPES = frozenset({"gp2"})


class WasteVerdict(NamedTuple):
    """Detection result; unpacks as ``(is_wasteful, reason)``."""

    is_wasteful: bool
    reason: str


def _compute_rule(m: ComputeMetrics) -> WasteVerdict:
    cpu, memory = m.cpu_utilization, m.memory_utilization
    if cpu < CPU_THRESHOLD_PERCENT and memory < MEMORY_THRESHOLD_PERCENT:
        return WasteVerdict(
            True,
            f"CPU {cpu:.1f}% and memory {memory:.1f}% both below "
            f"{CPU_THRESHOLD_PERCENT:.0f}% threshold",
        )
    return WasteVerdict(False, f"CPU {cpu:.1f}% / memory {memory:.1f}% within thresholds")


def _database_rule(m: DatabaseMetrics) -> WasteVerdict:
    cpu = m.cpu_utilization
    if cpu < CPU_THRESHOLD_PERCENT:
        return WasteVerdict(True, f"CPU {cpu:.1f}% below {CPU_THRESHOLD_PERCENT:.0f}% threshold")
    return WasteVerdict(False, f"CPU {cpu:.1f}% within threshold")


def _volume_rule(m: BlockVolumeMetrics) -> WasteVerdict:
    reasons = []
    if m.is_unattached:
        reasons.append("volume is unattached")
    if m.volume_type in LEGACY_VOLUME_TYPES:
        reasons.append(f"legacy volume class {m.volume_type}")
    if reasons:
        return WasteVerdict(True, " and ".join(reasons))
    return WasteVerdict(False, "volume attached with current volume class")


def _snapshot_rule(m: SnapshotMetrics) -> WasteVerdict:
    reasons = []
    if m.is_orphaned:
        reasons.append("source volume no longer exists")
    if m.age_in_days > SNAPSHOT_MAX_AGE_DAYS:
        reasons.append(f"snapshot is {m.age_in_days:.0f} days old (> {SNAPSHOT_MAX_AGE_DAYS:.0f})")
    if reasons:
        return WasteVerdict(True, " and ".join(reasons))
    return WasteVerdict(False, f"snapshot is {m.age_in_days:.0f} days old with live source volume")


def _static_ip_rule(m: StaticIpMetrics) -> WasteVerdict:
    if m.is_associated is False or not m.association_id:
        return WasteVerdict(True, "address is not associated with a live attachment")
    return WasteVerdict(False, f"address associated ({m.association_id})")


def _gateway_rule(m: GatewayMetrics) -> WasteVerdict:
    if m.bytes_processed < GATEWAY_MIN_BYTES:
        return WasteVerdict(
            True, f"processed {m.bytes_processed:.0f} bytes, below 1 GiB in the measurement window"
        )
    return WasteVerdict(False, f"processed {m.bytes_processed:.0f} bytes")


def _load_balancer_rule(m: LoadBalancerMetrics) -> WasteVerdict:
    if m.request_count == 0:
        return WasteVerdict(True, "load balancer received zero requests")
    return WasteVerdict(False, f"load balancer served {m.request_count:.0f} requests")


def _bucket_rule(m: BucketMetrics) -> WasteVerdict:
    if not m.has_lifecycle_policy:
        return WasteVerdict(True, "bucket has no lifecycle policy configured")
    return WasteVerdict(False, "bucket lifecycle policy configured")


def _function_rule(m: FunctionMetrics) -> WasteVerdict:
    invocations = m.invocations if m.invocations is not None else 0.0
    reasons = []
    if m.memory_utilization < FUNCTION_MEMORY_THRESHOLD_PERCENT:
        reasons.append(
            f"memory utilization {m.memory_utilization:.1f}% below "
            f"{FUNCTION_MEMORY_THRESHOLD_PERCENT:.0f}%"
        )
    if invocations == 0:
        reasons.append("zero invocations")
    if reasons:
        return WasteVerdict(True, " and ".join(reasons))
    return WasteVerdict(
        False, f"memory utilization {m.memory_utilization:.1f}% with {invocations:.0f} invocations"
    )


_RULES: dict[str, Callable[..., WasteVerdict]] = {
    ResourceType.EC2.value: _compute_rule,
    ResourceType.RDS.value: _database_rule,
    ResourceType.REDSHIFT.value: _database_rule,
    ResourceType.EBS.value: _volume_rule,
    ResourceType.EBS_SNAPSHOT.value: _snapshot_rule,
    ResourceType.ELASTIC_IP.value: _static_ip_rule,
    ResourceType.NAT_GATEWAY.value: _gateway_rule,
    ResourceType.LOAD_BALANCER.value: _load_balancer_rule,
    ResourceType.S3.value: _bucket_rule,
    ResourceType.LAMBDA.value: _function_rule,
}


def detect(snapshot: ResourceSnapshot) -> WasteVerdict:
    """
    Decide whether a resource is wasteful.

    Never raises. Resources without metrics, with metrics that fail to parse,
    or with any NaN/Infinity numeric field are reported healthy. Unknown
    resource types fall back to the compute-instance rule.

    Args:
        snapshot: Resource snapshot to evaluate

    Returns:
        WasteVerdict(is_wasteful, reason)
    """
    if snapshot.metrics is None:
        return WasteVerdict(False, "no metrics")

    try:
        metrics: ResourceMetrics | None = snapshot.parsed_metrics()
    except ValidationError as e:
        logger.warning(
            "waste_detector.invalid_metrics",
            resource_id=snapshot.resource_id,
            resource_type=snapshot.resource_type,
            error_count=e.error_count(),
        )
        return WasteVerdict(False, "invalid metrics")

    if metrics is None:
        return WasteVerdict(False, "no metrics")

    if metrics.has_non_finite_values():
        return WasteVerdict(False, "non-finite metric values")

    rule = _RULES.get(snapshot.resource_type, _compute_rule)
    return rule(metrics)


def find_wasteful(snapshots: Iterable[ResourceSnapshot]) -> list[tuple[ResourceSnapshot, WasteVerdict]]:
    """Return the wasteful snapshots paired with their verdicts."""
    wasteful = []
    for snapshot in snapshots:
        verdict = detect(snapshot)
        if verdict.is_wasteful:
            wasteful.append((snapshot, verdict))
    return wasteful
