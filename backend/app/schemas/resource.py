"""Resource snapshot schemas and per-type metrics variants."""

import math
from typing import Any, ClassVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from app.models.cloud_resource import CloudResource, ResourceType


def _aliases(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class ResourceMetrics(BaseModel):
    """
    Base class for the per-type metrics variants.

    Each variant declares only the fields its waste rule reads, with the
    per-field default applied when ingestion omits the field. Fields listed in
    ``config_keys`` are read from the resource configuration map (and take
    precedence over the metrics map); all other fields come from metrics.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    config_keys: ClassVar[frozenset[str]] = frozenset()

    @classmethod
    def from_maps(cls, config: dict[str, Any] | None, metrics: dict[str, Any]) -> "ResourceMetrics":
        """
        Build the variant from the raw configuration and metrics maps.

        Null values are treated as missing so that the field default applies.

        Raises:
            pydantic.ValidationError: If a present field has an unusable value
        """
        data = {key: value for key, value in metrics.items() if value is not None}
        for key, value in (config or {}).items():
            if key in cls.config_keys and value is not None:
                data[key] = value
        return cls.model_validate(data)

    def has_non_finite_values(self) -> bool:
        """Whether any numeric field is NaN or +/-Infinity."""
        for value in self.__dict__.values():
            if isinstance(value, float) and not math.isfinite(value):
                return True
        return False


class ComputeMetrics(ResourceMetrics):
    """Compute instance (and unknown-type fallback) metrics."""

    cpu_utilization: float = Field(
        default=0.0,
        validation_alias=_aliases(
            "avg_cpu_utilization", "avgCpuUtilization", "cpu_utilization", "cpuUtilization", "cpu"
        ),
    )
    memory_utilization: float = Field(
        default=100.0,
        validation_alias=_aliases(
            "avg_memory_utilization",
            "avgMemoryUtilization",
            "memory_utilization",
            "memoryUtilization",
            "memory",
        ),
    )


class DatabaseMetrics(ResourceMetrics):
    """Managed database / warehouse cluster metrics (CPU only)."""

    cpu_utilization: float = Field(
        default=0.0,
        validation_alias=_aliases(
            "avg_cpu_utilization", "avgCpuUtilization", "cpu_utilization", "cpuUtilization", "cpu"
        ),
    )
    memory_utilization: float | None = Field(
        default=None,
        validation_alias=_aliases(
            "avg_memory_utilization", "avgMemoryUtilization", "memory_utilization", "memoryUtilization"
        ),
    )


class BlockVolumeMetrics(ResourceMetrics):
    """Block volume attachment state (read from configuration)."""

    config_keys: ClassVar[frozenset[str]] = frozenset(
        {"state", "attached_to", "attachedTo", "volume_type", "volumeType"}
    )

    state: str | None = None
    attached_to: str | list[Any] | dict[str, Any] | None = Field(
        default=None, validation_alias=_aliases("attached_to", "attachedTo")
    )
    volume_type: str | None = Field(
        default=None, validation_alias=_aliases("volume_type", "volumeType")
    )
    iops_utilization: float | None = Field(
        default=None, validation_alias=_aliases("iops_utilization", "iopsUtilization")
    )

    @property
    def is_unattached(self) -> bool:
        return self.state == "available" or not self.attached_to


class SnapshotMetrics(ResourceMetrics):
    """Block-volume snapshot metrics."""

    source_volume_exists: bool | None = Field(
        default=None, validation_alias=_aliases("source_volume_exists", "sourceVolumeExists")
    )
    age_in_days: float = Field(default=0.0, validation_alias=_aliases("age_in_days", "ageInDays"))

    @property
    def is_orphaned(self) -> bool:
        return self.source_volume_exists is False


class StaticIpMetrics(ResourceMetrics):
    """Static IP association state."""

    config_keys: ClassVar[frozenset[str]] = frozenset({"association_id", "associationId"})

    is_associated: bool | None = Field(
        default=None, validation_alias=_aliases("is_associated", "isAssociated")
    )
    association_id: str | None = Field(
        default=None, validation_alias=_aliases("association_id", "associationId")
    )
    idle_days: float | None = Field(default=None, validation_alias=_aliases("idle_days", "idleDays"))


class GatewayMetrics(ResourceMetrics):
    """Gateway traffic metrics."""

    bytes_processed: float = Field(
        default=0.0, validation_alias=_aliases("bytes_processed", "bytesProcessed")
    )
    idle_time_percent: float | None = Field(
        default=None, validation_alias=_aliases("idle_time_percent", "idleTimePercent")
    )


class LoadBalancerMetrics(ResourceMetrics):
    """Load balancer traffic metrics."""

    request_count: float = Field(default=0.0, validation_alias=_aliases("request_count", "requestCount"))
    healthy_host_count: float | None = Field(
        default=None, validation_alias=_aliases("healthy_host_count", "healthyHostCount")
    )


class BucketMetrics(ResourceMetrics):
    """Object-storage bucket lifecycle state."""

    config_keys: ClassVar[frozenset[str]] = frozenset({"has_lifecycle_policy", "hasLifecyclePolicy"})

    has_lifecycle_policy: bool = Field(
        default=True, validation_alias=_aliases("has_lifecycle_policy", "hasLifecyclePolicy")
    )
    avg_object_age_days: float | None = Field(
        default=None, validation_alias=_aliases("avg_object_age_days", "avgObjectAgeDays")
    )
    access_frequency: str | None = Field(
        default=None, validation_alias=_aliases("access_frequency", "accessFrequency")
    )


class FunctionMetrics(ResourceMetrics):
    """Serverless function metrics."""

    config_keys: ClassVar[frozenset[str]] = frozenset({"memory_size", "memorySize"})

    memory_utilization: float = Field(
        default=100.0, validation_alias=_aliases("memory_utilization", "memoryUtilization", "memory")
    )
    # Kept optional: classification distinguishes "reported" from "missing"
    invocations: float | None = None
    max_memory_used_mb: float | None = Field(
        default=None, validation_alias=_aliases("max_memory_used_mb", "maxMemoryUsedMB")
    )
    memory_size: float | None = Field(default=None, validation_alias=_aliases("memory_size", "memorySize"))


METRICS_BY_TYPE: dict[str, type[ResourceMetrics]] = {
    ResourceType.EC2.value: ComputeMetrics,
    ResourceType.RDS.value: DatabaseMetrics,
    ResourceType.REDSHIFT.value: DatabaseMetrics,
    ResourceType.EBS.value: BlockVolumeMetrics,
    ResourceType.EBS_SNAPSHOT.value: SnapshotMetrics,
    ResourceType.ELASTIC_IP.value: StaticIpMetrics,
    ResourceType.NAT_GATEWAY.value: GatewayMetrics,
    ResourceType.LOAD_BALANCER.value: LoadBalancerMetrics,
    ResourceType.S3.value: BucketMetrics,
    ResourceType.LAMBDA.value: FunctionMetrics,
}


class ResourceSnapshot(BaseModel):
    """Read-only view of a resource handed to the decision core."""

    model_config = ConfigDict(frozen=True)

    resource_id: str
    tenant_id: str
    resource_type: str
    region: str = "us-east-1"
    config: dict[str, Any] = Field(default_factory=dict)
    metrics: dict[str, Any] | None = None
    monthly_cost: float | None = None

    def parsed_metrics(self) -> ResourceMetrics | None:
        """
        Parse the metrics map into the variant for this resource type.

        Returns:
            The metrics variant, or None when no metrics were reported

        Raises:
            pydantic.ValidationError: If a reported field has an unusable value
        """
        if self.metrics is None:
            return None
        variant = METRICS_BY_TYPE.get(self.resource_type, ComputeMetrics)
        return variant.from_maps(self.config, self.metrics)

    @classmethod
    def from_model(cls, resource: CloudResource) -> "ResourceSnapshot":
        """Build a snapshot from the inventory ORM row."""
        return cls(
            resource_id=resource.resource_id,
            tenant_id=resource.tenant_id,
            resource_type=resource.resource_type,
            region=resource.region,
            config=dict(resource.current_config or {}),
            metrics=dict(resource.utilization_metrics) if resource.utilization_metrics is not None else None,
            monthly_cost=resource.monthly_cost,
        )


class CloudResourceCreate(BaseModel):
    """Schema for ingesting a resource snapshot into the inventory table."""

    resource_id: str
    resource_type: str
    region: str = "us-east-1"
    current_config: dict[str, Any] = Field(default_factory=dict)
    utilization_metrics: dict[str, Any] | None = None
    monthly_cost: float | None = None
