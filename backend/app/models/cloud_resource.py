"""Cloud resource inventory model (ingested snapshots)."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, Float, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.core.database import Base


class ResourceType(str, Enum):
    """Resource types known to the waste detector."""

    EC2 = "ec2"  # Compute instance
    RDS = "rds"  # Managed database
    REDSHIFT = "redshift"  # Data-warehouse cluster
    EBS = "ebs"  # Block volume
    EBS_SNAPSHOT = "ebs_snapshot"  # Block-volume snapshot
    ELASTIC_IP = "elastic_ip"  # Static IP
    NAT_GATEWAY = "nat_gateway"  # Gateway
    LOAD_BALANCER = "load_balancer"
    S3 = "s3"  # Object-storage bucket
    LAMBDA = "lambda"  # Serverless function


class CloudResource(Base):
    """
    Snapshot of a cloud resource as last reported by ingestion.

    Owned by the ingestion collaborator; the agent core only reads it.
    """

    __tablename__ = "cloud_resources"
    __table_args__ = (
        UniqueConstraint("tenant_id", "resource_id", name="uq_cloud_resources_tenant_resource"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    tenant_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )
    resource_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    # Stored as free text: ingestion may report types the detector does not know
    resource_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
    )
    region: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="us-east-1",
    )
    current_config: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )
    utilization_metrics: Mapped[dict | None] = mapped_column(
        JSON,
        nullable=True,
    )
    monthly_cost: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
    )
    last_analyzed: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        """String representation."""
        return f"<CloudResource {self.resource_type}:{self.resource_id}>"
