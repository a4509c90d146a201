"""SQLAlchemy database models."""

from app.models.cloud_resource import CloudResource
from app.models.recommendation import Recommendation
from app.models.optimization_history import OptimizationHistory
from app.models.approval_request import ApprovalRequest
from app.models.system_config import SystemConfig

__all__ = [
    "CloudResource",
    "Recommendation",
    "OptimizationHistory",
    "ApprovalRequest",
    "SystemConfig",
]
