"""Core exception classes for the FinOps agent."""


class FinOpsAgentError(Exception):
    """Base exception for all agent errors."""

    def __init__(self, message: str, details: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigurationError(FinOpsAgentError):
    """Raised when an administrative configuration update is invalid."""


class RecommendationNotFoundError(FinOpsAgentError):
    """Raised when a recommendation does not exist for the tenant."""


class InvalidTransitionError(FinOpsAgentError):
    """Raised when a recommendation status change is not allowed."""

    def __init__(self, current: str, target: str, recommendation_id: str | None = None) -> None:
        super().__init__(
            f"Cannot transition recommendation from '{current}' to '{target}'",
            details=recommendation_id,
        )
        self.current = current
        self.target = target


class CircuitBreakerOpenError(FinOpsAgentError):
    """Raised when a call is short-circuited by an OPEN circuit breaker."""
