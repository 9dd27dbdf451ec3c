"""debugbridge Domain - core entities and status aggregation."""

from .models import ForwardRule, HealthResult, StatusSnapshot, SupervisorState
from .status import aggregate

__all__ = [
    "ForwardRule",
    "HealthResult",
    "StatusSnapshot",
    "SupervisorState",
    "aggregate",
]
