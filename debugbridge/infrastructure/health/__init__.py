"""Debug endpoint health checks."""

from .monitor import HealthMonitor, endpoint_url, extract_field, version_token

__all__ = [
    "HealthMonitor",
    "endpoint_url",
    "extract_field",
    "version_token",
]
