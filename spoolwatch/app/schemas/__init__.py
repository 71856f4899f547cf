from spoolwatch.app.schemas.cloud import (
    CloudFilamentUsage,
    CloudTask,
)
from spoolwatch.app.schemas.health import HealthResponse

__all__ = [
    "CloudFilamentUsage",
    "CloudTask",
    "HealthResponse",
]
