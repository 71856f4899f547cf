from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    """Liveness probe payload."""

    model_config = ConfigDict(populate_by_name=True)

    status: str = "healthy"
    print_state: str = Field(..., alias="printState", description="Last gcode_state reported by the printer")
    print_running: bool = Field(..., alias="printRunning")
    timestamp: datetime
