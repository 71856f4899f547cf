from datetime import datetime, timezone

from fastapi import APIRouter, Request

from spoolwatch.app.schemas.health import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    """Liveness probe with the printer's current print state."""
    state = request.app.state.monitor.state
    return HealthResponse(
        print_state=state.gcode_state,
        print_running=state.is_print_running,
        timestamp=datetime.now(timezone.utc),
    )
