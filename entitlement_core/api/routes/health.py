"""Health check endpoint (no authentication)."""

from fastapi import APIRouter, Request
from pydantic import BaseModel

from entitlement_core import __version__

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    env: str


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Liveness probe."""
    return HealthResponse(
        status="ok",
        version=__version__,
        env=request.app.state.settings.env,
    )
