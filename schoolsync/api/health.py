"""Health check endpoint probed by the connectivity monitor."""

from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from schoolsync import __version__

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str


@router.api_route("/api/health", methods=["GET", "HEAD"], response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint; HEAD is what clients use to test reachability."""
    return HealthResponse(status="ok", version=__version__)
