"""Health check and metrics endpoints."""

from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from wayfare import __version__
from wayfare.core.database import check_database_connection

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response with database status."""

    status: str
    version: str
    database: bool


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Report liveness and whether the database answers."""
    db_ok = await check_database_connection(request.app.state.db_engine)
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=__version__,
        database=db_ok,
    )


@router.get("/metrics")
async def metrics() -> Response:
    """Expose metrics in the Prometheus text exposition format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
