from fastapi import APIRouter, status

from app.schemas.auth import HealthCheck

router = APIRouter()


@router.get(
    "/health",
    tags=["healthcheck"],
    summary="Perform a Health Check",
    response_description="Return HTTP Status Code 200 (OK)",
    status_code=status.HTTP_200_OK,
    response_model=HealthCheck,
)
def get_health() -> HealthCheck:
    """Liveness probe, does not touch the session or the chain."""
    return HealthCheck(status="ok")
