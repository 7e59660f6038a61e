"""Health check endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from app.config import settings
from app.core.firebase import is_firebase_initialized
from app.core.redis_client import check_redis_connection
from app.database import check_database_connection
from app.integrations.base import NotificationChannel
from app.integrations.registry import Integrations, get_integrations

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str


class IntegrationStatus(BaseModel):
    """Whether each downstream provider has credentials."""

    video: bool
    whatsapp: bool
    push: bool
    payments: bool


class DetailedHealthResponse(BaseModel):
    status: str
    version: str
    environment: str
    database: str
    redis: str
    integrations: IntegrationStatus


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
)
async def health_check() -> HealthResponse:
    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        environment=settings.environment,
    )


@router.get(
    "/health/detailed",
    response_model=DetailedHealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Detailed health check",
)
async def detailed_health_check(
    integrations: Annotated[Integrations, Depends(get_integrations)],
) -> DetailedHealthResponse:
    """
    Database, Redis and integration status.

    The service is unhealthy without its database and degraded without
    Redis, which only backs the availability cache.
    """
    db_healthy = await check_database_connection()
    redis_healthy = await check_redis_connection()

    if not db_healthy:
        overall = "unhealthy"
    elif not redis_healthy:
        overall = "degraded"
    else:
        overall = "healthy"

    notifier = integrations.notifier
    clients = getattr(notifier, "clients", {})
    whatsapp = clients.get(NotificationChannel.WHATSAPP)

    return DetailedHealthResponse(
        status=overall,
        version=settings.app_version,
        environment=settings.environment,
        database="healthy" if db_healthy else "unhealthy",
        redis="healthy" if redis_healthy else "unhealthy",
        integrations=IntegrationStatus(
            video=integrations.video.is_configured,
            whatsapp=bool(whatsapp and whatsapp.is_configured),
            push=is_firebase_initialized(),
            payments=integrations.payments.is_configured,
        ),
    )


@router.get(
    "/ping",
    status_code=status.HTTP_200_OK,
    summary="Simple ping",
)
async def ping() -> dict[str, str]:
    return {"message": "pong"}
