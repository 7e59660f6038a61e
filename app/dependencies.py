"""FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import UnauthorizedException
from app.core.redis_client import CacheManager, get_cache_manager
from app.core.security import decode_access_token
from app.database import get_db
from app.integrations.registry import Integrations, get_integrations
from app.repositories.base import SchedulingGateway
from app.repositories.scheduling_repository import SchedulingRepository
from app.schemas.auth import Actor, TokenPayload
from app.services.availability_service import AvailabilityService
from app.services.booking_service import BookingService

# Security
security = HTTPBearer(auto_error=False)


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> Actor:
    """
    Build the acting user from the bearer token.

    Raises:
        UnauthorizedException: If the token is missing, invalid or expired
    """
    if credentials is None:
        raise UnauthorizedException("Not authenticated")

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise UnauthorizedException("Could not validate credentials")

    try:
        claims = TokenPayload.model_validate(payload)
        user_id = int(claims.sub)
    except (ValidationError, ValueError):
        raise UnauthorizedException("Invalid token claims")

    return Actor(user_id=user_id, user_type=claims.user_type, roles=claims.roles)


def get_gateway(db: Annotated[AsyncSession, Depends(get_db)]) -> SchedulingGateway:
    return SchedulingRepository(db)


def get_availability_service(
    gateway: Annotated[SchedulingGateway, Depends(get_gateway)],
    cache: Annotated[CacheManager | None, Depends(get_cache_manager)],
) -> AvailabilityService:
    return AvailabilityService(gateway, cache)


def get_booking_service(
    gateway: Annotated[SchedulingGateway, Depends(get_gateway)],
    integrations: Annotated[Integrations, Depends(get_integrations)],
    cache: Annotated[CacheManager | None, Depends(get_cache_manager)],
) -> BookingService:
    return BookingService(gateway, integrations, cache=cache)


# Type aliases for dependency injection
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
Bookings = Annotated[BookingService, Depends(get_booking_service)]
Availability = Annotated[AvailabilityService, Depends(get_availability_service)]
