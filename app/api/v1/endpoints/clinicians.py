"""Clinician availability endpoints."""

from fastapi import APIRouter

from app.dependencies import Availability, CurrentActor
from app.schemas.availability import AvailabilityRuleResponse, AvailabilityRulesReplace
from app.schemas.common import ApiResponse
from app.services.availability_service import to_rule_response

router = APIRouter()


@router.get(
    "/{clinician_id}/availability",
    response_model=ApiResponse[list[AvailabilityRuleResponse]],
    summary="Weekly availability rules of a clinician",
)
async def get_clinician_availability(
    clinician_id: int,
    actor: CurrentActor,
    service: Availability,
) -> ApiResponse[list[AvailabilityRuleResponse]]:
    rules = await service.rules_for(clinician_id)
    return ApiResponse(data=[to_rule_response(rule) for rule in rules])


@router.put(
    "/{clinician_id}/availability",
    response_model=ApiResponse[list[AvailabilityRuleResponse]],
    summary="Replace a clinician's weekly availability",
)
async def replace_clinician_availability(
    clinician_id: int,
    data: AvailabilityRulesReplace,
    actor: CurrentActor,
    service: Availability,
) -> ApiResponse[list[AvailabilityRuleResponse]]:
    """
    Replace every rule of the clinician in one transaction. Staff only.

    An empty list clears the schedule.
    """
    rules = await service.replace_rules(clinician_id, data.rules, actor)
    return ApiResponse(
        data=[to_rule_response(rule) for rule in rules],
        message="Availability updated successfully",
    )
