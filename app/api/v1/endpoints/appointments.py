"""Appointment endpoints."""

from datetime import date

from fastapi import APIRouter, Query, status

from app.dependencies import Availability, Bookings, CurrentActor
from app.schemas.appointments import (
    AppointmentCancel,
    AppointmentCreate,
    AppointmentReschedule,
    AppointmentResponse,
    AppointmentStatus,
    AppointmentStatusUpdate,
    BookingResponse,
    StatusHistoryResponse,
    VideoLinkResponse,
)
from app.schemas.availability import AvailabilityResponse
from app.schemas.common import ApiResponse

router = APIRouter()


def _criteria(
    status_filter: AppointmentStatus | None,
    from_date: date | None,
    to_date: date | None,
    include_inactive: bool,
) -> dict:
    return {
        "status": status_filter,
        "from_date": from_date,
        "to_date": to_date,
        "include_inactive": include_inactive,
    }


@router.post(
    "",
    response_model=ApiResponse[BookingResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Book an appointment",
)
async def create_appointment(
    data: AppointmentCreate,
    actor: CurrentActor,
    service: Bookings,
) -> ApiResponse[BookingResponse]:
    """
    Book an appointment for the authenticated patient, or for ``patient_id``
    when the caller is staff.

    Integration results (meeting link, payment link, notifications) are
    advisory and never fail the booking.
    """
    booking = await service.create(data, actor)
    return ApiResponse(data=booking, message="Appointment booked successfully")


@router.get(
    "/availability",
    response_model=ApiResponse[AvailabilityResponse],
    summary="Bookable slots of a clinician on a date",
)
async def get_availability(
    actor: CurrentActor,
    service: Availability,
    clinician_id: int = Query(..., gt=0),
    on_date: date = Query(..., alias="date"),
    centre_id: int | None = Query(None, gt=0),
) -> ApiResponse[AvailabilityResponse]:
    slots = await service.slots_for(clinician_id, on_date, centre_id)
    return ApiResponse(
        data=AvailabilityResponse(
            clinician_id=clinician_id,
            centre_id=centre_id,
            date=on_date,
            slots=slots,
        )
    )


@router.get(
    "/me",
    response_model=ApiResponse[list[AppointmentResponse]],
    summary="Appointments of the current patient or clinician",
)
async def list_my_appointments(
    actor: CurrentActor,
    service: Bookings,
    status_filter: AppointmentStatus | None = Query(None, alias="status"),
    from_date: date | None = Query(None),
    to_date: date | None = Query(None),
    include_inactive: bool = Query(False),
) -> ApiResponse[list[AppointmentResponse]]:
    appointments = await service.list_mine(
        actor, **_criteria(status_filter, from_date, to_date, include_inactive)
    )
    return ApiResponse(data=appointments)


@router.get(
    "/clinician/{clinician_id}",
    response_model=ApiResponse[list[AppointmentResponse]],
    summary="Appointments of a clinician",
)
async def list_clinician_appointments(
    clinician_id: int,
    actor: CurrentActor,
    service: Bookings,
    on_date: date | None = Query(None, alias="date"),
    status_filter: AppointmentStatus | None = Query(None, alias="status"),
    from_date: date | None = Query(None),
    to_date: date | None = Query(None),
    include_inactive: bool = Query(False),
) -> ApiResponse[list[AppointmentResponse]]:
    appointments = await service.list_for_clinician(
        clinician_id,
        actor,
        on_date=on_date,
        **_criteria(status_filter, from_date, to_date, include_inactive),
    )
    return ApiResponse(data=appointments)


@router.get(
    "/centre/{centre_id}",
    response_model=ApiResponse[list[AppointmentResponse]],
    summary="Appointments at a centre",
)
async def list_centre_appointments(
    centre_id: int,
    actor: CurrentActor,
    service: Bookings,
    status_filter: AppointmentStatus | None = Query(None, alias="status"),
    from_date: date | None = Query(None),
    to_date: date | None = Query(None),
    include_inactive: bool = Query(False),
) -> ApiResponse[list[AppointmentResponse]]:
    appointments = await service.list_for_centre(
        centre_id, actor, **_criteria(status_filter, from_date, to_date, include_inactive)
    )
    return ApiResponse(data=appointments)


@router.get(
    "/{appointment_id}",
    response_model=ApiResponse[AppointmentResponse],
    summary="Get appointment by ID",
)
async def get_appointment(
    appointment_id: int,
    actor: CurrentActor,
    service: Bookings,
) -> ApiResponse[AppointmentResponse]:
    return ApiResponse(data=await service.get(appointment_id, actor))


@router.get(
    "/{appointment_id}/history",
    response_model=ApiResponse[list[StatusHistoryResponse]],
    summary="Status history of an appointment",
)
async def get_appointment_history(
    appointment_id: int,
    actor: CurrentActor,
    service: Bookings,
) -> ApiResponse[list[StatusHistoryResponse]]:
    return ApiResponse(data=await service.history(appointment_id, actor))


@router.get(
    "/{appointment_id}/video-link",
    response_model=ApiResponse[VideoLinkResponse],
    summary="Meeting link of an online appointment",
)
async def get_video_link(
    appointment_id: int,
    actor: CurrentActor,
    service: Bookings,
) -> ApiResponse[VideoLinkResponse]:
    """Returns the stored link or creates one; 503 when video conferencing is unavailable."""
    return ApiResponse(data=await service.video_link(appointment_id, actor))


@router.patch(
    "/{appointment_id}/reschedule",
    response_model=ApiResponse[BookingResponse],
    summary="Move an appointment to a new time",
)
async def reschedule_appointment(
    appointment_id: int,
    data: AppointmentReschedule,
    actor: CurrentActor,
    service: Bookings,
) -> ApiResponse[BookingResponse]:
    booking = await service.reschedule(appointment_id, data, actor)
    return ApiResponse(data=booking, message="Appointment rescheduled successfully")


@router.patch(
    "/{appointment_id}/status",
    response_model=ApiResponse[AppointmentResponse],
    summary="Change appointment status",
)
async def update_appointment_status(
    appointment_id: int,
    data: AppointmentStatusUpdate,
    actor: CurrentActor,
    service: Bookings,
) -> ApiResponse[AppointmentResponse]:
    appointment = await service.update_status(appointment_id, data, actor)
    return ApiResponse(data=appointment, message=f"Appointment marked {appointment.status.value}")


@router.post(
    "/{appointment_id}/cancel",
    response_model=ApiResponse[BookingResponse],
    summary="Cancel an appointment",
)
async def cancel_appointment(
    appointment_id: int,
    data: AppointmentCancel,
    actor: CurrentActor,
    service: Bookings,
) -> ApiResponse[BookingResponse]:
    booking = await service.cancel(appointment_id, data, actor)
    return ApiResponse(data=booking, message="Appointment cancelled successfully")
