"""Tests for the appointment and clinician availability endpoints."""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from httpx import AsyncClient

from app.core.security import create_access_token
from app.dependencies import get_gateway
from app.integrations.base import IntegrationError
from app.repositories.scheduling_repository import SchedulingRepository
from app.schemas.auth import UserType
from tests.conftest import (
    CLINICIAN_USER_ID,
    OTHER_PATIENT_USER_ID,
    bearer,
    local_datetime,
)


def booking_payload(start, **overrides) -> dict:
    payload = {
        "clinician_id": 1,
        "centre_id": 1,
        "appointment_type": "IN_PERSON",
        "scheduled_start_at": start.isoformat(),
    }
    payload.update(overrides)
    return payload


async def book(client: AsyncClient, headers: dict, start, **overrides) -> dict:
    response = await client.post(
        "/api/v1/appointments",
        json=booking_payload(start, **overrides),
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


@pytest.mark.asyncio
async def test_create_appointment(client: AsyncClient, patient_headers: dict, monday):
    """Test booking returns the success envelope with advisory fields."""
    response = await client.post(
        "/api/v1/appointments",
        json=booking_payload(local_datetime(monday, 9)),
        headers=patient_headers,
    )

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Appointment booked successfully"
    appointment = body["data"]["appointment"]
    assert appointment["status"] == "BOOKED"
    assert appointment["source"] == "WEB_PATIENT"
    assert appointment["duration_minutes"] == 30
    assert body["data"]["meet_link"] is None
    assert body["data"]["payment_link"]["amount"] == "800.00"


@pytest.mark.asyncio
async def test_create_appointment_naive_time(client: AsyncClient, patient_headers: dict, monday):
    """Test a start time without offset is read in the centre's timezone."""
    data = await book(client, patient_headers, local_datetime(monday, 9).replace(tzinfo=None))

    start = datetime.fromisoformat(data["appointment"]["scheduled_start_at"])
    assert start == local_datetime(monday, 9)
    assert start.utcoffset() == timedelta(0)


@pytest.mark.asyncio
async def test_create_appointment_requires_auth(client: AsyncClient, monday):
    """Test booking without a token is rejected."""
    response = await client.post(
        "/api/v1/appointments",
        json=booking_payload(local_datetime(monday, 9)),
    )

    assert response.status_code == 401
    assert response.json() == {
        "success": False,
        "error": {"code": "UNAUTHORIZED", "message": "Not authenticated"},
    }
    assert response.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_expired_token_rejected(client: AsyncClient, monday):
    """Test an expired access token is rejected."""
    token = create_access_token(20, "PATIENT", expires_delta=timedelta(minutes=-1))

    response = await client.get(
        "/api/v1/appointments/me",
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Could not validate credentials"


@pytest.mark.asyncio
async def test_create_appointment_schema_error(client: AsyncClient, patient_headers: dict, monday):
    """Test request schema errors use the 422 envelope."""
    response = await client.post(
        "/api/v1/appointments",
        json=booking_payload(local_datetime(monday, 9), appointment_type="HOUSE_CALL"),
        headers=patient_headers,
    )

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "REQUEST_VALIDATION_ERROR"
    assert error["details"]


@pytest.mark.asyncio
async def test_double_booking_conflict(client: AsyncClient, patient_headers: dict, monday):
    """Test booking a taken slot returns 409 SLOT_UNAVAILABLE."""
    await book(client, patient_headers, local_datetime(monday, 9))

    response = await client.post(
        "/api/v1/appointments",
        json=booking_payload(local_datetime(monday, 9)),
        headers=patient_headers,
    )

    assert response.status_code == 409
    assert response.json()["error"] == {
        "code": "SLOT_UNAVAILABLE",
        "message": "Clinician already has an appointment in this time slot",
    }


@pytest.mark.asyncio
async def test_outside_availability(client: AsyncClient, patient_headers: dict, monday):
    """Test a start time outside every rule window is a 400."""
    response = await client.post(
        "/api/v1/appointments",
        json=booking_payload(local_datetime(monday, 8, 45)),
        headers=patient_headers,
    )

    assert response.status_code == 400
    assert response.json()["error"] == {
        "code": "VALIDATION_ERROR",
        "message": "Requested time is outside clinician's availability hours",
    }


@pytest.mark.asyncio
async def test_online_booking_survives_video_failure(
    client: AsyncClient, patient_headers: dict, video, monday
):
    """Test a failing video provider degrades the response only."""
    video.error = IntegrationError("Calendar API unavailable")

    data = await book(
        client, patient_headers, local_datetime(monday, 9), appointment_type="ONLINE"
    )

    assert data["appointment"]["status"] == "BOOKED"
    assert data["meet_link"] is None


@pytest.mark.asyncio
async def test_get_appointment_access(
    client: AsyncClient, patient_headers: dict, staff_headers: dict, monday
):
    """Test patients only see their own appointments."""
    data = await book(client, patient_headers, local_datetime(monday, 9))
    appointment_id = data["appointment"]["id"]

    own = await client.get(f"/api/v1/appointments/{appointment_id}", headers=patient_headers)
    other = await client.get(
        f"/api/v1/appointments/{appointment_id}",
        headers=bearer(OTHER_PATIENT_USER_ID, UserType.PATIENT),
    )
    staff = await client.get(f"/api/v1/appointments/{appointment_id}", headers=staff_headers)
    missing = await client.get("/api/v1/appointments/999", headers=staff_headers)

    assert own.status_code == 200
    assert own.json()["data"]["id"] == appointment_id
    assert other.status_code == 403
    assert other.json()["error"]["code"] == "FORBIDDEN"
    assert staff.status_code == 200
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_status_flow(
    client: AsyncClient, patient_headers: dict, staff_headers: dict, monday
):
    """Test confirm, invalid transition and history over HTTP."""
    data = await book(client, patient_headers, local_datetime(monday, 9))
    appointment_id = data["appointment"]["id"]

    confirmed = await client.patch(
        f"/api/v1/appointments/{appointment_id}/status",
        json={"status": "CONFIRMED"},
        headers=staff_headers,
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["message"] == "Appointment marked CONFIRMED"

    back = await client.patch(
        f"/api/v1/appointments/{appointment_id}/status",
        json={"status": "BOOKED"},
        headers=staff_headers,
    )
    assert back.status_code == 409
    assert back.json()["error"]["code"] == "INVALID_TRANSITION"

    by_patient = await client.patch(
        f"/api/v1/appointments/{appointment_id}/status",
        json={"status": "COMPLETED"},
        headers=patient_headers,
    )
    assert by_patient.status_code == 403

    history = await client.get(
        f"/api/v1/appointments/{appointment_id}/history", headers=patient_headers
    )
    assert [row["new_status"] for row in history.json()["data"]] == ["BOOKED", "CONFIRMED"]


@pytest.mark.asyncio
async def test_reschedule_and_cancel(
    client: AsyncClient, patient_headers: dict, staff_headers: dict, monday
):
    """Test rescheduling then cancelling an appointment."""
    data = await book(client, patient_headers, local_datetime(monday, 9))
    appointment_id = data["appointment"]["id"]

    moved = await client.patch(
        f"/api/v1/appointments/{appointment_id}/reschedule",
        json={"scheduled_start_at": local_datetime(monday, 11).isoformat()},
        headers=patient_headers,
    )
    assert moved.status_code == 200
    assert moved.json()["data"]["appointment"]["status"] == "RESCHEDULED"

    cancelled = await client.post(
        f"/api/v1/appointments/{appointment_id}/cancel",
        json={"reason": "Travelling"},
        headers=patient_headers,
    )
    assert cancelled.status_code == 200
    assert cancelled.json()["data"]["appointment"]["status"] == "CANCELLED"

    again = await client.post(
        f"/api/v1/appointments/{appointment_id}/cancel",
        json={"reason": "Travelling"},
        headers=staff_headers,
    )
    assert again.status_code == 400
    assert again.json()["error"]["message"] == "Appointment is already cancelled"


@pytest.mark.asyncio
async def test_cancel_requires_reason(client: AsyncClient, patient_headers: dict, monday):
    """Test a blank cancellation reason fails request validation."""
    data = await book(client, patient_headers, local_datetime(monday, 9))

    response = await client.post(
        f"/api/v1/appointments/{data['appointment']['id']}/cancel",
        json={"reason": "   "},
        headers=patient_headers,
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_list_my_appointments(client: AsyncClient, patient_headers: dict, monday):
    """Test patients and clinicians list their own appointments."""
    later = await book(client, patient_headers, local_datetime(monday, 10))
    earlier = await book(client, patient_headers, local_datetime(monday, 9))

    mine = await client.get("/api/v1/appointments/me", headers=patient_headers)
    clinician = await client.get(
        "/api/v1/appointments/me",
        headers=bearer(CLINICIAN_USER_ID, UserType.STAFF, ["CLINICIAN"]),
    )
    cancelled = await client.get(
        "/api/v1/appointments/me", params={"status": "CANCELLED"}, headers=patient_headers
    )

    assert [a["id"] for a in mine.json()["data"]] == [
        earlier["appointment"]["id"],
        later["appointment"]["id"],
    ]
    assert len(clinician.json()["data"]) == 2
    assert cancelled.json()["data"] == []


@pytest.mark.asyncio
async def test_list_inverted_range(client: AsyncClient, staff_headers: dict, monday):
    """Test an inverted date range is a business validation error."""
    response = await client.get(
        "/api/v1/appointments/centre/1",
        params={
            "from_date": monday.isoformat(),
            "to_date": (monday - timedelta(days=3)).isoformat(),
        },
        headers=staff_headers,
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"
    assert response.json()["error"]["message"] == "to_date must not be before from_date"


@pytest.mark.asyncio
async def test_clinician_day_listing(
    client: AsyncClient, patient_headers: dict, staff_headers: dict, monday
):
    """Test staff list one clinician's appointments on a date."""
    await book(client, patient_headers, local_datetime(monday, 9))

    same_day = await client.get(
        "/api/v1/appointments/clinician/1",
        params={"date": monday.isoformat()},
        headers=staff_headers,
    )
    by_patient = await client.get("/api/v1/appointments/clinician/1", headers=patient_headers)

    assert len(same_day.json()["data"]) == 1
    assert by_patient.status_code == 403


@pytest.mark.asyncio
async def test_availability_endpoint(client: AsyncClient, patient_headers: dict, monday):
    """Test the slot listing marks booked slots."""
    await book(client, patient_headers, local_datetime(monday, 9, 30))

    response = await client.get(
        "/api/v1/appointments/availability",
        params={"clinician_id": 1, "date": monday.isoformat()},
        headers=patient_headers,
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["date"] == monday.isoformat()
    assert [slot["start_time"] for slot in data["slots"] if not slot["available"]] == ["09:30"]
    assert len(data["slots"]) == 6


@pytest.mark.asyncio
async def test_video_link_unconfigured(client: AsyncClient, patient_headers: dict, video, monday):
    """Test the video link endpoint reports 503 without a provider."""
    video.configured = False
    data = await book(
        client, patient_headers, local_datetime(monday, 9), appointment_type="ONLINE"
    )

    response = await client.get(
        f"/api/v1/appointments/{data['appointment']['id']}/video-link",
        headers=patient_headers,
    )

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "SERVICE_UNAVAILABLE"


@pytest.mark.asyncio
async def test_clinician_rules(client: AsyncClient, patient_headers: dict, staff_headers: dict):
    """Test reading and replacing a clinician's weekly rules."""
    current = await client.get("/api/v1/clinicians/1/availability", headers=patient_headers)
    assert current.status_code == 200
    assert current.json()["data"][0]["start_time"] == "09:00"
    assert current.json()["data"][0]["end_time"] == "12:00"

    payload = {
        "rules": [
            {
                "centre_id": 2,
                "day_of_week": 3,
                "start_time": "14:00",
                "end_time": "18:00",
                "slot_duration_minutes": 20,
                "consultation_mode": "ONLINE",
            }
        ]
    }
    denied = await client.put(
        "/api/v1/clinicians/1/availability", json=payload, headers=patient_headers
    )
    replaced = await client.put(
        "/api/v1/clinicians/1/availability", json=payload, headers=staff_headers
    )

    assert denied.status_code == 403
    assert replaced.status_code == 200
    assert replaced.json()["message"] == "Availability updated successfully"
    rules = replaced.json()["data"]
    assert len(rules) == 1
    assert rules[0]["centre_id"] == 2
    assert rules[0]["consultation_mode"] == "ONLINE"


@pytest.mark.asyncio
async def test_clinician_rules_bad_window(client: AsyncClient, staff_headers: dict):
    """Test an inverted rule window fails request validation."""
    response = await client.put(
        "/api/v1/clinicians/1/availability",
        json={
            "rules": [
                {
                    "centre_id": 1,
                    "day_of_week": 1,
                    "start_time": "12:00",
                    "end_time": "09:00",
                    "slot_duration_minutes": 30,
                }
            ]
        },
        headers=staff_headers,
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_ping_and_health(client: AsyncClient):
    """Test liveness endpoints need no auth."""
    ping = await client.get("/api/v1/ping")
    health = await client.get("/api/v1/health")

    assert ping.json() == {"message": "pong"}
    assert health.status_code == 200
    assert health.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_unknown_route(client: AsyncClient):
    """Test routing errors use the failure envelope."""
    response = await client.get("/api/v1/nowhere")

    assert response.status_code == 404
    assert response.json()["success"] is False
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_request_id_echoed(client: AsyncClient):
    """Test a caller's request id comes back; one is generated otherwise."""
    given = await client.get("/api/v1/ping", headers={"X-Request-ID": "req-42"})
    generated = await client.get("/api/v1/ping")

    assert given.headers["X-Request-ID"] == "req-42"
    assert len(generated.headers["X-Request-ID"]) == 32
    assert "X-Process-Time" in generated.headers


def test_gateway_uses_request_session():
    """Test the repository is built over the session of the request."""
    session = MagicMock()

    gateway = get_gateway(session)

    assert isinstance(gateway, SchedulingRepository)
    assert gateway.db is session
