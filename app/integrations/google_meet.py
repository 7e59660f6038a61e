"""Google Calendar events with Google Meet conference data."""

import asyncio
import os
from typing import Any

import structlog
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from app.integrations.base import IntegrationError, VideoLink, VideoLinkProvider, VideoLinkRequest

logger = structlog.get_logger()

SCOPES = ["https://www.googleapis.com/auth/calendar"]
PROVIDER = "GOOGLE_MEET"

# Calendar event ids may only use base32hex characters (a-v, 0-9)
EVENT_ID_PREFIX = "clinicappt"


def event_id_for(appointment_id: int) -> str:
    return f"{EVENT_ID_PREFIX}{appointment_id:06d}"


def extract_meet_link(event: dict[str, Any]) -> str | None:
    """Pull the Meet URL out of an inserted calendar event."""
    if event.get("hangoutLink"):
        return event["hangoutLink"]
    for entry in event.get("conferenceData", {}).get("entryPoints", []):
        if entry.get("entryPointType") == "video" and entry.get("uri"):
            return entry["uri"]
    return None


class GoogleMeetProvider(VideoLinkProvider):
    """
    Creates a calendar event with a Meet conference for each online appointment.

    The event id is derived from the appointment id. A retry after a timed
    out insert (which may still have gone through) gets a 409 and reuses the
    event already on the calendar instead of creating a second one.

    The Google client library is synchronous, so API calls run in the
    default executor.
    """

    def __init__(self, service_account_file: str | None, calendar_id: str = "primary"):
        self.service_account_file = service_account_file
        self.calendar_id = calendar_id
        self._service = None

    @property
    def is_configured(self) -> bool:
        return bool(self.service_account_file) and os.path.exists(self.service_account_file)

    def _get_service(self):
        if self._service is None:
            credentials = service_account.Credentials.from_service_account_file(
                self.service_account_file,
                scopes=SCOPES,
            )
            self._service = build("calendar", "v3", credentials=credentials, cache_discovery=False)
        return self._service

    def _event_body(self, request: VideoLinkRequest) -> dict[str, Any]:
        return {
            "id": event_id_for(request.appointment_id),
            "summary": request.title,
            "description": request.description,
            "start": {"dateTime": request.start.isoformat(), "timeZone": request.timezone},
            "end": {"dateTime": request.end.isoformat(), "timeZone": request.timezone},
            "attendees": [{"email": email} for email in request.attendee_emails],
            "conferenceData": {
                "createRequest": {
                    "requestId": f"appointment-{request.appointment_id}",
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                },
            },
        }

    def _insert_event(self, body: dict[str, Any]) -> dict[str, Any]:
        return (
            self._get_service()
            .events()
            .insert(calendarId=self.calendar_id, body=body, conferenceDataVersion=1)
            .execute()
        )

    def _get_event(self, event_id: str) -> dict[str, Any]:
        return (
            self._get_service()
            .events()
            .get(calendarId=self.calendar_id, eventId=event_id)
            .execute()
        )

    async def _call(self, func, arg, existing_ok: bool = False) -> dict[str, Any] | None:
        """Run a blocking API call; ``None`` means the event already exists."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, func, arg)
        except HttpError as e:
            status = getattr(e.resp, "status", None)
            if existing_ok and status == 409:
                return None
            raise IntegrationError(
                f"Google Calendar API error: {e}",
                provider=PROVIDER,
                retryable=status not in (400, 403, 404),
            ) from e
        except OSError as e:
            raise IntegrationError(f"Google Calendar unreachable: {e}", provider=PROVIDER) from e

    async def create_link(self, request: VideoLinkRequest) -> VideoLink:
        if not self.is_configured:
            raise IntegrationError(
                "Google Meet is not configured",
                provider=PROVIDER,
                retryable=False,
            )

        body = self._event_body(request)
        event = await self._call(self._insert_event, body, existing_ok=True)
        if event is None:
            logger.info("meet_event_exists", appointment_id=request.appointment_id)
            event = await self._call(self._get_event, body["id"])

        meet_link = extract_meet_link(event)
        if not meet_link:
            raise IntegrationError("Calendar event has no Meet link", provider=PROVIDER)

        logger.info(
            "meet_link_created",
            appointment_id=request.appointment_id,
            calendar_event_id=event.get("id"),
        )
        return VideoLink(url=meet_link, calendar_event_id=event.get("id"), provider=PROVIDER)
