"""
Calendar Gateway Client

Checks availability and books events through the calendar gateway service.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

import httpx

from meeting_scheduler.errors import GatewayError
from meeting_scheduler.models import CalendarEvent

logger = logging.getLogger(__name__)


class CalendarClient:
    """Client for the calendar gateway service"""

    def __init__(self, base_url: str, timeout: float = 30):
        """
        Initialize calendar gateway client.

        Args:
            base_url: Base URL of the calendar gateway
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    async def is_available(self, instant: datetime, duration_minutes: int) -> bool:
        """
        Check whether a slot is free.

        Args:
            instant: Slot start (aware)
            duration_minutes: Slot length

        Returns:
            True if the slot is free

        Raises:
            GatewayError: If the gateway cannot answer
        """
        data = await self._post("/availability", {
            "start": instant.astimezone(timezone.utc).isoformat(),
            "duration_minutes": duration_minutes,
        })
        if "available" not in data:
            raise GatewayError("calendar", "availability response missing 'available'")
        available = bool(data["available"])
        logger.debug(f"Slot {instant.isoformat()} available: {available}")
        return available

    async def create_event(self, attendees: List[str], instant: datetime, duration_minutes: int,
                           subject: str, body: Optional[str] = None) -> CalendarEvent:
        """
        Book a calendar event.

        Args:
            attendees: Attendee email addresses
            instant: Event start (aware)
            duration_minutes: Event length
            subject: Event title
            body: Event description

        Returns:
            CalendarEvent with the provider event id and optional join link

        Raises:
            GatewayError: If the event could not be created
        """
        data = await self._post("/events", {
            "attendees": attendees,
            "start": instant.astimezone(timezone.utc).isoformat(),
            "duration_minutes": duration_minutes,
            "subject": subject,
            "body": body or "",
        })
        if not data.get("event_id"):
            raise GatewayError("calendar", f"event creation failed: {data.get('error', 'no event id')}")
        logger.info(f"Created calendar event {data['event_id']} at {instant.isoformat()}")
        return CalendarEvent(event_id=data["event_id"], join_link=data.get("join_link"))

    async def _post(self, path: str, payload: dict) -> dict:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{self.base_url}{path}", json=payload)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Calendar gateway returned {e.response.status_code} for {path}")
            raise GatewayError("calendar", str(e), status_code=e.response.status_code) from e
        except httpx.HTTPError as e:
            logger.error(f"HTTP error calling calendar gateway {path}: {e}")
            raise GatewayError("calendar", str(e)) from e
        except ValueError as e:
            logger.error(f"Invalid response from calendar gateway {path}: {e}")
            raise GatewayError("calendar", f"invalid response: {e}") from e
