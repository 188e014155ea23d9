"""
Shared fixtures: in-memory repository, fake gateways and a fixed clock
"""
import os
from datetime import datetime, timedelta, timezone

import pytest

# Set test environment variables before importing the app
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ANTHROPIC_API_KEY", "test-key")

from meeting_scheduler.database import get_repository
from meeting_scheduler.draft_service import DraftService
from meeting_scheduler.errors import GatewayError, GenerationError
from meeting_scheduler.locks import KeyedLocks
from meeting_scheduler.matching import MatchingEngine
from meeting_scheduler.models import (
    CalendarEvent,
    Channel,
    InboundMessage,
    NegotiationCreate,
    SendEmailResult,
    SendSmsResult,
)
from meeting_scheduler.negotiation_manager import NegotiationManager
from meeting_scheduler.webhooks import InboundProcessor

# Monday, January 5 2026, 9:00 AM in New York
NOW = datetime(2026, 1, 5, 14, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeGenerator:
    """Produces a distinct body per call"""

    def __init__(self):
        self.calls = []
        self.fail = False
        self.body = None

    async def generate(self, prompt_template, variables):
        if self.fail:
            raise GenerationError("generation unavailable")
        self.calls.append(variables)
        if self.body is not None:
            return self.body
        return (
            f"Hi {variables['recipient_name']},\n\n"
            f"This is draft {len(self.calls)} about {variables['title']}.\n\n"
            f"{variables['times']}\n\n"
            f"Best,\n{variables['sender_name']}"
        )


class FakeCalendar:
    """Everything is free unless listed in busy"""

    def __init__(self):
        self.busy = set()
        self.down = False
        self.availability_failures = 0
        self.fail_events = False
        self.checks = []
        self.events = []

    async def is_available(self, instant, duration_minutes):
        self.checks.append(instant)
        if self.down:
            raise GatewayError("calendar", "connection refused")
        if self.availability_failures > 0:
            self.availability_failures -= 1
            raise GatewayError("calendar", "timeout")
        return instant.astimezone(timezone.utc) not in self.busy

    async def create_event(self, attendees, instant, duration_minutes, subject, body=None):
        if self.fail_events:
            raise GatewayError("calendar", "event creation failed", status_code=500)
        self.events.append({
            "attendees": attendees,
            "start": instant,
            "duration_minutes": duration_minutes,
            "subject": subject,
        })
        return CalendarEvent(event_id=f"evt-{len(self.events)}", join_link="https://meet.globex.com/intro")


class FakeMessaging:
    """Records sends; new threads get sequential ids"""

    def __init__(self):
        self.emails = []
        self.sms = []
        self.fail = False

    async def send_email(self, to_addresses, subject, body, thread_id=None):
        if self.fail:
            return SendEmailResult(success=False, error="timeout: gateway did not answer")
        self.emails.append({"to": to_addresses, "subject": subject, "body": body, "thread_id": thread_id})
        return SendEmailResult(
            success=True,
            provider_thread_id=thread_id or f"thread-{len(self.emails)}",
            provider_message_id=f"msg-{len(self.emails)}",
        )

    async def send_sms(self, to_number, body):
        self.sms.append({"to": to_number, "body": body})
        return SendSmsResult(success=True, provider_message_id=f"sms-{len(self.sms)}")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repository():
    """Fresh in-memory database per test"""
    repo = get_repository("sqlite://")
    yield repo
    repo.close()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def calendar():
    return FakeCalendar()


@pytest.fixture
def messaging():
    return FakeMessaging()


@pytest.fixture
def drafts(repository, generator, calendar, clock):
    return DraftService(repository, generator, calendar, clock=clock)


@pytest.fixture
def build_manager(repository, drafts, messaging, calendar, clock):
    """Factory so tests can flip settings such as auto-send"""
    def _build(**overrides):
        options = dict(
            repository=repository,
            drafts=drafts,
            messaging=messaging,
            calendar=calendar,
            locks=KeyedLocks(),
            clock=clock,
        )
        options.update(overrides)
        return NegotiationManager(**options)
    return _build


@pytest.fixture
def manager(build_manager):
    return build_manager()


@pytest.fixture
def processor(repository, manager):
    return InboundProcessor(MatchingEngine(repository), manager)


def negotiation_payload(**overrides) -> NegotiationCreate:
    data = {
        "title": "Intro call",
        "timezone": "America/New_York",
        "attendees": [
            {"email": "dana@acme.io", "name": "Dana Lee", "phone": "+1 (415) 555-0100"},
            {"email": "sam@globex.com", "name": "Sam Ortiz", "side": "internal"},
        ],
    }
    data.update(overrides)
    return NegotiationCreate(**data)


def inbound_email(body, message_id="in-1", sender="Dana Lee <dana@acme.io>", subject="Re: Scheduling: Intro call",
                  thread_id=None, timestamp=NOW) -> InboundMessage:
    return InboundMessage(
        channel=Channel.EMAIL,
        provider_message_id=message_id,
        thread_id=thread_id,
        sender=sender,
        recipient="sam@globex.com",
        subject=subject,
        body=body,
        timestamp=timestamp,
    )


@pytest.fixture
def sent_negotiation(manager, clock):
    """Factory: create a negotiation and send its initial outreach"""
    async def _create(**overrides):
        request = manager.create_request(negotiation_payload(**overrides))
        await manager.preview_draft(request.id)
        await manager.send(request.id)
        clock.advance(minutes=5)
        return manager.get_request(request.id)
    return _create
