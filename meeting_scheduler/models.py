"""
Pydantic models for the Meeting Scheduler service
"""
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# Enums
class NegotiationStatus(str, Enum):
    """Lifecycle of a negotiation."""
    INITIAL = "initial"
    AWAITING_RESPONSE = "awaiting_response"
    NEGOTIATING = "negotiating"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({NegotiationStatus.COMPLETED, NegotiationStatus.CANCELLED})


class AttendeeSide(str, Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class EmailType(str, Enum):
    """Kind of outbound message a draft holds."""
    INITIAL_OUTREACH = "initial_outreach"
    FOLLOW_UP = "follow_up"
    ALTERNATIVES = "alternatives"
    CONFIRMATION = "confirmation"


class ReplyIntent(str, Enum):
    ACCEPT = "accept"
    COUNTER = "counter"
    DECLINE = "decline"
    QUESTION = "question"
    UNCLEAR = "unclear"


class MatchStrategy(str, Enum):
    THREAD = "thread"
    ATTENDEE = "attendee"
    DISAMBIGUATED = "disambiguated"
    NONE = "none"


class ActionType(str, Enum):
    """Action log entry types."""
    CREATED = "created"
    DRAFT_GENERATED = "draft_generated"
    DRAFT_REGENERATED = "draft_regenerated"
    DRAFT_EDITED = "draft_edited"
    EMAIL_SENT = "email_sent"
    FOLLOW_UP_SENT = "follow_up_sent"
    TIMES_PROPOSED = "times_proposed"
    SEND_FAILED = "send_failed"
    EMAIL_RECEIVED = "email_received"
    SMS_RECEIVED = "sms_received"
    UNMATCHED_INBOUND = "unmatched_inbound"
    PROCESSING_FAILED = "processing_failed"
    THREAD_CAPTURED = "thread_captured"
    STATUS_CHANGED = "status_changed"
    COUNTER_PROPOSAL = "counter_proposal"
    AVAILABILITY_CONFLICT = "availability_conflict"
    MEETING_CONFIRMED = "meeting_confirmed"
    NEEDS_HUMAN = "needs_human"
    REVIEW_RESOLVED = "review_resolved"
    INBOUND_IGNORED = "inbound_ignored"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


# Entries that mark a provider message as seen
INBOUND_SEEN_ACTIONS = frozenset({
    ActionType.EMAIL_RECEIVED,
    ActionType.SMS_RECEIVED,
    ActionType.UNMATCHED_INBOUND,
})


# Actors
class SystemActor(BaseModel):
    kind: Literal["system"] = "system"


class UserActor(BaseModel):
    kind: Literal["user"] = "user"
    user_id: str


class ExternalPartyActor(BaseModel):
    kind: Literal["external_party"] = "external_party"
    address: Optional[str] = None


Actor = Annotated[Union[SystemActor, UserActor, ExternalPartyActor], Field(discriminator="kind")]

SYSTEM = SystemActor()


def actor_identity(actor) -> Optional[str]:
    """Identifier stored alongside the actor kind."""
    if isinstance(actor, UserActor):
        return actor.user_id
    if isinstance(actor, ExternalPartyActor):
        return actor.address
    return None


def actor_from_columns(kind: str, identity: Optional[str]):
    """Rebuild an actor from its stored kind and identifier."""
    if kind == "user":
        return UserActor(user_id=identity or "")
    if kind == "external_party":
        return ExternalPartyActor(address=identity)
    return SYSTEM


# Negotiation aggregate
class Attendee(BaseModel):
    """Meeting attendee with denormalized contact identity"""
    email: EmailStr
    name: Optional[str] = None
    phone: Optional[str] = None
    side: AttendeeSide = AttendeeSide.EXTERNAL
    is_primary_contact: bool = False
    contact_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ProposedTime(BaseModel):
    """Meeting slot offered to the external party"""
    start_utc: datetime
    display: str
    timezone: str


class ConversationMessage(BaseModel):
    """One message exchanged within a negotiation"""
    id: str = Field(default_factory=new_id)
    direction: Direction
    channel: Channel = Channel.EMAIL
    subject: Optional[str] = None
    body: str
    sender: str
    recipient: str
    timestamp: datetime = Field(default_factory=utcnow)
    provider_message_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class NegotiationRequest(BaseModel):
    """One meeting-scheduling effort"""
    id: str = Field(default_factory=new_id)
    title: str
    status: NegotiationStatus = NegotiationStatus.INITIAL
    timezone: str
    duration_minutes: int = 30
    attendees: List[Attendee] = Field(default_factory=list)
    proposed_times: List[ProposedTime] = Field(default_factory=list)
    selected_time: Optional[datetime] = None
    thread_id: Optional[str] = None
    conversation_history: List[ConversationMessage] = Field(default_factory=list)
    last_action_at: Optional[datetime] = None
    next_action_at: Optional[datetime] = None
    next_action_type: Optional[str] = None
    attempt_count: int = 0
    needs_human: bool = False
    needs_human_reason: Optional[str] = None
    calendar_event_id: Optional[str] = None
    join_link: Optional[str] = None
    created_by: Optional[str] = None
    notes: Optional[str] = None
    date_range_start: Optional[date] = None
    date_range_end: Optional[date] = None
    preferred_periods: List[str] = Field(default_factory=list)
    avoid_days: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def external_attendees(self) -> List[Attendee]:
        return [a for a in self.attendees if a.side == AttendeeSide.EXTERNAL]

    @property
    def primary_contact(self) -> Optional[Attendee]:
        for attendee in self.external_attendees:
            if attendee.is_primary_contact:
                return attendee
        return None

    @property
    def outbound_subjects(self) -> List[str]:
        return [
            m.subject for m in self.conversation_history
            if m.direction == Direction.OUTBOUND and m.subject
        ]

    def check_invariants(self):
        """
        Validate aggregate invariants before a write.

        Raises:
            ValueError: If selected_time and status disagree
        """
        has_selection = self.selected_time is not None
        confirmed = self.status in (NegotiationStatus.CONFIRMED, NegotiationStatus.COMPLETED)
        if has_selection != confirmed:
            raise ValueError(
                f"selected_time must be set only when confirmed or completed "
                f"(status={self.status.value}, selected_time={self.selected_time})"
            )


class Draft(BaseModel):
    """Persisted outbound message awaiting review or send"""
    id: str = Field(default_factory=new_id)
    request_id: str
    email_type: EmailType
    subject: str
    body: str
    proposed_times: List[ProposedTime] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utcnow)
    edited_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    provider_thread_id: Optional[str] = None
    provider_message_id: Optional[str] = None
    sent_at: Optional[datetime] = None
    discarded_at: Optional[datetime] = None


class SendableDraft(BaseModel):
    """Read-only view of a draft handed to the send path"""
    draft_id: str
    request_id: str
    email_type: EmailType
    subject: str
    body: str
    proposed_times: tuple[ProposedTime, ...] = ()
    dispatched_at: Optional[datetime] = None
    provider_thread_id: Optional[str] = None
    provider_message_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class ActionLogEntry(BaseModel):
    """Immutable audit record"""
    id: str = Field(default_factory=new_id)
    request_id: Optional[str] = None
    action_type: ActionType
    actor: Actor = Field(default_factory=SystemActor)
    reasoning: str = ""
    linked_message_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)


# Engine values
class InboundMessage(BaseModel):
    """Inbound email or SMS handed to the engine"""
    channel: Channel
    provider_message_id: str
    thread_id: Optional[str] = None
    sender: str
    recipient: Optional[str] = None
    subject: Optional[str] = None
    body: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


class MatchResult(BaseModel):
    request_id: Optional[str] = None
    strategy: MatchStrategy = MatchStrategy.NONE
    candidates: List[str] = Field(default_factory=list)
    needs_review: bool = False
    reasoning: str = ""

    @property
    def matched(self) -> bool:
        return self.request_id is not None


class ResolvedDateTime(BaseModel):
    """Outcome of resolving free text to an instant"""
    instant: Optional[datetime] = None
    confidence: Confidence = Confidence.LOW
    reasoning: str


class ClassifiedReply(BaseModel):
    """Intent extracted from an inbound reply"""
    intent: ReplyIntent
    selected_index: Optional[int] = None
    time_text: Optional[str] = None
    raw_message: str
    reasoning: str = ""


class SendEmailResult(BaseModel):
    success: bool
    provider_thread_id: Optional[str] = None
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class SendSmsResult(BaseModel):
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class CalendarEvent(BaseModel):
    event_id: str
    join_link: Optional[str] = None


class SendOutcome(BaseModel):
    """Result of a send call"""
    request_id: str
    draft_id: str
    status: NegotiationStatus
    already_sent: bool = False
    provider_message_id: Optional[str] = None
    thread_id: Optional[str] = None


class IngestResult(BaseModel):
    """Result of processing one webhook delivery"""
    status: Literal["duplicate", "unmatched", "processed", "failed"]
    provider_message_id: str
    request_id: Optional[str] = None
    match: Optional[MatchResult] = None


# API models
class NegotiationCreate(BaseModel):
    """Model for creating a negotiation"""
    title: str = Field(..., min_length=1, max_length=500)
    timezone: Optional[str] = None
    duration_minutes: Optional[int] = Field(default=None, gt=0, le=480)
    attendees: List[Attendee] = Field(..., min_length=1)
    created_by: Optional[str] = None
    notes: Optional[str] = None
    date_range_start: Optional[date] = None
    date_range_end: Optional[date] = None
    preferred_periods: List[Literal["morning", "afternoon", "evening"]] = Field(default_factory=list)
    avoid_days: List[str] = Field(default_factory=list)

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {value}")
        return value

    @field_validator("avoid_days")
    @classmethod
    def normalize_avoid_days(cls, value: List[str]) -> List[str]:
        return [day.strip().lower() for day in value if day.strip()]

    @model_validator(mode="after")
    def check_primary_contact(self):
        """Exactly one external attendee must be the primary contact."""
        external = [a for a in self.attendees if a.side == AttendeeSide.EXTERNAL]
        if not external:
            raise ValueError("At least one external attendee is required")
        primaries = [a for a in external if a.is_primary_contact]
        if len(primaries) > 1:
            raise ValueError("Only one external attendee can be the primary contact")
        if not primaries:
            if len(external) > 1:
                raise ValueError("Mark one external attendee as the primary contact")
            external[0].is_primary_contact = True
        for attendee in self.attendees:
            if attendee.side == AttendeeSide.INTERNAL:
                attendee.is_primary_contact = False
        if self.date_range_start and self.date_range_end and self.date_range_end < self.date_range_start:
            raise ValueError("date_range_end is before date_range_start")
        return self


class PreviewRequest(BaseModel):
    email_type: Optional[EmailType] = None
    user_id: Optional[str] = None


class DraftUpdate(BaseModel):
    """Edit of a pending draft's text"""
    subject: Optional[str] = Field(default=None, min_length=1, max_length=500)
    body: Optional[str] = Field(default=None, min_length=1)
    user_id: Optional[str] = None


class SendRequest(BaseModel):
    draft_id: Optional[str] = None
    user_id: Optional[str] = None


class ActionRequest(BaseModel):
    """Body for cancel/complete/resolve calls"""
    user_id: Optional[str] = None
    reason: Optional[str] = None


class EmailWebhookPayload(BaseModel):
    """Inbound email notification from the messaging provider"""
    message_id: str = Field(..., min_length=1)
    thread_id: Optional[str] = None
    from_address: str = Field(..., alias="from")
    to: Optional[str] = None
    subject: Optional[str] = None
    body: str = ""
    received_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True)


class FollowUpRunResponse(BaseModel):
    processed: int
    request_ids: List[str]


class HealthCheckResponse(BaseModel):
    status: str
    service: str
    database_connected: bool
    negotiations: dict
    uptime_seconds: float
