"""
Negotiation Manager

Owns the negotiation state machine:
1. Create a negotiation and preview its outreach draft
2. Send the approved draft exactly once
3. Apply inbound replies (accept, counter-proposal, decline, question)
4. Confirm against the calendar or propose alternatives
5. Fire follow-ups when a reply is overdue, then hand over to a human

Every entry point holds the negotiation's lock, so replies and follow-up
timers for one negotiation are applied one at a time.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from meeting_scheduler.action_log import ActionLog
from meeting_scheduler.calendar_client import CalendarClient
from meeting_scheduler.claude_client import TextGenerationClient
from meeting_scheduler.config import Settings
from meeting_scheduler.database import NegotiationRepository
from meeting_scheduler.datetime_resolver import DateTimeResolver
from meeting_scheduler.draft_formatter import DraftFormatter
from meeting_scheduler.draft_service import DraftService, DraftStore
from meeting_scheduler.errors import (
    DraftNotFoundError,
    GatewayError,
    InvalidTransitionError,
    InvariantViolation,
    NegotiationNotFoundError,
    RetryableError,
    SchedulerError,
)
from meeting_scheduler.locks import KeyedLocks
from meeting_scheduler.messaging_client import MessagingClient
from meeting_scheduler.models import (
    SYSTEM,
    ActionLogEntry,
    ActionType,
    Actor,
    AttendeeSide,
    Channel,
    ClassifiedReply,
    Confidence,
    ConversationMessage,
    Direction,
    Draft,
    EmailType,
    ExternalPartyActor,
    InboundMessage,
    MatchResult,
    NegotiationCreate,
    NegotiationRequest,
    NegotiationStatus,
    ReplyIntent,
    SendableDraft,
    SendOutcome,
    UserActor,
    utcnow,
)
from meeting_scheduler.reply_classifier import ReplyClassifier

logger = logging.getLogger(__name__)

S = NegotiationStatus

ALLOWED_TRANSITIONS = {
    S.INITIAL: {S.AWAITING_RESPONSE, S.CANCELLED},
    S.AWAITING_RESPONSE: {S.AWAITING_RESPONSE, S.NEGOTIATING, S.CONFIRMED, S.CANCELLED},
    S.NEGOTIATING: {S.NEGOTIATING, S.AWAITING_RESPONSE, S.CONFIRMED, S.CANCELLED},
    S.CONFIRMED: {S.CONFIRMED, S.COMPLETED, S.CANCELLED},
    S.COMPLETED: set(),
    S.CANCELLED: set(),
}

NEXT_ACTION_FOLLOW_UP = "follow_up"
NEXT_ACTION_DECLINE_REVIEW = "human_review_decline"

DEFAULT_EMAIL_TYPES = {
    S.INITIAL: EmailType.INITIAL_OUTREACH,
    S.AWAITING_RESPONSE: EmailType.FOLLOW_UP,
    S.NEGOTIATING: EmailType.ALTERNATIVES,
    S.CONFIRMED: EmailType.CONFIRMATION,
}


class NegotiationManager:
    """Drives negotiations through their lifecycle"""

    def __init__(
        self,
        repository: NegotiationRepository,
        drafts: DraftService,
        messaging: MessagingClient,
        calendar: CalendarClient,
        resolver: Optional[DateTimeResolver] = None,
        locks: Optional[KeyedLocks] = None,
        clock: Callable[[], datetime] = utcnow,
        follow_up_delay: timedelta = timedelta(hours=48),
        max_attempts: int = 3,
        auto_send_replies: bool = False,
        owner_phone_number: str = "",
        default_timezone: str = "America/New_York",
        default_duration_minutes: int = 30,
        sweep_batch_size: int = 50,
    ):
        """
        Initialize negotiation manager.

        Args:
            repository: Negotiation repository
            drafts: Draft service (previews, regenerates, edits)
            messaging: Messaging gateway
            calendar: Calendar gateway
            resolver: Date/time resolver for counter-proposals
            locks: Per-key locks shared with the webhook processor
            clock: Source of the current time
            follow_up_delay: Wait after a send before following up
            max_attempts: Sends after which overdue negotiations go to a human
            auto_send_replies: Send alternatives/confirmations without preview
            owner_phone_number: Receives needs-review SMS alerts
            default_timezone: Used when a negotiation names none
            default_duration_minutes: Used when a negotiation names none
            sweep_batch_size: Maximum follow-ups per sweep
        """
        self.repository = repository
        self.drafts = drafts
        self.store = DraftStore(repository, clock)
        self.messaging = messaging
        self.calendar = calendar
        self.resolver = resolver or DateTimeResolver()
        self.classifier = ReplyClassifier()
        self.action_log = ActionLog(repository)
        self.locks = locks or KeyedLocks()
        self.clock = clock
        self.follow_up_delay = follow_up_delay
        self.max_attempts = max_attempts
        self.auto_send_replies = auto_send_replies
        self.owner_phone_number = owner_phone_number
        self.default_timezone = default_timezone
        self.default_duration_minutes = default_duration_minutes
        self.sweep_batch_size = sweep_batch_size

    # Queries

    def get_request(self, request_id: str) -> NegotiationRequest:
        request = self.repository.get_request(request_id)
        if request is None:
            raise NegotiationNotFoundError(f"Negotiation {request_id} not found")
        return request

    def get_action_log(self, request_id: str) -> List[ActionLogEntry]:
        self.get_request(request_id)
        return self.action_log.history(request_id)

    # Lifecycle

    def create_request(self, data: NegotiationCreate, actor: Actor = SYSTEM) -> NegotiationRequest:
        """
        Create a negotiation in the initial state.

        Args:
            data: Validated creation payload
            actor: Who created it

        Returns:
            Stored negotiation
        """
        created_by = data.created_by
        if created_by is None and isinstance(actor, UserActor):
            created_by = actor.user_id

        request = NegotiationRequest(
            title=data.title,
            timezone=data.timezone or self.default_timezone,
            duration_minutes=data.duration_minutes or self.default_duration_minutes,
            attendees=data.attendees,
            created_by=created_by,
            notes=data.notes,
            date_range_start=data.date_range_start,
            date_range_end=data.date_range_end,
            preferred_periods=list(data.preferred_periods),
            avoid_days=list(data.avoid_days),
        )
        primary = request.primary_contact
        entry = self.action_log.entry(
            request.id, ActionType.CREATED, actor,
            f"Negotiation '{request.title}' created with {primary.email if primary else 'no primary contact'}"
        )
        stored = self.repository.create_request(request, [entry])
        logger.info(f"Created negotiation {stored.id}: {stored.title}")
        return stored

    async def preview_draft(self, request_id: str, email_type: Optional[EmailType] = None,
                            actor: Actor = SYSTEM) -> Draft:
        """
        Get the pending draft, generating it on first call.

        Raises:
            InvariantViolation: If the negotiation is closed
            RetryableError: If generation failed
        """
        async with self.locks.hold(request_id):
            request = self.get_request(request_id)
            email_type = email_type or self._default_email_type(request)
            draft, created = await self.drafts.preview(request, email_type)
            if created:
                self.action_log.record(
                    request.id, ActionType.DRAFT_GENERATED, actor,
                    f"{email_type.value} draft {draft.id} with {len(draft.proposed_times)} proposed times"
                )
            return draft

    async def regenerate_draft(self, request_id: str, email_type: Optional[EmailType] = None,
                               actor: Actor = SYSTEM) -> Draft:
        """Discard the pending draft and generate a new one."""
        async with self.locks.hold(request_id):
            request = self.get_request(request_id)
            email_type = email_type or self._default_email_type(request)
            draft, discarded = await self.drafts.regenerate(request, email_type)
            reasoning = f"{email_type.value} draft {draft.id}"
            if discarded is not None:
                reasoning += f" replaces {discarded.id}"
            self.action_log.record(request.id, ActionType.DRAFT_REGENERATED, actor, reasoning)
            return draft

    async def edit_draft(self, request_id: str, subject: Optional[str] = None, body: Optional[str] = None,
                         actor: Actor = SYSTEM) -> Draft:
        """Edit the pending draft's subject and body."""
        async with self.locks.hold(request_id):
            request = self.get_request(request_id)
            self._ensure_open(request)
            draft = self.drafts.update(request, subject=subject, body=body)
            changed = [name for name, value in (("subject", subject), ("body", body)) if value is not None]
            self.action_log.record(
                request.id, ActionType.DRAFT_EDITED, actor,
                f"Edited {' and '.join(changed) or 'nothing'} of draft {draft.id}"
            )
            return draft

    async def send(self, request_id: str, actor: Actor = SYSTEM, draft_id: Optional[str] = None) -> SendOutcome:
        """
        Send the pending draft exactly as previewed.

        Args:
            request_id: Negotiation id
            actor: Who approved the send
            draft_id: Draft the caller reviewed; must be the pending one

        Returns:
            SendOutcome; already_sent is True when the draft went out earlier

        Raises:
            DraftNotFoundError: If there is no draft to send
            InvalidTransitionError: If the negotiation is closed
            GatewayError: If the messaging gateway failed (retryable)
        """
        async with self.locks.hold(request_id):
            request = self.get_request(request_id)
            return await self._send_locked(request, actor, draft_id=draft_id)

    async def handle_inbound(self, request_id: str, inbound: InboundMessage, match: MatchResult) -> NegotiationRequest:
        """
        Apply an inbound reply to its negotiation.

        Args:
            request_id: Matched negotiation
            inbound: The reply
            match: How it was matched

        Returns:
            Negotiation after the reply was applied
        """
        async with self.locks.hold(request_id):
            request = self.get_request(request_id)
            return await self._apply_inbound(request, inbound, match)

    async def process_due_follow_ups(self, now: Optional[datetime] = None) -> List[str]:
        """
        Send follow-ups for negotiations whose timer elapsed.

        Args:
            now: Reference time (defaults to the clock)

        Returns:
            Ids of negotiations that were followed up or handed to a human
        """
        now = now or self.clock()
        due = self.repository.get_due_follow_ups(now, self.sweep_batch_size)
        if not due:
            logger.debug("No follow-ups due")
            return []

        logger.info(f"Found {len(due)} negotiations due for follow-up")
        processed = []
        for request_id in due:
            try:
                if await self._process_follow_up(request_id, now):
                    processed.append(request_id)
            except RetryableError as e:
                logger.warning(f"[{request_id}] Follow-up failed, will retry next sweep: {e}")
            except SchedulerError as e:
                logger.error(f"[{request_id}] Follow-up failed: {e}")
            except Exception as e:
                logger.error(f"[{request_id}] Unexpected error during follow-up, continuing with the batch: {e}")
        return processed

    async def cancel(self, request_id: str, actor: Actor = SYSTEM, reason: Optional[str] = None) -> NegotiationRequest:
        """
        Cancel a negotiation; no timer fires for it afterwards.

        Raises:
            InvalidTransitionError: If it is already closed
        """
        async with self.locks.hold(request_id):
            request = self.get_request(request_id)
            entries: List[ActionLogEntry] = []
            self._transition(request, S.CANCELLED, entries, actor, reason or "Cancelled")
            request.selected_time = None
            request.next_action_at = None
            request.next_action_type = None
            request.last_action_at = self.clock()
            entries.append(self.action_log.entry(request.id, ActionType.CANCELLED, actor, reason or "Cancelled"))

            drafts = []
            pending = self.repository.get_pending_draft(request.id)
            if pending is not None and pending.dispatched_at is None:
                pending.discarded_at = self.clock()
                drafts.append(pending)

            self.repository.persist(request=request, drafts=drafts, entries=entries)
            logger.info(f"[{request.id}] Cancelled: {reason or 'no reason given'}")
            return request

    async def complete(self, request_id: str, actor: Actor = SYSTEM, reason: Optional[str] = None) -> NegotiationRequest:
        """Close a confirmed negotiation after the meeting."""
        async with self.locks.hold(request_id):
            request = self.get_request(request_id)
            entries: List[ActionLogEntry] = []
            self._transition(request, S.COMPLETED, entries, actor, reason or "Meeting held")
            request.next_action_at = None
            request.next_action_type = None
            entries.append(self.action_log.entry(request.id, ActionType.COMPLETED, actor, reason or "Meeting held"))
            self.repository.persist(request=request, entries=entries)
            return request

    async def resolve_review(self, request_id: str, actor: Actor = SYSTEM, note: Optional[str] = None) -> NegotiationRequest:
        """
        Clear the needs-human marker.

        An awaiting_response negotiation with attempts left gets its
        follow-up timer back.
        """
        async with self.locks.hold(request_id):
            request = self.get_request(request_id)
            self._ensure_open(request)
            entries = [self.action_log.entry(
                request.id, ActionType.REVIEW_RESOLVED, actor,
                note or f"Resolved: {request.needs_human_reason or 'no reason recorded'}"
            )]
            request.needs_human = False
            request.needs_human_reason = None
            if request.next_action_type == NEXT_ACTION_DECLINE_REVIEW:
                request.next_action_type = None
            if (request.status == S.AWAITING_RESPONSE and request.next_action_at is None
                    and request.attempt_count < self.max_attempts):
                request.next_action_at = self.clock() + self.follow_up_delay
                request.next_action_type = NEXT_ACTION_FOLLOW_UP
            self.repository.persist(request=request, entries=entries)
            return request

    # Send

    async def _send_locked(self, request: NegotiationRequest, actor: Actor,
                           draft_id: Optional[str] = None,
                           action_type: ActionType = ActionType.EMAIL_SENT) -> SendOutcome:
        if request.is_terminal:
            raise InvalidTransitionError(request.status.value, S.AWAITING_RESPONSE.value)

        sendable = self.store.get_for_sending(request.id)
        if sendable is None or (draft_id is not None and sendable.draft_id != draft_id):
            latest = self.repository.get_draft(draft_id) if draft_id else self.store.get_latest(request.id)
            if latest is not None and latest.request_id == request.id and latest.sent_at is not None:
                logger.info(f"[{request.id}] Draft {latest.id} already sent, nothing to do")
                return SendOutcome(
                    request_id=request.id,
                    draft_id=latest.id,
                    status=request.status,
                    already_sent=True,
                    provider_message_id=latest.provider_message_id,
                    thread_id=request.thread_id,
                )
            if draft_id is not None and sendable is not None:
                raise DraftNotFoundError(f"Draft {draft_id} is not the pending draft for {request.id}")
            raise DraftNotFoundError(f"No unsent draft for negotiation {request.id}")

        target = S.CONFIRMED if request.status == S.CONFIRMED else S.AWAITING_RESPONSE
        if target not in ALLOWED_TRANSITIONS[request.status]:
            raise InvalidTransitionError(request.status.value, target.value)

        recipients = self._recipients(request)
        if not recipients:
            raise InvariantViolation(f"Negotiation {request.id} has no external recipients")

        if sendable.dispatched_at is None:
            result = await self.messaging.send_email(
                recipients, sendable.subject, sendable.body, thread_id=request.thread_id
            )
            if not result.success:
                self.action_log.record(
                    request.id, ActionType.SEND_FAILED, actor,
                    f"Draft {sendable.draft_id} not sent: {result.error or 'unknown error'}"
                )
                raise GatewayError("messaging", result.error or "send failed")
            sendable = self.store.mark_dispatched(sendable, result)
        else:
            logger.info(f"[{request.id}] Draft {sendable.draft_id} already dispatched, finalizing without resending")

        return self._finalize_send(request, sendable, recipients, actor, target, action_type)

    def _finalize_send(self, request: NegotiationRequest, sendable: SendableDraft, recipients: List[str],
                       actor: Actor, target: NegotiationStatus, action_type: ActionType) -> SendOutcome:
        now = self.clock()
        entries: List[ActionLogEntry] = []

        if request.thread_id is None and sendable.provider_thread_id:
            request.thread_id = sendable.provider_thread_id

        sent = self.store.sent_draft(sendable)

        if sendable.proposed_times and sendable.email_type != EmailType.CONFIRMATION:
            request.proposed_times = list(sendable.proposed_times)

        self._transition(request, target, entries, actor, f"{sendable.email_type.value} sent")
        request.attempt_count += 1
        request.last_action_at = now
        if target == S.AWAITING_RESPONSE:
            request.next_action_at = now + self.follow_up_delay
            request.next_action_type = NEXT_ACTION_FOLLOW_UP
        else:
            request.next_action_at = None
            request.next_action_type = None

        message = ConversationMessage(
            direction=Direction.OUTBOUND,
            channel=Channel.EMAIL,
            subject=sendable.subject,
            body=sendable.body,
            sender=self._sender_address(request),
            recipient=", ".join(recipients),
            timestamp=now,
            provider_message_id=sendable.provider_message_id,
        )
        request.conversation_history.append(message)

        entries.append(self.action_log.entry(
            request.id, action_type, actor,
            f"Sent draft {sendable.draft_id} ({sendable.email_type.value}) to {', '.join(recipients)}",
            linked_message_id=sendable.provider_message_id,
        ))
        if sendable.proposed_times and sendable.email_type != EmailType.CONFIRMATION:
            entries.append(self.action_log.entry(
                request.id, ActionType.TIMES_PROPOSED, actor,
                "; ".join(t.display for t in sendable.proposed_times),
            ))

        self.repository.persist(request=request, drafts=[sent], messages=[message], entries=entries)
        logger.info(f"[{request.id}] Sent draft {sendable.draft_id}, attempt {request.attempt_count}, status {request.status.value}")

        return SendOutcome(
            request_id=request.id,
            draft_id=sendable.draft_id,
            status=request.status,
            provider_message_id=sendable.provider_message_id,
            thread_id=request.thread_id,
        )

    # Inbound

    async def _apply_inbound(self, request: NegotiationRequest, inbound: InboundMessage,
                             match: MatchResult) -> NegotiationRequest:
        now = self.clock()
        actor = ExternalPartyActor(address=inbound.sender)
        entries: List[ActionLogEntry] = []

        received = ActionType.SMS_RECEIVED if inbound.channel == Channel.SMS else ActionType.EMAIL_RECEIVED
        entries.append(self.action_log.entry(
            request.id, received, actor,
            f"Matched by {match.strategy.value}: {match.reasoning}",
            linked_message_id=inbound.provider_message_id,
        ))
        message = ConversationMessage(
            direction=Direction.INBOUND,
            channel=inbound.channel,
            subject=inbound.subject,
            body=inbound.body,
            sender=inbound.sender,
            recipient=inbound.recipient or "",
            timestamp=inbound.timestamp,
            provider_message_id=inbound.provider_message_id,
        )
        request.conversation_history.append(message)

        if request.is_terminal:
            entries.append(self.action_log.entry(
                request.id, ActionType.INBOUND_IGNORED, actor,
                f"Reply arrived after the negotiation was {request.status.value}"
            ))
            self.repository.persist(request=request, messages=[message], entries=entries)
            logger.info(f"[{request.id}] Reply {inbound.provider_message_id} ignored, negotiation {request.status.value}")
            return request

        if request.thread_id is None and inbound.thread_id:
            request.thread_id = inbound.thread_id
            entries.append(self.action_log.entry(
                request.id, ActionType.THREAD_CAPTURED, SYSTEM, f"Thread id {inbound.thread_id} captured from reply"
            ))

        request.last_action_at = now
        request.next_action_at = None
        request.next_action_type = None

        if match.needs_review:
            self._flag(request, entries, f"Ambiguous match: {match.reasoning}")

        if request.status in (S.INITIAL, S.CONFIRMED):
            self._flag(request, entries, f"Reply received while {request.status.value}")
            self.repository.persist(request=request, messages=[message], entries=entries)
            await self._alert(request)
            return request

        classified = self.classifier.classify(inbound.body, request.proposed_times)
        logger.info(f"[{request.id}] Reply classified as {classified.intent.value}: {classified.reasoning}")

        reaction = await self._apply_intent(request, classified, inbound, actor, entries)

        self.repository.persist(request=request, messages=[message], entries=entries)

        if reaction is not None:
            email_type, exclude = reaction
            await self._draft_reaction(request, email_type, exclude)

        if request.needs_human:
            await self._alert(request)
        return request

    async def _apply_intent(self, request: NegotiationRequest, classified: ClassifiedReply,
                            inbound: InboundMessage, actor: Actor,
                            entries: List[ActionLogEntry]) -> Optional[Tuple[EmailType, List[datetime]]]:
        """Apply a classified reply; returns the draft to produce, if any."""
        intent = classified.intent

        if intent == ReplyIntent.ACCEPT:
            slot = request.proposed_times[classified.selected_index]
            return await self._confirm_slot(
                request, slot.start_utc, entries, actor, f"Accepted {slot.display}"
            )

        if intent == ReplyIntent.COUNTER:
            self._transition(request, S.NEGOTIATING, entries, actor, "Counter-proposal received")
            zone = ZoneInfo(request.timezone)
            today = inbound.timestamp.astimezone(zone).date()
            resolved = self.resolver.resolve(classified.time_text or inbound.body, today, request.timezone)
            entries.append(self.action_log.entry(
                request.id, ActionType.COUNTER_PROPOSAL, actor,
                f"'{(classified.time_text or '')[:120]}' -> "
                f"{resolved.instant.isoformat() if resolved.instant else 'unresolved'} "
                f"({resolved.confidence.value}): {resolved.reasoning}"
            ))
            if resolved.instant is None or resolved.confidence == Confidence.LOW:
                self._flag(request, entries, f"Could not pin down the proposed time: {resolved.reasoning}")
                return None
            return await self._confirm_slot(
                request, resolved.instant, entries, actor, f"Counter-proposal {resolved.instant.isoformat()}"
            )

        if intent == ReplyIntent.DECLINE:
            self._flag(request, entries, f"External party declined: {classified.reasoning}")
            request.next_action_type = NEXT_ACTION_DECLINE_REVIEW
            return None

        if intent == ReplyIntent.QUESTION:
            self._transition(request, S.NEGOTIATING, entries, actor, "Question received")
            self._flag(request, entries, "Reply contains a question that needs an answer")
            return None

        self._flag(request, entries, f"Unclear reply: {classified.reasoning}")
        return None

    async def _confirm_slot(self, request: NegotiationRequest, instant: datetime, entries: List[ActionLogEntry],
                            actor: Actor, reason: str) -> Optional[Tuple[EmailType, List[datetime]]]:
        """
        Confirm a slot if the calendar still has it free.

        Returns:
            (CONFIRMATION, []) when booked, (ALTERNATIVES, [instant]) when
            taken, None when the calendar could not answer
        """
        available, error = await self._check_availability(instant, request.duration_minutes)
        if available is None:
            self._flag(request, entries, f"Availability check failed for {instant.isoformat()}: {error}")
            return None

        if not available:
            self._transition(request, S.NEGOTIATING, entries, actor, f"{reason}, but the slot is taken")
            entries.append(self.action_log.entry(
                request.id, ActionType.AVAILABILITY_CONFLICT, SYSTEM, f"{instant.isoformat()} is no longer free"
            ))
            return EmailType.ALTERNATIVES, [instant]

        try:
            event = await self.calendar.create_event(
                [a.email for a in request.attendees],
                instant,
                request.duration_minutes,
                request.title,
                request.notes,
            )
        except GatewayError as e:
            self._flag(request, entries, f"Calendar event creation failed for {instant.isoformat()}: {e}")
            return None

        self._transition(request, S.CONFIRMED, entries, actor, reason)
        request.selected_time = instant
        request.calendar_event_id = event.event_id
        request.join_link = event.join_link
        entries.append(self.action_log.entry(
            request.id, ActionType.MEETING_CONFIRMED, actor,
            f"{reason}; calendar event {event.event_id}"
        ))
        logger.info(f"[{request.id}] Confirmed for {instant.isoformat()}, event {event.event_id}")
        return EmailType.CONFIRMATION, []

    async def _check_availability(self, instant: datetime, duration_minutes: int) -> Tuple[Optional[bool], Optional[str]]:
        """Ask the calendar, retrying once on failure."""
        error = None
        for attempt in range(2):
            try:
                return await self.calendar.is_available(instant, duration_minutes), None
            except GatewayError as e:
                error = str(e)
                logger.warning(f"Availability check attempt {attempt + 1} failed: {e}")
        return None, error

    async def _draft_reaction(self, request: NegotiationRequest, email_type: EmailType, exclude: List[datetime]):
        """Generate the reply draft an inbound message calls for, and send it when auto-send is on."""
        try:
            draft, discarded = await self.drafts.regenerate(request, email_type, exclude=exclude)
        except (RetryableError, InvariantViolation) as e:
            logger.error(f"[{request.id}] Could not draft {email_type.value} reply: {e}")
            entries: List[ActionLogEntry] = []
            self._flag(request, entries, f"Could not draft {email_type.value} reply: {e}")
            self.repository.persist(request=request, entries=entries)
            return

        reasoning = f"{email_type.value} draft {draft.id} with {len(draft.proposed_times)} proposed times"
        if discarded is not None:
            reasoning += f", replaces stale draft {discarded.id}"
        self.action_log.record(request.id, ActionType.DRAFT_GENERATED, SYSTEM, reasoning)

        if not self.auto_send_replies or request.needs_human:
            return

        try:
            await self._send_locked(self.get_request(request.id), SYSTEM)
        except RetryableError as e:
            logger.warning(f"[{request.id}] Auto-send failed, draft left pending: {e}")

    # Timers

    async def _process_follow_up(self, request_id: str, now: datetime) -> bool:
        async with self.locks.hold(request_id):
            request = self.repository.get_request(request_id)
            if (request is None or request.status != S.AWAITING_RESPONSE
                    or request.next_action_at is None or request.next_action_at > now):
                logger.debug(f"[{request_id}] No longer due for follow-up, skipping")
                return False

            if request.attempt_count >= self.max_attempts:
                entries: List[ActionLogEntry] = []
                self._flag(request, entries, f"No reply after {request.attempt_count} attempts")
                request.next_action_at = None
                request.next_action_type = None
                self.repository.persist(request=request, entries=entries)
                await self._alert(request)
                return True

            draft, created = await self.drafts.preview(request, EmailType.FOLLOW_UP)
            if created:
                self.action_log.record(
                    request.id, ActionType.DRAFT_GENERATED, SYSTEM,
                    f"follow_up draft {draft.id} for attempt {request.attempt_count + 1}"
                )
            await self._send_locked(request, SYSTEM, action_type=ActionType.FOLLOW_UP_SENT)
            return True

    # Helpers

    def _transition(self, request: NegotiationRequest, to_status: NegotiationStatus,
                    entries: List[ActionLogEntry], actor: Actor, reason: str):
        from_status = request.status
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise InvalidTransitionError(from_status.value, to_status.value)
        if from_status != to_status:
            request.status = to_status
            entries.append(self.action_log.entry(
                request.id, ActionType.STATUS_CHANGED, actor,
                f"{from_status.value} -> {to_status.value}: {reason}"
            ))

    def _flag(self, request: NegotiationRequest, entries: List[ActionLogEntry], reason: str):
        request.needs_human = True
        request.needs_human_reason = reason
        entries.append(self.action_log.entry(request.id, ActionType.NEEDS_HUMAN, SYSTEM, reason))
        logger.warning(f"[{request.id}] Needs human review: {reason}")

    async def _alert(self, request: NegotiationRequest):
        if not self.owner_phone_number or not request.needs_human:
            return
        alert = DraftFormatter.format_review_alert(request, request.needs_human_reason or "review needed")
        result = await self.messaging.send_sms(self.owner_phone_number, alert)
        if not result.success:
            logger.warning(f"[{request.id}] Review alert not delivered: {result.error}")

    def _default_email_type(self, request: NegotiationRequest) -> EmailType:
        self._ensure_open(request)
        return DEFAULT_EMAIL_TYPES[request.status]

    def _ensure_open(self, request: NegotiationRequest):
        if request.is_terminal:
            raise InvariantViolation(f"Negotiation {request.id} is {request.status.value}")

    @staticmethod
    def _recipients(request: NegotiationRequest) -> List[str]:
        external = request.external_attendees
        external.sort(key=lambda a: not a.is_primary_contact)
        return [a.email for a in external]

    @staticmethod
    def _sender_address(request: NegotiationRequest) -> str:
        for attendee in request.attendees:
            if attendee.side == AttendeeSide.INTERNAL:
                return attendee.email
        return "scheduler"


def get_negotiation_manager(settings: Settings, repository: NegotiationRepository,
                            locks: Optional[KeyedLocks] = None) -> NegotiationManager:
    """
    Build a negotiation manager and its gateways from settings.

    Returns:
        NegotiationManager instance
    """
    messaging = MessagingClient(settings.messaging_gateway_url, timeout=settings.gateway_timeout_seconds)
    calendar = CalendarClient(settings.calendar_gateway_url, timeout=settings.gateway_timeout_seconds)
    generator = TextGenerationClient(
        api_key=settings.anthropic_api_key,
        model=settings.anthropic_model,
        timeout=settings.generation_timeout_seconds,
        max_retries=settings.generation_max_retries,
    )
    drafts = DraftService(repository, generator, calendar, max_proposed_times=settings.max_proposed_times)

    return NegotiationManager(
        repository=repository,
        drafts=drafts,
        messaging=messaging,
        calendar=calendar,
        resolver=DateTimeResolver(default_hour=settings.default_meeting_hour),
        locks=locks,
        follow_up_delay=timedelta(hours=settings.follow_up_delay_hours),
        max_attempts=settings.max_attempts,
        auto_send_replies=settings.auto_send_replies,
        owner_phone_number=settings.owner_phone_number,
        default_timezone=settings.default_timezone,
        default_duration_minutes=settings.default_duration_minutes,
        sweep_batch_size=settings.sweep_batch_size,
    )
