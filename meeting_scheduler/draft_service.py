"""
Draft Service

Keeps at most one pending outbound draft per negotiation. Previewing
returns the stored draft unchanged; only an explicit regenerate replaces
it. The send path works against DraftStore, which has no generator, so
sending can never produce different content from what was previewed.
"""
import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

from meeting_scheduler.calendar_client import CalendarClient
from meeting_scheduler.claude_client import TextGenerationClient
from meeting_scheduler.database import NegotiationRepository
from meeting_scheduler.draft_formatter import DraftFormatter
from meeting_scheduler.errors import DraftNotFoundError, GatewayError, GenerationError, InvariantViolation
from meeting_scheduler.models import (
    Draft,
    EmailType,
    NegotiationRequest,
    ProposedTime,
    SendableDraft,
    SendEmailResult,
    utcnow,
)
from meeting_scheduler.prompt_templates import PromptTemplates
from meeting_scheduler.slots import MIN_LEAD_TIME, generate_candidate_slots, to_proposed_time

logger = logging.getLogger(__name__)


class DraftStore:
    """Read and finalize drafts; cannot generate content"""

    def __init__(self, repository: NegotiationRepository, clock: Callable[[], datetime] = utcnow):
        self.repository = repository
        self.clock = clock

    def get_for_sending(self, request_id: str) -> Optional[SendableDraft]:
        """
        Get the current unsent draft.

        Args:
            request_id: Negotiation id

        Returns:
            Frozen copy of the pending draft, or None
        """
        draft = self.repository.get_pending_draft(request_id)
        if draft is None:
            return None
        return self._sendable(draft)

    def get_latest(self, request_id: str) -> Optional[Draft]:
        return self.repository.get_latest_draft(request_id)

    def mark_dispatched(self, sendable: SendableDraft, result: SendEmailResult) -> SendableDraft:
        """Record that the gateway accepted the draft, ahead of finalizing."""
        draft = self._load(sendable.draft_id)
        draft.dispatched_at = self.clock()
        draft.provider_thread_id = result.provider_thread_id
        draft.provider_message_id = result.provider_message_id
        self.repository.save_draft(draft)
        return self._sendable(draft)

    def sent_draft(self, sendable: SendableDraft) -> Draft:
        """Copy of the draft with sent_at set, for writing alongside the transition."""
        draft = self._load(sendable.draft_id)
        if draft.sent_at is not None:
            raise InvariantViolation(f"Draft {draft.id} was already sent")
        draft.sent_at = self.clock()
        return draft

    def mark_sent(self, sendable: SendableDraft) -> Draft:
        draft = self.sent_draft(sendable)
        self.repository.save_draft(draft)
        return draft

    def _load(self, draft_id: str) -> Draft:
        draft = self.repository.get_draft(draft_id)
        if draft is None:
            raise DraftNotFoundError(f"Draft {draft_id} not found")
        return draft

    @staticmethod
    def _sendable(draft: Draft) -> SendableDraft:
        return SendableDraft(
            draft_id=draft.id,
            request_id=draft.request_id,
            email_type=draft.email_type,
            subject=draft.subject,
            body=draft.body,
            proposed_times=tuple(draft.proposed_times),
            dispatched_at=draft.dispatched_at,
            provider_thread_id=draft.provider_thread_id,
            provider_message_id=draft.provider_message_id,
        )


class DraftService(DraftStore):
    """Generates, persists and edits drafts"""

    def __init__(
        self,
        repository: NegotiationRepository,
        generator: TextGenerationClient,
        calendar: CalendarClient,
        max_proposed_times: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize draft service.

        Args:
            repository: Negotiation repository
            generator: Text generation gateway
            calendar: Calendar gateway used to vet proposed times
            max_proposed_times: Times offered per email
            clock: Source of the current time
        """
        super().__init__(repository, clock)
        self.generator = generator
        self.calendar = calendar
        self.max_proposed_times = max_proposed_times
        self.formatter = DraftFormatter()

    async def preview(self, request: NegotiationRequest, email_type: EmailType) -> Tuple[Draft, bool]:
        """
        Return the pending draft, generating one only if none exists.

        Args:
            request: Negotiation
            email_type: Kind of email to generate when nothing is pending

        Returns:
            Tuple of (draft, created)
        """
        pending = self.repository.get_pending_draft(request.id)
        if pending is not None:
            return pending, False

        draft = await self._generate(request, email_type)
        self.repository.save_draft(draft)
        logger.info(f"[{request.id}] Generated {email_type.value} draft {draft.id}")
        return draft, True

    async def regenerate(self, request: NegotiationRequest, email_type: EmailType,
                         exclude: Iterable[datetime] = ()) -> Tuple[Draft, Optional[Draft]]:
        """
        Discard any pending draft and generate a new one.

        Args:
            request: Negotiation
            email_type: Kind of email
            exclude: Start instants that must not be proposed again

        Returns:
            Tuple of (new draft, discarded draft or None)

        Raises:
            InvariantViolation: If the pending draft was already handed to the gateway
        """
        pending = self.repository.get_pending_draft(request.id)
        if pending is not None and pending.dispatched_at is not None:
            raise InvariantViolation(
                f"Draft {pending.id} was already dispatched; send again to finalize it"
            )

        exclude = list(exclude)
        if pending is not None:
            # A new set of times is what regenerate is for
            exclude.extend(t.start_utc for t in pending.proposed_times)

        draft = await self._generate(request, email_type, exclude=exclude, fresh_times=True)

        discarded = None
        if pending is not None:
            pending.discarded_at = self.clock()
            discarded = pending
            self.repository.persist(drafts=[pending, draft])
        else:
            self.repository.save_draft(draft)

        logger.info(f"[{request.id}] Regenerated {email_type.value} draft {draft.id}")
        return draft, discarded

    def update(self, request: NegotiationRequest, subject: Optional[str] = None,
               body: Optional[str] = None) -> Draft:
        """
        Edit the pending draft's text; proposed times stay as generated.

        Raises:
            DraftNotFoundError: If no draft is pending
            InvariantViolation: If the draft was already dispatched
        """
        draft = self.repository.get_pending_draft(request.id)
        if draft is None:
            raise DraftNotFoundError(f"No pending draft for negotiation {request.id}")
        if draft.dispatched_at is not None:
            raise InvariantViolation(f"Draft {draft.id} was already dispatched")

        if subject is not None:
            draft.subject = subject.strip()
        if body is not None:
            draft.body = self.formatter.clean_body(body)
        draft.edited_at = self.clock()
        self.repository.save_draft(draft)
        return draft

    async def plan_times(self, request: NegotiationRequest, email_type: EmailType,
                         exclude: Iterable[datetime] = (), fresh: bool = False) -> List[ProposedTime]:
        """
        Pick the times a draft will carry.

        Confirmations carry the selected time. Follow-ups repeat the earlier
        offer while it is still in the future. Everything else gets new
        slots, checked against the calendar.
        """
        now = self.clock()

        if email_type == EmailType.CONFIRMATION:
            if request.selected_time is None:
                raise InvariantViolation("Confirmation draft requires a selected time")
            return [to_proposed_time(request.selected_time, request.timezone)]

        if email_type == EmailType.FOLLOW_UP and not fresh:
            still_open = [t for t in request.proposed_times if t.start_utc - now >= MIN_LEAD_TIME]
            if still_open:
                return still_open

        excluded = list(exclude)
        if email_type == EmailType.ALTERNATIVES:
            excluded.extend(t.start_utc for t in request.proposed_times)

        candidates = generate_candidate_slots(
            now,
            request.timezone,
            date_range_start=request.date_range_start,
            date_range_end=request.date_range_end,
            preferred_periods=request.preferred_periods,
            avoid_days=request.avoid_days,
            exclude=excluded,
        )

        chosen = []
        try:
            for start in candidates:
                if await self.calendar.is_available(start, request.duration_minutes):
                    chosen.append(start)
                if len(chosen) >= self.max_proposed_times:
                    break
        except GatewayError as e:
            logger.warning(f"[{request.id}] Calendar unavailable while planning times, using unverified slots: {e}")
            chosen = candidates[:self.max_proposed_times]

        if not chosen:
            logger.warning(f"[{request.id}] No free slots found for {email_type.value} draft")
        return [to_proposed_time(start, request.timezone) for start in chosen]

    async def _generate(self, request: NegotiationRequest, email_type: EmailType,
                        exclude: Iterable[datetime] = (), fresh_times: bool = False) -> Draft:
        proposed_times = await self.plan_times(request, email_type, exclude, fresh=fresh_times)

        template = PromptTemplates.get_template(email_type)
        variables = PromptTemplates.build_variables(request, email_type, proposed_times)
        text = await self.generator.generate(template, variables)

        body = self.formatter.clean_body(text)
        body = self.formatter.ensure_times_listed(body, proposed_times)
        is_valid, error = self.formatter.validate_body(body)
        if not is_valid:
            logger.error(f"[{request.id}] Generated body rejected: {error}")
            raise GenerationError(f"Generated body rejected: {error}")

        return Draft(
            request_id=request.id,
            email_type=email_type,
            subject=PromptTemplates.build_subject(request, email_type, proposed_times),
            body=body,
            proposed_times=proposed_times,
            generated_at=self.clock(),
        )
