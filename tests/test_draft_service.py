"""
Tests for draft generation, storage and the send-side store
"""
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from conftest import negotiation_payload
from meeting_scheduler.draft_formatter import DraftFormatter
from meeting_scheduler.draft_service import DraftStore
from meeting_scheduler.errors import DraftNotFoundError, GenerationError, InvariantViolation
from meeting_scheduler.models import EmailType, NegotiationRequest, SendEmailResult


@pytest.fixture
def negotiation(repository):
    data = negotiation_payload()
    request = NegotiationRequest(
        title=data.title,
        timezone=data.timezone,
        attendees=data.attendees,
    )
    return repository.create_request(request)


class TestPreview:
    """Test preview stability"""

    @pytest.mark.asyncio
    async def test_preview_generates_once(self, drafts, negotiation, generator):
        first, created = await drafts.preview(negotiation, EmailType.INITIAL_OUTREACH)
        second, created_again = await drafts.preview(negotiation, EmailType.INITIAL_OUTREACH)

        assert created is True
        assert created_again is False
        assert (second.id, second.subject, second.body) == (first.id, first.subject, first.body)
        assert len(generator.calls) == 1

    @pytest.mark.asyncio
    async def test_initial_subject_and_times(self, drafts, negotiation):
        draft, _ = await drafts.preview(negotiation, EmailType.INITIAL_OUTREACH)

        assert draft.subject == "Scheduling: Intro call"
        assert [t.display for t in draft.proposed_times] == [
            "Tuesday, January 6 at 10:00 AM EST",
            "Wednesday, January 7 at 2:00 PM EST",
            "Thursday, January 8 at 5:30 PM EST",
        ]
        for proposed in draft.proposed_times:
            assert proposed.display in draft.body

    @pytest.mark.asyncio
    async def test_busy_slots_are_skipped(self, drafts, negotiation, calendar):
        calendar.busy.add(datetime(2026, 1, 6, 15, 0, tzinfo=timezone.utc))

        draft, _ = await drafts.preview(negotiation, EmailType.INITIAL_OUTREACH)

        assert datetime(2026, 1, 6, 15, 0, tzinfo=timezone.utc) not in [t.start_utc for t in draft.proposed_times]
        assert len(draft.proposed_times) == 3

    @pytest.mark.asyncio
    async def test_calendar_down_uses_unverified_slots(self, drafts, negotiation, calendar):
        calendar.down = True

        draft, _ = await drafts.preview(negotiation, EmailType.INITIAL_OUTREACH)

        assert len(draft.proposed_times) == 3

    @pytest.mark.asyncio
    async def test_placeholder_body_rejected(self, drafts, negotiation, generator, repository):
        generator.body = "Hi [Name], would any of these work for you?"

        with pytest.raises(GenerationError):
            await drafts.preview(negotiation, EmailType.INITIAL_OUTREACH)
        assert repository.get_pending_draft(negotiation.id) is None

    @pytest.mark.asyncio
    async def test_confirmation_requires_selected_time(self, drafts, negotiation):
        with pytest.raises(InvariantViolation):
            await drafts.preview(negotiation, EmailType.CONFIRMATION)


class TestRegenerate:
    """Test regenerate discards the pending draft"""

    @pytest.mark.asyncio
    async def test_regenerate_replaces_pending(self, drafts, negotiation, repository):
        old, _ = await drafts.preview(negotiation, EmailType.INITIAL_OUTREACH)

        new, discarded = await drafts.regenerate(negotiation, EmailType.INITIAL_OUTREACH)

        assert discarded.id == old.id
        assert repository.get_draft(old.id).discarded_at is not None
        assert repository.get_pending_draft(negotiation.id).id == new.id
        assert new.body != old.body

    @pytest.mark.asyncio
    async def test_regenerate_refused_after_dispatch(self, drafts, negotiation):
        await drafts.preview(negotiation, EmailType.INITIAL_OUTREACH)
        sendable = drafts.get_for_sending(negotiation.id)
        drafts.mark_dispatched(sendable, SendEmailResult(success=True, provider_message_id="msg-1"))

        with pytest.raises(InvariantViolation):
            await drafts.regenerate(negotiation, EmailType.INITIAL_OUTREACH)

    @pytest.mark.asyncio
    async def test_regenerate_without_pending(self, drafts, negotiation):
        draft, discarded = await drafts.regenerate(negotiation, EmailType.INITIAL_OUTREACH)
        assert discarded is None
        assert draft.email_type == EmailType.INITIAL_OUTREACH


class TestUpdate:
    """Test editing the pending draft"""

    @pytest.mark.asyncio
    async def test_update_keeps_times(self, drafts, negotiation, clock):
        draft, _ = await drafts.preview(negotiation, EmailType.INITIAL_OUTREACH)

        updated = drafts.update(negotiation, subject="  Quick intro  ", body="Hi Dana,\n\n\n\nAny of these good?")

        assert updated.subject == "Quick intro"
        assert updated.body == "Hi Dana,\n\nAny of these good?"
        assert updated.proposed_times == draft.proposed_times
        assert updated.edited_at == clock()

    def test_update_without_pending(self, drafts, negotiation):
        with pytest.raises(DraftNotFoundError):
            drafts.update(negotiation, body="Hello there, any time work?")


class TestDraftStore:
    """Test the send-side store"""

    @pytest.mark.asyncio
    async def test_sendable_is_frozen(self, drafts, negotiation, repository):
        await drafts.preview(negotiation, EmailType.INITIAL_OUTREACH)
        store = DraftStore(repository)

        sendable = store.get_for_sending(negotiation.id)

        assert not hasattr(store, "generator")
        with pytest.raises(ValidationError):
            sendable.body = "something else"

    @pytest.mark.asyncio
    async def test_mark_sent_clears_pending(self, drafts, negotiation, repository):
        await drafts.preview(negotiation, EmailType.INITIAL_OUTREACH)
        store = DraftStore(repository)

        store.mark_sent(store.get_for_sending(negotiation.id))

        assert store.get_for_sending(negotiation.id) is None
        assert store.get_latest(negotiation.id).sent_at is not None

    @pytest.mark.asyncio
    async def test_sent_draft_cannot_be_sent_again(self, drafts, negotiation, repository):
        await drafts.preview(negotiation, EmailType.INITIAL_OUTREACH)
        store = DraftStore(repository)
        sendable = store.get_for_sending(negotiation.id)
        store.mark_sent(sendable)

        with pytest.raises(InvariantViolation):
            store.sent_draft(sendable)

    def test_missing_draft(self, repository):
        store = DraftStore(repository)
        assert store.get_for_sending("no-such-request") is None


class TestDraftFormatter:
    """Test body hygiene"""

    def test_clean_body_strips_subject_line(self):
        body = DraftFormatter.clean_body("Subject: Meeting\n\nHi Dana,\n\n\n\nThanks")
        assert body == "Hi Dana,\n\nThanks"

    def test_validate_rejects_short(self):
        is_valid, error = DraftFormatter.validate_body("Hi")
        assert is_valid is False
        assert error

    def test_validate_accepts_normal_body(self):
        is_valid, error = DraftFormatter.validate_body("Hi Dana, would Tuesday at 10 work for a call?")
        assert is_valid is True
        assert error is None

    def test_review_alert_fits_two_segments(self, negotiation):
        alert = DraftFormatter.format_review_alert(negotiation.model_copy(update={"title": "x" * 200}), "y" * 400)
        assert len(alert) <= 320
