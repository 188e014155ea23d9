"""
Tests for the negotiation repository
"""
from datetime import datetime, timedelta, timezone

import pytest

from conftest import NOW, negotiation_payload
from meeting_scheduler.database import normalize_phone
from meeting_scheduler.errors import InvariantViolation, ThreadIdOverwriteError
from meeting_scheduler.models import (
    ActionLogEntry,
    ActionType,
    Draft,
    EmailType,
    NegotiationRequest,
    NegotiationStatus,
    UserActor,
)


@pytest.fixture
def stored(repository):
    data = negotiation_payload()
    return repository.create_request(NegotiationRequest(
        title=data.title,
        timezone=data.timezone,
        attendees=data.attendees,
        created_at=NOW,
    ))


class TestNormalizePhone:
    """Test phone normalization"""

    @pytest.mark.parametrize("raw", ["+1 (415) 555-0100", "415.555.0100", "14155550100"])
    def test_nanp_variants(self, raw):
        assert normalize_phone(raw) == "4155550100"

    def test_international_kept(self):
        assert normalize_phone("+44 20 7946 0958") == "442079460958"

    @pytest.mark.parametrize("raw", [None, "", "n/a"])
    def test_empty(self, raw):
        assert normalize_phone(raw) is None


class TestPersist:
    """Test aggregate writes"""

    def test_roundtrip_keeps_attendees_in_order(self, repository, stored):
        loaded = repository.get_request(stored.id)

        assert [a.email for a in loaded.attendees] == ["dana@acme.io", "sam@globex.com"]
        assert loaded.primary_contact.email == "dana@acme.io"
        assert loaded.status == NegotiationStatus.INITIAL

    def test_datetimes_are_aware_utc(self, repository, stored):
        stored.next_action_at = datetime(2026, 1, 7, 9, 0, tzinfo=timezone(timedelta(hours=-5)))
        repository.persist(request=stored)

        loaded = repository.get_request(stored.id)

        assert loaded.created_at == NOW
        assert loaded.next_action_at.tzinfo is not None
        assert loaded.next_action_at == datetime(2026, 1, 7, 14, 0, tzinfo=timezone.utc)

    def test_thread_id_is_set_once(self, repository, stored):
        stored.thread_id = "thread-1"
        repository.persist(request=stored)
        repository.persist(request=stored)

        stored.thread_id = "thread-2"
        with pytest.raises(ThreadIdOverwriteError):
            repository.persist(request=stored)
        assert repository.get_request(stored.id).thread_id == "thread-1"

    def test_selected_time_requires_confirmed(self, repository, stored):
        stored.selected_time = NOW + timedelta(days=1)

        with pytest.raises(InvariantViolation):
            repository.persist(request=stored)

    def test_write_is_atomic(self, repository, stored):
        stored.status = NegotiationStatus.AWAITING_RESPONSE
        stored.selected_time = NOW
        entry = ActionLogEntry(request_id=stored.id, action_type=ActionType.STATUS_CHANGED)

        with pytest.raises(InvariantViolation):
            repository.persist(request=stored, entries=[entry])

        assert repository.get_action_log(stored.id) == []
        assert repository.get_request(stored.id).status == NegotiationStatus.INITIAL

    def test_sent_draft_is_immutable(self, repository, stored):
        draft = Draft(request_id=stored.id, email_type=EmailType.INITIAL_OUTREACH, subject="Hi", body="Hello")
        draft.sent_at = NOW
        repository.persist(drafts=[draft])

        with pytest.raises(InvariantViolation):
            repository.persist(drafts=[draft.model_copy(update={"body": "Changed"})])
        assert repository.get_draft(draft.id).body == "Hello"


class TestQueries:
    """Test lookups used by matching, the sweep and the API"""

    def test_actor_survives_storage(self, repository, stored):
        repository.append_entries([ActionLogEntry(
            request_id=stored.id, action_type=ActionType.CANCELLED, actor=UserActor(user_id="sam"),
            reasoning="Deal closed",
        )])

        entry = repository.get_action_log(stored.id)[0]

        assert entry.actor == UserActor(user_id="sam")
        assert entry.reasoning == "Deal closed"

    def test_due_follow_ups(self, repository, stored):
        stored.status = NegotiationStatus.AWAITING_RESPONSE
        stored.next_action_at = NOW + timedelta(hours=48)
        repository.persist(request=stored)

        assert repository.get_due_follow_ups(NOW + timedelta(hours=47)) == []
        assert repository.get_due_follow_ups(NOW + timedelta(hours=49)) == [stored.id]

    def test_open_lookups_skip_closed(self, repository, stored):
        assert [r.id for r in repository.find_open_by_external_email("Dana@Acme.io")] == [stored.id]
        assert repository.find_open_by_external_email("sam@globex.com") == []

        stored.status = NegotiationStatus.CANCELLED
        repository.persist(request=stored)

        assert repository.find_open_by_external_email("dana@acme.io") == []
        assert repository.find_open_by_external_phone("4155550100") == []

    def test_statistics(self, repository, stored):
        stats = repository.get_statistics()

        assert stats["initial"] == 1
        assert stats["total"] == 1
        assert stats["needs_human"] == 0
