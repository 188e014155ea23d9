"""
Tests for reply classification
"""
from datetime import datetime, timezone

import pytest

from meeting_scheduler.models import ReplyIntent
from meeting_scheduler.reply_classifier import ReplyClassifier, strip_quoted_reply
from meeting_scheduler.slots import to_proposed_time

NEW_YORK = "America/New_York"

# Tue Jan 6 10:00 AM, Wed Jan 7 2:00 PM, Thu Jan 8 5:30 PM (EST)
PROPOSED = [
    to_proposed_time(datetime(2026, 1, 6, 15, 0, tzinfo=timezone.utc), NEW_YORK),
    to_proposed_time(datetime(2026, 1, 7, 19, 0, tzinfo=timezone.utc), NEW_YORK),
    to_proposed_time(datetime(2026, 1, 8, 22, 30, tzinfo=timezone.utc), NEW_YORK),
]


@pytest.fixture
def classifier():
    """Create classifier instance"""
    return ReplyClassifier()


class TestAccept:
    """Test picking one of the proposed times"""

    @pytest.mark.parametrize("message,index", [
        ("Option 2 works", 1),
        ("#3 please", 2),
        ("1", 0),
        ("The first one is good for me", 0),
        ("Let's do the last one", 2),
        ("Wednesday works for me", 1),
        ("Thursday at 5:30pm is perfect", 2),
        ("The 6th works", 0),
    ])
    def test_selection(self, classifier, message, index):
        result = classifier.classify(message, PROPOSED)
        assert result.intent == ReplyIntent.ACCEPT
        assert result.selected_index == index

    def test_only_time_accepted(self, classifier):
        result = classifier.classify("Sounds good, see you then!", PROPOSED[:1])
        assert result.intent == ReplyIntent.ACCEPT
        assert result.selected_index == 0

    def test_accept_without_slot_is_unclear(self, classifier):
        result = classifier.classify("Sounds good!", PROPOSED)
        assert result.intent == ReplyIntent.UNCLEAR

    def test_option_out_of_range(self, classifier):
        result = classifier.classify("Option 7", PROPOSED)
        assert result.intent != ReplyIntent.ACCEPT

    def test_quoted_history_ignored(self, classifier):
        message = (
            "Wednesday works.\n\n"
            "On Mon, Jan 5, 2026 at 9:00 AM Sam Ortiz <sam@globex.com> wrote:\n"
            "> 1. Tuesday, January 6 at 10:00 AM EST\n"
            "> 2. Wednesday, January 7 at 2:00 PM EST\n"
        )
        result = classifier.classify(message, PROPOSED)
        assert result.intent == ReplyIntent.ACCEPT
        assert result.selected_index == 1


class TestCounter:
    """Test counter-proposals"""

    def test_different_day(self, classifier):
        result = classifier.classify("None of these work. How about Friday at 3pm?", PROPOSED)
        assert result.intent == ReplyIntent.COUNTER
        assert "friday at 3pm" in result.time_text

    def test_different_time_on_proposed_day(self, classifier):
        result = classifier.classify("Wednesday at 4pm works", PROPOSED)
        assert result.intent == ReplyIntent.COUNTER

    def test_counter_time_text_starts_at_cue(self, classifier):
        result = classifier.classify("Thanks for reaching out. I'm free Monday the 12th at 11am.", PROPOSED)
        assert result.intent == ReplyIntent.COUNTER
        assert result.time_text.startswith("i'm free monday the 12th")


class TestOtherIntents:
    """Test decline, question and unclear replies"""

    @pytest.mark.parametrize("message", [
        "Not interested, thanks",
        "Please remove me from your list",
        "We'll pass for now.",
        "No thanks",
    ])
    def test_decline(self, classifier, message):
        assert classifier.classify(message, PROPOSED).intent == ReplyIntent.DECLINE

    def test_question(self, classifier):
        assert classifier.classify("Who else will be on the call?", PROPOSED).intent == ReplyIntent.QUESTION

    def test_empty(self, classifier):
        assert classifier.classify("", PROPOSED).intent == ReplyIntent.UNCLEAR

    def test_unrelated(self, classifier):
        assert classifier.classify("Forwarding to my colleague.", PROPOSED).intent == ReplyIntent.UNCLEAR


class TestStripQuotedReply:
    """Test quoted history removal"""

    def test_strips_after_marker(self):
        body = "Tuesday works\n\n-----Original Message-----\nFrom: Sam"
        assert strip_quoted_reply(body) == "Tuesday works"

    def test_strips_signature_delimiter(self):
        assert strip_quoted_reply("See you then\n--\nDana Lee\nAcme") == "See you then"

    def test_empty(self):
        assert strip_quoted_reply("") == ""
