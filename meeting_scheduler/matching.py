"""
Matching Engine

Maps an inbound email or SMS to at most one open negotiation.

Strategies, in priority order:
1. Thread id: authoritative, returned as soon as it hits.
2. Sender: external attendee email (case-insensitive) or phone number.
3. Disambiguation when the sender has several open negotiations: subject
   score plus status score, then a fixed tie-break.

Tie-break for equal scores: most recent last_action_at first (never-acted
negotiations last), then most recently created, then lowest id. The result
is flagged needs_review whenever the top two scores are equal.
"""
import logging
import re
from datetime import datetime
from email.utils import parseaddr
from typing import List, Set, Tuple

from meeting_scheduler.database import NegotiationRepository
from meeting_scheduler.models import (
    Channel,
    InboundMessage,
    MatchResult,
    MatchStrategy,
    NegotiationRequest,
    NegotiationStatus,
)

logger = logging.getLogger(__name__)

SCHEDULING_KEYWORDS = frozenset({
    "schedule", "scheduling", "meeting", "meet", "calendar", "call", "demo", "chat",
    "time", "times", "available", "availability", "slot", "works", "reschedule",
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
    "january", "february", "march", "april", "may", "june", "july", "august",
    "september", "october", "november", "december",
    "morning", "afternoon", "evening", "am", "pm", "tomorrow", "week",
})

STATUS_SCORES = {
    NegotiationStatus.AWAITING_RESPONSE: 2,
    NegotiationStatus.NEGOTIATING: 1,
}

SUBJECT_MATCH_SCORE = 2

_REPLY_PREFIX = re.compile(r"^\s*(?:re|fwd?|aw|sv)\s*:\s*", re.IGNORECASE)


def normalize_subject(subject: str) -> str:
    """Lowercase, whitespace-collapsed subject without Re:/Fwd: prefixes."""
    subject = subject or ""
    previous = None
    while previous != subject:
        previous = subject
        subject = _REPLY_PREFIX.sub("", subject)
    return " ".join(subject.lower().split())


def _keywords(text: str) -> Set[str]:
    return set(re.findall(r"[a-z]+", text.lower())) & SCHEDULING_KEYWORDS


class MatchingEngine:
    """Match inbound messages to open negotiations"""

    def __init__(self, repository: NegotiationRepository):
        self.repository = repository

    def match(self, inbound: InboundMessage) -> MatchResult:
        """
        Find the negotiation an inbound message belongs to.

        Args:
            inbound: Inbound email or SMS

        Returns:
            MatchResult; request_id is None when nothing matches
        """
        if inbound.thread_id:
            request = self.repository.find_open_by_thread(inbound.thread_id)
            if request is not None:
                logger.info(f"Matched {inbound.provider_message_id} to {request.id} by thread id")
                return MatchResult(
                    request_id=request.id,
                    strategy=MatchStrategy.THREAD,
                    candidates=[request.id],
                    reasoning=f"Thread id {inbound.thread_id} matches"
                )

        candidates = self._sender_candidates(inbound)
        if not candidates:
            logger.info(f"No open negotiation for sender {inbound.sender} ({inbound.provider_message_id})")
            return MatchResult(
                strategy=MatchStrategy.NONE,
                reasoning=f"No open negotiation for sender {inbound.sender}"
            )

        if len(candidates) == 1:
            request = candidates[0]
            logger.info(f"Matched {inbound.provider_message_id} to {request.id} by sender")
            return MatchResult(
                request_id=request.id,
                strategy=MatchStrategy.ATTENDEE,
                candidates=[request.id],
                reasoning=f"Only open negotiation with {inbound.sender}"
            )

        return self._disambiguate(inbound, candidates)

    def _sender_candidates(self, inbound: InboundMessage) -> List[NegotiationRequest]:
        if inbound.channel == Channel.SMS:
            return self.repository.find_open_by_external_phone(inbound.sender)
        _, address = parseaddr(inbound.sender)
        if not address:
            return []
        return self.repository.find_open_by_external_email(address)

    def score(self, inbound: InboundMessage, request: NegotiationRequest) -> Tuple[int, str]:
        """
        Score a candidate.

        Returns:
            Tuple of (score, explanation)
        """
        parts = []
        score = 0

        subject = normalize_subject(inbound.subject or "")
        if subject:
            known = {normalize_subject(s) for s in request.outbound_subjects}
            known.add(normalize_subject(request.title))
            if subject in known:
                score += SUBJECT_MATCH_SCORE
                parts.append("subject matches")

            candidate_text = " ".join([request.title] + request.outbound_subjects)
            shared = _keywords(subject) & _keywords(candidate_text)
            if shared:
                score += len(shared)
                parts.append(f"keywords {sorted(shared)}")

        status_score = STATUS_SCORES.get(request.status, 0)
        if status_score:
            score += status_score
            parts.append(f"status {request.status.value}")

        return score, ", ".join(parts) or "no signals"

    def _disambiguate(self, inbound: InboundMessage, candidates: List[NegotiationRequest]) -> MatchResult:
        scored = []
        for request in candidates:
            score, explanation = self.score(inbound, request)
            scored.append((score, request, explanation))

        scored.sort(key=lambda item: self._rank_key(item[0], item[1]))
        best_score, best, explanation = scored[0]
        tied = scored[1][0] == best_score

        reasoning = (
            f"{len(candidates)} open negotiations for {inbound.sender}; "
            f"picked {best.id} with score {best_score} ({explanation})"
        )
        if tied:
            reasoning += "; tie broken by most recent activity"
            logger.warning(f"Ambiguous match for {inbound.provider_message_id}: {reasoning}")
        else:
            logger.info(f"Matched {inbound.provider_message_id} to {best.id}: {reasoning}")

        return MatchResult(
            request_id=best.id,
            strategy=MatchStrategy.DISAMBIGUATED,
            candidates=[item[1].id for item in scored],
            needs_review=tied,
            reasoning=reasoning
        )

    @staticmethod
    def _rank_key(score: int, request: NegotiationRequest):
        last_action = request.last_action_at.timestamp() if request.last_action_at else float("-inf")
        created = request.created_at.timestamp() if isinstance(request.created_at, datetime) else 0.0
        return (-score, -last_action, -created, request.id)
