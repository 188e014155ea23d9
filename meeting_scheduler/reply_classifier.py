"""
Inbound Reply Classifier

Classifies an external party's reply as accept, counter-proposal, decline,
question or unclear, and works out which proposed time an accept refers to.
"""
import re
from typing import List, Optional, Sequence
from zoneinfo import ZoneInfo

from meeting_scheduler.datetime_resolver import MONTHS, WEEKDAYS, DateTimeResolver
from meeting_scheduler.models import ClassifiedReply, ProposedTime, ReplyIntent

# Lines that start quoted history in a reply
QUOTE_MARKERS = [
    r'^>',
    r'^on .+ wrote:\s*$',
    r'^-{2,}\s*original message\s*-{2,}',
    r'^from:\s',
    r'^sent from my ',
    r'^_{5,}',
]

ORDINALS = {
    "first": 0, "1st": 0,
    "second": 1, "2nd": 1,
    "third": 2, "3rd": 2,
    "fourth": 3, "4th": 3,
}


class ReplyClassifier:
    """Classify scheduling replies"""

    DECLINE_PATTERNS = [
        r"\bnot interested\b",
        r"\bno,? thanks?\b",
        r"\bno,? thank you\b",
        r"\bunsubscribe\b",
        r"\bremove me\b",
        r"\bplease stop\b",
        r"\bnot a (?:good )?fit\b",
        r"\b(?:we|i)(?:'ll| will) pass\b",
        r"\bpass on this\b",
        r"\bdecline\b",
        r"\bnot at this time\b",
    ]

    COUNTER_PATTERNS = [
        r"\b(?:how|what) about\b",
        r"\bcould we (?:do|try|move)\b",
        r"\bcan we (?:do|try|move|push)\b",
        r"\bwould .{1,40} work\b",
        r"\binstead\b",
        r"\b(?:none|neither) of (?:these|those|them|the)\b",
        r"\b(?:doesn'?t|don'?t|does not|do not|won'?t) work\b",
        r"\bcan'?t make\b",
        r"\bnot available\b",
        r"\bi'?m (?:free|available)\b",
        r"\bi can do\b",
        r"\breschedule\b",
        r"\bworks better\b",
        r"\bbetter for me\b",
        r"\bprefer\b",
    ]

    ACCEPT_PATTERNS = [
        r"\bworks\b",
        r"\bsounds (?:good|great|perfect)\b",
        r"\bperfect\b",
        r"\bconfirm(?:ed)?\b",
        r"\blet'?s do\b",
        r"\bi'?ll take\b",
        r"\bsee you\b",
        r"\bbook (?:it|me|that)\b",
        r"\b(?:yes|yep|yeah|sure|ok|okay|great)\b",
        r"\bi can make\b",
        r"\bgo with\b",
    ]

    # Where a counter-proposal usually starts
    PROPOSAL_CUES = r"\b(?:(?:how|what) about|could we (?:do|try)|can we (?:do|try)|would|i'?m (?:free|available)|i can do|instead|prefer|but)\b"

    TIME_REFERENCE = re.compile(
        r"\b(?:" + "|".join(WEEKDAYS) + r")\b"
        r"|\b(?:" + "|".join(m for m in MONTHS if m != "may") + r")\b|\bmay \d"
        r"|\b\d{1,2}(?:st|nd|rd|th)\b|\bthe \d{1,2}\b"
        r"|\b\d{1,2}(?::\d{2})?\s*(?:a\.?m\.?|p\.?m\.?)"
        r"|\b\d{1,2}:\d{2}\b|\b\d{1,2}/\d{1,2}\b|\d{4}-\d{2}-\d{2}"
        r"|\bnoon\b|\btomorrow\b|\bnext week\b|\bat \d{1,2}\b"
    )

    def classify(self, message: str, proposed_times: Sequence[ProposedTime] = ()) -> ClassifiedReply:
        """
        Classify a reply.

        Args:
            message: Reply body, quoted history included
            proposed_times: Times offered in the last outbound message

        Returns:
            ClassifiedReply with intent, the accepted option index for an
            accept and the time text for a counter-proposal
        """
        body = strip_quoted_reply(message)
        normalized = " ".join(body.lower().split())

        if not normalized:
            return ClassifiedReply(intent=ReplyIntent.UNCLEAR, raw_message=message, reasoning="Empty reply")

        for pattern in self.DECLINE_PATTERNS:
            if re.search(pattern, normalized):
                return ClassifiedReply(
                    intent=ReplyIntent.DECLINE,
                    raw_message=message,
                    reasoning=f"Decline phrase matched: {pattern}"
                )

        counter = any(re.search(p, normalized) for p in self.COUNTER_PATTERNS)
        accept = any(re.search(p, normalized) for p in self.ACCEPT_PATTERNS)
        names_time = bool(self.TIME_REFERENCE.search(normalized))
        selection = self.match_proposed_time(normalized, proposed_times)

        if selection is not None and not counter:
            return ClassifiedReply(
                intent=ReplyIntent.ACCEPT,
                selected_index=selection,
                raw_message=message,
                reasoning=f"Picked option {selection + 1}: {proposed_times[selection].display}"
            )

        if names_time and (counter or accept or selection is None):
            return ClassifiedReply(
                intent=ReplyIntent.COUNTER,
                time_text=self._proposal_text(normalized),
                raw_message=message,
                reasoning="Names a time that is not one of the proposed options"
            )

        if accept and len(proposed_times) == 1:
            return ClassifiedReply(
                intent=ReplyIntent.ACCEPT,
                selected_index=0,
                raw_message=message,
                reasoning="Accepted the only proposed time"
            )

        if "?" in normalized:
            return ClassifiedReply(intent=ReplyIntent.QUESTION, raw_message=message, reasoning="Reply asks a question")

        reasoning = "Accepted without naming a slot" if accept else "No scheduling intent recognized"
        if counter:
            reasoning = "Rejected the proposed times without suggesting another"
        return ClassifiedReply(intent=ReplyIntent.UNCLEAR, raw_message=message, reasoning=reasoning)

    def match_proposed_time(self, normalized: str, proposed_times: Sequence[ProposedTime]) -> Optional[int]:
        """
        Work out which proposed time a reply picks.

        Tries an explicit option number, then an ordinal, then narrows by
        weekday, day of month and time of day.

        Args:
            normalized: Lowercased reply text
            proposed_times: Offered times, in the order they were listed

        Returns:
            Index into proposed_times, or None when nothing or several match
        """
        if not proposed_times:
            return None

        match = re.search(r"(?:\b(?:option|slot|choice|number)\s*#?|#)\s*(\d)\b", normalized) \
            or re.fullmatch(r"\s*(\d)[.)!]?\s*", normalized)
        if match:
            index = int(match.group(1)) - 1
            return index if 0 <= index < len(proposed_times) else None

        match = re.search(
            r"\b(first|1st|second|2nd|third|3rd|fourth|4th|last)\s+(?:one|option|time|slot|choice)\b"
            r"|\bthe (first|second|third|fourth|last)\b",
            normalized
        )
        if match:
            word = match.group(1) or match.group(2)
            index = len(proposed_times) - 1 if word == "last" else ORDINALS[word]
            return index if index < len(proposed_times) else None

        locals_ = [t.start_utc.astimezone(ZoneInfo(t.timezone)) for t in proposed_times]
        candidates: List[int] = list(range(len(proposed_times)))
        narrowed = False

        weekdays = DateTimeResolver.find_weekdays(normalized)
        if weekdays:
            candidates = [i for i in candidates if locals_[i].weekday() in weekdays]
            narrowed = True

        day_match = re.search(r"\b(\d{1,2})(?:st|nd|rd|th)\b", normalized)
        if day_match:
            day = int(day_match.group(1))
            candidates = [i for i in candidates if locals_[i].day == day]
            narrowed = True

        clock = DateTimeResolver.find_time(normalized)
        if clock is not None:
            hour, minute = clock[0], clock[1]
            by_time = [i for i in candidates if (locals_[i].hour, locals_[i].minute) == (hour, minute)]
            if not by_time and weekdays:
                # A different time on a proposed day is a counter-proposal
                return None
            candidates = by_time
            narrowed = True

        if narrowed and len(candidates) == 1:
            return candidates[0]
        return None

    def _proposal_text(self, normalized: str) -> str:
        """Sentence holding the suggested time, starting at its cue when present."""
        cues = list(re.finditer(self.PROPOSAL_CUES, normalized))
        if cues:
            start = cues[-1].start()
            tail = normalized[start:]
            if self.TIME_REFERENCE.search(tail):
                end = re.search(r"[.!?\n](?:\s|$)", tail)
                return tail[:end.end()].strip() if end else tail
        return normalized


def strip_quoted_reply(body: str) -> str:
    """
    Drop quoted history and signatures from a reply.

    Args:
        body: Raw reply text

    Returns:
        The text written by the replying party
    """
    if not body:
        return ""
    lines = []
    for line in body.replace('\r\n', '\n').split('\n'):
        stripped = line.strip()
        if stripped == '--' or any(re.match(marker, stripped, re.IGNORECASE) for marker in QUOTE_MARKERS):
            break
        lines.append(line)
    return '\n'.join(lines).strip()
