"""
Draft formatting and validation logic
"""
import re
import logging
from typing import Optional, Sequence, Tuple

from meeting_scheduler.models import NegotiationRequest, ProposedTime

logger = logging.getLogger(__name__)

SMS_ALERT_MAX_LENGTH = 320


class DraftFormatter:
    """Handles draft body formatting and validation"""

    # Placeholder patterns to detect
    PLACEHOLDER_PATTERNS = [
        r'\[.*?\]',  # [Your Name], [Company], etc.
        r'\{.*?\}',  # {name}, {time}, etc.
        r'<[a-z _]+>',  # <name>, <company>, etc.
        r'XXX',
        r'TODO',
    ]

    @staticmethod
    def clean_body(text: str) -> str:
        """
        Clean and normalize generated body text

        Args:
            text: Raw generated text

        Returns:
            Cleaned text
        """
        text = text.strip()

        # Models sometimes echo a subject line
        text = re.sub(r'^subject:[^\n]*\n+', '', text, flags=re.IGNORECASE)

        # Normalize line breaks (max 2 consecutive)
        text = re.sub(r'\n{3,}', '\n\n', text)

        # Remove excessive spaces
        text = re.sub(r' {2,}', ' ', text)

        lines = text.split('\n')
        return '\n'.join(line.strip() for line in lines).strip()

    @staticmethod
    def validate_body(text: str) -> Tuple[bool, Optional[str]]:
        """
        Validate a draft body

        Args:
            text: Body to validate

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not text or not text.strip():
            return False, "Body is empty"

        if len(text.strip()) < 20:
            return False, "Body is too short (minimum 20 characters)"

        if len(text) > 5000:
            return False, "Body is too long (maximum 5000 characters)"

        for pattern in DraftFormatter.PLACEHOLDER_PATTERNS:
            if re.search(pattern, text):
                return False, f"Body contains placeholder: {pattern}"

        return True, None

    @staticmethod
    def ensure_times_listed(body: str, proposed_times: Sequence[ProposedTime]) -> str:
        """
        Append the proposed times when the generated body left any out.

        The sent email must carry exactly the times stored on the draft.
        """
        missing = [t for t in proposed_times if t.display not in body]
        if not missing:
            return body
        logger.debug(f"Generated body omitted {len(missing)} proposed times, appending list")
        listing = '\n'.join(f"{i}. {t.display}" for i, t in enumerate(proposed_times, start=1))
        return f"{body}\n\nOptions:\n{listing}"

    @staticmethod
    def format_review_alert(request: NegotiationRequest, reason: str) -> str:
        """
        Format an SMS alert telling the owner a negotiation needs attention

        Args:
            request: Negotiation needing review
            reason: Why it was flagged

        Returns:
            Alert text, truncated to two SMS segments
        """
        contact = request.primary_contact
        who = (contact.name or contact.email) if contact else "unknown contact"
        if len(who) > 30:
            who = who[:27] + "..."

        title = request.title if len(request.title) <= 40 else request.title[:37] + "..."

        alert = (
            f"Scheduling needs review: {title}\n"
            f"With: {who}\n"
            f"Status: {request.status.value}\n"
            f"Why: {reason}\n"
            f"ID: {request.id[:8]}"
        )
        if len(alert) > SMS_ALERT_MAX_LENGTH:
            alert = alert[:SMS_ALERT_MAX_LENGTH - 3] + "..."
        return alert
