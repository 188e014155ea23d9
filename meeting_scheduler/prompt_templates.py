"""
Prompt templates for scheduling email generation
"""
from typing import Dict, List, Optional, Sequence

from meeting_scheduler.models import (
    Direction,
    EmailType,
    NegotiationRequest,
    ProposedTime,
)


class PromptTemplates:
    """Manages prompt templates for each kind of scheduling email"""

    SYSTEM_PROMPT = """You are an assistant drafting short scheduling emails on behalf of a sales representative.
Your goal is to land a meeting time with minimal back-and-forth.

Key principles:
- Be clear, warm and brief (3-6 sentences)
- When times are provided, list every one of them exactly as written, one per line, numbered
- Never invent times, dates, links or names that are not provided
- Never use placeholders like [Your Name] or {time}
- Generate ONLY the email body, no subject line and no explanations"""

    TEMPLATES = {
        EmailType.INITIAL_OUTREACH: """Write a first outreach email asking {recipient_name} to pick a time for: {title}.
Meeting length: {duration_minutes} minutes.

Offer these times:
{times}

Context from the sender:
{notes}

Sign off as {sender_name}. Generate ONLY the email body:""",

        EmailType.FOLLOW_UP: """Write a polite follow-up to {recipient_name}, who has not replied to an earlier email about: {title}.
This is follow-up number {attempt_number}. Keep it shorter than the first email and do not sound pushy.

Offer these times again:
{times}

Earlier conversation:
{history}

Sign off as {sender_name}. Generate ONLY the email body:""",

        EmailType.ALTERNATIVES: """Write a reply to {recipient_name} about: {title}.
The time they asked for is not available. Apologize briefly and offer these alternatives:
{times}

Their last message:
{last_inbound}

Sign off as {sender_name}. Generate ONLY the email body:""",

        EmailType.CONFIRMATION: """Write a short confirmation email to {recipient_name} for: {title}.
Confirmed time: {times}
Meeting length: {duration_minutes} minutes.
{join_line}

Their last message:
{last_inbound}

Sign off as {sender_name}. Generate ONLY the email body:""",
    }

    @staticmethod
    def get_template(email_type: EmailType) -> str:
        return PromptTemplates.TEMPLATES[email_type]

    @staticmethod
    def build_variables(
        request: NegotiationRequest,
        email_type: EmailType,
        proposed_times: Sequence[ProposedTime],
        sender_name: Optional[str] = None,
    ) -> Dict[str, str]:
        """
        Build template variables for a negotiation

        Args:
            request: Negotiation the email belongs to
            email_type: Kind of email
            proposed_times: Times the email must carry
            sender_name: Name to sign with (defaults to the first internal attendee)

        Returns:
            Variables for str.format on the template
        """
        contact = request.primary_contact
        recipient_name = (contact.name or contact.email.split('@')[0]) if contact else "there"

        if not sender_name:
            internal = [a for a in request.attendees if a.side.value == "internal"]
            sender_name = (internal[0].name or internal[0].email.split('@')[0]) if internal else "the team"

        inbound = [m for m in request.conversation_history if m.direction == Direction.INBOUND]
        last_inbound = inbound[-1].body[:1500] if inbound else "(none)"

        return {
            "recipient_name": recipient_name,
            "sender_name": sender_name,
            "title": request.title,
            "duration_minutes": str(request.duration_minutes),
            "times": PromptTemplates.format_times(proposed_times),
            "notes": request.notes or "(none)",
            "attempt_number": str(max(request.attempt_count, 1)),
            "history": PromptTemplates.format_history(request),
            "last_inbound": last_inbound,
            "join_line": f"Join link: {request.join_link}" if request.join_link else "",
        }

    @staticmethod
    def format_times(proposed_times: Sequence[ProposedTime]) -> str:
        if not proposed_times:
            return "(no specific times)"
        return "\n".join(f"{i}. {t.display}" for i, t in enumerate(proposed_times, start=1))

    @staticmethod
    def format_history(request: NegotiationRequest, limit: int = 4) -> str:
        messages = request.conversation_history[-limit:]
        if not messages:
            return "(none)"
        parts: List[str] = []
        for message in messages:
            who = "Us" if message.direction == Direction.OUTBOUND else "Them"
            parts.append(f"{who}: {message.body[:500]}")
        return "\n\n".join(parts)

    @staticmethod
    def build_subject(request: NegotiationRequest, email_type: EmailType,
                      proposed_times: Sequence[ProposedTime] = ()) -> str:
        """
        Subject line for a draft; replies keep the thread's subject.
        """
        if email_type == EmailType.CONFIRMATION and proposed_times:
            return f"Confirmed: {request.title} - {proposed_times[0].display}"

        previous = request.outbound_subjects
        if email_type != EmailType.INITIAL_OUTREACH and previous:
            base = previous[0]
            return base if base.lower().startswith("re:") else f"Re: {base}"

        return f"Scheduling: {request.title}"
