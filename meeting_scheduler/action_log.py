"""
Action Log

Append-only audit trail. Entries are built here and either written on their
own or handed to the repository together with the state change they
describe, so a transition and its log entry commit together.
"""
import logging
from typing import List, Optional

from meeting_scheduler.database import NegotiationRepository
from meeting_scheduler.models import SYSTEM, ActionLogEntry, ActionType, Actor

logger = logging.getLogger(__name__)


class ActionLog:
    """Audit trail backed by the negotiation repository"""

    def __init__(self, repository: NegotiationRepository):
        self.repository = repository

    def entry(self, request_id: Optional[str], action_type: ActionType, actor: Actor = SYSTEM,
              reasoning: str = "", linked_message_id: Optional[str] = None) -> ActionLogEntry:
        """Build an entry without writing it."""
        return ActionLogEntry(
            request_id=request_id,
            action_type=action_type,
            actor=actor,
            reasoning=reasoning,
            linked_message_id=linked_message_id,
        )

    def record(self, request_id: Optional[str], action_type: ActionType, actor: Actor = SYSTEM,
               reasoning: str = "", linked_message_id: Optional[str] = None) -> ActionLogEntry:
        """Build and write a single entry."""
        entry = self.entry(request_id, action_type, actor, reasoning, linked_message_id)
        self.repository.append_entries([entry])
        logger.debug(f"[{request_id}] {action_type.value}: {reasoning}")
        return entry

    def history(self, request_id: str) -> List[ActionLogEntry]:
        return self.repository.get_action_log(request_id)

    def has_seen(self, provider_message_id: str) -> bool:
        """True once an inbound provider message has been recorded."""
        return self.repository.has_inbound_message(provider_message_id)
