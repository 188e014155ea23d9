"""
Inbound webhook processing

Normalizes provider payloads into InboundMessage, drops duplicates by
provider message id, matches the message to a negotiation and hands it to
the negotiation manager. Failures are recorded in the action log so the
provider can redeliver and the message is processed again.
"""
import hashlib
import hmac
import logging
import time
from datetime import timezone
from typing import Optional

from meeting_scheduler.action_log import ActionLog
from meeting_scheduler.locks import KeyedLocks
from meeting_scheduler.matching import MatchingEngine
from meeting_scheduler.models import (
    ActionType,
    Channel,
    EmailWebhookPayload,
    ExternalPartyActor,
    InboundMessage,
    IngestResult,
    utcnow,
)
from meeting_scheduler.negotiation_manager import NegotiationManager

logger = logging.getLogger(__name__)

TWIML_EMPTY_RESPONSE = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def verify_webhook_signature(payload: str, timestamp: str, signature: str, secret_key: str) -> bool:
    """
    Verify an HMAC-SHA256 webhook signature.

    Args:
        payload: Raw request body as string
        timestamp: Unix timestamp from X-Timestamp header
        signature: Hex signature from X-Signature header
        secret_key: Shared signing key

    Returns:
        True if signature is valid, False otherwise
    """
    if not secret_key:
        logger.warning("No signing key configured, skipping signature verification")
        return True

    expected_signature = hmac.new(
        secret_key.encode(),
        (payload + timestamp).encode(),
        hashlib.sha256
    ).hexdigest()

    is_valid = hmac.compare_digest(expected_signature, signature)
    if not is_valid:
        logger.warning(f"Invalid webhook signature. Expected: {expected_signature[:10]}..., Got: {signature[:10]}...")
    return is_valid


def verify_webhook_timestamp(timestamp: str, max_age_seconds: int = 300) -> bool:
    """
    Reject webhooks older (or further in the future) than max_age_seconds.

    Args:
        timestamp: Unix timestamp from X-Timestamp header
        max_age_seconds: Allowed clock skew

    Returns:
        True if timestamp is within range
    """
    try:
        age = abs(int(time.time()) - int(timestamp))
    except (ValueError, TypeError) as e:
        logger.warning(f"Invalid webhook timestamp {timestamp!r}: {e}")
        return False

    if age > max_age_seconds:
        logger.warning(f"Webhook timestamp too old: {age} seconds")
        return False
    return True


def parse_email_payload(payload: EmailWebhookPayload) -> InboundMessage:
    """Convert an email provider webhook into an InboundMessage"""
    received_at = payload.received_at or utcnow()
    if received_at.tzinfo is None:
        # Providers that omit the offset send UTC
        received_at = received_at.replace(tzinfo=timezone.utc)
    return InboundMessage(
        channel=Channel.EMAIL,
        provider_message_id=payload.message_id,
        thread_id=payload.thread_id or None,
        sender=payload.from_address,
        recipient=payload.to,
        subject=payload.subject,
        body=payload.body,
        timestamp=received_at,
    )


def parse_sms_form(sender: str, recipient: Optional[str], body: Optional[str],
                   message_sid: str) -> InboundMessage:
    """Convert Twilio-style SMS form fields into an InboundMessage"""
    return InboundMessage(
        channel=Channel.SMS,
        provider_message_id=message_sid,
        sender=sender,
        recipient=recipient,
        body=body or "",
        timestamp=utcnow(),
    )


class InboundProcessor:
    """Deduplicate, match and apply inbound messages"""

    def __init__(self, matcher: MatchingEngine, manager: NegotiationManager,
                 locks: Optional[KeyedLocks] = None):
        """
        Initialize inbound processor.

        Args:
            matcher: Matching engine
            manager: Negotiation manager that applies matched replies
            locks: Lock registry shared with the manager
        """
        self.matcher = matcher
        self.manager = manager
        self.action_log = ActionLog(manager.repository)
        self.locks = locks or manager.locks

    async def ingest(self, inbound: InboundMessage) -> IngestResult:
        """
        Process one inbound message at most once.

        Args:
            inbound: Normalized inbound message

        Returns:
            IngestResult describing what happened
        """
        message_id = inbound.provider_message_id
        async with self.locks.hold(f"inbound:{message_id}"):
            try:
                if self.action_log.has_seen(message_id):
                    logger.info(f"Inbound {message_id} already processed, skipping")
                    return IngestResult(status="duplicate", provider_message_id=message_id)

                match = self.matcher.match(inbound)
                if not match.matched:
                    self.action_log.record(
                        None, ActionType.UNMATCHED_INBOUND, ExternalPartyActor(address=inbound.sender),
                        f"{inbound.channel.value} from {inbound.sender}: {match.reasoning}",
                        linked_message_id=message_id,
                    )
                    return IngestResult(status="unmatched", provider_message_id=message_id, match=match)
            except Exception as e:
                logger.error(f"Error matching inbound {message_id}: {e}")
                self._record_failure(None, inbound, f"Matching failed: {type(e).__name__}: {e}")
                return IngestResult(status="failed", provider_message_id=message_id)

            try:
                await self.manager.handle_inbound(match.request_id, inbound, match)
            except Exception as e:
                logger.error(f"Error processing inbound {message_id} for {match.request_id}: {e}")
                self._record_failure(match.request_id, inbound, f"{type(e).__name__}: {e}")
                return IngestResult(
                    status="failed", provider_message_id=message_id, request_id=match.request_id, match=match
                )

            return IngestResult(
                status="processed", provider_message_id=message_id, request_id=match.request_id, match=match
            )

    def _record_failure(self, request_id: Optional[str], inbound: InboundMessage, reasoning: str):
        """Leave a processing_failed entry; the store itself may be what failed."""
        try:
            self.action_log.record(
                request_id, ActionType.PROCESSING_FAILED, ExternalPartyActor(address=inbound.sender),
                reasoning,
                linked_message_id=inbound.provider_message_id,
            )
        except Exception as e:
            logger.error(f"Could not record failure for inbound {inbound.provider_message_id}: {e}")
