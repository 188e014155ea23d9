"""
Tests for inbound processing and the HTTP surface
"""
import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from conftest import inbound_email, negotiation_payload
from meeting_scheduler.config import Settings
from meeting_scheduler.main import app
from meeting_scheduler.models import ActionType, EmailWebhookPayload, IngestResult, NegotiationStatus
from meeting_scheduler.webhooks import (
    TWIML_EMPTY_RESPONSE,
    parse_email_payload,
    verify_webhook_signature,
    verify_webhook_timestamp,
)

client = TestClient(app)

SIGNING_KEY = "test-signing-key"

EMAIL_PAYLOAD = {
    "message_id": "in-42",
    "thread_id": "thread-1",
    "from": "Dana Lee <dana@acme.io>",
    "to": "sam@globex.com",
    "subject": "Re: Scheduling: Intro call",
    "body": "Wednesday works for me",
}


def sign(raw: str, timestamp: str, key: str = SIGNING_KEY) -> str:
    return hmac.new(key.encode(), (raw + timestamp).encode(), hashlib.sha256).hexdigest()


class TestSignatureVerification:
    """Test HMAC and timestamp checks"""

    def test_valid_signature(self):
        ts = str(int(time.time()))
        assert verify_webhook_signature('{"a": 1}', ts, sign('{"a": 1}', ts), SIGNING_KEY) is True

    def test_tampered_payload(self):
        ts = str(int(time.time()))
        assert verify_webhook_signature('{"a": 2}', ts, sign('{"a": 1}', ts), SIGNING_KEY) is False

    def test_no_key_skips_check(self):
        assert verify_webhook_signature("body", "0", "whatever", "") is True

    def test_old_timestamp_rejected(self):
        assert verify_webhook_timestamp(str(int(time.time()) - 600)) is False

    def test_garbage_timestamp_rejected(self):
        assert verify_webhook_timestamp("yesterday") is False


class TestInboundProcessor:
    """Test deduplication, matching and failure recording"""

    @pytest.mark.asyncio
    async def test_reply_processed_once(self, processor, repository, sent_negotiation, messaging):
        request = await sent_negotiation()
        reply = inbound_email("Wednesday works for me", thread_id=request.thread_id)

        first = await processor.ingest(reply)
        second = await processor.ingest(reply)

        assert first.status == "processed"
        assert first.request_id == request.id
        assert second.status == "duplicate"
        received = [e for e in repository.get_entries_for_message("in-1")
                    if e.action_type == ActionType.EMAIL_RECEIVED]
        assert len(received) == 1
        assert repository.get_request(request.id).status == NegotiationStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_unmatched_recorded(self, processor, repository):
        result = await processor.ingest(inbound_email("Hi there", message_id="in-9", sender="who@initech.com"))

        assert result.status == "unmatched"
        entries = repository.get_entries_for_message("in-9")
        assert [e.action_type for e in entries] == [ActionType.UNMATCHED_INBOUND]
        assert entries[0].request_id is None

        again = await processor.ingest(inbound_email("Hi there", message_id="in-9", sender="who@initech.com"))
        assert again.status == "duplicate"

    @pytest.mark.asyncio
    async def test_failure_allows_redelivery(self, processor, repository, sent_negotiation):
        request = await sent_negotiation()
        reply = inbound_email("Wednesday works for me", thread_id=request.thread_id)

        with patch.object(processor.manager, "handle_inbound", AsyncMock(side_effect=RuntimeError("db down"))):
            failed = await processor.ingest(reply)

        assert failed.status == "failed"
        assert [e.action_type for e in repository.get_entries_for_message("in-1")] == [ActionType.PROCESSING_FAILED]

        retried = await processor.ingest(reply)
        assert retried.status == "processed"
        assert repository.get_request(request.id).status == NegotiationStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_matching_failure_recorded(self, processor, repository):
        with patch.object(processor.matcher, "match", side_effect=RuntimeError("lookup failed")):
            result = await processor.ingest(inbound_email("Hi"))

        assert result.status == "failed"
        entries = repository.get_entries_for_message("in-1")
        assert entries[0].action_type == ActionType.PROCESSING_FAILED
        assert "lookup failed" in entries[0].reasoning


class TestEmailWebhook:
    """Test the email webhook endpoint"""

    def test_accepts_unsigned_when_no_key(self):
        processor = AsyncMock()
        processor.ingest.return_value = IngestResult(status="processed", provider_message_id="in-42")

        with patch("meeting_scheduler.main.processor", processor), \
             patch("meeting_scheduler.main.get_settings", return_value=Settings(webhook_signing_key="")):
            response = client.post("/webhooks/email", json=EMAIL_PAYLOAD)

        assert response.status_code == 200
        assert response.json() == {"status": "received"}
        inbound = processor.ingest.call_args[0][0]
        assert inbound.provider_message_id == "in-42"
        assert inbound.thread_id == "thread-1"
        assert inbound.sender == "Dana Lee <dana@acme.io>"

    def test_valid_signature_accepted(self):
        processor = AsyncMock()
        processor.ingest.return_value = IngestResult(status="processed", provider_message_id="in-42")
        raw = json.dumps(EMAIL_PAYLOAD)
        ts = str(int(time.time()))

        with patch("meeting_scheduler.main.processor", processor), \
             patch("meeting_scheduler.main.get_settings", return_value=Settings(webhook_signing_key=SIGNING_KEY)):
            response = client.post(
                "/webhooks/email",
                content=raw,
                headers={"Content-Type": "application/json", "X-Signature": sign(raw, ts), "X-Timestamp": ts},
            )

        assert response.status_code == 200
        processor.ingest.assert_called_once()

    def test_bad_signature_rejected(self):
        processor = AsyncMock()
        raw = json.dumps(EMAIL_PAYLOAD)
        ts = str(int(time.time()))

        with patch("meeting_scheduler.main.processor", processor), \
             patch("meeting_scheduler.main.get_settings", return_value=Settings(webhook_signing_key=SIGNING_KEY)):
            response = client.post(
                "/webhooks/email",
                content=raw,
                headers={"Content-Type": "application/json", "X-Signature": "0" * 64, "X-Timestamp": ts},
            )

        assert response.status_code == 401
        processor.ingest.assert_not_called()

    def test_missing_headers_rejected(self):
        with patch("meeting_scheduler.main.processor", AsyncMock()), \
             patch("meeting_scheduler.main.get_settings", return_value=Settings(webhook_signing_key=SIGNING_KEY)):
            response = client.post("/webhooks/email", json=EMAIL_PAYLOAD)

        assert response.status_code == 401

    def test_missing_message_id(self):
        payload = {k: v for k, v in EMAIL_PAYLOAD.items() if k != "message_id"}
        with patch("meeting_scheduler.main.get_settings", return_value=Settings(webhook_signing_key="")):
            response = client.post("/webhooks/email", json=payload)

        assert response.status_code == 422


class TestSmsWebhook:
    """Test the SMS webhook endpoint"""

    def test_returns_twiml(self):
        processor = AsyncMock()
        processor.ingest.return_value = IngestResult(status="unmatched", provider_message_id="SM123")

        with patch("meeting_scheduler.main.processor", processor):
            response = client.post(
                "/webhooks/sms",
                data={"From": "+14155550100", "To": "+15550001111", "Body": "Tuesday works", "MessageSid": "SM123"},
            )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert response.text == TWIML_EMPTY_RESPONSE
        inbound = processor.ingest.call_args[0][0]
        assert inbound.provider_message_id == "SM123"
        assert inbound.body == "Tuesday works"

    def test_missing_fields_still_ok(self):
        processor = AsyncMock()

        with patch("meeting_scheduler.main.processor", processor):
            response = client.post("/webhooks/sms", data={"Body": "hello"})

        assert response.status_code == 200
        assert "<Response>" in response.text
        processor.ingest.assert_not_called()


@pytest.fixture
def api(manager, repository):
    """Patch the app's globals with the test manager and repository"""
    with patch("meeting_scheduler.main.manager", manager), \
         patch("meeting_scheduler.main.repository", repository):
        yield client


class TestManagementApi:
    """Test the negotiation endpoints"""

    def test_create_preview_send(self, api, messaging):
        created = api.post("/negotiations", json=negotiation_payload().model_dump(mode="json"))
        assert created.status_code == 201
        request_id = created.json()["id"]
        assert created.json()["status"] == "initial"

        preview = api.post(f"/negotiations/{request_id}/draft/preview")
        assert preview.status_code == 200
        draft = preview.json()
        assert draft["subject"] == "Scheduling: Intro call"

        sent = api.post(f"/negotiations/{request_id}/send", json={"draft_id": draft["id"], "user_id": "sam"})
        assert sent.status_code == 200
        assert sent.json()["status"] == "awaiting_response"
        assert messaging.emails[0]["body"] == draft["body"]

        again = api.post(f"/negotiations/{request_id}/send")
        assert again.json()["already_sent"] is True
        assert len(messaging.emails) == 1

        actions = api.get(f"/negotiations/{request_id}/actions").json()
        assert actions["total"] == len(actions["actions"])
        assert actions["actions"][0]["action_type"] == "created"

    def test_create_rejects_unknown_timezone(self, api):
        payload = negotiation_payload().model_dump(mode="json")
        payload["timezone"] = "Mars/Olympus_Mons"

        response = api.post("/negotiations", json=payload)

        assert response.status_code == 422

    def test_unknown_negotiation(self, api):
        assert api.get("/negotiations/nope").status_code == 404

    def test_send_without_draft_conflicts(self, api, manager):
        request = manager.create_request(negotiation_payload())

        response = api.post(f"/negotiations/{request.id}/send")

        assert response.status_code == 409
        assert response.json()["retryable"] is False

    def test_gateway_failure_is_retryable(self, api, manager, messaging):
        request = manager.create_request(negotiation_payload())
        api.post(f"/negotiations/{request.id}/draft/preview")
        messaging.fail = True

        response = api.post(f"/negotiations/{request.id}/send")

        assert response.status_code == 503
        assert response.json()["retryable"] is True
        assert manager.get_request(request.id).status == NegotiationStatus.INITIAL

    def test_edit_requires_a_field(self, api, manager):
        request = manager.create_request(negotiation_payload())

        response = api.patch(f"/negotiations/{request.id}/draft", json={})

        assert response.status_code == 422

    def test_cancel_and_list(self, api, manager):
        request = manager.create_request(negotiation_payload())

        response = api.post(f"/negotiations/{request.id}/cancel", json={"reason": "Deal closed"})
        assert response.json()["status"] == "cancelled"

        listed = api.get("/negotiations", params={"status": "cancelled"}).json()
        assert [n["id"] for n in listed["negotiations"]] == [request.id]

    def test_health(self, api, manager):
        manager.create_request(negotiation_payload())

        response = api.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "meeting-scheduler"
        assert data["status"] == "healthy"
        assert data["database_connected"] is True
        assert data["negotiations"]["initial"] == 1
        assert data["negotiations"]["total"] == 1


class TestAcknowledgeOnInternalError:
    """Webhooks acknowledge the provider even when the store is down"""

    @pytest.fixture
    def store_down(self, processor, repository):
        error = OperationalError("SELECT", {}, Exception("database is locked"))
        with patch("meeting_scheduler.main.processor", processor), \
             patch("meeting_scheduler.main.get_settings", return_value=Settings(webhook_signing_key="")), \
             patch.object(repository, "has_inbound_message", side_effect=error), \
             patch.object(repository, "append_entries", side_effect=error):
            yield

    def test_sms_still_returns_twiml(self, store_down):
        response = client.post(
            "/webhooks/sms", data={"From": "+14155550100", "Body": "Tuesday works", "MessageSid": "SM500"}
        )

        assert response.status_code == 200
        assert response.text == TWIML_EMPTY_RESPONSE

    def test_email_still_received(self, store_down):
        response = client.post(
            "/webhooks/email", json={"message_id": "in-500", "from": "dana@acme.io", "body": "Tuesday works"}
        )

        assert response.status_code == 200
        assert response.json() == {"status": "received"}

    @pytest.mark.asyncio
    async def test_ingest_reports_failure_instead_of_raising(self, processor, store_down):
        result = await processor.ingest(inbound_email("Tuesday works", message_id="in-501"))

        assert result.status == "failed"

    def test_processor_crash_is_acknowledged(self):
        processor = AsyncMock()
        processor.ingest.side_effect = RuntimeError("unexpected")

        with patch("meeting_scheduler.main.processor", processor), \
             patch("meeting_scheduler.main.get_settings", return_value=Settings(webhook_signing_key="")):
            email = client.post("/webhooks/email", json=EMAIL_PAYLOAD)
            sms = client.post("/webhooks/sms", data={"From": "+14155550100", "MessageSid": "SM501"})

        assert email.status_code == 200
        assert sms.status_code == 200
        assert sms.text == TWIML_EMPTY_RESPONSE


class TestParseEmailPayload:
    """Test webhook payload normalization"""

    def test_naive_received_at_is_utc(self):
        payload = EmailWebhookPayload(**{
            "message_id": "in-7", "from": "dana@acme.io", "received_at": "2026-01-05T23:30:00",
        })

        inbound = parse_email_payload(payload)

        assert inbound.timestamp == datetime(2026, 1, 5, 23, 30, tzinfo=timezone.utc)

    def test_offset_kept(self):
        payload = EmailWebhookPayload(**{
            "message_id": "in-8", "from": "dana@acme.io", "received_at": "2026-01-05T18:30:00-05:00",
        })

        inbound = parse_email_payload(payload)

        assert inbound.timestamp == datetime(2026, 1, 5, 23, 30, tzinfo=timezone.utc)
