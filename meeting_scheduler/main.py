"""
Meeting Scheduler - Main FastAPI Application

Negotiates meeting times with external parties over email:
- Management API (create, preview, edit, send, cancel, complete)
- Inbound email and SMS webhooks
- Follow-up sweep for negotiations with no reply
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Form, Header, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from meeting_scheduler import __version__
from meeting_scheduler.config import get_settings
from meeting_scheduler.database import get_repository
from meeting_scheduler.errors import InvariantViolation, NegotiationNotFoundError, RetryableError
from meeting_scheduler.locks import KeyedLocks
from meeting_scheduler.matching import MatchingEngine
from meeting_scheduler.models import (
    SYSTEM,
    ActionRequest,
    DraftUpdate,
    EmailWebhookPayload,
    FollowUpRunResponse,
    HealthCheckResponse,
    NegotiationCreate,
    NegotiationStatus,
    PreviewRequest,
    SendRequest,
    UserActor,
)
from meeting_scheduler.negotiation_manager import get_negotiation_manager
from meeting_scheduler.webhooks import (
    TWIML_EMPTY_RESPONSE,
    InboundProcessor,
    parse_email_payload,
    parse_sms_form,
    verify_webhook_signature,
    verify_webhook_timestamp,
)

load_dotenv()

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Global state
repository = None
manager = None
processor = None
background_tasks_running = False
start_time = datetime.now(timezone.utc)


async def run_follow_up_sweep():
    """Background task that fires overdue follow-ups"""
    global manager, background_tasks_running

    interval = get_settings().sweep_interval_seconds
    logger.info(f"Starting follow-up sweep task (interval: {interval}s)")

    while background_tasks_running:
        try:
            processed = await manager.process_due_follow_ups()
            if processed:
                logger.info(f"Follow-up sweep handled {len(processed)} negotiations")
        except Exception as e:
            logger.error(f"Error in follow-up sweep task: {e}")

        await asyncio.sleep(interval)

    logger.info("Follow-up sweep task stopped")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown"""
    global repository, manager, processor, background_tasks_running

    logger.info("Starting Meeting Scheduler service...")
    settings = get_settings()

    try:
        repository = get_repository(settings.database_url)
        locks = KeyedLocks()
        manager = get_negotiation_manager(settings, repository, locks)
        processor = InboundProcessor(MatchingEngine(repository), manager, locks)

        background_tasks_running = True
        sweep_task = asyncio.create_task(run_follow_up_sweep())

        logger.info("Meeting Scheduler service started successfully")

    except Exception as e:
        logger.error(f"Failed to start Meeting Scheduler service: {e}")
        raise

    yield

    logger.info("Shutting down Meeting Scheduler service...")
    background_tasks_running = False
    sweep_task.cancel()
    await manager.drafts.generator.close()
    repository.close()
    logger.info("Meeting Scheduler service stopped")


app = FastAPI(
    title="Meeting Scheduler",
    description="Negotiates meeting times with external parties over email",
    version=__version__,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RetryableError)
async def retryable_error_handler(request: Request, exc: RetryableError):
    logger.warning(f"Retryable failure on {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"detail": str(exc), "retryable": True})


@app.exception_handler(InvariantViolation)
async def invariant_violation_handler(request: Request, exc: InvariantViolation):
    logger.warning(f"Rejected {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=409, content={"detail": str(exc), "retryable": False})


@app.exception_handler(NegotiationNotFoundError)
async def not_found_handler(request: Request, exc: NegotiationNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


def _actor(user_id: Optional[str]):
    return UserActor(user_id=user_id) if user_id else SYSTEM


@app.get("/health", response_model=HealthCheckResponse)
async def health_check():
    """
    Health check endpoint

    Returns service status and negotiation counts
    """
    db_connected = repository.check_connection()
    stats = {}
    if db_connected:
        try:
            stats = repository.get_statistics()
        except Exception as e:
            logger.error(f"Health check statistics failed: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    uptime = (datetime.now(timezone.utc) - start_time).total_seconds()
    return HealthCheckResponse(
        status="healthy" if db_connected else "degraded",
        service="meeting-scheduler",
        database_connected=db_connected,
        negotiations=stats,
        uptime_seconds=uptime
    )


@app.post("/negotiations", status_code=201)
async def create_negotiation(data: NegotiationCreate):
    """
    Create a negotiation in the initial state

    Args:
        data: Title, attendees and scheduling preferences

    Returns:
        The stored negotiation
    """
    return manager.create_request(data, _actor(data.created_by))


@app.get("/negotiations")
async def list_negotiations(status: Optional[NegotiationStatus] = None,
                            needs_human: Optional[bool] = None, limit: int = 50):
    """List negotiations, newest first"""
    negotiations = repository.list_requests(status=status, needs_human=needs_human, limit=limit)
    return {"negotiations": negotiations, "total": len(negotiations)}


@app.get("/negotiations/{request_id}")
async def get_negotiation(request_id: str):
    return manager.get_request(request_id)


@app.get("/negotiations/{request_id}/actions")
async def get_negotiation_actions(request_id: str):
    """Action log for a negotiation, oldest first"""
    entries = manager.get_action_log(request_id)
    return {"actions": entries, "total": len(entries)}


@app.post("/negotiations/{request_id}/draft/preview")
async def preview_draft(request_id: str, body: Optional[PreviewRequest] = None):
    """
    Preview the pending draft

    The first call generates it; later calls return the same content until
    the draft is sent, regenerated or the negotiation moves on.
    """
    body = body or PreviewRequest()
    return await manager.preview_draft(request_id, body.email_type, _actor(body.user_id))


@app.post("/negotiations/{request_id}/draft/regenerate")
async def regenerate_draft(request_id: str, body: Optional[PreviewRequest] = None):
    body = body or PreviewRequest()
    return await manager.regenerate_draft(request_id, body.email_type, _actor(body.user_id))


@app.patch("/negotiations/{request_id}/draft")
async def update_draft(request_id: str, body: DraftUpdate):
    """Edit the pending draft's subject or body"""
    if body.subject is None and body.body is None:
        raise HTTPException(status_code=422, detail="Provide a subject or a body")
    return await manager.edit_draft(request_id, body.subject, body.body, _actor(body.user_id))


@app.post("/negotiations/{request_id}/send")
async def send_draft(request_id: str, body: Optional[SendRequest] = None):
    """
    Send the pending draft exactly as previewed

    Sending twice is safe: the second call reports already_sent.
    """
    body = body or SendRequest()
    return await manager.send(request_id, _actor(body.user_id), draft_id=body.draft_id)


@app.post("/negotiations/{request_id}/cancel")
async def cancel_negotiation(request_id: str, body: Optional[ActionRequest] = None):
    body = body or ActionRequest()
    return await manager.cancel(request_id, _actor(body.user_id), body.reason)


@app.post("/negotiations/{request_id}/complete")
async def complete_negotiation(request_id: str, body: Optional[ActionRequest] = None):
    body = body or ActionRequest()
    return await manager.complete(request_id, _actor(body.user_id), body.reason)


@app.post("/negotiations/{request_id}/review/resolve")
async def resolve_review(request_id: str, body: Optional[ActionRequest] = None):
    """Clear the needs-human marker after a person handled the negotiation"""
    body = body or ActionRequest()
    return await manager.resolve_review(request_id, _actor(body.user_id), body.reason)


@app.post("/follow-ups/run", response_model=FollowUpRunResponse)
async def run_follow_ups():
    """Run the follow-up sweep now instead of waiting for the timer"""
    processed = await manager.process_due_follow_ups()
    return FollowUpRunResponse(processed=len(processed), request_ids=processed)


@app.post("/webhooks/email")
async def email_webhook(
    request: Request,
    payload: EmailWebhookPayload,
    x_signature: Optional[str] = Header(None),
    x_timestamp: Optional[str] = Header(None),
):
    """
    Webhook endpoint for inbound email replies

    Security:
    - Verifies HMAC-SHA256 signature if WEBHOOK_SIGNING_KEY is configured
    - Validates timestamp to prevent replay attacks (5 minutes)
    """
    signing_key = get_settings().webhook_signing_key
    if signing_key:
        if not x_signature or not x_timestamp:
            logger.warning("Webhook missing signature headers")
            raise HTTPException(status_code=401, detail="Missing X-Signature or X-Timestamp header")

        if not verify_webhook_timestamp(x_timestamp):
            raise HTTPException(status_code=401, detail="Webhook timestamp invalid or too old")

        raw = (await request.body()).decode('utf-8')
        if not verify_webhook_signature(raw, x_timestamp, x_signature, signing_key):
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

    logger.info(f"Received email {payload.message_id} from {payload.from_address}")
    try:
        result = await processor.ingest(parse_email_payload(payload))
        logger.info(f"Email {payload.message_id}: {result.status}")
    except Exception as e:
        logger.error(f"Error ingesting email {payload.message_id}: {e}")

    return {"status": "received"}


@app.post("/webhooks/sms")
async def sms_webhook(
    From: Optional[str] = Form(None),
    To: Optional[str] = Form(None),
    Body: Optional[str] = Form(None),
    MessageSid: Optional[str] = Form(None),
):
    """
    Webhook endpoint for inbound SMS (Twilio form encoding)

    Always answers with empty TwiML so the provider sends no auto-reply.
    """
    if not From or not MessageSid:
        logger.warning(f"SMS webhook missing From or MessageSid (From={From!r}, MessageSid={MessageSid!r})")
    else:
        logger.info(f"Received SMS {MessageSid} from {From}: {(Body or '')[:50]}...")
        try:
            result = await processor.ingest(parse_sms_form(From, To, Body, MessageSid))
            logger.info(f"SMS {MessageSid}: {result.status}")
        except Exception as e:
            logger.error(f"Error ingesting SMS {MessageSid}: {e}")

    return Response(content=TWIML_EMPTY_RESPONSE, media_type="application/xml")


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": "Meeting Scheduler",
        "version": __version__,
        "status": "running"
    }


if __name__ == "__main__":
    import os

    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8003"))

    uvicorn.run(app, host=host, port=port)
