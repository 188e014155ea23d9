"""
Negotiation repository

Single authoritative store for negotiations, their drafts, conversation
history and the append-only action log. Components receive one
NegotiationRepository instance instead of reaching for a global.
"""
import logging
import re
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    TypeDecorator,
    create_engine,
    func,
    text,
)
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from meeting_scheduler.errors import InvariantViolation, ThreadIdOverwriteError
from meeting_scheduler.models import (
    INBOUND_SEEN_ACTIONS,
    TERMINAL_STATUSES,
    ActionLogEntry,
    Attendee,
    AttendeeSide,
    ConversationMessage,
    Draft,
    NegotiationRequest,
    NegotiationStatus,
    ProposedTime,
    actor_from_columns,
    actor_identity,
)

logger = logging.getLogger(__name__)

Base = declarative_base()

OPEN_STATUS_VALUES = [s.value for s in NegotiationStatus if s not in TERMINAL_STATUSES]


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Digits only, national part for NANP numbers."""
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    return digits or None


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns aware UTC"""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None or value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class NegotiationRequestDB(Base):
    """SQLAlchemy model for negotiation_requests table"""
    __tablename__ = 'negotiation_requests'

    id = Column(String(36), primary_key=True)
    title = Column(String(500), nullable=False)
    status = Column(String(30), nullable=False, index=True)
    timezone = Column(String(64), nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=30)

    proposed_times = Column(JSON, nullable=False, default=list)
    selected_time = Column(UTCDateTime)
    thread_id = Column(String(255), index=True)

    last_action_at = Column(UTCDateTime)
    next_action_at = Column(UTCDateTime, index=True)
    next_action_type = Column(String(50))
    attempt_count = Column(Integer, nullable=False, default=0)

    needs_human = Column(Boolean, nullable=False, default=False)
    needs_human_reason = Column(Text)
    calendar_event_id = Column(String(255))
    join_link = Column(String(1000))

    created_by = Column(String(255))
    notes = Column(Text)
    date_range_start = Column(Date)
    date_range_end = Column(Date)
    preferred_periods = Column(JSON, nullable=False, default=list)
    avoid_days = Column(JSON, nullable=False, default=list)

    created_at = Column(UTCDateTime, default=_now)
    updated_at = Column(UTCDateTime, default=_now, onupdate=_now)

    attendees = relationship(
        "AttendeeDB", order_by="AttendeeDB.position", cascade="all, delete-orphan"
    )
    messages = relationship(
        "ConversationMessageDB", order_by="ConversationMessageDB.seq", cascade="all, delete-orphan"
    )


class AttendeeDB(Base):
    """SQLAlchemy model for negotiation_attendees table"""
    __tablename__ = 'negotiation_attendees'

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(String(36), ForeignKey('negotiation_requests.id'), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    email = Column(String(255), nullable=False)
    email_normalized = Column(String(255), nullable=False, index=True)
    name = Column(String(255))
    phone = Column(String(40))
    phone_normalized = Column(String(40), index=True)
    side = Column(String(20), nullable=False)
    is_primary_contact = Column(Boolean, nullable=False, default=False)
    contact_id = Column(String(255))


class ConversationMessageDB(Base):
    """SQLAlchemy model for conversation_messages table"""
    __tablename__ = 'conversation_messages'

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), unique=True, nullable=False)
    request_id = Column(String(36), ForeignKey('negotiation_requests.id'), nullable=False, index=True)
    direction = Column(String(20), nullable=False)
    channel = Column(String(20), nullable=False)
    subject = Column(String(1000))
    body = Column(Text, nullable=False)
    sender = Column(String(255), nullable=False)
    recipient = Column(String(1000), nullable=False)
    timestamp = Column(UTCDateTime, nullable=False)
    provider_message_id = Column(String(255))


class DraftDB(Base):
    """SQLAlchemy model for negotiation_drafts table"""
    __tablename__ = 'negotiation_drafts'

    id = Column(String(36), primary_key=True)
    request_id = Column(String(36), ForeignKey('negotiation_requests.id'), nullable=False, index=True)
    email_type = Column(String(30), nullable=False)
    subject = Column(String(1000), nullable=False)
    body = Column(Text, nullable=False)
    proposed_times = Column(JSON, nullable=False, default=list)
    generated_at = Column(UTCDateTime, nullable=False)
    edited_at = Column(UTCDateTime)
    dispatched_at = Column(UTCDateTime)
    provider_thread_id = Column(String(255))
    provider_message_id = Column(String(255))
    sent_at = Column(UTCDateTime)
    discarded_at = Column(UTCDateTime)


class ActionLogDB(Base):
    """SQLAlchemy model for action_log table"""
    __tablename__ = 'action_log'

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), unique=True, nullable=False)
    request_id = Column(String(36), index=True)
    action_type = Column(String(50), nullable=False)
    actor_kind = Column(String(20), nullable=False)
    actor_id = Column(String(255))
    reasoning = Column(Text)
    linked_message_id = Column(String(255), index=True)
    timestamp = Column(UTCDateTime, nullable=False)


def _times_to_json(times: Iterable[ProposedTime]) -> list:
    return [t.model_dump(mode="json") for t in times]


def _times_from_json(data: Optional[list]) -> List[ProposedTime]:
    return [ProposedTime.model_validate(item) for item in data or []]


class NegotiationRepository:
    """Manage database operations for negotiations"""

    # Fields copied between the aggregate and its row on every persist
    SCALAR_FIELDS = (
        'title', 'status', 'timezone', 'duration_minutes', 'selected_time',
        'last_action_at', 'next_action_at', 'next_action_type', 'attempt_count',
        'needs_human', 'needs_human_reason', 'calendar_event_id', 'join_link',
        'created_by', 'notes', 'date_range_start', 'date_range_end',
        'preferred_periods', 'avoid_days',
    )

    def __init__(self, database_url: str):
        """
        Initialize the repository.

        Args:
            database_url: SQLAlchemy connection string (PostgreSQL in
                production, SQLite for tests)
        """
        if database_url.startswith("sqlite"):
            self.engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(database_url, pool_size=10, max_overflow=20, pool_pre_ping=True)
        self.SessionLocal = sessionmaker(bind=self.engine)

    def get_session(self) -> Session:
        """Get a new database session"""
        return self.SessionLocal()

    def init_tables(self):
        """Create tables that do not exist yet"""
        Base.metadata.create_all(self.engine)

    def check_connection(self) -> bool:
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database connection check failed: {e}")
            return False

    def close(self):
        self.engine.dispose()

    # Negotiations

    def create_request(self, request: NegotiationRequest,
                       entries: Iterable[ActionLogEntry] = ()) -> NegotiationRequest:
        """
        Insert a new negotiation with its attendees.

        Args:
            request: Aggregate to store
            entries: Action log entries written in the same transaction

        Returns:
            The stored negotiation
        """
        request.check_invariants()
        with self.get_session() as session:
            row = NegotiationRequestDB(
                id=request.id,
                proposed_times=_times_to_json(request.proposed_times),
                thread_id=request.thread_id,
                created_at=request.created_at,
                updated_at=request.updated_at,
            )
            self._copy_scalars(request, row)
            for position, attendee in enumerate(request.attendees):
                row.attendees.append(AttendeeDB(
                    position=position,
                    email=attendee.email,
                    email_normalized=attendee.email.lower(),
                    name=attendee.name,
                    phone=attendee.phone,
                    phone_normalized=normalize_phone(attendee.phone),
                    side=attendee.side.value,
                    is_primary_contact=attendee.is_primary_contact,
                    contact_id=attendee.contact_id,
                ))
            session.add(row)
            for entry in entries:
                session.add(self._entry_row(entry))
            session.commit()
            session.refresh(row)
            return self._to_request(row)

    def get_request(self, request_id: str) -> Optional[NegotiationRequest]:
        """
        Get a negotiation by id.

        Returns:
            Negotiation or None if not found
        """
        with self.get_session() as session:
            row = session.get(NegotiationRequestDB, request_id)
            return self._to_request(row) if row else None

    def list_requests(self, status: Optional[NegotiationStatus] = None,
                      needs_human: Optional[bool] = None, limit: int = 100) -> List[NegotiationRequest]:
        with self.get_session() as session:
            query = session.query(NegotiationRequestDB)
            if status is not None:
                query = query.filter(NegotiationRequestDB.status == status.value)
            if needs_human is not None:
                query = query.filter(NegotiationRequestDB.needs_human == needs_human)
            rows = query.order_by(NegotiationRequestDB.created_at.desc()).limit(limit).all()
            return [self._to_request(row) for row in rows]

    def persist(
        self,
        request: Optional[NegotiationRequest] = None,
        drafts: Iterable[Draft] = (),
        messages: Iterable[ConversationMessage] = (),
        entries: Iterable[ActionLogEntry] = (),
    ):
        """
        Write an aggregate change in one transaction.

        Args:
            request: Negotiation whose scalar fields are saved
            drafts: Drafts to insert or update
            messages: New conversation messages (request must be set)
            entries: Action log entries to append

        Raises:
            ThreadIdOverwriteError: If a stored thread id would change
            InvariantViolation: If the aggregate or a sent draft would be corrupted
        """
        with self.get_session() as session:
            if request is not None:
                try:
                    request.check_invariants()
                except ValueError as e:
                    raise InvariantViolation(str(e)) from e

                row = session.get(NegotiationRequestDB, request.id)
                if row is None:
                    raise InvariantViolation(f"Negotiation {request.id} does not exist")

                if row.thread_id and request.thread_id != row.thread_id:
                    raise ThreadIdOverwriteError(
                        f"Negotiation {request.id} already has thread id {row.thread_id}"
                    )
                row.thread_id = request.thread_id
                row.proposed_times = _times_to_json(request.proposed_times)
                self._copy_scalars(request, row)
                row.updated_at = _now()

                for message in messages:
                    if session.query(ConversationMessageDB).filter_by(id=message.id).first():
                        continue
                    session.add(ConversationMessageDB(
                        id=message.id,
                        request_id=request.id,
                        direction=message.direction.value,
                        channel=message.channel.value,
                        subject=message.subject,
                        body=message.body,
                        sender=message.sender,
                        recipient=message.recipient,
                        timestamp=message.timestamp,
                        provider_message_id=message.provider_message_id,
                    ))

            for draft in drafts:
                self._save_draft(session, draft)

            for entry in entries:
                session.add(self._entry_row(entry))

            session.commit()

    # Matching lookups

    def find_open_by_thread(self, thread_id: str) -> Optional[NegotiationRequest]:
        """Non-terminal negotiation carrying the given provider thread id"""
        with self.get_session() as session:
            row = session.query(NegotiationRequestDB)\
                .filter(
                    NegotiationRequestDB.thread_id == thread_id,
                    NegotiationRequestDB.status.in_(OPEN_STATUS_VALUES)
                )\
                .order_by(NegotiationRequestDB.created_at.desc())\
                .first()
            return self._to_request(row) if row else None

    def find_open_by_external_email(self, email: str) -> List[NegotiationRequest]:
        """Non-terminal negotiations with an external attendee at this address"""
        with self.get_session() as session:
            rows = session.query(NegotiationRequestDB)\
                .join(AttendeeDB)\
                .filter(
                    AttendeeDB.email_normalized == email.strip().lower(),
                    AttendeeDB.side == AttendeeSide.EXTERNAL.value,
                    NegotiationRequestDB.status.in_(OPEN_STATUS_VALUES)
                )\
                .all()
            return self._unique_requests(rows)

    def find_open_by_external_phone(self, phone: str) -> List[NegotiationRequest]:
        """Non-terminal negotiations with an external attendee at this number"""
        normalized = normalize_phone(phone)
        if not normalized:
            return []
        with self.get_session() as session:
            rows = session.query(NegotiationRequestDB)\
                .join(AttendeeDB)\
                .filter(
                    AttendeeDB.phone_normalized == normalized,
                    AttendeeDB.side == AttendeeSide.EXTERNAL.value,
                    NegotiationRequestDB.status.in_(OPEN_STATUS_VALUES)
                )\
                .all()
            return self._unique_requests(rows)

    def get_due_follow_ups(self, now: datetime, limit: int = 50) -> List[str]:
        """
        Get ids of negotiations whose follow-up timer has elapsed.

        Args:
            now: Reference time
            limit: Maximum number of results

        Returns:
            Negotiation ids, oldest timer first
        """
        with self.get_session() as session:
            rows = session.query(NegotiationRequestDB.id)\
                .filter(
                    NegotiationRequestDB.status == NegotiationStatus.AWAITING_RESPONSE.value,
                    NegotiationRequestDB.next_action_at.isnot(None),
                    NegotiationRequestDB.next_action_at <= now
                )\
                .order_by(NegotiationRequestDB.next_action_at.asc())\
                .limit(limit)\
                .all()
            return [row.id for row in rows]

    # Drafts

    def get_pending_draft(self, request_id: str) -> Optional[Draft]:
        """Latest draft that is neither sent nor discarded"""
        with self.get_session() as session:
            row = session.query(DraftDB)\
                .filter(
                    DraftDB.request_id == request_id,
                    DraftDB.sent_at.is_(None),
                    DraftDB.discarded_at.is_(None)
                )\
                .order_by(DraftDB.generated_at.desc())\
                .first()
            return self._to_draft(row) if row else None

    def get_latest_draft(self, request_id: str) -> Optional[Draft]:
        """Most recent non-discarded draft, sent or not"""
        with self.get_session() as session:
            row = session.query(DraftDB)\
                .filter(DraftDB.request_id == request_id, DraftDB.discarded_at.is_(None))\
                .order_by(DraftDB.generated_at.desc())\
                .first()
            return self._to_draft(row) if row else None

    def get_draft(self, draft_id: str) -> Optional[Draft]:
        with self.get_session() as session:
            row = session.get(DraftDB, draft_id)
            return self._to_draft(row) if row else None

    def save_draft(self, draft: Draft):
        with self.get_session() as session:
            self._save_draft(session, draft)
            session.commit()

    # Action log

    def append_entries(self, entries: Iterable[ActionLogEntry]):
        with self.get_session() as session:
            for entry in entries:
                session.add(self._entry_row(entry))
            session.commit()

    def get_action_log(self, request_id: str) -> List[ActionLogEntry]:
        """
        Get the action log for a negotiation.

        Returns:
            Entries in the order they were written
        """
        with self.get_session() as session:
            rows = session.query(ActionLogDB)\
                .filter_by(request_id=request_id)\
                .order_by(ActionLogDB.seq.asc())\
                .all()
            return [self._to_entry(row) for row in rows]

    def get_entries_for_message(self, provider_message_id: str) -> List[ActionLogEntry]:
        with self.get_session() as session:
            rows = session.query(ActionLogDB)\
                .filter_by(linked_message_id=provider_message_id)\
                .order_by(ActionLogDB.seq.asc())\
                .all()
            return [self._to_entry(row) for row in rows]

    def has_inbound_message(self, provider_message_id: str) -> bool:
        """
        Check whether an inbound provider message was already recorded.

        Args:
            provider_message_id: Provider-assigned message id

        Returns:
            True if a received or unmatched entry links to it
        """
        with self.get_session() as session:
            return session.query(ActionLogDB)\
                .filter(
                    ActionLogDB.linked_message_id == provider_message_id,
                    ActionLogDB.action_type.in_([a.value for a in INBOUND_SEEN_ACTIONS])
                )\
                .first() is not None

    def get_statistics(self) -> dict:
        """
        Get negotiation counts.

        Returns:
            Dictionary with counts by status plus the needs-human total
        """
        with self.get_session() as session:
            counts = dict(
                session.query(NegotiationRequestDB.status, func.count(NegotiationRequestDB.id))
                .group_by(NegotiationRequestDB.status)
                .all()
            )
            needs_human = session.query(NegotiationRequestDB)\
                .filter(NegotiationRequestDB.needs_human.is_(True))\
                .count()
        stats = {status.value: counts.get(status.value, 0) for status in NegotiationStatus}
        stats['total'] = sum(counts.values())
        stats['needs_human'] = needs_human
        return stats

    # Row conversion

    def _unique_requests(self, rows) -> List[NegotiationRequest]:
        seen = set()
        requests = []
        for row in rows:
            if row.id in seen:
                continue
            seen.add(row.id)
            requests.append(self._to_request(row))
        return requests

    def _copy_scalars(self, request: NegotiationRequest, row: NegotiationRequestDB):
        for field in self.SCALAR_FIELDS:
            value = getattr(request, field)
            if field == 'status':
                value = value.value
            elif field in ('preferred_periods', 'avoid_days'):
                value = list(value)
            setattr(row, field, value)

    def _save_draft(self, session: Session, draft: Draft):
        row = session.get(DraftDB, draft.id)
        if row is None:
            row = DraftDB(id=draft.id, request_id=draft.request_id)
            session.add(row)
        elif row.sent_at is not None:
            stored = self._to_draft(row)
            if stored != draft:
                raise InvariantViolation(f"Draft {draft.id} was already sent and cannot change")
            return
        row.email_type = draft.email_type.value
        row.subject = draft.subject
        row.body = draft.body
        row.proposed_times = _times_to_json(draft.proposed_times)
        row.generated_at = draft.generated_at
        row.edited_at = draft.edited_at
        row.dispatched_at = draft.dispatched_at
        row.provider_thread_id = draft.provider_thread_id
        row.provider_message_id = draft.provider_message_id
        row.sent_at = draft.sent_at
        row.discarded_at = draft.discarded_at

    def _entry_row(self, entry: ActionLogEntry) -> ActionLogDB:
        return ActionLogDB(
            id=entry.id,
            request_id=entry.request_id,
            action_type=entry.action_type.value,
            actor_kind=entry.actor.kind,
            actor_id=actor_identity(entry.actor),
            reasoning=entry.reasoning,
            linked_message_id=entry.linked_message_id,
            timestamp=entry.timestamp,
        )

    def _to_entry(self, row: ActionLogDB) -> ActionLogEntry:
        return ActionLogEntry(
            id=row.id,
            request_id=row.request_id,
            action_type=row.action_type,
            actor=actor_from_columns(row.actor_kind, row.actor_id),
            reasoning=row.reasoning or "",
            linked_message_id=row.linked_message_id,
            timestamp=row.timestamp,
        )

    def _to_draft(self, row: DraftDB) -> Draft:
        return Draft(
            id=row.id,
            request_id=row.request_id,
            email_type=row.email_type,
            subject=row.subject,
            body=row.body,
            proposed_times=_times_from_json(row.proposed_times),
            generated_at=row.generated_at,
            edited_at=row.edited_at,
            dispatched_at=row.dispatched_at,
            provider_thread_id=row.provider_thread_id,
            provider_message_id=row.provider_message_id,
            sent_at=row.sent_at,
            discarded_at=row.discarded_at,
        )

    def _to_request(self, row: NegotiationRequestDB) -> NegotiationRequest:
        return NegotiationRequest(
            id=row.id,
            title=row.title,
            status=row.status,
            timezone=row.timezone,
            duration_minutes=row.duration_minutes,
            attendees=[
                Attendee(
                    email=a.email,
                    name=a.name,
                    phone=a.phone,
                    side=a.side,
                    is_primary_contact=a.is_primary_contact,
                    contact_id=a.contact_id,
                )
                for a in row.attendees
            ],
            proposed_times=_times_from_json(row.proposed_times),
            selected_time=row.selected_time,
            thread_id=row.thread_id,
            conversation_history=[ConversationMessage.model_validate(m) for m in row.messages],
            last_action_at=row.last_action_at,
            next_action_at=row.next_action_at,
            next_action_type=row.next_action_type,
            attempt_count=row.attempt_count or 0,
            needs_human=bool(row.needs_human),
            needs_human_reason=row.needs_human_reason,
            calendar_event_id=row.calendar_event_id,
            join_link=row.join_link,
            created_by=row.created_by,
            notes=row.notes,
            date_range_start=row.date_range_start,
            date_range_end=row.date_range_end,
            preferred_periods=list(row.preferred_periods or []),
            avoid_days=list(row.avoid_days or []),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


def get_repository(database_url: str) -> NegotiationRepository:
    """
    Build a repository and make sure its tables exist.

    Returns:
        NegotiationRepository instance
    """
    repository = NegotiationRepository(database_url)
    repository.init_tables()
    return repository
