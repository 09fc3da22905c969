"""
Database service layer for the sync pipeline.

SqlStore wraps one SQLAlchemy session and provides:
- Processed email lookup (message id, content hash) and idempotent upsert
- Event inserts with the event-level duplicate rule
- Append-only processing history
- Sync sessions, source lookup, last-sync stamping
- Summary upsert and listing
- Maintenance: duplicate event cleanup, abandoned record recovery

Every write commits immediately, so one message's outcome never depends on
another message's transaction.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from schoolsync.errors import PersistenceError
from schoolsync.models import (
    EmailSource,
    EmailSummary,
    ExtractedEvent,
    ProcessedEmail,
    ProcessingHistory,
    ProcessingStatus,
    SyncSession,
    User,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def event_key(title: str, event_date: date, event_time: Optional[time]) -> tuple:
    """Two events with the same key are duplicates for a user."""
    return (title.strip().lower(), event_date, event_time)


class SqlStore:
    """Relational store backing the pipeline."""

    def __init__(self, db: Session):
        self.db = db

    def _commit(self, what: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceError(f"Could not {what}: {exc}") from exc

    # ============ USERS & SOURCES ============

    def get_active_sources(self, user_id: int) -> List[EmailSource]:
        """Monitored senders for a user."""
        return self.db.query(EmailSource).filter(
            EmailSource.user_id == user_id,
            EmailSource.is_active.is_(True)
        ).order_by(EmailSource.id).all()

    def touch_last_sync(self, user_id: int, when: Optional[datetime] = None) -> None:
        user = self.db.get(User, user_id)
        if user is None:
            return
        user.last_sync_at = when or utcnow()
        self._commit("update last sync time")

    # ============ SYNC SESSIONS ============

    def create_session(self, user_id: int, session_type: str, lookback_days: int) -> SyncSession:
        session = SyncSession(
            user_id=user_id,
            session_type=session_type,
            lookback_days=lookback_days,
            started_at=utcnow(),
        )
        self.db.add(session)
        self._commit("create sync session")
        self.db.refresh(session)
        return session

    def finish_session(self, session: SyncSession, success: bool = True, **counts) -> SyncSession:
        """Write final counts (total_emails_processed=..., total_cost=..., ...)."""
        for field, value in counts.items():
            setattr(session, field, value)
        session.success_status = success
        session.completed_at = utcnow()
        self._commit("finish sync session")
        return session

    # ============ PROCESSED EMAILS ============

    def get_processed_email(self, user_id: int, gmail_message_id: str) -> Optional[ProcessedEmail]:
        """Primary dedup lookup by (user, message id)."""
        return self.db.query(ProcessedEmail).filter(
            ProcessedEmail.user_id == user_id,
            ProcessedEmail.gmail_message_id == gmail_message_id
        ).first()

    def find_by_content_hash(self, user_id: int, content_hash: str) -> Optional[ProcessedEmail]:
        """Secondary dedup lookup: same content under another message id."""
        return self.db.query(ProcessedEmail).filter(
            ProcessedEmail.user_id == user_id,
            ProcessedEmail.content_hash == content_hash
        ).first()

    def upsert_processed_email(
        self,
        user_id: int,
        gmail_message_id: str,
        sender: str,
        subject: str,
        sent_date: datetime,
        content_hash: str,
        body_preview: str,
        has_attachments: bool = False,
        session_id: Optional[int] = None,
        force: bool = False,
    ) -> Tuple[ProcessedEmail, bool]:
        """
        Insert the record in "processing" state, or advance the existing one.

        An existing record is only touched when force is set (reprocess);
        otherwise it is returned as-is. A concurrent insert of the same
        (user, message id) resolves to the winner's row.

        Returns:
            (record, created)

        Raises:
            PersistenceError: the record could not be written
        """
        existing = self.get_processed_email(user_id, gmail_message_id)

        if existing:
            if force:
                existing.sender_email = sender
                existing.subject = subject
                existing.sent_date = to_utc_naive(sent_date)
                existing.content_hash = content_hash
                existing.email_body_preview = body_preview
                existing.has_attachments = has_attachments
                existing.processing_status = ProcessingStatus.PROCESSING.value
                existing.processing_started_at = utcnow()
                existing.processing_completed_at = None
                existing.processing_error_message = None
                existing.session_id = session_id
                self._commit("update processed email")
            return existing, False

        record = ProcessedEmail(
            user_id=user_id,
            gmail_message_id=gmail_message_id,
            sender_email=sender,
            subject=subject,
            sent_date=to_utc_naive(sent_date),
            content_hash=content_hash,
            email_body_preview=body_preview,
            has_attachments=has_attachments,
            processing_status=ProcessingStatus.PROCESSING.value,
            processing_started_at=utcnow(),
            session_id=session_id,
        )
        self.db.add(record)

        try:
            self.db.commit()
            self.db.refresh(record)
            return record, True
        except IntegrityError:
            # Race condition - another run created it
            self.db.rollback()
            winner = self.get_processed_email(user_id, gmail_message_id)
            if winner is None:
                raise PersistenceError(f"Could not record message {gmail_message_id}")
            return winner, False
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceError(f"Could not record message {gmail_message_id}: {exc}") from exc

    def record_fetch_failure(
        self,
        user_id: int,
        gmail_message_id: str,
        error: str,
        session_id: Optional[int] = None,
    ) -> ProcessedEmail:
        """Failed record for a message that could not be fetched."""
        record = self.get_processed_email(user_id, gmail_message_id)
        if record is None:
            record = ProcessedEmail(user_id=user_id, gmail_message_id=gmail_message_id)
            self.db.add(record)
        record.processing_status = ProcessingStatus.FAILED.value
        record.processing_error_message = error
        record.processing_completed_at = utcnow()
        record.session_id = session_id
        self._commit("record fetch failure")
        return record

    def mark_completed(self, record: ProcessedEmail, events_count: int) -> None:
        record.processing_status = ProcessingStatus.COMPLETED.value
        record.processing_completed_at = utcnow()
        record.processing_error_message = None
        record.events_extracted_count = events_count
        self._commit("mark email completed")

    def mark_failed(self, record: ProcessedEmail, error: str) -> None:
        record.processing_status = ProcessingStatus.FAILED.value
        record.processing_completed_at = utcnow()
        record.processing_error_message = error
        self._commit("mark email failed")

    def fail_abandoned_records(
        self,
        user_id: int,
        older_than_minutes: int,
        session_id: Optional[int] = None,
    ) -> int:
        """
        Fail records stuck in "processing" past the cut-off.

        A run that stopped mid-message leaves such a record; each one gets a
        history entry saying why it was failed.
        """
        cutoff = utcnow() - timedelta(minutes=older_than_minutes)
        stuck = self.db.query(ProcessedEmail).filter(
            ProcessedEmail.user_id == user_id,
            ProcessedEmail.processing_status == ProcessingStatus.PROCESSING.value,
            ProcessedEmail.processing_started_at < cutoff
        ).all()

        for record in stuck:
            message = f"Abandoned mid-processing (no outcome after {older_than_minutes} minutes)"
            record.processing_status = ProcessingStatus.FAILED.value
            record.processing_error_message = message
            record.processing_completed_at = utcnow()
            self.db.add(ProcessingHistory(
                user_id=user_id,
                email_id=record.id,
                session_id=session_id,
                llm_provider="pipeline",
                processing_step="recovery",
                success_status=False,
                error_message=message,
            ))

        if stuck:
            self._commit("recover abandoned records")
            logger.warning("Recovered %d abandoned record(s) for user %s", len(stuck), user_id)
        return len(stuck)

    # ============ EVENTS ============

    def delete_events_for_email(self, email_id: int) -> int:
        """Drop a record's events ahead of a forced reprocess."""
        deleted = self.db.query(ExtractedEvent).filter(
            ExtractedEvent.email_id == email_id
        ).delete(synchronize_session=False)
        self._commit("delete previous events")
        return deleted

    def find_duplicate_event(
        self,
        user_id: int,
        title: str,
        event_date: date,
        event_time: Optional[time],
    ) -> Optional[ExtractedEvent]:
        """Same user, same trimmed title (case-insensitive), date and time."""
        query = self.db.query(ExtractedEvent).filter(
            ExtractedEvent.user_id == user_id,
            func.lower(func.trim(ExtractedEvent.event_title)) == title.strip().lower(),
            ExtractedEvent.event_date == event_date
        )
        if event_time is None:
            query = query.filter(ExtractedEvent.event_time.is_(None))
        else:
            query = query.filter(ExtractedEvent.event_time == event_time)
        return query.first()

    def insert_event(
        self,
        record: ProcessedEmail,
        title: str,
        event_date: date,
        event_time: Optional[time],
        description: str,
        confidence: float,
        reasoning: Optional[str] = None,
    ) -> Optional[ExtractedEvent]:
        """
        Insert one event for a processed email.

        Returns:
            The new event, or None if the user already has a duplicate

        Raises:
            PersistenceError: this event could not be stored (earlier ones stay)
        """
        if self.find_duplicate_event(record.user_id, title, event_date, event_time):
            return None

        event = ExtractedEvent(
            email_id=record.id,
            user_id=record.user_id,
            event_title=title,
            event_date=event_date,
            event_time=event_time,
            description=description,
            reasoning=reasoning,
            confidence_score=confidence,
            extracted_at=utcnow(),
        )
        self.db.add(event)
        self._commit(f"store event '{title}'")
        return event

    def cleanup_duplicate_events(self, user_id: int) -> int:
        """
        Remove a user's duplicate events, keeping the earliest extracted.

        Returns:
            Number of events removed
        """
        events = self.db.query(ExtractedEvent).filter(
            ExtractedEvent.user_id == user_id
        ).order_by(ExtractedEvent.extracted_at.asc(), ExtractedEvent.id.asc()).all()

        seen = set()
        removed = 0
        for event in events:
            key = event_key(event.event_title, event.event_date, event.event_time)
            if key in seen:
                self.db.delete(event)
                removed += 1
            else:
                seen.add(key)

        if removed:
            self._commit("remove duplicate events")
            logger.info("Removed %d duplicate event(s) for user %s", removed, user_id)
        return removed

    # ============ HISTORY ============

    def add_history(
        self,
        user_id: int,
        provider: str,
        step: str,
        success: bool,
        email_id: Optional[int] = None,
        session_id: Optional[int] = None,
        model: Optional[str] = None,
        processing_time_ms: int = 0,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cost: float = 0.0,
        retry_count: int = 0,
        confidence: Optional[float] = None,
        error_message: Optional[str] = None,
    ) -> ProcessingHistory:
        """Append one audit row. Rows are never updated afterwards."""
        entry = ProcessingHistory(
            user_id=user_id,
            email_id=email_id,
            session_id=session_id,
            llm_provider=provider,
            model_name=model,
            processing_step=step,
            processing_time_ms=processing_time_ms,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost,
            success_status=success,
            retry_count=retry_count,
            confidence_score=confidence,
            error_message=error_message,
        )
        self.db.add(entry)
        self._commit("write processing history")
        return entry

    # ============ SUMMARIES ============

    def list_completed_emails(self, user_id: int, limit: int = 20, offset: int = 0) -> List[ProcessedEmail]:
        """Completed emails with a stored preview, newest first."""
        return self.db.query(ProcessedEmail).filter(
            ProcessedEmail.user_id == user_id,
            ProcessedEmail.processing_status == ProcessingStatus.COMPLETED.value,
            ProcessedEmail.email_body_preview.isnot(None),
            ProcessedEmail.email_body_preview != ""
        ).order_by(
            ProcessedEmail.sent_date.desc(),
            ProcessedEmail.id.desc()
        ).offset(offset).limit(limit).all()

    def get_summary(self, email_id: int) -> Optional[EmailSummary]:
        return self.db.query(EmailSummary).filter(EmailSummary.email_id == email_id).first()

    def upsert_summary(
        self,
        record: ProcessedEmail,
        summary_data: dict,
        confidence: float,
        provider: str,
        model: str,
        tokens: int = 0,
        cost: float = 0.0,
    ) -> EmailSummary:
        """Insert or overwrite the summary for an email (one per email)."""
        existing = self.get_summary(record.id)
        if existing is None:
            existing = EmailSummary(email_id=record.id, user_id=record.user_id)
            self.db.add(existing)

        existing.summary_data = summary_data
        existing.confidence_score = confidence
        existing.llm_provider = provider
        existing.model_name = model
        existing.processing_tokens = tokens
        existing.processing_cost = cost
        existing.content_hash = record.content_hash
        existing.generated_at = utcnow()

        try:
            self.db.commit()
        except IntegrityError:
            # Another request stored it first; overwrite theirs
            self.db.rollback()
            winner = self.get_summary(record.id)
            if winner is None:
                raise PersistenceError(f"Could not store summary for email {record.id}")
            winner.summary_data = summary_data
            winner.confidence_score = confidence
            winner.llm_provider = provider
            winner.model_name = model
            winner.processing_tokens = tokens
            winner.processing_cost = cost
            winner.generated_at = utcnow()
            self._commit("store summary")
            return winner
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceError(f"Could not store summary for email {record.id}: {exc}") from exc

        self.db.refresh(existing)
        return existing
