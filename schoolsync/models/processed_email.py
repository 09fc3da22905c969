"""
ProcessedEmail model - one row per (user, Gmail message) the pipeline has handled.

This is the store's answer to "has this message already been handled?":
- Deduplication via unique (user_id, gmail_message_id)
- Secondary dedup via content_hash (resends with a new message id)
- Processing status for the per-message state machine
"""

import enum

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Boolean,
    ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from schoolsync.database import Base


class ProcessingStatus(str, enum.Enum):
    """Lifecycle of a processed email."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessedEmail(Base):
    """
    A Gmail message the pipeline has seen for a user.

    Never stores the raw body, only a normalized preview.
    """
    __tablename__ = "processed_emails"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # Gmail identifier (unique per user - prevents duplicates)
    gmail_message_id = Column(String(255), nullable=False)

    # Email metadata
    sender_email = Column(String(255))
    subject = Column(Text)
    sent_date = Column(DateTime)  # UTC
    content_hash = Column(String(64), index=True)
    has_attachments = Column(Boolean, default=False)
    email_body_preview = Column(Text)

    # Processing state
    processing_status = Column(String(20), default=ProcessingStatus.PENDING.value, nullable=False)
    processing_started_at = Column(DateTime)
    processing_completed_at = Column(DateTime)
    processing_error_message = Column(Text)
    events_extracted_count = Column(Integer, default=0)
    session_id = Column(Integer, ForeignKey("sync_sessions.id", ondelete="SET NULL"))

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    events = relationship(
        "ExtractedEvent",
        back_populates="email",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    summary = relationship(
        "EmailSummary",
        back_populates="email",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint("user_id", "gmail_message_id", name="uq_processed_emails_user_message"),
        Index("ix_processed_emails_user_status", "user_id", "processing_status"),
    )

    def __repr__(self):
        return f"<ProcessedEmail(id={self.id}, message={self.gmail_message_id}, status={self.processing_status})>"
