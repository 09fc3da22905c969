"""
User, EmailSource and SyncSession models.

These are owned by the surrounding application; the pipeline only reads
active sources, stamps last_sync_at, and records one SyncSession per run.
"""

from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, ForeignKey
from sqlalchemy.sql import func
from schoolsync.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    last_sync_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email})>"


class EmailSource(Base):
    """
    A monitored sender.

    Either a full address (teacher@school.org) or a bare domain (school.org).
    """
    __tablename__ = "email_sources"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String(255))
    domain = Column(String(255))
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, server_default=func.now())

    def __repr__(self):
        return f"<EmailSource(id={self.id}, email={self.email}, domain={self.domain})>"


class SyncSession(Base):
    """One sync (or forced reprocess) invocation."""
    __tablename__ = "sync_sessions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    session_type = Column(String(20), nullable=False)  # sync, reprocess
    lookback_days = Column(Integer)

    total_emails_processed = Column(Integer, default=0)
    total_events_extracted = Column(Integer, default=0)
    skipped_duplicate_emails = Column(Integer, default=0)
    skipped_duplicate_events = Column(Integer, default=0)
    duplicates_removed = Column(Integer, default=0)
    failed_emails = Column(Integer, default=0)
    total_cost = Column(Float, default=0.0)

    success_status = Column(Boolean)
    started_at = Column(DateTime, server_default=func.now())
    completed_at = Column(DateTime)
