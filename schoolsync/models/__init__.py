"""
SQLAlchemy models for the school email sync pipeline.

This package contains:
- User / EmailSource / SyncSession: account, monitored senders, run log
- ProcessedEmail: one row per handled Gmail message (dedup anchor)
- ExtractedEvent: calendar events pulled from an email
- EmailSummary: cached LLM summary per email
- ProcessingHistory: append-only audit of every extraction attempt
"""

from schoolsync.models.user import User, EmailSource, SyncSession
from schoolsync.models.processed_email import ProcessedEmail, ProcessingStatus
from schoolsync.models.extracted_event import ExtractedEvent
from schoolsync.models.email_summary import EmailSummary
from schoolsync.models.processing_history import ProcessingHistory

__all__ = [
    "User",
    "EmailSource",
    "SyncSession",
    "ProcessedEmail",
    "ProcessingStatus",
    "ExtractedEvent",
    "EmailSummary",
    "ProcessingHistory",
]
