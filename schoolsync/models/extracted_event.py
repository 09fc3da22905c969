"""
ExtractedEvent model - the calendar-facing output of the pipeline.

Each row is one dated item pulled out of a school email:
- title, date, optional time, description
- confidence from the LLM (0.0-1.0) and a user verification flag
"""

from sqlalchemy import (
    Column, Integer, String, Date, Time, Float, Text, Boolean,
    ForeignKey, DateTime, Index
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from schoolsync.database import Base


class ExtractedEvent(Base):
    """
    A future-dated event extracted from a processed email.

    Always strictly after the owning email's sent date.
    """
    __tablename__ = "extracted_events"

    id = Column(Integer, primary_key=True)

    email_id = Column(Integer, ForeignKey("processed_emails.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    event_title = Column(String(512), nullable=False)
    event_date = Column(Date, nullable=False)
    event_time = Column(Time)  # None when the email gave no time
    description = Column(Text)
    reasoning = Column(Text)

    confidence_score = Column(Float, nullable=False)
    is_verified = Column(Boolean, default=False)

    extracted_at = Column(DateTime, server_default=func.now())

    email = relationship("ProcessedEmail", back_populates="events")

    __table_args__ = (
        Index("ix_events_user_date", "user_id", "event_date"),
    )

    def __repr__(self):
        return f"<ExtractedEvent(id={self.id}, title={self.event_title}, date={self.event_date})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email_id": self.email_id,
            "title": self.event_title,
            "date": self.event_date.isoformat() if self.event_date else None,
            "time": self.event_time.strftime("%H:%M") if self.event_time else None,
            "description": self.description,
            "confidence": self.confidence_score,
            "is_verified": self.is_verified,
        }
