"""
EmailSummary model - at most one cached LLM summary per processed email.
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, JSON, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from schoolsync.database import Base


class EmailSummary(Base):
    """Regenerable summary; upserted on email_id."""
    __tablename__ = "email_summaries"

    id = Column(Integer, primary_key=True)
    email_id = Column(
        Integer,
        ForeignKey("processed_emails.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # keyPoints, importantDates, actionItems, categories, confidence
    summary_data = Column(JSON, nullable=False)
    confidence_score = Column(Float, nullable=False)

    llm_provider = Column(String(50), nullable=False)
    model_name = Column(String(100), nullable=False)
    processing_tokens = Column(Integer)
    processing_cost = Column(Float)
    content_hash = Column(String(64))

    generated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    email = relationship("ProcessedEmail", back_populates="summary")

    def __repr__(self):
        return f"<EmailSummary(id={self.id}, email_id={self.email_id})>"
