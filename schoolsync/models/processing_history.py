"""
ProcessingHistory model - append-only audit trail of LLM and mail calls.

Rows are never updated after insert. Cost dashboards read from here.
"""

from sqlalchemy import Column, Integer, String, Float, Text, Boolean, DateTime, ForeignKey
from sqlalchemy.sql import func
from schoolsync.database import Base


class ProcessingHistory(Base):
    __tablename__ = "processing_history"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    email_id = Column(Integer, ForeignKey("processed_emails.id", ondelete="CASCADE"), index=True)
    session_id = Column(Integer, ForeignKey("sync_sessions.id", ondelete="SET NULL"))

    llm_provider = Column(String(50), nullable=False)  # openai, claude, gemini, gmail, pipeline
    model_name = Column(String(100))
    processing_step = Column(String(50), nullable=False)  # classification, extraction, fallback_extraction, email_summary, email_retrieval, recovery

    processing_time_ms = Column(Integer, default=0)
    input_tokens = Column(Integer, default=0)
    output_tokens = Column(Integer, default=0)
    cost = Column(Float, default=0.0)

    success_status = Column(Boolean, nullable=False)
    retry_count = Column(Integer, default=0)
    confidence_score = Column(Float)
    error_message = Column(Text)

    created_at = Column(DateTime, server_default=func.now())

    def __repr__(self):
        return (
            f"<ProcessingHistory(id={self.id}, step={self.processing_step}, "
            f"success={self.success_status})>"
        )
