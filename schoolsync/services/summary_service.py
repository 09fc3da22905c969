"""
Email summaries for completed messages.

Summaries are generated from the stored body preview (the raw body is never
kept), cached one per email, and regenerated on force_refresh.
"""

import logging
from dataclasses import dataclass, field
from typing import List

from schoolsync.errors import ExtractionError
from schoolsync.models import EmailSummary, ProcessedEmail
from schoolsync.services.db_service import SqlStore
from schoolsync.services.extraction import SummaryProvider

logger = logging.getLogger(__name__)


@dataclass
class SummaryBatch:
    summaries: List[dict] = field(default_factory=list)
    from_cache: int = 0
    newly_generated: int = 0
    failed: int = 0
    estimated_cost: float = 0.0


def summary_to_dict(email: ProcessedEmail, summary: EmailSummary) -> dict:
    return {
        "email_id": email.id,
        "gmail_message_id": email.gmail_message_id,
        "subject": email.subject,
        "sender": email.sender_email,
        "sent_date": email.sent_date.isoformat() if email.sent_date else None,
        "summary": summary.summary_data,
        "confidence": summary.confidence_score,
        "llm_provider": summary.llm_provider,
        "model_name": summary.model_name,
        "generated_at": summary.generated_at.isoformat() if summary.generated_at else None,
    }


class SummaryService:
    """Serve cached summaries and fill in the missing ones."""

    def __init__(self, store: SqlStore, provider: SummaryProvider):
        self.store = store
        self.provider = provider

    def get_summaries(
        self,
        user_id: int,
        limit: int = 20,
        offset: int = 0,
        force_refresh: bool = False,
    ) -> SummaryBatch:
        """
        Summaries for a page of the user's completed emails.

        Args:
            user_id: Owner of the emails
            limit: Page size
            offset: Page start
            force_refresh: Regenerate even when a cached summary exists

        Returns:
            SummaryBatch; emails whose summary failed are left out
        """
        batch = SummaryBatch()

        for email in self.store.list_completed_emails(user_id, limit=limit, offset=offset):
            cached = self.store.get_summary(email.id)
            if cached and not force_refresh:
                batch.summaries.append(summary_to_dict(email, cached))
                batch.from_cache += 1
                continue

            try:
                summary = self.provider.summarize(
                    email.subject or "",
                    email.email_body_preview,
                    email.sender_email or "",
                    email.sent_date,
                )
            except ExtractionError as exc:
                logger.error("Summary failed for email %s: %s", email.id, exc)
                usage = exc.usage
                self.store.add_history(
                    user_id=user_id,
                    provider=self.provider.name,
                    step="email_summary",
                    success=False,
                    email_id=email.id,
                    model=self.provider.model,
                    processing_time_ms=usage.elapsed_ms if usage else 0,
                    input_tokens=usage.input_tokens if usage else 0,
                    retry_count=exc.retry_count,
                    error_message=str(exc),
                )
                batch.failed += 1
                continue

            usage = self.provider.last_usage
            stored = self.store.upsert_summary(
                email,
                summary_data=summary.to_json(),
                confidence=summary.confidence,
                provider=self.provider.name,
                model=self.provider.model,
                tokens=(usage.input_tokens + usage.output_tokens) if usage else 0,
                cost=usage.cost if usage else 0.0,
            )
            self.store.add_history(
                user_id=user_id,
                provider=self.provider.name,
                step="email_summary",
                success=True,
                email_id=email.id,
                model=self.provider.model,
                processing_time_ms=usage.elapsed_ms if usage else 0,
                input_tokens=usage.input_tokens if usage else 0,
                output_tokens=usage.output_tokens if usage else 0,
                cost=usage.cost if usage else 0.0,
                retry_count=usage.retry_count if usage else 0,
                confidence=summary.confidence,
            )

            batch.summaries.append(summary_to_dict(email, stored))
            batch.newly_generated += 1
            if usage:
                batch.estimated_cost += usage.cost

        logger.info(
            "Summaries for user %s: %d cached, %d generated, %d failed",
            user_id, batch.from_cache, batch.newly_generated, batch.failed,
        )
        return batch
