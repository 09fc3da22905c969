"""
Ingestion pipeline: one sync run for one user.

Orchestrates the full run:
1. Resolve monitored sources (none → "no_sources")
2. Recover records abandoned in "processing" by an earlier run
3. Build the sender query and page through the listing
4. Clean up duplicate events (normal syncs only)
5. Run the per-message graph for each message, sequentially
   (a failure escaping this step closes the session as unsuccessful)
6. Stamp last sync and close the sync session

Messages are processed one at a time in listing order. The time budget is
checked between messages, never inside one.
"""

import logging
import time
from dataclasses import asdict, dataclass
from typing import Callable, List, Optional

from schoolsync.config import Settings, clamp_lookback_days
from schoolsync.errors import MailFetchError
from schoolsync.services.db_service import SqlStore
from schoolsync.services.extraction import ClassificationProvider, ExtractionProvider
from schoolsync.services.gmail_service import MailSource, build_query
from schoolsync.services.langgraph_pipeline import COMPLETED, FAILED, SKIPPED, MessageGraph

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Counts returned to the caller of a sync run."""
    status: str
    message: str
    processed: int = 0
    extracted: int = 0
    skipped: int = 0
    failed: int = 0
    filtered: int = 0
    skipped_duplicate_events: int = 0
    duplicates_removed: int = 0
    stopped_early: bool = False
    session_id: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


class IngestionPipeline:
    """
    Sync a user's school email into extracted events.

    All collaborators are passed in, so tests run the real orchestration
    against an in-memory store, a fake mailbox and a fake provider.
    """

    def __init__(
        self,
        store: SqlStore,
        mail_source: MailSource,
        provider: ExtractionProvider,
        settings: Settings,
        classifier: Optional[ClassificationProvider] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.mail_source = mail_source
        self.provider = provider
        self.settings = settings
        self._sleep = sleep
        self._clock = clock
        self.classifier = classifier
        self.message_graph = MessageGraph(store, mail_source, provider, settings, classifier)

    def _over_budget(self, started: float) -> bool:
        budget = self.settings.sync_time_budget_seconds
        return budget > 0 and (self._clock() - started) >= budget

    def sync(
        self,
        user_id: int,
        lookback_days: Optional[int] = None,
        force_reprocess: bool = False,
    ) -> SyncResult:
        """
        Run one sync for a user.

        Args:
            user_id: Owner of the mailbox
            lookback_days: Window for a normal sync (clamped to 1-30);
                ignored when force_reprocess is set
            force_reprocess: Re-run extraction for already recorded messages

        Returns:
            SyncResult with aggregate counts

        Raises:
            MailFetchError: the message listing failed
            PersistenceError: an outcome could not be recorded at all
        """
        started = self._clock()

        sources = self.store.get_active_sources(user_id)
        if not sources:
            logger.info("User %s has no email sources configured", user_id)
            return SyncResult(status="no_sources", message="No email sources configured")

        if force_reprocess:
            lookback = self.settings.reprocess_lookback_days
            max_messages = self.settings.reprocess_max_messages
        else:
            if lookback_days is None:
                lookback_days = self.settings.lookback_days
            lookback = clamp_lookback_days(lookback_days)
            max_messages = self.settings.sync_max_messages

        query = build_query(sources, lookback)
        session = self.store.create_session(
            user_id,
            "reprocess" if force_reprocess else "sync",
            lookback,
        )
        logger.info(
            "Sync %s for user %s: %d source(s), query=%r, max=%d",
            session.id, user_id, len(sources), query, max_messages,
        )

        self.store.fail_abandoned_records(user_id, self.settings.abandoned_after_minutes, session.id)

        try:
            refs = self.mail_source.list_messages(query, max_messages)
        except MailFetchError:
            self.store.finish_session(session, success=False)
            raise

        try:
            duplicates_removed = 0
            if refs and not force_reprocess:
                duplicates_removed = self.store.cleanup_duplicate_events(user_id)

            counts = self._run_messages(user_id, refs, force_reprocess, session.id, started)
        except Exception:
            # The session row must not stay open when a run dies midway
            logger.exception("Sync %s aborted", session.id)
            self.store.finish_session(session, success=False)
            raise

        processed = counts["completed"] + counts["failed"]
        extracted = counts["extracted"]
        skipped = counts["skipped"]
        failed = counts["failed"]
        filtered = counts["filtered"]
        self.store.touch_last_sync(user_id)
        self.store.finish_session(
            session,
            success=True,
            total_emails_processed=processed,
            total_events_extracted=extracted,
            skipped_duplicate_emails=skipped,
            skipped_duplicate_events=counts["duplicate_events"],
            duplicates_removed=duplicates_removed,
            failed_emails=failed,
            total_cost=counts["total_cost"],
        )

        message = (
            f"Processed {processed} email(s), extracted {extracted} event(s), "
            f"skipped {skipped} already handled"
        )
        if filtered:
            message += f", {filtered} filtered as not date-related"
        if failed:
            message += f", {failed} failed"
        logger.info("Sync %s finished: %s", session.id, message)

        return SyncResult(
            status="success",
            message=message,
            processed=processed,
            extracted=extracted,
            skipped=skipped,
            failed=failed,
            filtered=filtered,
            skipped_duplicate_events=counts["duplicate_events"],
            duplicates_removed=duplicates_removed,
            stopped_early=counts["stopped_early"],
            session_id=session.id,
        )

    def _run_messages(
        self,
        user_id: int,
        refs: List[dict],
        force_reprocess: bool,
        session_id: int,
        started: float,
    ) -> dict:
        """Run the graph for each listed message until done or out of time."""
        counts = {
            "completed": 0,
            "failed": 0,
            "skipped": 0,
            "filtered": 0,
            "extracted": 0,
            "duplicate_events": 0,
            "total_cost": 0.0,
            "stopped_early": False,
        }

        for ref in refs:
            if self._over_budget(started):
                counts["stopped_early"] = True
                logger.warning(
                    "Sync %s stopped early: time budget of %ss used, %d message(s) left",
                    session_id, self.settings.sync_time_budget_seconds,
                    len(refs) - (counts["completed"] + counts["failed"] + counts["skipped"]),
                )
                break

            state = self.message_graph.run(
                user_id,
                ref["id"],
                force_reprocess=force_reprocess,
                session_id=session_id,
            )

            outcome = state["outcome"]
            if outcome == SKIPPED:
                counts["skipped"] += 1
            elif outcome == COMPLETED:
                counts["completed"] += 1
                counts["extracted"] += state["events_stored"]
                counts["duplicate_events"] += state["duplicate_events"]
                if state["filtered"]:
                    counts["filtered"] += 1
            elif outcome == FAILED:
                counts["failed"] += 1

            for key in ("classification_usage", "usage", "fallback_usage"):
                usage = state.get(key)
                if usage:
                    counts["total_cost"] += usage.cost

            # Rate-limit courtesy between LLM calls
            if state["called_llm"] and self.settings.inter_message_delay_seconds > 0:
                self._sleep(self.settings.inter_message_delay_seconds)

        return counts
