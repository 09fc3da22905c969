"""
LangGraph per-message state machine.

One graph run handles exactly one message reference:
1. Check Message Id   → skip if already recorded (unless forced)
2. Fetch Message      → full payload from the mail source
3. Normalize Body     → plain text + content fingerprint
4. Check Fingerprint  → skip resends under a new id (unless forced)
5. Record Email       → upsert the record in "processing"
6. Classify Email     → optional pre-filter; no date content ends here
7. Extract Events     → one LLM call (plus a fallback pass if configured)
8. Persist Events     → replace old events on reprocess, dedup-checked
                        inserts, history, "completed"

Fetch and extraction failures branch to nodes that record the failure and
end the run; they never raise out of the graph. Previously stored events are
only removed once a new extraction has succeeded.
"""

import logging
from typing import List, Optional, TypedDict

from langgraph.graph import StateGraph, START, END

from schoolsync.config import Settings
from schoolsync.errors import ExtractionError, MailFetchError, PersistenceError
from schoolsync.models import ProcessedEmail
from schoolsync.services.db_service import SqlStore
from schoolsync.services.extraction import (
    CallUsage,
    CandidateEvent,
    ClassificationProvider,
    EmailClassification,
    ExtractionProvider,
)
from schoolsync.services.fingerprint import fingerprint
from schoolsync.services.gmail_service import MailSource, RawMessage
from schoolsync.services.text_cleaner import normalize, preview

logger = logging.getLogger(__name__)

SKIPPED = "skipped"
COMPLETED = "completed"
FAILED = "failed"


class MessageState(TypedDict):
    """State that flows through the per-message graph."""
    # Input
    user_id: int
    message_id: str
    force_reprocess: bool
    session_id: Optional[int]

    # Processing outputs
    raw: Optional[RawMessage]
    body: str
    content_hash: str
    record: Optional[ProcessedEmail]
    replace_events: bool
    classification: Optional[EmailClassification]
    classification_usage: Optional[CallUsage]
    events: List[CandidateEvent]
    usage: Optional[CallUsage]
    fallback_usage: Optional[CallUsage]
    fallback_error: Optional[str]

    # Status
    outcome: Optional[str]
    skip_reason: Optional[str]
    filtered: bool
    error: Optional[str]
    retry_count: int
    called_llm: bool
    events_stored: int
    duplicate_events: int


class MessageGraph:
    """Compiled graph plus the collaborators its nodes use."""

    def __init__(
        self,
        store: SqlStore,
        mail_source: MailSource,
        provider: ExtractionProvider,
        settings: Settings,
        classifier: Optional[ClassificationProvider] = None,
    ):
        self.store = store
        self.mail_source = mail_source
        self.provider = provider
        self.settings = settings
        self.classifier = classifier
        self.graph = self._build()

    # ============ NODE FUNCTIONS ============

    def check_message_id_node(self, state: MessageState) -> dict:
        """Node 1: Primary dedup on (user, message id)."""
        if state["force_reprocess"]:
            return {}

        existing = self.store.get_processed_email(state["user_id"], state["message_id"])
        if existing:
            logger.info(
                "Skipping %s: already recorded (%s)",
                state["message_id"], existing.processing_status,
            )
            return {"outcome": SKIPPED, "skip_reason": "message_id"}
        return {}

    def fetch_message_node(self, state: MessageState) -> dict:
        """Node 2: Fetch the full message."""
        try:
            raw = self.mail_source.get_message(state["message_id"])
        except MailFetchError as exc:
            logger.error("Fetch failed for %s: %s", state["message_id"], exc)
            return {"error": str(exc)}
        return {"raw": raw}

    def fetch_failed_node(self, state: MessageState) -> dict:
        """Record a message that could not be fetched."""
        record = self.store.record_fetch_failure(
            state["user_id"],
            state["message_id"],
            state["error"],
            session_id=state["session_id"],
        )
        self.store.add_history(
            user_id=state["user_id"],
            provider="gmail",
            step="email_retrieval",
            success=False,
            email_id=record.id,
            session_id=state["session_id"],
            error_message=state["error"],
        )
        return {"outcome": FAILED, "record": record}

    def normalize_body_node(self, state: MessageState) -> dict:
        """Node 3: Clean the body and fingerprint the message."""
        raw = state["raw"]
        body = normalize(raw.body)
        return {
            "body": body,
            "content_hash": fingerprint(raw.subject, body, raw.sender, raw.sent_date),
        }

    def check_fingerprint_node(self, state: MessageState) -> dict:
        """Node 4: Secondary dedup on content hash."""
        if state["force_reprocess"]:
            return {}

        match = self.store.find_by_content_hash(state["user_id"], state["content_hash"])
        if match and match.gmail_message_id != state["message_id"]:
            logger.info(
                "Skipping %s: same content as %s",
                state["message_id"], match.gmail_message_id,
            )
            return {"outcome": SKIPPED, "skip_reason": "content_hash"}
        return {}

    def record_email_node(self, state: MessageState) -> dict:
        """Node 5: Upsert the record in "processing" state."""
        raw = state["raw"]
        record, created = self.store.upsert_processed_email(
            user_id=state["user_id"],
            gmail_message_id=raw.id,
            sender=raw.sender,
            subject=raw.subject,
            sent_date=raw.sent_date,
            content_hash=state["content_hash"],
            body_preview=preview(state["body"], self.settings.body_preview_chars),
            has_attachments=raw.has_attachments,
            session_id=state["session_id"],
            force=state["force_reprocess"],
        )

        if not created and not state["force_reprocess"]:
            # A concurrent run recorded it between our check and insert
            logger.info("Skipping %s: recorded by a concurrent run", raw.id)
            return {"outcome": SKIPPED, "skip_reason": "message_id"}

        return {"record": record, "replace_events": not created}

    def classify_email_node(self, state: MessageState) -> dict:
        """Node 6: Optional pre-filter for date content."""
        raw = state["raw"]
        try:
            verdict = self.classifier.classify(raw.subject, state["body"], raw.sender, raw.sent_date)
        except ExtractionError as exc:
            # Unclassifiable mail is extracted anyway
            logger.warning("Classification failed for %s, extracting anyway: %s", raw.id, exc)
            self._add_history(
                state,
                step="classification",
                usage=exc.usage,
                success=False,
                retry_count=exc.retry_count,
                error_message=str(exc),
                backend=self.classifier,
            )
            return {"called_llm": True, "classification_usage": exc.usage}

        usage = self.classifier.last_usage
        self._add_history(
            state,
            step="classification",
            usage=usage,
            success=True,
            retry_count=usage.retry_count if usage else 0,
            confidence=verdict.confidence,
            backend=self.classifier,
        )
        if not verdict.has_date_content:
            logger.info("No date content in %s: %s", raw.id, verdict.reasoning or "no reason given")
        return {
            "called_llm": True,
            "classification": verdict,
            "classification_usage": usage,
            "filtered": not verdict.has_date_content,
        }

    def filtered_node(self, state: MessageState) -> dict:
        """Complete a message the pre-filter ruled out, with zero events."""
        record = state["record"]
        if state["replace_events"]:
            self.store.delete_events_for_email(record.id)
        self.store.mark_completed(record, 0)
        return {"outcome": COMPLETED, "events_stored": 0}

    def extract_events_node(self, state: MessageState) -> dict:
        """Node 7: Extraction call."""
        raw = state["raw"]
        try:
            events = self.provider.extract_dates(raw.subject, state["body"], raw.sender, raw.sent_date)
        except ExtractionError as exc:
            logger.error("Extraction failed for %s: %s", raw.id, exc)
            return {
                "called_llm": True,
                "error": str(exc),
                "retry_count": exc.retry_count,
                "usage": exc.usage,
            }

        usage = self.provider.last_usage
        return {
            "called_llm": True,
            "events": events,
            "usage": usage,
            "retry_count": usage.retry_count if usage else 0,
            "fallback_usage": getattr(self.provider, "fallback_usage", None),
            "fallback_error": getattr(self.provider, "fallback_error", None),
        }

    def extraction_failed_node(self, state: MessageState) -> dict:
        """Leave the record failed with a history entry; earlier events stay."""
        record = state["record"]
        self.store.mark_failed(record, state["error"])
        self._add_history(
            state,
            step="extraction",
            usage=state["usage"],
            success=False,
            retry_count=state["retry_count"],
            error_message=state["error"],
        )
        return {"outcome": FAILED}

    def persist_events_node(self, state: MessageState) -> dict:
        """Node 8: Store events, log success, complete the record."""
        record = state["record"]
        stored = 0
        duplicates = 0

        if state["replace_events"]:
            removed = self.store.delete_events_for_email(record.id)
            logger.info("Reprocessing %s: replaced %d previous event(s)", record.gmail_message_id, removed)

        for candidate in state["events"]:
            try:
                event = self.store.insert_event(
                    record,
                    title=candidate.title,
                    event_date=candidate.event_date,
                    event_time=candidate.event_time,
                    description=candidate.description,
                    confidence=candidate.confidence,
                    reasoning=candidate.reasoning,
                )
            except PersistenceError as exc:
                logger.error("Event '%s' not stored: %s", candidate.title, exc)
                continue

            if event is None:
                duplicates += 1
            else:
                stored += 1

        confidence = None
        if state["events"]:
            confidence = sum(e.confidence for e in state["events"]) / len(state["events"])

        self._add_history(
            state,
            step="extraction",
            usage=state["usage"],
            success=True,
            retry_count=state["retry_count"],
            confidence=confidence,
        )
        if state["fallback_usage"] or state["fallback_error"]:
            fallback_usage = state["fallback_usage"]
            self._add_history(
                state,
                step="fallback_extraction",
                usage=fallback_usage,
                success=state["fallback_error"] is None,
                retry_count=fallback_usage.retry_count if fallback_usage else 0,
                error_message=state["fallback_error"],
                backend=getattr(self.provider, "fallback", None),
            )

        self.store.mark_completed(record, stored)
        logger.info(
            "Completed %s: %d event(s) stored, %d duplicate(s)",
            record.gmail_message_id, stored, duplicates,
        )
        return {"outcome": COMPLETED, "events_stored": stored, "duplicate_events": duplicates}

    def _add_history(
        self,
        state: MessageState,
        step: str,
        usage: Optional[CallUsage],
        success: bool,
        retry_count: int = 0,
        confidence: Optional[float] = None,
        error_message: Optional[str] = None,
        backend=None,
    ) -> None:
        """One history row for an LLM call; provider/model come from usage when measured."""
        backend = backend or self.provider
        self.store.add_history(
            user_id=state["user_id"],
            provider=usage.provider if usage else getattr(backend, "name", "unknown"),
            step=step,
            success=success,
            email_id=state["record"].id,
            session_id=state["session_id"],
            model=usage.model if usage else getattr(backend, "model", None),
            processing_time_ms=usage.elapsed_ms if usage else 0,
            input_tokens=usage.input_tokens if usage else 0,
            output_tokens=usage.output_tokens if usage else 0,
            cost=usage.cost if usage else 0.0,
            retry_count=retry_count,
            confidence=confidence,
            error_message=error_message,
        )

    # ============ ROUTING ============

    @staticmethod
    def _continue_unless_skipped(next_node: str):
        def route(state: MessageState) -> str:
            return "end" if state.get("outcome") == SKIPPED else next_node
        return route

    @staticmethod
    def _route_after_fetch(state: MessageState) -> str:
        return "fetch_failed" if state.get("error") else "normalize_body"

    def _route_after_record(self, state: MessageState) -> str:
        if state.get("outcome") == SKIPPED:
            return "end"
        return "classify_email" if self.classifier is not None else "extract_events"

    @staticmethod
    def _route_after_classify(state: MessageState) -> str:
        return "filtered" if state.get("filtered") else "extract_events"

    @staticmethod
    def _route_after_extract(state: MessageState) -> str:
        return "extraction_failed" if state.get("error") else "persist_events"

    # ============ BUILD GRAPH ============

    def _build(self):
        workflow = StateGraph(MessageState)

        workflow.add_node("check_message_id", self.check_message_id_node)
        workflow.add_node("fetch_message", self.fetch_message_node)
        workflow.add_node("fetch_failed", self.fetch_failed_node)
        workflow.add_node("normalize_body", self.normalize_body_node)
        workflow.add_node("check_fingerprint", self.check_fingerprint_node)
        workflow.add_node("record_email", self.record_email_node)
        workflow.add_node("classify_email", self.classify_email_node)
        workflow.add_node("filtered", self.filtered_node)
        workflow.add_node("extract_events", self.extract_events_node)
        workflow.add_node("extraction_failed", self.extraction_failed_node)
        workflow.add_node("persist_events", self.persist_events_node)

        workflow.add_edge(START, "check_message_id")
        workflow.add_conditional_edges(
            "check_message_id",
            self._continue_unless_skipped("fetch_message"),
            {"fetch_message": "fetch_message", "end": END},
        )
        workflow.add_conditional_edges(
            "fetch_message",
            self._route_after_fetch,
            {"fetch_failed": "fetch_failed", "normalize_body": "normalize_body"},
        )
        workflow.add_edge("fetch_failed", END)
        workflow.add_edge("normalize_body", "check_fingerprint")
        workflow.add_conditional_edges(
            "check_fingerprint",
            self._continue_unless_skipped("record_email"),
            {"record_email": "record_email", "end": END},
        )
        workflow.add_conditional_edges(
            "record_email",
            self._route_after_record,
            {"classify_email": "classify_email", "extract_events": "extract_events", "end": END},
        )
        workflow.add_conditional_edges(
            "classify_email",
            self._route_after_classify,
            {"filtered": "filtered", "extract_events": "extract_events"},
        )
        workflow.add_edge("filtered", END)
        workflow.add_conditional_edges(
            "extract_events",
            self._route_after_extract,
            {"extraction_failed": "extraction_failed", "persist_events": "persist_events"},
        )
        workflow.add_edge("extraction_failed", END)
        workflow.add_edge("persist_events", END)

        return workflow.compile()

    def run(
        self,
        user_id: int,
        message_id: str,
        force_reprocess: bool = False,
        session_id: Optional[int] = None,
    ) -> MessageState:
        """Run the graph for one message and return the final state."""
        initial_state: MessageState = {
            "user_id": user_id,
            "message_id": message_id,
            "force_reprocess": force_reprocess,
            "session_id": session_id,
            "raw": None,
            "body": "",
            "content_hash": "",
            "record": None,
            "replace_events": False,
            "classification": None,
            "classification_usage": None,
            "events": [],
            "usage": None,
            "fallback_usage": None,
            "fallback_error": None,
            "outcome": None,
            "skip_reason": None,
            "filtered": False,
            "error": None,
            "retry_count": 0,
            "called_llm": False,
            "events_stored": 0,
            "duplicate_events": 0,
        }
        return self.graph.invoke(initial_state)
