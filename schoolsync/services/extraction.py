"""
Extraction contracts, response parsing and validation.

This module is backend-agnostic:
1. CandidateEvent / Summary - validated LLM output
2. ExtractionProvider / SummaryProvider / ClassificationProvider - capability contracts
3. parse_json_response - fenced or bare JSON from model text
4. validate_events / validate_summary / validate_classification - post-filters
5. merge_events - main + fallback results

Concrete LangChain backends live in llm_providers.py.
"""

import datetime as dt
import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from langchain_core.utils.json import parse_json_markdown
from pydantic import BaseModel, ConfigDict, Field

from schoolsync.errors import ExtractionError

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY_CONFIDENCE = 0.8

# LLM "no time" spellings
TIME_PLACEHOLDERS = {
    "", "null", "undefined", "none", "n/a", "-", "0",
    "00:00", "00:00:00", '""', "''",
}

TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


# ============ TYPES ============

class CandidateEvent(BaseModel):
    """A validated event proposed by the model for one email."""
    title: str
    event_date: dt.date
    event_time: Optional[dt.time] = None
    description: str = ""
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: Optional[str] = None


class Summary(BaseModel):
    """Structured email summary. Serialized with the camelCase keys the model returns."""
    model_config = ConfigDict(populate_by_name=True)

    key_points: List[str] = Field(default_factory=list, alias="keyPoints")
    important_dates: List[Dict[str, Any]] = Field(default_factory=list, alias="importantDates")
    action_items: List[str] = Field(default_factory=list, alias="actionItems")
    categories: List[str] = Field(default_factory=list)
    confidence: float = DEFAULT_SUMMARY_CONFIDENCE

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class EmailClassification(BaseModel):
    """Pre-filter verdict: does the email carry date or time information?"""
    has_date_content: bool
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = ""


@dataclass
class CallUsage:
    """Measured cost of one backend call, written to processing history."""
    provider: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    elapsed_ms: int = 0
    retry_count: int = 0


class ExtractionProvider(Protocol):
    name: str
    model: str
    last_usage: Optional[CallUsage]

    def extract_dates(
        self,
        subject: str,
        body: str,
        sender: str,
        sent_date: dt.datetime,
    ) -> List[CandidateEvent]:
        ...


class SummaryProvider(Protocol):
    name: str
    model: str
    last_usage: Optional[CallUsage]

    def summarize(
        self,
        subject: str,
        body: str,
        sender: str,
        sent_date: dt.datetime,
    ) -> Summary:
        ...


class ClassificationProvider(Protocol):
    name: str
    model: str
    last_usage: Optional[CallUsage]

    def classify(
        self,
        subject: str,
        body: str,
        sender: str,
        sent_date: dt.datetime,
    ) -> EmailClassification:
        ...


# ============ RESPONSE PARSING ============

def parse_json_response(text: str) -> Any:
    """
    Parse model text as strict JSON, tolerating markdown code fences.

    Truncated output is rejected rather than repaired, so a cut-off reply
    never passes as a shorter event list.

    Raises:
        ExtractionError: empty text, or text that is not JSON
    """
    if not text or not text.strip():
        raise ExtractionError("Model response had no text content")
    try:
        return parse_json_markdown(text, parser=json.loads)
    except json.JSONDecodeError as exc:
        raise ExtractionError(f"Model response was not valid JSON: {text[:200]}", cause=exc) from exc


def coerce_event_list(parsed: Any) -> List[Any]:
    """Accept a bare array or an object wrapping one under "events"."""
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict) and isinstance(parsed.get("events"), list):
        return parsed["events"]
    logger.warning("Extraction response was JSON but not an event list (%s)", type(parsed).__name__)
    return []


# ============ EVENT VALIDATION ============

def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not math.isnan(value)


def clamp_confidence(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def parse_event_date(value: Any) -> Optional[dt.date]:
    """YYYY-MM-DD (or a full ISO timestamp) to a date, None if unparseable."""
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    try:
        return dt.date.fromisoformat(text)
    except ValueError:
        pass
    try:
        return dt.datetime.fromisoformat(text).date()
    except ValueError:
        return None


def normalize_time_value(value: Any) -> Optional[dt.time]:
    """
    Normalize an LLM-provided event time.

    Placeholders ("", "null", "00:00", ...) mean the email gave no time.
    HH:MM or HH:MM:SS parses to a time; anything else is treated as no time.
    """
    if value is None:
        return None
    if isinstance(value, dt.time):
        return value
    text = str(value).strip().lower()
    if text in TIME_PLACEHOLDERS:
        return None

    match = TIME_PATTERN.match(text)
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    second = int(match.group(3) or 0)
    if hour > 23 or minute > 59 or second > 59:
        return None
    return dt.time(hour, minute, second)


def _sent_day(sent_date) -> dt.date:
    if isinstance(sent_date, dt.datetime):
        return sent_date.date()
    return sent_date


def validate_events(raw_events: List[Any], sent_date) -> List[CandidateEvent]:
    """
    Filter and normalize raw model events.

    Drops entries without a title, a parseable date or a numeric confidence,
    and anything dated on or before the sent day. Confidence is clamped to
    [0, 1]; title and description are trimmed.

    Args:
        raw_events: Parsed JSON items from the model
        sent_date: When the email was sent

    Returns:
        Validated events, in input order
    """
    sent_day = _sent_day(sent_date)
    validated = []

    for item in raw_events:
        if not isinstance(item, dict):
            logger.debug("Dropped non-object event: %r", item)
            continue

        title = item.get("title")
        if not isinstance(title, str) or not title.strip():
            logger.debug("Dropped event without title: %r", item)
            continue

        confidence = item.get("confidence")
        if not _is_number(confidence):
            logger.debug("Dropped event without numeric confidence: %r", item)
            continue

        event_date = parse_event_date(item.get("date"))
        if event_date is None:
            logger.debug("Dropped event with invalid date: %r", item)
            continue

        # Strictly after: same-day announcements are not calendar events
        if event_date <= sent_day:
            logger.debug("Dropped past or same-day event %s (sent %s)", event_date, sent_day)
            continue

        description = item.get("description")
        reasoning = item.get("reasoning")
        validated.append(CandidateEvent(
            title=title.strip(),
            event_date=event_date,
            event_time=normalize_time_value(item.get("time")),
            description=description.strip() if isinstance(description, str) else "",
            confidence=clamp_confidence(confidence),
            reasoning=reasoning.strip() if isinstance(reasoning, str) else None,
        ))

    return validated


# ============ SUMMARY VALIDATION ============

def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def validate_summary(parsed: Any) -> Summary:
    """
    Normalize a model summary field by field.

    A malformed field becomes an empty list instead of failing the whole
    summary. Confidence falls back to 0.8 when missing or non-numeric.
    """
    if not isinstance(parsed, dict):
        raise ExtractionError(f"Summary response was not a JSON object ({type(parsed).__name__})")

    important_dates = parsed.get("importantDates")
    if isinstance(important_dates, list):
        important_dates = [item for item in important_dates if isinstance(item, dict)]
    else:
        important_dates = []

    confidence = parsed.get("confidence")
    if _is_number(confidence):
        confidence = clamp_confidence(confidence)
    else:
        confidence = DEFAULT_SUMMARY_CONFIDENCE

    return Summary(
        key_points=_string_list(parsed.get("keyPoints")),
        important_dates=important_dates,
        action_items=_string_list(parsed.get("actionItems")),
        categories=_string_list(parsed.get("categories")),
        confidence=confidence,
    )


# ============ CLASSIFICATION ============

def validate_classification(parsed: Any) -> EmailClassification:
    """
    Normalize a pre-filter verdict.

    Only a literal true counts as date content; confidence is clamped and
    defaults to 0.
    """
    if not isinstance(parsed, dict):
        raise ExtractionError(f"Classification response was not a JSON object ({type(parsed).__name__})")

    confidence = parsed.get("confidence")
    reasoning = parsed.get("reasoning")
    return EmailClassification(
        has_date_content=parsed.get("hasDateContent") is True,
        confidence=clamp_confidence(confidence) if _is_number(confidence) else 0.0,
        reasoning=reasoning.strip() if isinstance(reasoning, str) else "",
    )


# ============ FALLBACK MERGE ============

def _merge_key(event: CandidateEvent) -> tuple:
    return (event.title, event.event_date, event.event_time)


def merge_events(primary: List[CandidateEvent], fallback: List[CandidateEvent]) -> List[CandidateEvent]:
    """
    Combine main and fallback results.

    Fallback events with a new (title, date, time) are added; for a shared
    key the higher-confidence event wins. The result is ordered by date.
    """
    merged = list(primary)
    index = {_merge_key(event): i for i, event in enumerate(merged)}

    for event in fallback:
        key = _merge_key(event)
        if key not in index:
            index[key] = len(merged)
            merged.append(event)
        elif event.confidence > merged[index[key]].confidence:
            merged[index[key]] = event

    return sorted(merged, key=lambda event: event.event_date)
