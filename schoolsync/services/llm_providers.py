"""
LLM backends for the date pre-filter, date extraction and summaries.

Each backend is a LangChain chat model behind the same adapter:
    prompt | llm  →  text  →  JSON  →  validated output

- OpenAIProvider: ChatOpenAI (gpt-4o-mini by default)
- ClaudeProvider: ChatAnthropic
- GeminiProvider: ChatGoogleGenerativeAI
- FallbackProvider: main model plus a second model for low-confidence events

The adapter owns retries (exponential backoff on transient failures), token
accounting and cost estimation. The backend is injectable, so tests pass a
fake chat model instead of a network client.
"""

import logging
import math
import re
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from langchain_anthropic import ChatAnthropic
from langchain_core.prompts import ChatPromptTemplate
from langchain_core.runnables import Runnable
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_openai import ChatOpenAI

from schoolsync.config import Settings
from schoolsync.errors import ConfigurationError, ExtractionError
from schoolsync.services.extraction import (
    CallUsage,
    CandidateEvent,
    EmailClassification,
    Summary,
    coerce_event_list,
    merge_events,
    parse_json_response,
    validate_classification,
    validate_events,
    validate_summary,
)
from schoolsync.services.prompts import CLASSIFICATION_PROMPT, EXTRACTION_PROMPT, SUMMARY_PROMPT
from schoolsync.services.text_cleaner import preview, trim_for_prompt

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 30

# Body characters the pre-filter sees
CLASSIFICATION_BODY_CHARS = 500

# USD per 1M tokens: (input, output)
MODEL_PRICING: Dict[str, Tuple[float, float]] = {
    "gpt-4o-mini": (0.60, 2.40),
    "gpt-4o": (2.50, 10.00),
    "claude-3-5-haiku-20241022": (0.80, 4.00),
    "claude-3-5-sonnet-20241022": (3.00, 15.00),
    "gemini-1.5-flash": (0.075, 0.30),
    "gemini-1.5-pro": (1.25, 5.00),
}

# Error-message phrases worth another attempt
TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "rate limit",
    "rate_limit",
    "bad gateway",
    "service unavailable",
    "too many requests",
    "overloaded",
)

# Status codes quoted in error text; word-bounded so "1500 tokens" is not a 500
TRANSIENT_STATUS_PATTERN = re.compile(r"\b(?:429|50[0-4])\b")


# ============ HELPERS ============

def estimate_tokens(text: str) -> int:
    """Rough token count (1 token ≈ 4 chars)."""
    return math.ceil(len(text or "") / 4)


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Dollar cost for a call; unknown models cost 0."""
    pricing = MODEL_PRICING.get(model)
    if not pricing:
        return 0.0
    input_price, output_price = pricing
    return (input_tokens * input_price + output_tokens * output_price) / 1_000_000


def is_retryable(exc: BaseException) -> bool:
    """Timeouts, rate limits and 5xx are transient; auth and bad requests are not."""
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status == 429 or status >= 500
    message = str(exc).lower()
    if TRANSIENT_STATUS_PATTERN.search(message):
        return True
    return any(marker in message for marker in TRANSIENT_MARKERS)


def message_text(message: Any) -> str:
    """Text of a chat response; content may be a string or a list of blocks."""
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return ""


# ============ ADAPTER ============

class LangChainProvider:
    """
    Extraction + summary adapter over any LangChain chat model.

    Implements both ExtractionProvider and SummaryProvider. After every call
    (successful or not) `last_usage` holds the measured tokens, cost, time
    and retry count.
    """

    name = "langchain"

    def __init__(
        self,
        llm: Runnable,
        model: str,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.llm = llm
        self.model = model
        self.max_attempts = max(1, max_attempts)
        self.retry_base_delay = retry_base_delay
        self._sleep = sleep
        self.last_usage: Optional[CallUsage] = None

    def extract_dates(
        self,
        subject: str,
        body: str,
        sender: str,
        sent_date: datetime,
    ) -> List[CandidateEvent]:
        """
        Ask the model for future-dated school events in one email.

        Raises:
            ExtractionError: backend failure, empty response, or non-JSON text
        """
        text = self._call(EXTRACTION_PROMPT, self._prompt_inputs(subject, body, sender, sent_date))
        parsed = self._parse(text)
        events = validate_events(coerce_event_list(parsed), sent_date)
        logger.info("%s extracted %d event(s) from '%s'", self.name, len(events), subject[:60])
        return events

    def summarize(
        self,
        subject: str,
        body: str,
        sender: str,
        sent_date: datetime,
    ) -> Summary:
        """Ask the model for a structured summary of one email."""
        text = self._call(SUMMARY_PROMPT, self._prompt_inputs(subject, body, sender, sent_date))
        parsed = self._parse(text)
        try:
            return validate_summary(parsed)
        except ExtractionError as exc:
            exc.usage = self.last_usage
            raise

    def classify(
        self,
        subject: str,
        body: str,
        sender: str,
        sent_date: datetime,
    ) -> EmailClassification:
        """Cheap pre-filter: does this email mention any dates worth extracting?"""
        inputs = self._prompt_inputs(subject, "", sender, sent_date)
        inputs["body"] = preview(body or "", CLASSIFICATION_BODY_CHARS)
        text = self._call(CLASSIFICATION_PROMPT, inputs)
        parsed = self._parse(text)
        try:
            verdict = validate_classification(parsed)
        except ExtractionError as exc:
            exc.usage = self.last_usage
            raise
        logger.info(
            "%s classified '%s': date content=%s (%.2f)",
            self.name, subject[:60], verdict.has_date_content, verdict.confidence,
        )
        return verdict

    @staticmethod
    def _prompt_inputs(subject: str, body: str, sender: str, sent_date: datetime) -> Dict[str, str]:
        return {
            "subject": subject or "",
            "sender": sender or "",
            "sent_date": sent_date.isoformat() if sent_date else "",
            "body": trim_for_prompt(body or ""),
        }

    def _parse(self, text: str) -> Any:
        try:
            return parse_json_response(text)
        except ExtractionError as exc:
            exc.usage = self.last_usage
            if self.last_usage:
                exc.retry_count = self.last_usage.retry_count
            raise

    def _call(self, prompt: ChatPromptTemplate, inputs: Dict[str, str]) -> str:
        """Invoke prompt | llm with retries and record usage."""
        chain = prompt | self.llm
        started = time.monotonic()
        attempt = 0

        while True:
            try:
                response = chain.invoke(inputs)
                break
            except Exception as exc:
                if attempt + 1 < self.max_attempts and is_retryable(exc):
                    delay = self.retry_base_delay * (2 ** attempt)
                    attempt += 1
                    logger.warning(
                        "%s call failed (%s), retry %d/%d in %.1fs",
                        self.name, exc, attempt, self.max_attempts - 1, delay,
                    )
                    self._sleep(delay)
                    continue

                self.last_usage = CallUsage(
                    provider=self.name,
                    model=self.model,
                    input_tokens=estimate_tokens(prompt.format(**inputs)),
                    elapsed_ms=int((time.monotonic() - started) * 1000),
                    retry_count=attempt,
                )
                logger.error("%s call failed after %d attempt(s): %s", self.name, attempt + 1, exc)
                raise ExtractionError(
                    f"{self.name} request failed: {exc}",
                    cause=exc,
                    retry_count=attempt,
                    usage=self.last_usage,
                ) from exc

        text = message_text(response)
        logger.debug("%s raw output: %s", self.name, text[:500])
        self.last_usage = self._usage(response, prompt.format(**inputs), text, started, attempt)
        return text

    def _usage(self, response: Any, prompt_text: str, text: str, started: float, retries: int) -> CallUsage:
        metadata = getattr(response, "usage_metadata", None) or {}
        input_tokens = metadata.get("input_tokens") or estimate_tokens(prompt_text)
        output_tokens = metadata.get("output_tokens") or estimate_tokens(text)
        return CallUsage(
            provider=self.name,
            model=self.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=estimate_cost(self.model, input_tokens, output_tokens),
            elapsed_ms=int((time.monotonic() - started) * 1000),
            retry_count=retries,
        )


# ============ BACKENDS ============

class OpenAIProvider(LangChainProvider):
    """OpenAI-style chat completion backend."""

    name = "openai"

    @classmethod
    def from_settings(cls, settings: Settings, model: Optional[str] = None) -> "OpenAIProvider":
        if not settings.openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY not configured")
        model = model or settings.openai_model
        llm = ChatOpenAI(
            model=model,
            api_key=settings.openai_api_key,
            temperature=0.1,
            max_tokens=1000,
            timeout=REQUEST_TIMEOUT_SECONDS,
            max_retries=0,
        )
        return cls(
            llm,
            model,
            max_attempts=settings.llm_max_attempts,
            retry_base_delay=settings.llm_retry_base_delay_seconds,
        )


class ClaudeProvider(LangChainProvider):
    """Claude-style messages API backend."""

    name = "claude"

    @classmethod
    def from_settings(cls, settings: Settings, model: Optional[str] = None) -> "ClaudeProvider":
        if not settings.anthropic_api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY not configured")
        model = model or settings.claude_model
        llm = ChatAnthropic(
            model=model,
            api_key=settings.anthropic_api_key,
            temperature=0.1,
            max_tokens=1000,
            timeout=REQUEST_TIMEOUT_SECONDS,
            max_retries=0,
        )
        return cls(
            llm,
            model,
            max_attempts=settings.llm_max_attempts,
            retry_base_delay=settings.llm_retry_base_delay_seconds,
        )


class GeminiProvider(LangChainProvider):
    """Gemini backend via langchain-google-genai."""

    name = "gemini"

    @classmethod
    def from_settings(cls, settings: Settings, model: Optional[str] = None) -> "GeminiProvider":
        if not settings.google_api_key:
            raise ConfigurationError("GOOGLE_API_KEY not configured")
        model = model or settings.gemini_model
        llm = ChatGoogleGenerativeAI(
            model=model,
            google_api_key=settings.google_api_key,
            temperature=0.1,
            max_output_tokens=1024,
            max_retries=0,
        )
        return cls(
            llm,
            model,
            max_attempts=settings.llm_max_attempts,
            retry_base_delay=settings.llm_retry_base_delay_seconds,
        )


PROVIDERS = {
    "openai": OpenAIProvider,
    "claude": ClaudeProvider,
    "gemini": GeminiProvider,
}


# ============ FALLBACK PASS ============

class FallbackProvider:
    """
    Main model first, a second model for low-confidence results.

    When any event from the main model scores below the threshold, the
    fallback model extracts the same email and the two lists are merged
    (higher confidence wins per event). A failing fallback keeps the main
    result; the failure is exposed on `fallback_error` for the history log.
    Summaries always come from the main model.
    """

    def __init__(
        self,
        primary: LangChainProvider,
        fallback: LangChainProvider,
        confidence_threshold: float = 0.7,
    ):
        self.primary = primary
        self.fallback = fallback
        self.confidence_threshold = confidence_threshold
        self.last_usage: Optional[CallUsage] = None
        self.fallback_usage: Optional[CallUsage] = None
        self.fallback_error: Optional[str] = None

    @property
    def name(self) -> str:
        return self.primary.name

    @property
    def model(self) -> str:
        return self.primary.model

    def extract_dates(
        self,
        subject: str,
        body: str,
        sender: str,
        sent_date: datetime,
    ) -> List[CandidateEvent]:
        self.fallback_usage = None
        self.fallback_error = None

        events = self.primary.extract_dates(subject, body, sender, sent_date)
        self.last_usage = self.primary.last_usage

        low = [e for e in events if e.confidence < self.confidence_threshold]
        if not low:
            return events

        logger.info(
            "%d low-confidence event(s) in '%s', asking %s/%s",
            len(low), subject[:60], self.fallback.name, self.fallback.model,
        )
        try:
            second = self.fallback.extract_dates(subject, body, sender, sent_date)
        except ExtractionError as exc:
            self.fallback_usage = exc.usage
            self.fallback_error = str(exc)
            logger.warning("Fallback extraction failed, keeping main result: %s", exc)
            return events

        self.fallback_usage = self.fallback.last_usage
        return merge_events(events, second)

    def summarize(
        self,
        subject: str,
        body: str,
        sender: str,
        sent_date: datetime,
    ) -> Summary:
        try:
            return self.primary.summarize(subject, body, sender, sent_date)
        finally:
            self.last_usage = self.primary.last_usage


# ============ FACTORIES ============

def build_backend(name: str, settings: Settings, model: Optional[str] = None) -> LangChainProvider:
    """
    One backend by name, optionally with a non-default model.

    Raises:
        ConfigurationError: unknown name or missing API key
    """
    provider_cls = PROVIDERS.get(name)
    if provider_cls is None:
        raise ConfigurationError(
            f"Unknown LLM_PROVIDER '{name}' (expected one of: {', '.join(PROVIDERS)})"
        )
    return provider_cls.from_settings(settings, model)


def create_provider(settings: Settings):
    """
    Build the configured extraction/summary provider.

    Wrapped in a FallbackProvider when FALLBACK_PROVIDER is set.

    Raises:
        ConfigurationError: unknown LLM_PROVIDER or missing API key
    """
    primary = build_backend(settings.llm_provider, settings)
    if not settings.fallback_provider:
        return primary
    fallback = build_backend(settings.fallback_provider, settings, settings.fallback_model)
    return FallbackProvider(primary, fallback, settings.confidence_threshold)


def create_classifier(settings: Settings) -> Optional[LangChainProvider]:
    """The date-content pre-filter backend, or None when classification is off."""
    if not settings.classification_enabled:
        return None
    return build_backend(
        settings.classifier_provider or settings.llm_provider,
        settings,
        settings.classifier_model,
    )
