"""
LLM provider tests with LangChain fake chat models.

No network calls: the adapter is handed FakeListChatModel or a
RunnableLambda standing in for the backend.
"""

from datetime import date, datetime, time, timezone

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel
from langchain_core.messages import AIMessage
from langchain_core.runnables import RunnableLambda

from schoolsync.config import Settings
from schoolsync.errors import ConfigurationError, ExtractionError
from schoolsync.services.llm_providers import (
    FallbackProvider,
    LangChainProvider,
    OpenAIProvider,
    create_classifier,
    create_provider,
    estimate_cost,
    estimate_tokens,
    is_retryable,
    message_text,
)

SENT = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

FENCED_RESPONSE = """```json
[
  {"title": "Science Fair", "date": "2024-03-15", "time": "18:00",
   "description": "Projects in the gym", "confidence": 0.9},
  {"title": "Yesterday's assembly", "date": "2024-02-29", "confidence": 0.8}
]
```"""


def _provider(llm, **kwargs):
    delays = []
    provider = LangChainProvider(llm, "gpt-4o-mini", sleep=delays.append, **kwargs)
    return provider, delays


def _flaky_backend(failures, final_text="[]"):
    """Backend that raises the given exceptions in order, then answers."""
    calls = {"count": 0}
    errors = list(failures)

    def backend(prompt_value):
        calls["count"] += 1
        if errors:
            raise errors.pop(0)
        return AIMessage(content=final_text)

    return RunnableLambda(backend), calls


# ============ EXTRACTION ============

def test_extract_dates_parses_and_validates():
    provider, _ = _provider(FakeListChatModel(responses=[FENCED_RESPONSE]))

    events = provider.extract_dates("Science Fair", "Projects due", "teacher@school.org", SENT)

    assert len(events) == 1
    assert events[0].title == "Science Fair"
    assert events[0].event_time == time(18, 0)


def test_extract_dates_records_usage():
    provider, _ = _provider(FakeListChatModel(responses=["[]"]))

    provider.extract_dates("Newsletter", "Nothing dated", "teacher@school.org", SENT)

    usage = provider.last_usage
    assert usage.provider == "langchain"
    assert usage.model == "gpt-4o-mini"
    assert usage.input_tokens > 0
    assert usage.output_tokens > 0
    assert usage.cost > 0
    assert usage.retry_count == 0


def test_events_object_response_accepted():
    response = '{"events": [{"title": "Book Fair", "date": "2024-03-20", "confidence": 0.7}]}'
    provider, _ = _provider(FakeListChatModel(responses=[response]))

    events = provider.extract_dates("Book Fair", "", "librarian@school.org", SENT)

    assert [e.title for e in events] == ["Book Fair"]


def test_unexpected_json_shape_yields_no_events():
    provider, _ = _provider(FakeListChatModel(responses=['{"message": "no events"}']))

    assert provider.extract_dates("Hello", "", "teacher@school.org", SENT) == []


def test_non_json_response_raises_extraction_error():
    provider, _ = _provider(FakeListChatModel(responses=["I could not find any dates in this email."]))

    with pytest.raises(ExtractionError) as excinfo:
        provider.extract_dates("Hello", "", "teacher@school.org", SENT)

    assert excinfo.value.usage is provider.last_usage


def test_cut_off_response_is_not_a_shorter_list():
    truncated = '[{"title": "Field Trip", "date": "2024-03-05", "confidence": 0.9}, {"title": "Conf'
    provider, _ = _provider(FakeListChatModel(responses=[truncated]))

    with pytest.raises(ExtractionError, match="not valid JSON"):
        provider.extract_dates("Field trip", "", "teacher@school.org", SENT)


def test_empty_response_raises_extraction_error():
    provider, _ = _provider(FakeListChatModel(responses=[""]))

    with pytest.raises(ExtractionError, match="no text content"):
        provider.extract_dates("Hello", "", "teacher@school.org", SENT)


# ============ CLASSIFICATION ============

def test_classify_parses_verdict():
    response = '```json\n{"hasDateContent": true, "confidence": 0.85, "reasoning": "Mentions a field trip"}\n```'
    provider, _ = _provider(FakeListChatModel(responses=[response]))

    verdict = provider.classify("Field trip", "Bus leaves at 8 on Friday", "teacher@school.org", SENT)

    assert verdict.has_date_content is True
    assert verdict.confidence == pytest.approx(0.85)
    assert verdict.reasoning == "Mentions a field trip"
    assert provider.last_usage.output_tokens > 0


def test_classify_truthy_string_is_not_date_content():
    provider, _ = _provider(FakeListChatModel(responses=['{"hasDateContent": "yes", "confidence": 3}']))

    verdict = provider.classify("Hi", "", "teacher@school.org", SENT)

    assert verdict.has_date_content is False
    assert verdict.confidence == 1.0


def test_classify_list_response_raises():
    provider, _ = _provider(FakeListChatModel(responses=["[]"]))

    with pytest.raises(ExtractionError) as excinfo:
        provider.classify("Hi", "", "teacher@school.org", SENT)

    assert excinfo.value.usage is provider.last_usage


# ============ FALLBACK ============

LOW = '[{"title": "Book Fair", "date": "2024-03-20", "confidence": 0.5}]'
HIGH = '[{"title": "Book Fair", "date": "2024-03-20", "confidence": 0.9}]'
SECOND = ('[{"title": "Book Fair", "date": "2024-03-20", "confidence": 0.8},'
          ' {"title": "Author Visit", "date": "2024-03-18", "confidence": 0.75}]')


def test_fallback_not_called_for_confident_results():
    primary, _ = _provider(FakeListChatModel(responses=[HIGH]))
    second, calls = _flaky_backend([], final_text=SECOND)
    fallback, _ = _provider(second)

    events = FallbackProvider(primary, fallback, confidence_threshold=0.7).extract_dates(
        "Book Fair", "", "librarian@school.org", SENT
    )

    assert [e.confidence for e in events] == [0.9]
    assert calls["count"] == 0


def test_fallback_merges_low_confidence_results():
    primary, _ = _provider(FakeListChatModel(responses=[LOW]))
    fallback, _ = _provider(FakeListChatModel(responses=[SECOND]))
    provider = FallbackProvider(primary, fallback, confidence_threshold=0.7)

    events = provider.extract_dates("Book Fair", "", "librarian@school.org", SENT)

    assert [(e.title, e.confidence) for e in events] == [("Author Visit", 0.75), ("Book Fair", 0.8)]
    assert events[0].event_date == date(2024, 3, 18)
    assert provider.last_usage is primary.last_usage
    assert provider.fallback_usage is fallback.last_usage
    assert provider.fallback_error is None
    assert provider.name == "langchain"


def test_fallback_failure_keeps_primary_result():
    primary, _ = _provider(FakeListChatModel(responses=[LOW]))
    fallback, _ = _provider(FakeListChatModel(responses=["not json at all"]))
    provider = FallbackProvider(primary, fallback, confidence_threshold=0.7)

    events = provider.extract_dates("Book Fair", "", "librarian@school.org", SENT)

    assert [(e.title, e.confidence) for e in events] == [("Book Fair", 0.5)]
    assert "not valid JSON" in provider.fallback_error
    assert provider.fallback_usage is fallback.last_usage


# ============ RETRIES ============

def test_transient_errors_retry_with_backoff():
    backend, calls = _flaky_backend([TimeoutError("timed out"), ConnectionError("reset")])
    provider, delays = _provider(backend, max_attempts=3, retry_base_delay=1.0)

    assert provider.extract_dates("Hello", "", "teacher@school.org", SENT) == []

    assert calls["count"] == 3
    assert delays == [1.0, 2.0]
    assert provider.last_usage.retry_count == 2


def test_retries_exhausted_raise_with_retry_count():
    backend, calls = _flaky_backend([RuntimeError("503 Service Unavailable")] * 5)
    provider, delays = _provider(backend, max_attempts=3, retry_base_delay=0.5)

    with pytest.raises(ExtractionError) as excinfo:
        provider.extract_dates("Hello", "", "teacher@school.org", SENT)

    assert calls["count"] == 3
    assert delays == [0.5, 1.0]
    assert excinfo.value.retry_count == 2
    assert isinstance(excinfo.value.cause, RuntimeError)


def test_non_retryable_error_fails_immediately():
    backend, calls = _flaky_backend([ValueError("401 invalid api key")])
    provider, delays = _provider(backend, max_attempts=3)

    with pytest.raises(ExtractionError) as excinfo:
        provider.extract_dates("Hello", "", "teacher@school.org", SENT)

    assert calls["count"] == 1
    assert delays == []
    assert excinfo.value.retry_count == 0
    assert isinstance(excinfo.value.__cause__, ValueError)


class _StatusError(Exception):
    def __init__(self, status_code):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


@pytest.mark.parametrize("exc, expected", [
    (TimeoutError(), True),
    (ConnectionError(), True),
    (_StatusError(429), True),
    (_StatusError(502), True),
    (_StatusError(400), False),
    (_StatusError(401), False),
    (RuntimeError("Rate limit reached"), True),
    (RuntimeError("model is overloaded"), True),
    (RuntimeError("invalid request"), False),
    (RuntimeError("Error code: 503 - upstream"), True),
    (RuntimeError("max_tokens 1500 exceeds limit"), False),
    (RuntimeError("context has 25020 tokens"), False),
])
def test_is_retryable(exc, expected):
    assert is_retryable(exc) is expected


# ============ SUMMARIES ============

def test_summarize_tolerates_malformed_fields():
    response = '{"keyPoints": ["Concert Friday"], "categories": "Events", "actionItems": ["RSVP"]}'
    provider, _ = _provider(FakeListChatModel(responses=[response]))

    summary = provider.summarize("Concert", "Concert Friday 6pm", "music@school.org", SENT)

    assert summary.categories == []
    assert summary.key_points == ["Concert Friday"]
    assert summary.action_items == ["RSVP"]
    assert summary.confidence == 0.8


def test_summarize_non_object_raises():
    provider, _ = _provider(FakeListChatModel(responses=['["just", "a", "list"]']))

    with pytest.raises(ExtractionError):
        provider.summarize("Concert", "", "music@school.org", SENT)


# ============ HELPERS ============

def test_message_text_joins_text_blocks():
    message = AIMessage(content=[
        {"type": "text", "text": "[{\"title\": "},
        {"type": "tool_use", "id": "x", "name": "noop", "input": {}},
        {"type": "text", "text": "\"x\"}]"},
    ])

    assert message_text(message) == '[{"title": "x"}]'


def test_estimate_cost_uses_price_table():
    assert estimate_cost("gpt-4o-mini", 1_000_000, 1_000_000) == pytest.approx(3.00)
    assert estimate_cost("gemini-1.5-flash", 1_000_000, 0) == pytest.approx(0.075)
    assert estimate_cost("unknown-model", 1000, 1000) == 0.0


def test_estimate_tokens():
    assert estimate_tokens("abcd" * 10) == 10
    assert estimate_tokens("abcde") == 2
    assert estimate_tokens("") == 0


# ============ FACTORY ============

def test_create_provider_unknown_name():
    with pytest.raises(ConfigurationError, match="Unknown LLM_PROVIDER"):
        create_provider(Settings(llm_provider="mystery"))


@pytest.mark.parametrize("provider_name, key_name", [
    ("openai", "OPENAI_API_KEY"),
    ("claude", "ANTHROPIC_API_KEY"),
    ("gemini", "GOOGLE_API_KEY"),
])
def test_create_provider_missing_key(provider_name, key_name):
    with pytest.raises(ConfigurationError, match=key_name):
        create_provider(Settings(llm_provider=provider_name))


def test_create_openai_provider():
    provider = create_provider(Settings(llm_provider="openai", openai_api_key="sk-test", llm_max_attempts=4))

    assert isinstance(provider, OpenAIProvider)
    assert provider.name == "openai"
    assert provider.model == "gpt-4o-mini"
    assert provider.max_attempts == 4


def test_create_provider_with_fallback():
    settings = Settings(
        llm_provider="openai",
        openai_api_key="sk-test",
        fallback_provider="openai",
        fallback_model="gpt-4o",
        confidence_threshold=0.6,
    )

    provider = create_provider(settings)

    assert isinstance(provider, FallbackProvider)
    assert provider.model == "gpt-4o-mini"
    assert provider.fallback.model == "gpt-4o"
    assert provider.confidence_threshold == 0.6


def test_create_classifier_disabled_by_default():
    assert create_classifier(Settings(llm_provider="openai", openai_api_key="sk-test")) is None


def test_create_classifier_uses_its_own_model():
    settings = Settings(
        llm_provider="openai",
        openai_api_key="sk-test",
        classification_enabled=True,
        classifier_model="gpt-4.1-nano",
    )

    classifier = create_classifier(settings)

    assert isinstance(classifier, OpenAIProvider)
    assert classifier.model == "gpt-4.1-nano"
