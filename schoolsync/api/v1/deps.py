"""
Shared FastAPI dependencies.

The factories are dependencies (not direct calls) so tests can override them
with fakes via app.dependency_overrides.
"""

from schoolsync.services.gmail_service import GmailMailSource
from schoolsync.services.llm_providers import create_classifier, create_provider


def get_provider_factory():
    """Callable(settings) -> provider implementing extraction and summaries."""
    return create_provider


def get_mail_source_factory():
    """Callable(access_token, refresh_token, client_id, client_secret, page_size) -> MailSource."""
    return GmailMailSource.from_tokens


def get_classifier_factory():
    """Callable(settings) -> classifier, or None when the pre-filter is off."""
    return create_classifier
