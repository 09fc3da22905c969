"""
Gmail mail source.

- build_query: OR-ed sender query bounded to a lookback window
- parse_message: Gmail "full" payload → RawMessage (MIME traversal)
- GmailMailSource: paginated listing + per-message fetch

The pipeline only depends on the MailSource protocol, so tests swap in an
in-memory fake.
"""

import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Iterable, List, Optional, Protocol

from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from schoolsync.errors import ConfigurationError, MailFetchError

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]

TOKEN_URI = "https://oauth2.googleapis.com/token"


@dataclass
class RawMessage:
    """One fetched message, as the mailbox returned it."""
    id: str
    subject: str
    sender: str
    sent_date: datetime
    body: str
    has_attachments: bool = False


class MailSource(Protocol):
    def list_messages(self, query: str, max_results: int) -> List[dict]:
        ...

    def get_message(self, message_id: str) -> RawMessage:
        ...


# ============ QUERY ============

def build_query(sources: Iterable, lookback_days: int) -> str:
    """
    Gmail search query for the monitored senders.

    Args:
        sources: Objects with `email` and `domain` attributes; a source with
            only a domain matches everyone at that domain
        lookback_days: Window size in days

    Returns:
        e.g. 'from:(teacher@school.org OR district.org) newer_than:7d'
    """
    terms = []
    for source in sources:
        term = (source.email or source.domain or "").strip()
        if term and term not in terms:
            terms.append(term)
    return f"from:({' OR '.join(terms)}) newer_than:{lookback_days}d"


# ============ PARSING ============

def _decode(data: str) -> str:
    return base64.urlsafe_b64decode(data).decode("utf-8", errors="ignore")


def _get_body_from_parts(parts: list) -> str:
    """Recursively concatenate text/plain and text/html parts."""
    body_text = ""
    for part in parts:
        mime_type = part.get("mimeType", "")

        if "parts" in part:
            body_text += _get_body_from_parts(part["parts"])
        elif mime_type in ["text/html", "text/plain"]:
            data = part.get("body", {}).get("data", "")
            if data:
                body_text += _decode(data)

    return body_text


def _has_attachment(parts: list) -> bool:
    for part in parts:
        if part.get("filename"):
            return True
        if "parts" in part and _has_attachment(part["parts"]):
            return True
    return False


def _parse_sent_date(date_header: Optional[str], internal_date: Optional[str]) -> datetime:
    """Date header first, Gmail's internalDate (epoch ms) as fallback."""
    if date_header:
        try:
            parsed = parsedate_to_datetime(date_header)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed
        except (TypeError, ValueError):
            logger.debug("Unparseable Date header: %s", date_header)
    if internal_date:
        return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
    return datetime.now(timezone.utc)


def parse_message(msg: dict) -> RawMessage:
    """
    Convert a Gmail API message (format="full") into a RawMessage.

    Handles both multipart and single-part payloads.
    """
    payload = msg.get("payload", {})
    headers = {h["name"].lower(): h["value"] for h in payload.get("headers", [])}

    body = ""
    parts = payload.get("parts", [])
    if parts:
        body = _get_body_from_parts(parts)
    elif payload.get("body", {}).get("data"):
        body = _decode(payload["body"]["data"])

    return RawMessage(
        id=msg["id"],
        subject=headers.get("subject", ""),
        sender=headers.get("from", ""),
        sent_date=_parse_sent_date(headers.get("date"), msg.get("internalDate")),
        body=body,
        has_attachments=_has_attachment(parts),
    )


# ============ SOURCE ============

class GmailMailSource:
    """Gmail API implementation of MailSource."""

    def __init__(self, service, page_size: int = 100):
        self.service = service
        self.page_size = page_size

    @classmethod
    def from_tokens(
        cls,
        access_token: str,
        refresh_token: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        page_size: int = 100,
    ) -> "GmailMailSource":
        """
        Build a Gmail client from OAuth tokens the caller already holds.

        With a refresh token and client id/secret, the Google client refreshes
        an expired access token by itself.
        """
        if not access_token:
            raise ConfigurationError("Gmail access token is required")

        creds = Credentials(
            token=access_token,
            refresh_token=refresh_token,
            token_uri=TOKEN_URI,
            client_id=client_id,
            client_secret=client_secret,
            scopes=SCOPES,
        )
        service = build("gmail", "v1", credentials=creds, cache_discovery=False)
        return cls(service, page_size=page_size)

    def list_messages(self, query: str, max_results: int) -> List[dict]:
        """
        Page through search results up to max_results message refs.

        Raises:
            MailFetchError: the listing call failed
        """
        messages: List[dict] = []
        page_token = None

        while len(messages) < max_results:
            params = {
                "userId": "me",
                "q": query,
                "maxResults": min(self.page_size, max_results - len(messages)),
            }
            if page_token:
                params["pageToken"] = page_token

            try:
                response = self.service.users().messages().list(**params).execute()
            except (HttpError, RefreshError, OSError) as exc:
                raise MailFetchError(f"Gmail listing failed: {exc}") from exc

            messages.extend(response.get("messages", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                break

        return messages[:max_results]

    def get_message(self, message_id: str) -> RawMessage:
        """
        Fetch one full message.

        Raises:
            MailFetchError: the fetch failed
        """
        try:
            msg = self.service.users().messages().get(
                userId="me",
                id=message_id,
                format="full"
            ).execute()
        except (HttpError, RefreshError, OSError) as exc:
            raise MailFetchError(f"Gmail fetch failed for {message_id}: {exc}") from exc

        return parse_message(msg)
