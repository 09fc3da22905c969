"""
Content fingerprint for cross-run deduplication.

The Gmail message id is the primary dedup key; this hash is the secondary
one and catches resends that arrive under a new id.
"""

import hashlib
from datetime import datetime
from typing import Union

# Joins the fields so ("ab", "c") and ("a", "bc") hash differently
FIELD_SEPARATOR = "\x1f"


def _date_key(sent_date: Union[datetime, str, None]) -> str:
    if sent_date is None:
        return ""
    if isinstance(sent_date, datetime):
        return sent_date.isoformat()
    return str(sent_date)


def fingerprint(
    subject: str,
    body: str,
    sender: str,
    sent_date: Union[datetime, str, None],
) -> str:
    """
    SHA-256 hex digest over subject, normalized body, sender and sent date.

    Identical inputs always give the identical digest.
    """
    payload = FIELD_SEPARATOR.join([
        subject or "",
        body or "",
        sender or "",
        _date_key(sent_date),
    ])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
