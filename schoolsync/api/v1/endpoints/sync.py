"""
Sync endpoint.

Pipeline:
1. Build the LLM provider, optional classifier and Gmail source from
   settings + request tokens
2. Run one IngestionPipeline sync for the user
3. Return aggregate counts (or a structured error)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from schoolsync.api.v1.deps import (
    get_classifier_factory,
    get_mail_source_factory,
    get_provider_factory,
)
from schoolsync.config import Settings, get_settings
from schoolsync.database import get_db
from schoolsync.errors import ConfigurationError, MailFetchError, PersistenceError
from schoolsync.services.db_service import SqlStore
from schoolsync.services.email_pipeline import IngestionPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["Sync"])


# ============ Schemas ============

class SyncRequest(BaseModel):
    """Inputs for one sync run."""
    user_id: int
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    lookback_days: Optional[int] = None
    force_reprocess: bool = False


class SyncResponse(BaseModel):
    """Aggregate counts for a finished run."""
    status: str
    message: str
    processed: int
    extracted: int
    skipped: int
    failed: int
    filtered: int
    skipped_duplicate_events: int
    duplicates_removed: int
    stopped_early: bool
    session_id: Optional[int]


def _error(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "message": message})


# ============ ENDPOINTS ============

@router.post("", response_model=SyncResponse)
def sync_emails(
    request: SyncRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    provider_factory=Depends(get_provider_factory),
    classifier_factory=Depends(get_classifier_factory),
    mail_source_factory=Depends(get_mail_source_factory),
):
    """
    Sync a user's school email and extract calendar events.

    **Body:**
    - `user_id`: Owner of the mailbox
    - `access_token` / `refresh_token`: Gmail OAuth tokens
    - `lookback_days`: Window for a normal sync (clamped to 1-30)
    - `force_reprocess`: Re-run extraction for already recorded messages

    **Example:**
    ```
    POST /api/v1/sync
    {"user_id": 1, "access_token": "ya29...", "lookback_days": 7}
    ```
    """
    try:
        if not request.access_token:
            raise ConfigurationError("access_token is required")

        provider = provider_factory(settings)
        classifier = classifier_factory(settings)
        mail_source = mail_source_factory(
            request.access_token,
            refresh_token=request.refresh_token,
            client_id=settings.gmail_client_id,
            client_secret=settings.gmail_client_secret,
            page_size=settings.gmail_page_size,
        )

        pipeline = IngestionPipeline(SqlStore(db), mail_source, provider, settings, classifier=classifier)
        result = pipeline.sync(
            request.user_id,
            lookback_days=request.lookback_days,
            force_reprocess=request.force_reprocess,
        )
    except ConfigurationError as exc:
        logger.warning("Sync rejected for user %s: %s", request.user_id, exc)
        return _error(400, "configuration_error", str(exc))
    except MailFetchError as exc:
        logger.error("Sync aborted for user %s: %s", request.user_id, exc)
        return _error(502, "mail_fetch_error", str(exc))
    except PersistenceError as exc:
        logger.error("Sync failed for user %s: %s", request.user_id, exc)
        return _error(500, "persistence_error", str(exc))

    return result.to_dict()
