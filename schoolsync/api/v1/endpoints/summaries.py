"""
Summary API endpoints.

Returns LLM summaries of a user's completed emails, generating the missing
ones on the fly.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from schoolsync.api.v1.deps import get_provider_factory
from schoolsync.config import Settings, get_settings
from schoolsync.database import get_db
from schoolsync.errors import ConfigurationError, PersistenceError
from schoolsync.services.db_service import SqlStore
from schoolsync.services.summary_service import SummaryService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/summaries", tags=["Summaries"])


# ============ Response Schemas ============

class SummaryItem(BaseModel):
    email_id: int
    gmail_message_id: str
    subject: Optional[str]
    sender: Optional[str]
    sent_date: Optional[str]
    summary: dict[str, Any]
    confidence: float
    llm_provider: str
    model_name: str
    generated_at: Optional[str]


class SummaryMetadata(BaseModel):
    total: int
    from_cache: int
    newly_generated: int
    failed: int
    estimated_cost: float


class SummariesResponse(BaseModel):
    summaries: list[SummaryItem]
    metadata: SummaryMetadata


# ============ ENDPOINTS ============

@router.get("", response_model=SummariesResponse)
def list_summaries(
    user_id: int = Query(..., description="Owner of the emails"),
    limit: int = Query(20, ge=1, le=100, description="Max results"),
    offset: int = Query(0, ge=0, description="Offset for pagination"),
    force_refresh: bool = Query(False, description="Regenerate cached summaries"),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    provider_factory=Depends(get_provider_factory),
):
    """
    Summaries for the user's completed emails, newest first.

    **Example:**
    ```
    GET /api/v1/summaries?user_id=1&limit=10&force_refresh=true
    ```
    """
    try:
        provider = provider_factory(settings)
        batch = SummaryService(SqlStore(db), provider).get_summaries(
            user_id,
            limit=limit,
            offset=offset,
            force_refresh=force_refresh,
        )
    except ConfigurationError as exc:
        return JSONResponse(status_code=400, content={"error": "configuration_error", "message": str(exc)})
    except PersistenceError as exc:
        logger.error("Summaries failed for user %s: %s", user_id, exc)
        return JSONResponse(status_code=500, content={"error": "persistence_error", "message": str(exc)})

    return {
        "summaries": batch.summaries,
        "metadata": {
            "total": len(batch.summaries),
            "from_cache": batch.from_cache,
            "newly_generated": batch.newly_generated,
            "failed": batch.failed,
            "estimated_cost": round(batch.estimated_cost, 6),
        },
    }
