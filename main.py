import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from schoolsync.api.v1.api import api_router
from schoolsync.database import engine, Base
from schoolsync.models import User, ProcessedEmail, ExtractedEvent, EmailSummary, ProcessingHistory

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="School Sync",
    description="Extraction of school events and summaries from email",
    version="1.0.0"
)

origins = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if o.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup():
    """Create database tables on startup."""
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created/verified")


app.include_router(api_router)


@app.get("/")
def health_check():
    return {"status": "ok"}
