"""
Engine, session factory and declarative base.

PostgreSQL in production; any SQLAlchemy URL works (tests use SQLite).
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from schoolsync.config import Settings

settings = Settings.from_env()

# SQLite connections are used from FastAPI's worker threads
connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}

engine = create_engine(
    settings.database_url,
    echo=False,  # Set True for SQL debugging
    pool_pre_ping=True,
    connect_args=connect_args,
)

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False
)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def get_db():
    """
    FastAPI dependency yielding a request-scoped session.

    Usage:
        @router.post("/sync")
        def sync(db: Session = Depends(get_db)):
            ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
