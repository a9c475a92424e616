from contextlib import contextmanager

from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy import create_engine
from .config import settings


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    # Configure connection pool for better performance
    return {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 3600,  # Recycle connections after 1 hour
    }


engine = create_engine(settings.database_url, future=True, **_engine_kwargs(settings.database_url))

# IMPORTANT: do not use scoped_session with async frameworks; create a fresh Session per request
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope():
    """Session for scripts and background tasks, outside the request cycle."""
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    """Factory for work that outlives the request session, such as background jobs."""
    return SessionLocal
