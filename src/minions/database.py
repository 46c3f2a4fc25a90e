"""Database setup and session management"""

from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import get_database_url


def make_engine(url: str):
    """Create an engine; SQLite connections may be shared across the worker's threads."""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    # pool_pre_ping re-establishes dropped connections in long-lived workers
    return create_engine(url, pool_pre_ping=True, pool_recycle=1800, connect_args=connect_args)


# Use get_database_url() for runtime binding (respects DATABASE_URL env var)
engine = make_engine(get_database_url())
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


@contextmanager
def session_scope(session_factory=None):
    """Transactional scope: commit on success, roll back on error"""
    db = (session_factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind=None):
    """Initialize database tables"""
    # Import models to register them with Base.metadata
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
