import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from battle_arena.core.config import settings
from battle_arena.db.base import Base


def make_engine(url: str):
    """Build an engine for ``url`` with driver-appropriate connect args."""
    if url.startswith("sqlite"):
        # Sessions are used from the request threadpool
        connect_args = {"check_same_thread": False}
    elif url.startswith("postgresql"):
        connect_args = {"connect_timeout": 30}
    else:
        connect_args = {}
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


engine = make_engine(settings.DATABASE_URL)

# Create session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine
)


def init_db(bind=None):
    """Initialize database - create tables.
    If the DB is unreachable, skip creation so the API can still start; storage
    calls then run against the in-memory fallback until the DB returns.
    """
    # Register models on the metadata
    import battle_arena.models  # noqa: F401

    try:
        Base.metadata.create_all(bind=bind or engine)
    except Exception as e:
        logging.getLogger(__name__).warning("init_db_create_all_failed", extra={"error": str(e)})
