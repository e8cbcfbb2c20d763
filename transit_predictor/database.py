import logging
import os
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from transit_predictor.models import Base

logger = logging.getLogger(__name__)

load_dotenv()

# Where predictions, prediction events and arrival/departure history live
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///transit_predictor.db")

_engine: Optional[Engine] = None


def get_engine(url: Optional[str] = None) -> Engine:
    """
    Create (once) and return the SQLAlchemy engine

    Pooling options only apply to server databases; SQLite uses its own
    pool class and rejects pool_size/max_overflow.
    """
    global _engine
    if url is not None:
        return _create_engine(url)
    if _engine is None:
        _engine = _create_engine(DATABASE_URL)
    return _engine


def _create_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        return create_engine(url, echo=False, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        echo=False,
    )


def init_db(engine: Optional[Engine] = None):
    """Create all tables that do not exist yet"""
    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(bind=engine)
    logger.info("Database initialized at %s", engine.url)


def get_session_factory(engine: Optional[Engine] = None) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine or get_engine())


def get_session() -> Session:
    """Get a new database session"""
    return get_session_factory()()


def get_db():
    """FastAPI dependency yielding a session that is always closed"""
    db = get_session()
    try:
        yield db
    finally:
        db.close()
