"""Database handle and session management"""
import logging
from typing import Generator, Optional

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from lateless.models.base import Base

logger = logging.getLogger(__name__)


class Database:
    """Owns the engine and session factory for one process.

    Created at application startup (see ``lateless.main.lifespan``), stored on
    ``app.state.db`` and disposed at shutdown.
    """

    def __init__(self, url: str, engine: Optional[Engine] = None, **engine_kwargs):
        if engine is None:
            if not url.startswith("sqlite"):
                engine_kwargs.setdefault("pool_pre_ping", True)
                engine_kwargs.setdefault("pool_recycle", 3600)
            engine = create_engine(url, **engine_kwargs)
        self.engine = engine
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def session(self) -> Session:
        return self.SessionLocal()

    def create_all(self):
        """Create all tables (development and tests; production uses Alembic)"""
        Base.metadata.create_all(bind=self.engine)

    def dispose(self):
        self.engine.dispose()
        logger.info("Database engine disposed")


def get_db(request: Request) -> Generator[Session, None, None]:
    """Dependency for FastAPI endpoints"""
    db = request.app.state.db.session()
    try:
        yield db
    finally:
        db.close()
