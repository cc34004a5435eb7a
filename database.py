"""
Database engine, session factory and request-scoped session dependency.
"""

import logging

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from config import Config

logger = logging.getLogger(__name__)

engine_kwargs = {"echo": Config.SQL_ECHO}

if Config.DATABASE_URL.startswith("sqlite"):
    # FastAPI serves requests from a threadpool
    engine_kwargs["connect_args"] = {"check_same_thread": False}
    if Config.DATABASE_URL in ("sqlite://", "sqlite:///:memory:"):
        # A single shared connection keeps the in-memory database alive
        engine_kwargs["poolclass"] = StaticPool
else:
    engine_kwargs.update(pool_pre_ping=True, pool_recycle=3600)

engine = create_engine(Config.DATABASE_URL, **engine_kwargs)

if engine.dialect.name == "sqlite":
    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Yield a session for the duration of one request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
