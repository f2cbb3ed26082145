"""
Database engine, sessions and table creation
"""
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from app.core.config import settings


def build_engine(url: str) -> Engine:
    """PostgreSQL gets a pooled engine, SQLite a thread-shareable one"""
    if url.startswith("sqlite"):
        # Requests hop between the event loop and worker threads
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True, pool_size=10, max_overflow=20)


engine = build_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session, closed when the response is sent"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables(bind: Engine = None):
    """Create tables for every model registered on Base"""
    # Importing registers the models on Base.metadata
    from app.models import database_models  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)
