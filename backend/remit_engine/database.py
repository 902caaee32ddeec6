"""
Remittance Engine - Database Configuration
SQLAlchemy engine and session factory (SQLite or PostgreSQL)
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from .config import get_settings


def build_engine(database_url: str):
    """Create an engine; SQLite connections are shared across worker threads."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(database_url, echo=False, connect_args=connect_args)


def build_session_factory(bind):
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


# Create engine
engine = build_engine(get_settings().database_url)

# Session factory
SessionLocal = build_session_factory(engine)

# Base class for ORM models
Base = declarative_base()


def get_db():
    """Dependency for FastAPI - yields database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Initialize database - create all tables."""
    from .models import db_models  # noqa: F401  (registers tables on Base)

    Base.metadata.create_all(bind=bind or engine)
