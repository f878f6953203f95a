"""
Database configuration and session management for the storefront service.

This module sets up the database connection using SQLAlchemy and provides
a session factory for database operations.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import DATABASE_URL


def build_engine(url: str):
    """
    Create an engine for the given URL.

    SQLite connections are shared across the threads of the web server, so
    the same-thread check is disabled for them.
    """
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, pool_pre_ping=True)


engine = build_engine(DATABASE_URL)

# Create SessionLocal class for database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for declarative models
Base = declarative_base()


def get_db():
    """
    Dependency function that provides a database session.

    Yields:
        Session: SQLAlchemy database session

    Usage:
        Use as a FastAPI dependency to inject database sessions into route handlers.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
