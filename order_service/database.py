"""
Database configuration and session management.

The engine and session factory are module-level, but request handlers only
ever see a session through the ``get_db`` dependency, so tests can swap in
an in-memory store.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from order_service import config

if not config.DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

engine = create_engine(
    config.DATABASE_URL,
    connect_args={"check_same_thread": False} if config.DATABASE_URL.startswith("sqlite") else {}
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()


def get_db():
    """
    Dependency function that provides a database session.

    Yields:
        Session: SQLAlchemy database session, closed after the request
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
