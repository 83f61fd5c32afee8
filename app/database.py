"""
Database Configuration and Session Management
"""

from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from app.config import settings
import logging

logger = logging.getLogger(__name__)

engine = None
SessionLocal = None


def sqlalchemy_url(database_url: Optional[str] = None) -> Optional[str]:
    """
    Normalize DATABASE_URL for SQLAlchemy.

    Hosting providers hand out plain postgresql:// URLs; those are pinned to
    the psycopg3 driver. Other schemes (sqlite in tests) pass through.
    """
    url = database_url if database_url is not None else settings.database_url
    if url and url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def init_db():
    """Initialize the certificate store connection"""
    global engine, SessionLocal

    db_url = sqlalchemy_url()
    if not db_url:
        logger.warning("DATABASE_URL not configured - certificate store disabled")
        return

    logger.info("Connecting to certificate store...")
    engine = create_engine(
        db_url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10
    )

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    logger.info("Certificate store connection established")


Base = declarative_base()
