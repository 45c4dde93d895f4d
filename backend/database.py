"""
Database connection and session management
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
import logging

logger = logging.getLogger(__name__)

# Base class for models
Base = declarative_base()


def create_db_engine(database_url: str = ""):
    """
    Create database engine - use SQLite fallback if no DATABASE_URL

    Args:
        database_url: SQLAlchemy URL, empty for the local SQLite file
    """
    if not database_url:
        database_url = "sqlite:///./threat_modeler.db"
        logger.warning("No DATABASE_URL configured, using local SQLite database")

    if database_url == "sqlite://" or database_url == "sqlite:///:memory:":
        # In-memory database shared across worker threads
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool
        )

    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})

    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10
    )


def create_session_factory(engine):
    """Create session factory bound to engine and make sure tables exist"""
    # Import models so they register on Base.metadata
    import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
