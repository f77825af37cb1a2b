"""
Database Session - connection to the shop's relational store.

Provides database sessions for the orchestration services to read
orders and providers and to write shipments and COD tracking rows.
"""
import logging
from contextlib import contextmanager
from typing import Generator, Dict, Any

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from config import settings

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> Dict[str, Any]:
    """Pool options; SQLite (tests, local runs) does not take pool sizing."""
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_size": 5, "max_overflow": 10}


# Create SQLAlchemy engine
engine = create_engine(
    settings.DATABASE_URL,
    echo=False,
    **_engine_options(settings.DATABASE_URL),
)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """
    Context manager for one unit of work.

    Usage:
        with get_session() as db:
            DeliveryService(db, registry).check_shipment_status(shipment_id)
    """
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db():
    """Initialize database tables."""
    from models import order, delivery, cod_tracking  # noqa: F401
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables initialized")


def test_connection() -> bool:
    """Test database connection."""
    try:
        with get_session() as db:
            db.execute(text("SELECT 1"))
        target = settings.DATABASE_URL.split("@")[-1]
        logger.info(f"Database connection successful: {target}")
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
