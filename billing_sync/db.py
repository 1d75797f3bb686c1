from sqlmodel import create_engine, SQLModel
from sqlalchemy import event
import logging

from billing_sync.core.config import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL
IS_POSTGRES = DATABASE_URL.startswith("postgresql")


def set_statement_timeout(dbapi_connection, connection_record):
    """Bound query time so a slow database surfaces as a retryable failure."""
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("SET statement_timeout = '30s'")
    except Exception as e:
        logger.warning(f"Could not set statement timeout: {e}")
    finally:
        cursor.close()


if IS_POSTGRES:
    engine = create_engine(
        DATABASE_URL,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,  # Recycle connections every 5 min
        pool_timeout=30,  # Wait up to 30s for a connection
        connect_args={
            "connect_timeout": 10,
            "keepalives": 1,
            "keepalives_idle": 30,
            "keepalives_interval": 10,
            "keepalives_count": 5,
        },
    )
    event.listen(engine, "connect", set_statement_timeout)
else:
    engine = create_engine(
        DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
    )


def create_db_and_tables():
    # Import models so their tables are registered on the metadata
    import billing_sync.models  # noqa: F401

    SQLModel.metadata.create_all(engine)
