import logging
import time

from sqlalchemy import text
from sqlalchemy.orm import declarative_base

# Create declarative base
Base = declarative_base()

# Models are imported in billsync/models/__init__.py to avoid circular imports

logger = logging.getLogger(__name__)


def init_db():
    """Initialize database tables."""
    # Import engine here to avoid circular import
    from billsync.db.session import engine

    # Import all models to register them with Base.metadata
    # This must happen before create_all()
    import billsync.models  # noqa: F401

    # Retry logic to wait for database to be ready
    max_retries = 30
    retry_delay = 2

    for attempt in range(max_retries):
        try:
            with engine.begin() as conn:
                conn.execute(text("SELECT 1"))
            Base.metadata.create_all(bind=engine)
            logger.info("Database tables created/updated successfully")
            return
        except Exception as e:
            if attempt < max_retries - 1:
                logger.warning(f"Database not ready, retrying in {retry_delay}s... (attempt {attempt + 1}/{max_retries})")
                time.sleep(retry_delay)
            else:
                logger.error(f"Failed to connect to database after {max_retries} attempts: {e}")
                raise
