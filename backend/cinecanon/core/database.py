from sqlalchemy.orm import sessionmaker
from sqlalchemy import create_engine
import logging

from cinecanon.core.config import settings

logger = logging.getLogger(__name__)

# pool_pre_ping: verify connections before using them
# pool_recycle: recycle connections after N seconds to prevent stale connections
engine = create_engine(
    settings.database_url,
    pool_size=10,
    max_overflow=20,
    pool_timeout=30,
    pool_recycle=3600,
    pool_pre_ping=True
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None):
    """Create any missing tables. Safe to call repeatedly."""
    from cinecanon.models import Base
    target = bind or engine
    Base.metadata.create_all(bind=target)
    logger.info("Database schema ensured")
