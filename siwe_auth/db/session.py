import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from siwe_auth.core.config import settings
from siwe_auth.db.base import Base

logger = logging.getLogger(__name__)


def _connect_args(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {"connect_timeout": 30}


# Create the SQLAlchemy engine
engine = create_engine(settings.DATABASE_URL,
                       connect_args=_connect_args(settings.DATABASE_URL),
                       pool_pre_ping=True,
                       pool_recycle=3600,
)

# Create a configured "Session" class
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None) -> None:
    """Create tables that do not exist yet"""
    import siwe_auth.models.account  # noqa: F401 - registers the model on Base

    Base.metadata.create_all(bind=bind or engine)


# Dependency that can be used in routes to get the session
def get_db() -> Session:
    db = SessionLocal()  # generate a new SessionLocal
    try:
        yield db
    finally:
        db.close()
