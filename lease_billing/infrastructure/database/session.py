"""Engine and session factory for the billing store"""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from lease_billing.config import settings

# Clock workers and API requests share one pool; recycle hourly
engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_recycle=3600,
)

# Committed rows keep their loaded attributes
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def get_db() -> Session:
    """Request-scoped session, closed when the response is sent"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
