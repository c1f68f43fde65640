"""
Ledger store session factory. Engine code commits after every conditional
statement, so sessions are short-lived and never hold a transaction open
across a gateway call.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from cardshop.core.config import settings


engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_recycle=settings.db_pool_recycle_seconds,
)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=True)


def get_db():
    """Request-scoped session; anything left uncommitted is rolled back."""
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
