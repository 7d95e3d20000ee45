"""Database session management"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sadqa.models.base import Base
from sadqa.core.config import settings

_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

# Create engine
engine = create_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    pool_recycle=3600,
    connect_args=_connect_args
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    """Dependency returning the session factory for work that outlives the request.

    Bulk rechecks open one session per item from this factory.
    """
    return SessionLocal


def init_db():
    """Initialize database (create all tables)"""
    import sadqa.models  # noqa: F401  register every model with Base.metadata
    Base.metadata.create_all(bind=engine)
