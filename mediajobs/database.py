from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from mediajobs.config import settings

SQLALCHEMY_DATABASE_URL = settings.sqlalchemy_url

connect_args = {"check_same_thread": False} if SQLALCHEMY_DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args=connect_args)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db(bind=None):
    """Create all database tables."""
    from mediajobs.models import Job, CostLedgerEntry  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)
