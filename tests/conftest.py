from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mediajobs.database import Base, init_db
from mediajobs.models import utcnow
from mediajobs.services.job_lifecycle import JobLifecycleManager
from mediajobs.services.job_queue import InMemoryJobQueue
from mediajobs.services.job_store import SqlJobStore


class FakeClock:
    """Settable clock for the lifecycle manager."""

    def __init__(self, start=None):
        self.now = start or utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def db_engine():
    """In-memory SQLite shared across sessions."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def store(session_factory):
    return SqlJobStore(session_factory)


@pytest.fixture
def queue():
    return InMemoryJobQueue(lease_seconds=30, max_deliveries=3, backoff_seconds=0.01)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def lifecycle(store, queue, clock):
    return JobLifecycleManager(store=store, queue=queue, clock=clock)


@pytest.fixture
def transform_input():
    return {
        "video_url": "https://cdn.example.com/source.mp4",
        "face_image_url": "https://cdn.example.com/face.png",
        "resolution": "720p",
        "duration_seconds": 5,
    }
