"""Pytest configuration and shared fixtures."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from caseload_scheduler.config import SchedulerConfig
from caseload_scheduler.domain.models import Base
from caseload_scheduler.domain.repositories import SqlSchedulingStore


def pytest_configure(config):
    """Configure pytest."""
    # Add custom markers
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (deselect with '-m \"not integration\"')"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )


@pytest.fixture
def db_session():
    """Create in-memory database session for testing."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def store(db_session):
    """SQL-backed scheduling store over the test session."""
    return SqlSchedulingStore(db_session)


@pytest.fixture
def config():
    """Default configuration without retry delays."""
    cfg = SchedulerConfig()
    cfg.cache.retry_delay_seconds = 0.0
    return cfg
