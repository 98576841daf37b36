"""Pytest configuration and shared fixtures.

Database tests run against an in-memory SQLite database built from the
model metadata; each test gets a fresh schema.
"""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import safee.db.models  # noqa: F401  registers tables on Base.metadata
from safee.core.config import Settings
from safee.db.base import Base

from tests import factories

STRONG_PASSPHRASE = "Correct-Horse-Battery-9-Staple"
OTHER_PASSPHRASE = "Another-Strong-Passphrase-42!"


@pytest.fixture
def settings():
    """Settings with a cheap KDF so key tests stay fast."""
    return Settings(
        database_url="sqlite://",
        pbkdf2_iterations=1000,
        allow_weak_kdf=True,
        file_chunk_size=64,
        notification_webhook_urls="",
        webhook_max_retries=2,
        file_logging=False,
    )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db_session(engine):
    """Session configured like the application's SessionLocal."""
    Session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def org(db_session):
    organization = factories.create_organization(db_session)
    db_session.commit()
    return organization


@pytest.fixture
def member_factory(db_session, org):
    """Create a user who is a member of ``org`` with the given role."""

    def _create(role: str = "approver", **kwargs):
        member = factories.create_member(db_session, org=org, role=role, **kwargs)
        db_session.commit()
        return member.user

    return _create
