from __future__ import annotations

import os
import tempfile
from datetime import datetime
from unittest.mock import patch

# Set test environment BEFORE importing app modules.
# app.db creates the engine at module level using get_settings().db_url,
# so we must override the env vars before any app imports.
_test_tmp = tempfile.mkdtemp(prefix="jobtracker-test-")
os.environ.setdefault("DATA_DIR", os.path.join(_test_tmp, "data"))
os.environ.setdefault("DB_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import app.models  # noqa: F401  registers SQLModel tables
from app.config import Settings
from app.db import get_session
from app.main import app as fastapi_app
from app.main import configure_queues
from app.models.application import ApplicationContact, Interview, JobApplication, User
from app.queue import JobQueue


def make_settings(**overrides) -> Settings:
    defaults = {
        "db_url": "sqlite://",
        "smtp_host": "smtp.test",
        "worker_retry_max_delay_seconds": 10,
    }
    defaults.update(overrides)
    return Settings(_env_file=None, **defaults)


# ── Database fixtures ─────────────────────────────────────────────────


@pytest.fixture(name="engine")
def engine_fixture():
    """Create an in-memory SQLite engine for testing.

    Uses StaticPool so every connection shares the same in-memory database.
    Recreates tables per test for full isolation.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="file_engine")
def file_engine_fixture(tmp_path):
    """File-backed SQLite engine for tests that run real worker threads."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'jobs.db'}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    """Provide a fresh session per test."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="patch_engine")
def patch_engine_fixture(engine):
    """Patch app.db.engine so deferred engine lookups return the test engine."""
    with patch("app.db.engine", engine):
        yield engine


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    return make_settings()


@pytest.fixture(name="queue")
def queue_fixture(engine, settings) -> JobQueue:
    queue = JobQueue(engine, poll_interval=0.05)
    configure_queues(queue, settings)
    return queue


# ── HTTP client fixtures ──────────────────────────────────────────────


@pytest.fixture(name="client")
def client_fixture(session, queue):
    """TestClient with the DB session overridden.

    The lifespan is not entered, so no worker threads start; the queue the
    health endpoint reports on is attached to app state by hand.
    """

    def _get_session_override():
        yield session

    fastapi_app.dependency_overrides[get_session] = _get_session_override
    fastapi_app.state.queue = queue
    fastapi_app.state.worker_pools = []
    yield TestClient(fastapi_app)
    fastapi_app.dependency_overrides.clear()
    del fastapi_app.state.queue
    del fastapi_app.state.worker_pools


# ── Domain fixtures ───────────────────────────────────────────────────


@pytest.fixture(name="make_owner")
def make_owner_fixture(session):
    """Factory for a user plus one of their job applications."""

    def _make(
        timezone: str | None = None,
        reminder_time: str | None = None,
        email: str = "ada@example.com",
        company_name: str = "Acme",
        job_title: str = "Backend Engineer",
    ) -> tuple[User, JobApplication]:
        user = User(
            email=email,
            first_name="Ada",
            timezone=timezone,
            reminder_time=reminder_time,
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        application = JobApplication(
            user_id=user.id, company_name=company_name, job_title=job_title
        )
        session.add(application)
        session.commit()
        session.refresh(application)
        return user, application

    return _make


@pytest.fixture(name="make_contact")
def make_contact_fixture(session):
    def _make(job_application_id: str, when: datetime | None, name: str = "Grace") -> ApplicationContact:
        contact = ApplicationContact(
            job_application_id=job_application_id,
            name=name,
            follow_up_reminder_at=when,
        )
        session.add(contact)
        session.commit()
        session.refresh(contact)
        return contact

    return _make


@pytest.fixture(name="make_interview")
def make_interview_fixture(session):
    def _make(job_application_id: str, when: datetime, **fields) -> Interview:
        interview = Interview(job_application_id=job_application_id, scheduled_at=when, **fields)
        session.add(interview)
        session.commit()
        session.refresh(interview)
        return interview

    return _make
