# tests/conftest.py
import os
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from dotenv import load_dotenv
from fastapi.testclient import TestClient

# Load environment variables FIRST, before any driftly imports, so the
# module-level Settings() picks up the test configuration.
load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), ".env.test"), override=True)

from driftly.config.settings import settings  # noqa: E402
from driftly.jobs.flow_processor import FlowScheduler  # noqa: E402
from driftly.jobs.legacy_migration import LegacyContactProcessor  # noqa: E402
from driftly.main import app  # noqa: E402
from driftly.services.db_service import db_service  # noqa: E402
from driftly.services.email_service import email_service  # noqa: E402
from driftly.services.error_service import ErrorHandlingService  # noqa: E402
from driftly.services.flow_service import FlowService  # noqa: E402
from driftly.services.step_executor import StepExecutor  # noqa: E402
from driftly.services.webhook_service import webhook_client  # noqa: E402
from driftly.utils.dependencies import get_error_service, get_flow_service  # noqa: E402
from fakes import FakeEmailService, FakeWebhookClient, InMemoryDatabase  # noqa: E402


@pytest.fixture
def now():
    return datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db():
    return InMemoryDatabase()


@pytest.fixture
def email():
    return FakeEmailService()


@pytest.fixture
def webhooks():
    return FakeWebhookClient()


@pytest.fixture
def engine_settings():
    """A private copy so tests can flip engine options freely."""
    return settings.model_copy(update={
        "continue_on_step_failure": True,
        "max_steps_per_contact": 1,
        "max_concurrent_contacts": 5,
    })


@pytest.fixture
def error_handler(db):
    return ErrorHandlingService(db)


@pytest.fixture
def flows(db):
    return FlowService(db)


@pytest.fixture
def executor(db, email, webhooks, error_handler, flows, engine_settings):
    return StepExecutor(db, email, webhooks, error_handler, flows, engine_settings)


@pytest.fixture
def legacy(db, email, error_handler):
    return LegacyContactProcessor(db, email, error_handler)


@pytest.fixture
def flow_scheduler(db, executor, legacy, engine_settings):
    return FlowScheduler(db, executor, legacy, engine_settings, worker_id="test-worker")


@pytest.fixture(scope="function")
def test_client(mocker, flows, error_handler, flow_scheduler):
    """
    Provides a TestClient whose services run on the in-memory fakes.
    The lifespan still runs; only its MongoDB and HTTP client calls are stubbed.
    """
    mocker.patch.object(db_service, "create_indexes", new_callable=AsyncMock)
    mocker.patch.object(db_service, "health_check", new_callable=AsyncMock, return_value=True)
    mocker.patch.object(db_service, "client", MagicMock())
    mocker.patch.object(email_service, "close", new_callable=AsyncMock)
    mocker.patch.object(webhook_client, "close", new_callable=AsyncMock)
    mocker.patch("driftly.utils.lifecycle.build_flow_scheduler", return_value=flow_scheduler)

    app.dependency_overrides[get_flow_service] = lambda: flows
    app.dependency_overrides[get_error_service] = lambda: error_handler
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
