"""Shared fixtures for the crm-bridge test suite."""

import pytest

from crm_bridge.config import Settings

from .fakes import FakeBroker


@pytest.fixture
def settings() -> Settings:
    """Complete settings that never touch a .env file."""
    return Settings(
        _env_file=None,
        RABBITMQ_HOST="localhost",
        RABBITMQ_PORT=5672,
        RABBITMQ_USERNAME="guest",
        RABBITMQ_PASSWORD="guest",
        RABBITMQ_EXCHANGE="monitoring",
        RABBITMQ_RETRY_DELAY=0.0,
        REQUEUE_DELAY=0.0,
        SALESFORCE_CLIENT_ID="client-id",
        SALESFORCE_CLIENT_SECRET="client-secret",
        SALESFORCE_USERNAME="bridge@example.com",
        SALESFORCE_PASSWORD="secret",
        SALESFORCE_TOKEN="TOKEN",
        SALESFORCE_INSTANCE_URL=None,
        SERVICE_HOST="test-host",
        ENVIRONMENT="test",
    )


@pytest.fixture
def fake_broker() -> FakeBroker:
    return FakeBroker()
