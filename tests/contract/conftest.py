"""Fixtures for HTTP contract tests."""

import pytest
from fastapi.testclient import TestClient

from src.api.webhook import create_app

BANK_IP = {"X-Forwarded-For": "196.216.242.224"}
ADMIN = {"X-Admin-Key": "admin-key"}


@pytest.fixture
def app(app_config, session_factory):
    return create_app(app_config, session_factory)


@pytest.fixture
def client(app):
    """Test client with the app lifespan running."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def bearer(client):
    """Authorization headers for a freshly issued callback token."""
    response = client.post(
        "/api/equity/token",
        json={"consumer_key": "equity-key", "consumer_secret": "equity-secret"},
        headers=BANK_IP,
    )
    assert response.status_code == 200
    return {**BANK_IP, "Authorization": f"Bearer {response.json()['access_token']}"}
