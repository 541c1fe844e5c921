"""
Tests for the health check endpoint.
"""

from unittest.mock import patch

import pytest
from django.db import DatabaseError
from django.urls import reverse

HEALTH_URL = reverse("health_check")


@pytest.fixture
def mpesa_configured(settings):
    settings.MPESA_CONSUMER_KEY = "key"
    settings.MPESA_CONSUMER_SECRET = "secret"
    settings.MPESA_PASSKEY = "passkey"
    settings.MPESA_CALLBACK_URL = "https://fees.example.com/api/v1/payments/callback/"


class TestHealthCheck:
    """Tests for health_check."""

    def test_healthy(self, db, client, mpesa_configured):
        response = client.get(HEALTH_URL)

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "database": "connected",
            "cache": "connected",
            "mpesa": "configured",
        }

    def test_database_down_is_unhealthy(self, client, mpesa_configured):
        with patch("core.views.connection") as mock_connection:
            mock_connection.cursor.side_effect = DatabaseError("connection refused")
            response = client.get(HEALTH_URL)

        assert response.status_code == 503
        assert response.json()["database"] == "disconnected"
        assert response.json()["status"] == "unhealthy"

    def test_cache_down_is_reported_only(self, db, client, mpesa_configured):
        with patch("core.views.cache") as mock_cache:
            mock_cache.set.side_effect = ConnectionError("redis unreachable")
            response = client.get(HEALTH_URL)

        assert response.status_code == 200
        assert response.json()["cache"] == "disconnected"

    def test_missing_credentials_reported(self, db, client, settings, mpesa_configured):
        settings.MPESA_PASSKEY = ""

        response = client.get(HEALTH_URL)

        assert response.status_code == 200
        assert response.json()["mpesa"] == "not configured"
