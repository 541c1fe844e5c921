"""
Tests for the M-Pesa callback endpoint.

Tests cover:
- Acknowledgement format
- Storage before acknowledgement
- Non-JSON bodies
- Storage and queueing failures
"""

import json
from unittest.mock import patch

import pytest
from django.db import DatabaseError
from django.test import Client
from django.urls import reverse

from payments.callbacks.views import ACCEPTED_RESPONSE
from payments.models import CallbackRecord
from payments.state_machines import CallbackOutcome
from payments.tests.factories import stk_callback_payload

CALLBACK_URL = reverse("payments:mpesa_callback")


@pytest.fixture
def csrf_client():
    """Client that enforces CSRF, like a real M-Pesa delivery would face."""
    return Client(enforce_csrf_checks=True)


def _post(client, body, content_type="application/json"):
    return client.post(CALLBACK_URL, data=body, content_type=content_type)


class TestCallbackEndpoint:
    """Tests for POST /api/v1/payments/callback/."""

    def test_stores_and_queues(self, db, csrf_client):
        """Should store the body, queue it and acknowledge."""
        payload = stk_callback_payload("ws_CO_191220191020363925")

        with patch("payments.tasks.process_callback_record.delay") as mock_delay:
            response = _post(csrf_client, json.dumps(payload))

        assert response.status_code == 200
        assert response.json() == ACCEPTED_RESPONSE

        record = CallbackRecord.objects.get()
        assert record.payload == payload
        assert record.outcome == CallbackOutcome.RECEIVED
        mock_delay.assert_called_once_with(str(record.id))

    def test_no_authentication_required(self, db, api_client):
        with patch("payments.tasks.process_callback_record.delay"):
            response = api_client.post(CALLBACK_URL, data={}, format="json")

        assert response.status_code == 200

    def test_non_json_body_acknowledged(self, db, csrf_client):
        """Unreadable bodies are kept for inspection, and M-Pesa is still acknowledged."""
        with patch("payments.tasks.process_callback_record.delay"):
            response = _post(csrf_client, "this is not json", content_type="text/plain")

        assert response.status_code == 200
        assert response.json()["ResultCode"] == 0
        assert CallbackRecord.objects.get().raw_body == "this is not json"

    def test_get_not_allowed(self, db, csrf_client):
        response = csrf_client.get(CALLBACK_URL)

        assert response.status_code == 405
        assert not CallbackRecord.objects.exists()

    def test_storage_failure_asks_for_redelivery(self, db, csrf_client):
        """If the body cannot be stored M-Pesa must not get a success."""
        with (
            patch(
                "payments.callbacks.views.CallbackReconciler.store",
                side_effect=DatabaseError("disk full"),
            ),
            patch("payments.tasks.process_callback_record.delay") as mock_delay,
        ):
            response = _post(csrf_client, json.dumps(stk_callback_payload("ws_CO_1")))

        assert response.status_code == 503
        assert response.json()["ResultCode"] == 1
        mock_delay.assert_not_called()

    def test_queue_failure_still_acknowledged(self, db, csrf_client):
        """A broker outage leaves the record for the retry sweep."""
        with patch(
            "payments.tasks.process_callback_record.delay",
            side_effect=ConnectionError("broker down"),
        ):
            response = _post(csrf_client, json.dumps(stk_callback_payload("ws_CO_1")))

        assert response.status_code == 200
        assert CallbackRecord.objects.get().outcome == CallbackOutcome.RECEIVED
