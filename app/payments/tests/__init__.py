"""
Tests for payments app.

This package contains test modules for:
- test_models.py: PaymentAttempt and CallbackRecord model tests
- test_state_transitions.py: django-fsm transition rules
- test_serializers.py: Request/response serializer tests
- test_signals.py: payment_resolved dispatch and receivers
- test_tasks.py: Celery task tests
- test_views.py: API endpoint tests
- test_integration.py: End-to-end payment journeys

Usage:
    pytest payments/tests/
    pytest payments/tests/test_views.py
"""
