"""
Celery configuration for the Django application.

Celery runs everything in the payment lifecycle that must not block a
web request:
- Processing stored M-Pesa callbacks
- Verification sweeps over Pending attempts (via django-celery-beat)
- Recovery of Completed attempts whose balance effect was not applied
- Fire-and-forget payment confirmation emails

This configuration uses Redis as both the message broker and result backend.
Tasks are auto-discovered from all installed Django apps.

Usage:
    # Define a task in any app's tasks.py:
    from celery import shared_task

    @shared_task
    def verify_single_payment(payment_attempt_id):
        ...

    # Call the task asynchronously:
    verify_single_payment.delay(str(attempt.id))

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import os

from celery import Celery

# Set the default Django settings module for the Celery worker
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

# Create Celery application instance
# The name should match the Django project name
app = Celery("config")

# Load configuration from Django settings
# All Celery settings should be prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

# Auto-discover tasks from all registered Django apps
# Celery will look for a tasks.py module in each installed app
app.autodiscover_tasks()
