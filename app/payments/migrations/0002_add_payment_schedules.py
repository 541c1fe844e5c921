"""
Add celery-beat schedules for payment reconciliation.

This migration creates the periodic tasks that keep payments moving
when callbacks are late or lost:
- verify_stale_payments: every 2 minutes
- retry_failed_callbacks: every 5 minutes
- reconcile_unapplied_balances: every 15 minutes
"""

from django.db import migrations

PAYMENT_SCHEDULES = [
    {
        "name": "Verify Stale M-Pesa Payments",
        "task": "payments.tasks.verify_stale_payments",
        "every": 2,
        "description": (
            "Queries M-Pesa for pending payments older than the grace period "
            "and resolves them when the answer is definitive."
        ),
    },
    {
        "name": "Retry Failed M-Pesa Callbacks",
        "task": "payments.tasks.retry_failed_callbacks",
        "every": 5,
        "description": "Re-queues stored callbacks that failed or were never queued.",
    },
    {
        "name": "Reconcile Unapplied Balances",
        "task": "payments.tasks.reconcile_unapplied_balances",
        "every": 15,
        "description": "Applies balances for completed payments that missed it.",
    },
]


def create_periodic_tasks(apps, schema_editor):
    """Create the periodic tasks for payment reconciliation."""
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    for entry in PAYMENT_SCHEDULES:
        schedule, _ = IntervalSchedule.objects.get_or_create(
            every=entry["every"],
            period="minutes",
        )
        PeriodicTask.objects.get_or_create(
            name=entry["name"],
            defaults={
                "task": entry["task"],
                "interval": schedule,
                "enabled": True,
                "description": entry["description"],
            },
        )


def remove_periodic_tasks(apps, schema_editor):
    """Remove the periodic tasks on migration rollback."""
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(
        name__in=[entry["name"] for entry in PAYMENT_SCHEDULES],
    ).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("payments", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]
