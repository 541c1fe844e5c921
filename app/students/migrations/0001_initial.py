import uuid
from decimal import Decimal

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Student",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "admission_number",
                    models.CharField(
                        help_text="School admission number (used as M-Pesa account reference)",
                        max_length=32,
                        unique=True,
                    ),
                ),
                (
                    "full_name",
                    models.CharField(help_text="Student's full name", max_length=200),
                ),
                (
                    "email",
                    models.EmailField(
                        blank=True,
                        default="",
                        help_text="Contact email for payment confirmations",
                        max_length=254,
                    ),
                ),
                (
                    "phone_number",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Default M-Pesa phone number (E.164, e.g. +254712345678)",
                        max_length=16,
                    ),
                ),
                (
                    "is_active",
                    models.BooleanField(
                        default=True,
                        help_text="Whether the student can make new payments",
                    ),
                ),
                (
                    "user",
                    models.OneToOneField(
                        blank=True,
                        help_text="Login account linked to this student",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="student",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Student",
                "verbose_name_plural": "Students",
                "ordering": ["admission_number"],
            },
        ),
        migrations.CreateModel(
            name="StudentBalance",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "outstanding_balance",
                    models.DecimalField(
                        decimal_places=2,
                        default=Decimal("0.00"),
                        help_text="Outstanding fees in KES",
                        max_digits=12,
                    ),
                ),
                (
                    "student",
                    models.OneToOneField(
                        help_text="Student this balance belongs to",
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="balance",
                        to="students.student",
                    ),
                ),
            ],
            options={
                "verbose_name": "Student Balance",
                "verbose_name_plural": "Student Balances",
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("outstanding_balance__gte", 0)),
                        name="student_balance_non_negative",
                    )
                ],
            },
        ),
    ]
