"""
Widen PaymentAttempt.receipt_code to hold a CheckoutRequestID.

Status queries do not return the M-Pesa receipt number, so attempts
completed by verification record the CheckoutRequestID (up to 100
characters) in its place.
"""

from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("payments", "0002_add_payment_schedules"),
    ]

    operations = [
        migrations.AlterField(
            model_name="paymentattempt",
            name="receipt_code",
            field=models.CharField(
                blank=True,
                help_text="M-Pesa receipt number (e.g. NLJ7RT61SV)",
                max_length=100,
                null=True,
                unique=True,
            ),
        ),
    ]
