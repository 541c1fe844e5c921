"""
Django signals for students.

This module defines signal handlers for:
- Auto-creating a StudentBalance when a Student is created

Related files:
    - models.py: Student and StudentBalance models
    - apps.py: Signal import in ready()
"""

import logging

from django.db.models.signals import post_save
from django.dispatch import receiver

from students.models import Student, StudentBalance

logger = logging.getLogger(__name__)


@receiver(post_save, sender=Student)
def create_student_balance(sender, instance, created, **kwargs):
    """
    Create a zero StudentBalance for newly created students.

    Fee invoicing raises the balance later; payments only ever lower it.

    Args:
        sender: The Student model class
        instance: The Student instance that was saved
        created: Boolean indicating if this is a new record
        **kwargs: Additional signal arguments
    """
    if created:
        StudentBalance.objects.get_or_create(student=instance)
        logger.debug(f"Balance created for student: {instance.admission_number}")
