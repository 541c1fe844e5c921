"""
Factory Boy factories for student test data.

Usage:
    from students.tests.factories import StudentFactory, UserFactory

    student = StudentFactory()
    student = StudentFactory(balance=Decimal("5000.00"))
    student = StudentFactory(user=UserFactory())
"""

from decimal import Decimal

import factory
from django.conf import settings

from students.models import Student, StudentBalance


class UserFactory(factory.django.DjangoModelFactory):
    """Factory for login accounts (default Django user model)."""

    class Meta:
        model = settings.AUTH_USER_MODEL
        skip_postgeneration_save = True
        django_get_or_create = ("username",)

    username = factory.Sequence(lambda n: f"user{n}")
    email = factory.LazyAttribute(lambda obj: f"{obj.username}@example.com")
    password = factory.PostGenerationMethodCall("set_password", "testpass123")
    is_active = True
    is_staff = False


class StaffUserFactory(UserFactory):
    """Finance operator account."""

    username = factory.Sequence(lambda n: f"bursar{n}")
    is_staff = True


class StudentFactory(factory.django.DjangoModelFactory):
    """
    Factory for Student instances.

    The post_save signal creates a zero balance; pass balance= to set
    the outstanding amount.

    Example:
        student = StudentFactory(balance=Decimal("5000.00"))
        student.balance.outstanding_balance  # Decimal("5000.00")
    """

    class Meta:
        model = Student
        skip_postgeneration_save = True

    admission_number = factory.Sequence(lambda n: f"ADM{2024000 + n}")
    full_name = factory.Faker("name")
    email = factory.LazyAttribute(lambda obj: f"{obj.admission_number.lower()}@school.example")
    phone_number = factory.Sequence(lambda n: f"+2547{n:08d}")
    user = None
    is_active = True

    @factory.post_generation
    def balance(obj, create, extracted, **kwargs):
        if not create or extracted is None:
            return
        StudentBalance.objects.update_or_create(
            student=obj,
            defaults={"outstanding_balance": Decimal(extracted)},
        )
        # The signal cached the zero balance on the instance
        obj._state.fields_cache.pop("balance", None)
