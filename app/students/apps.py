"""
Students app configuration.

Holds the student records fee payments are made against and each
student's outstanding fee balance.
"""

from django.apps import AppConfig


class StudentsConfig(AppConfig):
    """Configuration for the students application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "students"
    verbose_name = "Students"

    def ready(self):
        """
        Import signals when the app is ready.

        This ensures signal handlers are connected when Django starts.
        """
        from students import signals  # noqa: F401
