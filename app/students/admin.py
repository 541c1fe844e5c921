"""
Student admin configuration.

Balances are read-only here: they change through fee invoicing and
payment resolution, never by hand in the admin.
"""

from django.contrib import admin

from students.models import Student, StudentBalance


class StudentBalanceInline(admin.StackedInline):
    model = StudentBalance
    can_delete = False
    readonly_fields = ["outstanding_balance", "updated_at"]
    extra = 0


@admin.register(Student)
class StudentAdmin(admin.ModelAdmin):
    """Admin configuration for Student."""

    list_display = [
        "admission_number",
        "full_name",
        "phone_number",
        "outstanding_balance",
        "is_active",
    ]
    list_filter = ["is_active"]
    search_fields = ["admission_number", "full_name", "email", "phone_number"]
    readonly_fields = ["id", "created_at", "updated_at"]
    inlines = [StudentBalanceInline]

    @admin.display(description="Outstanding (KES)")
    def outstanding_balance(self, obj: Student):
        balance = getattr(obj, "balance", None)
        return balance.outstanding_balance if balance else None
