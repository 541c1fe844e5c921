"""
Payment admin configuration.

Registers PaymentAttempt and CallbackRecord with the Django admin.
Both are audit records: status changes go through the ledger, never
through admin edits.
"""

from django.contrib import admin

from payments.models import CallbackRecord, PaymentAttempt

__all__ = [
    "CallbackRecordAdmin",
    "PaymentAttemptAdmin",
]


class CallbackRecordInline(admin.TabularInline):
    """Inline display of callbacks matched to a payment attempt."""

    model = CallbackRecord
    extra = 0
    can_delete = False
    fields = ["id", "outcome", "received_at", "processed_at", "retry_count"]
    readonly_fields = fields
    ordering = ["received_at"]

    def has_add_permission(self, request, obj=None) -> bool:
        return False


@admin.register(PaymentAttempt)
class PaymentAttemptAdmin(admin.ModelAdmin):
    """
    Admin configuration for PaymentAttempt.

    Provides visibility into payment attempts and their reconciliation.
    Operators can trigger an M-Pesa status query for pending attempts.
    """

    list_display = [
        "id",
        "student",
        "amount_display",
        "status",
        "receipt_code",
        "resolution_source",
        "balance_applied",
        "created_at",
    ]
    list_filter = ["status", "resolution_source", "balance_applied", "created_at"]
    search_fields = [
        "id",
        "correlation_id",
        "receipt_code",
        "phone_number",
        "student__admission_number",
    ]
    readonly_fields = [
        "id",
        "student",
        "amount",
        "phone_number",
        "account_reference",
        "description",
        "correlation_id",
        "merchant_request_id",
        "status",
        "receipt_code",
        "failure_reason",
        "resolution_source",
        "resolved_at",
        "verification_attempts",
        "last_verified_at",
        "balance_applied",
        "balance_applied_at",
        "metadata",
        "created_at",
        "updated_at",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]
    actions = ["verify_with_mpesa"]
    inlines = [CallbackRecordInline]

    fieldsets = (
        (
            None,
            {
                "fields": ("id", "student", "amount", "phone_number", "status"),
            },
        ),
        (
            "M-Pesa",
            {
                "fields": (
                    "account_reference",
                    "description",
                    "correlation_id",
                    "merchant_request_id",
                    "receipt_code",
                ),
            },
        ),
        (
            "Resolution",
            {
                "fields": (
                    "resolution_source",
                    "resolved_at",
                    "failure_reason",
                    "verification_attempts",
                    "last_verified_at",
                ),
            },
        ),
        (
            "Balance",
            {
                "fields": ("balance_applied", "balance_applied_at"),
            },
        ),
        (
            "Metadata",
            {
                "fields": ("metadata",),
                "classes": ("collapse",),
            },
        ),
        (
            "Timestamps",
            {
                "fields": ("created_at", "updated_at"),
            },
        ),
    )

    def amount_display(self, obj: PaymentAttempt) -> str:
        """Display the amount formatted as currency."""
        return f"KES {obj.amount:,.2f}"

    amount_display.short_description = "Amount"

    @admin.action(description="Verify selected payments with M-Pesa")
    def verify_with_mpesa(self, request, queryset):
        """Run the status query for each selected attempt."""
        from payments.apps import get_gateway
        from payments.services import VerificationService

        service = VerificationService(get_gateway())
        resolved = 0
        for attempt_id in queryset.values_list("id", flat=True):
            result = service.verify(attempt_id)
            if result.success and result.data.outcome and result.data.outcome.changed:
                resolved += 1
        self.message_user(request, f"Verified {queryset.count()} payments, {resolved} changed.")

    def has_add_permission(self, request) -> bool:
        """Attempts are only created by the orchestrator."""
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        """Disable delete for payment attempts (audit trail)."""
        return False


@admin.register(CallbackRecord)
class CallbackRecordAdmin(admin.ModelAdmin):
    """
    Admin configuration for CallbackRecord.

    Provides visibility into callback processing outcomes.
    Callback records are immutable once received.
    """

    list_display = [
        "id",
        "correlation_id",
        "outcome",
        "payment_attempt",
        "retry_count",
        "received_at",
        "processed_at",
    ]
    list_filter = ["outcome", "received_at"]
    search_fields = ["id", "correlation_id", "payload_hash"]
    readonly_fields = [
        "id",
        "payload",
        "raw_body",
        "payload_hash",
        "received_at",
        "correlation_id",
        "payment_attempt",
        "outcome",
        "processed_at",
        "error_message",
        "retry_count",
        "created_at",
        "updated_at",
    ]
    date_hierarchy = "received_at"
    ordering = ["-received_at"]

    fieldsets = (
        (
            None,
            {
                "fields": ("id", "correlation_id", "payment_attempt", "outcome"),
            },
        ),
        (
            "Processing",
            {
                "fields": ("received_at", "processed_at", "retry_count"),
            },
        ),
        (
            "Error Info",
            {
                "fields": ("error_message",),
                "classes": ("collapse",),
            },
        ),
        (
            "Payload",
            {
                "fields": ("payload", "raw_body", "payload_hash"),
                "classes": ("collapse",),
            },
        ),
        (
            "Timestamps",
            {
                "fields": ("created_at", "updated_at"),
            },
        ),
    )

    def has_add_permission(self, request) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        """Disable delete for callback records (audit trail)."""
        return False
