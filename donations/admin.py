from django.contrib import admin

from donations.models import (
    IdempotencyRecord,
    LedgerAccount,
    RecurringSchedule,
    ScheduleExecutionLog,
    Transaction,
)


@admin.register(LedgerAccount)
class LedgerAccountAdmin(admin.ModelAdmin):
    list_display = ("id", "public_key", "label", "sync_enabled", "created_at")
    list_filter = ("sync_enabled",)
    search_fields = ("id", "uuid", "public_key", "label")
    exclude = ("secret_ref",)


@admin.register(Transaction)
class TransactionAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "state",
        "source",
        "amount",
        "donor",
        "recipient",
        "external_tx_id",
        "created_at",
    )
    list_filter = ("state", "source")
    search_fields = ("id", "external_tx_id", "idempotency_key", "donor", "recipient")


@admin.register(IdempotencyRecord)
class IdempotencyRecordAdmin(admin.ModelAdmin):
    list_display = ("id", "key", "created_at", "expires_at")
    search_fields = ("key",)


@admin.register(RecurringSchedule)
class RecurringScheduleAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "donor",
        "recipient",
        "amount",
        "frequency",
        "status",
        "next_execution_date",
        "execution_count",
    )
    list_filter = ("status", "frequency")
    search_fields = ("id", "donor__public_key", "recipient__public_key")


@admin.register(ScheduleExecutionLog)
class ScheduleExecutionLogAdmin(admin.ModelAdmin):
    list_display = ("id", "schedule", "status", "attempt", "error_code", "created_at")
    list_filter = ("status",)
    search_fields = ("schedule__id", "external_tx_id", "error_code")
