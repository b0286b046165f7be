from rest_framework import serializers

from donations.domain.constants import AMOUNT_DECIMAL_PLACES, AMOUNT_MAX_DIGITS
from donations.models import RecurringSchedule, ScheduleExecutionLog, Transaction


class DonationRequestSerializer(serializers.Serializer):
    donor_public_key = serializers.CharField(max_length=128)
    recipient_public_key = serializers.CharField(max_length=128)
    amount = serializers.DecimalField(
        max_digits=AMOUNT_MAX_DIGITS, decimal_places=AMOUNT_DECIMAL_PLACES
    )
    memo = serializers.CharField(required=False, allow_blank=True, default="")


class ScheduleRequestSerializer(serializers.Serializer):
    donor_public_key = serializers.CharField(max_length=128)
    recipient_public_key = serializers.CharField(max_length=128)
    amount = serializers.DecimalField(
        max_digits=AMOUNT_MAX_DIGITS, decimal_places=AMOUNT_DECIMAL_PLACES
    )
    frequency = serializers.CharField(max_length=16)
    start_at = serializers.DateTimeField(required=False)
    max_executions = serializers.IntegerField(required=False, min_value=1)


class ReconciliationRequestSerializer(serializers.Serializer):
    public_keys = serializers.ListField(
        child=serializers.CharField(max_length=128),
        required=False,
        allow_empty=False,
    )


class TransactionSerializer(serializers.ModelSerializer):
    class Meta:
        model = Transaction
        fields = (
            "id",
            "external_tx_id",
            "ledger_sequence",
            "amount",
            "donor",
            "recipient",
            "memo",
            "state",
            "source",
            "idempotency_key",
            "schedule_id",
            "failure_reason",
            "created_at",
            "submitted_at",
            "confirmed_at",
            "failed_at",
        )


class ScheduleExecutionLogSerializer(serializers.ModelSerializer):
    class Meta:
        model = ScheduleExecutionLog
        fields = (
            "id",
            "status",
            "attempt",
            "external_tx_id",
            "error_code",
            "error_message",
            "created_at",
        )


class ScheduleSerializer(serializers.ModelSerializer):
    donor = serializers.SlugRelatedField(slug_field="public_key", read_only=True)
    recipient = serializers.SlugRelatedField(slug_field="public_key", read_only=True)

    class Meta:
        model = RecurringSchedule
        fields = (
            "id",
            "donor",
            "recipient",
            "amount",
            "frequency",
            "status",
            "next_execution_date",
            "last_execution_date",
            "execution_count",
            "max_executions",
            "cancelled_at",
            "created_at",
            "updated_at",
        )
