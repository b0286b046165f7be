from django.db import models
from django.db.models import Q

from donations.domain.constants import AMOUNT_DECIMAL_PLACES, AMOUNT_MAX_DIGITS


class Transaction(models.Model):
    class State(models.TextChoices):
        PENDING = "pending", "Pending"
        SUBMITTED = "submitted", "Submitted"
        CONFIRMED = "confirmed", "Confirmed"
        FAILED = "failed", "Failed"

    class Source(models.TextChoices):
        DONATION = "donation", "Donation"
        SCHEDULE = "schedule", "Schedule"
        RECONCILIATION = "reconciliation", "Reconciliation"

    external_tx_id = models.CharField(max_length=128, unique=True, null=True, blank=True)
    ledger_sequence = models.BigIntegerField(null=True, blank=True)
    amount = models.DecimalField(
        max_digits=AMOUNT_MAX_DIGITS, decimal_places=AMOUNT_DECIMAL_PLACES
    )
    donor = models.CharField(max_length=128)
    recipient = models.CharField(max_length=128)
    memo = models.CharField(max_length=64, blank=True, default="")
    state = models.CharField(
        max_length=16, choices=State.choices, default=State.PENDING
    )
    source = models.CharField(
        max_length=16, choices=Source.choices, default=Source.DONATION
    )
    idempotency_key = models.CharField(
        max_length=255, null=True, blank=True, db_index=True
    )
    schedule = models.ForeignKey(
        "donations.RecurringSchedule",
        on_delete=models.PROTECT,
        related_name="transactions",
        null=True,
        blank=True,
    )
    failure_reason = models.TextField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    submitted_at = models.DateTimeField(null=True, blank=True)
    confirmed_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["state", "created_at"], name="txn_state_created_idx"),
            models.Index(fields=["donor", "created_at"], name="txn_donor_created_idx"),
            models.Index(
                fields=["recipient", "created_at"], name="txn_recipient_created_idx"
            ),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name="transaction_amount_gt_zero",
            ),
        ]

    def __str__(self):
        return f"Transaction<{self.pk}:{self.state}:{self.external_tx_id or '-'}>"
