from django.db import models
from django.db.models import Q

from donations.domain.constants import AMOUNT_DECIMAL_PLACES, AMOUNT_MAX_DIGITS


class RecurringSchedule(models.Model):
    class Frequency(models.TextChoices):
        DAILY = "daily", "Daily"
        WEEKLY = "weekly", "Weekly"
        MONTHLY = "monthly", "Monthly"

    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        PAUSED = "paused", "Paused"
        CANCELLED = "cancelled", "Cancelled"
        COMPLETED = "completed", "Completed"

    donor = models.ForeignKey(
        "donations.LedgerAccount",
        on_delete=models.PROTECT,
        related_name="outgoing_schedules",
    )
    recipient = models.ForeignKey(
        "donations.LedgerAccount",
        on_delete=models.PROTECT,
        related_name="incoming_schedules",
    )
    amount = models.DecimalField(
        max_digits=AMOUNT_MAX_DIGITS, decimal_places=AMOUNT_DECIMAL_PLACES
    )
    frequency = models.CharField(max_length=16, choices=Frequency.choices)
    status = models.CharField(
        max_length=16, choices=Status.choices, default=Status.ACTIVE
    )
    next_execution_date = models.DateTimeField()
    last_execution_date = models.DateTimeField(null=True, blank=True)
    execution_count = models.PositiveIntegerField(default=0)
    max_executions = models.PositiveIntegerField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(
                fields=["status", "next_execution_date"],
                name="sched_status_next_idx",
            ),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name="schedule_amount_gt_zero",
            ),
            models.CheckConstraint(
                condition=Q(max_executions__isnull=True) | Q(max_executions__gt=0),
                name="schedule_max_executions_gt_zero",
            ),
        ]

    def __str__(self):
        return f"RecurringSchedule<{self.pk}:{self.frequency}:{self.status}>"


class ScheduleExecutionLog(models.Model):
    class Status(models.TextChoices):
        SUCCESS = "SUCCESS", "Success"
        FAILED = "FAILED", "Failed"
        SKIPPED = "SKIPPED", "Skipped"

    schedule = models.ForeignKey(
        "donations.RecurringSchedule",
        on_delete=models.PROTECT,
        related_name="execution_logs",
    )
    status = models.CharField(max_length=16, choices=Status.choices)
    attempt = models.PositiveIntegerField(default=1)
    external_tx_id = models.CharField(max_length=128, null=True, blank=True)
    error_code = models.CharField(max_length=64, null=True, blank=True)
    error_message = models.TextField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(
                fields=["schedule", "created_at"], name="schedlog_sched_created_idx"
            ),
            models.Index(
                fields=["status", "created_at"], name="schedlog_status_created_idx"
            ),
        ]

    def __str__(self):
        return f"ScheduleExecutionLog<{self.pk}:{self.schedule_id}:{self.status}>"
