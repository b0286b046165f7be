from donations.models.account import LedgerAccount
from donations.models.idempotency import IdempotencyRecord
from donations.models.schedule import RecurringSchedule, ScheduleExecutionLog
from donations.models.transaction import Transaction

__all__ = [
    "LedgerAccount",
    "Transaction",
    "IdempotencyRecord",
    "RecurringSchedule",
    "ScheduleExecutionLog",
]
