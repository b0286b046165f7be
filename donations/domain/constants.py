from decimal import Decimal
from enum import Enum

AMOUNT_DECIMAL_PLACES = 7
AMOUNT_QUANTUM = Decimal(1).scaleb(-AMOUNT_DECIMAL_PLACES)
AMOUNT_MAX_DIGITS = 20
MEMO_MAX_LENGTH = 28


class TransactionState(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class TransactionSource(str, Enum):
    DONATION = "donation"
    SCHEDULE = "schedule"
    RECONCILIATION = "reconciliation"


class ScheduleFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ScheduleStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
