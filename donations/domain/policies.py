import calendar
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

from django.utils import timezone

from donations.domain.constants import (
    AMOUNT_DECIMAL_PLACES,
    AMOUNT_QUANTUM,
    MEMO_MAX_LENGTH,
    ScheduleFrequency,
)
from donations.domain.exceptions import (
    InvalidAmount,
    InvalidFrequency,
    InvalidMemo,
    ValidationError,
)


def validate_positive_amount(amount):
    if isinstance(amount, (bool, float)) or amount is None:
        raise InvalidAmount("amount must be a decimal string or integer")

    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation as exc:
        raise InvalidAmount("amount must be a decimal number") from exc

    if not value.is_finite():
        raise InvalidAmount("amount must be a finite number")
    if value <= 0:
        raise InvalidAmount("amount must be greater than zero")
    if value != value.quantize(AMOUNT_QUANTUM):
        raise InvalidAmount(
            f"amount supports at most {AMOUNT_DECIMAL_PLACES} decimal places"
        )

    return value.quantize(AMOUNT_QUANTUM)


def validate_memo(memo):
    if memo is None or memo == "":
        return ""
    if not isinstance(memo, str):
        raise InvalidMemo("memo must be a string")

    memo = memo.strip()
    if len(memo.encode("utf-8")) > MEMO_MAX_LENGTH:
        raise InvalidMemo(f"memo must not exceed {MEMO_MAX_LENGTH} bytes")
    return memo


def validate_frequency(frequency):
    if not isinstance(frequency, str):
        raise InvalidFrequency("frequency must be daily, weekly or monthly")

    try:
        return ScheduleFrequency(frequency.strip().lower())
    except ValueError as exc:
        raise InvalidFrequency(
            f"invalid frequency={frequency!r}; expected daily, weekly or monthly"
        ) from exc


def validate_distinct_accounts(donor, recipient):
    if donor == recipient:
        raise ValidationError("donor and recipient must be different accounts")


def validate_aware_datetime(value, *, field="datetime"):
    if not isinstance(value, datetime):
        raise ValidationError(f"{field} must be a datetime")
    if timezone.is_naive(value):
        raise ValidationError(f"{field} must be timezone-aware")
    return value


def add_months(value, months):
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def calculate_next_execution_date(current, frequency):
    """Advance ``current`` by one period of ``frequency``.

    Monthly schedules move by calendar month and clamp to the last day of
    shorter months, so Jan 31 becomes Feb 28 (or 29).
    """
    frequency = validate_frequency(frequency)

    if frequency == ScheduleFrequency.DAILY:
        return current + timedelta(days=1)
    if frequency == ScheduleFrequency.WEEKLY:
        return current + timedelta(days=7)
    return add_months(current, 1)
