from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal

from django.test import SimpleTestCase

from donations.domain.constants import ScheduleFrequency
from donations.domain.exceptions import (
    InvalidAmount,
    InvalidFrequency,
    InvalidMemo,
    ValidationError,
)
from donations.domain.policies import (
    add_months,
    calculate_next_execution_date,
    validate_aware_datetime,
    validate_distinct_accounts,
    validate_frequency,
    validate_memo,
    validate_positive_amount,
)


def utc(*args):
    return datetime(*args, tzinfo=dt_timezone.utc)


class AmountPolicyTests(SimpleTestCase):
    def test_accepts_decimal_strings_and_integers(self):
        self.assertEqual(validate_positive_amount("10.5"), Decimal("10.5000000"))
        self.assertEqual(validate_positive_amount(3), Decimal("3.0000000"))
        self.assertEqual(
            validate_positive_amount(Decimal("0.0000001")), Decimal("0.0000001")
        )

    def test_rejects_non_positive_and_invalid_amounts(self):
        for value in ("0", "-1", "abc", "NaN", "Infinity", None, True, 1.5, ""):
            with self.subTest(value=value):
                with self.assertRaises(InvalidAmount):
                    validate_positive_amount(value)

    def test_rejects_more_than_seven_decimal_places(self):
        with self.assertRaises(InvalidAmount):
            validate_positive_amount("1.00000001")


class MemoPolicyTests(SimpleTestCase):
    def test_empty_memo_becomes_blank(self):
        self.assertEqual(validate_memo(None), "")
        self.assertEqual(validate_memo(""), "")

    def test_memo_limit_is_measured_in_bytes(self):
        self.assertEqual(validate_memo("a" * 28), "a" * 28)
        with self.assertRaises(InvalidMemo):
            validate_memo("a" * 29)
        with self.assertRaises(InvalidMemo):
            validate_memo("é" * 15)

    def test_memo_must_be_text(self):
        with self.assertRaises(InvalidMemo):
            validate_memo(42)


class FrequencyPolicyTests(SimpleTestCase):
    def test_frequency_is_normalized(self):
        self.assertEqual(validate_frequency(" Weekly "), ScheduleFrequency.WEEKLY)

    def test_unknown_frequency_is_rejected(self):
        for value in ("yearly", "", None, 7):
            with self.subTest(value=value):
                with self.assertRaises(InvalidFrequency):
                    validate_frequency(value)


class NextExecutionDateTests(SimpleTestCase):
    def test_daily_and_weekly_advance_by_fixed_days(self):
        start = utc(2024, 3, 10, 9, 30)
        self.assertEqual(
            calculate_next_execution_date(start, "daily"), start + timedelta(days=1)
        )
        self.assertEqual(
            calculate_next_execution_date(start, "weekly"), start + timedelta(days=7)
        )

    def test_monthly_clamps_to_end_of_shorter_month(self):
        self.assertEqual(
            calculate_next_execution_date(utc(2023, 1, 31, 12), "monthly"),
            utc(2023, 2, 28, 12),
        )
        self.assertEqual(
            calculate_next_execution_date(utc(2024, 1, 31, 12), "monthly"),
            utc(2024, 2, 29, 12),
        )

    def test_monthly_rolls_over_year_end(self):
        self.assertEqual(
            calculate_next_execution_date(utc(2024, 12, 15), "monthly"),
            utc(2025, 1, 15),
        )

    def test_add_months_keeps_time_of_day(self):
        self.assertEqual(add_months(utc(2024, 5, 31, 23, 59), 1), utc(2024, 6, 30, 23, 59))

    def test_invalid_frequency_is_rejected(self):
        with self.assertRaises(InvalidFrequency):
            calculate_next_execution_date(utc(2024, 1, 1), "hourly")


class MiscPolicyTests(SimpleTestCase):
    def test_distinct_accounts(self):
        validate_distinct_accounts("GA", "GB")
        with self.assertRaises(ValidationError):
            validate_distinct_accounts("GA", "GA")

    def test_aware_datetime_required(self):
        self.assertEqual(validate_aware_datetime(utc(2024, 1, 1)), utc(2024, 1, 1))
        with self.assertRaises(ValidationError):
            validate_aware_datetime(datetime(2024, 1, 1))
        with self.assertRaises(ValidationError):
            validate_aware_datetime("2024-01-01")
