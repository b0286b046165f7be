import logging
import threading
import time
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from donations.domain.constants import TransactionState
from donations.domain.policies import calculate_next_execution_date
from donations.domain.services import TransactionService
from donations.integrations.ledger_client import (
    LedgerError,
    PermanentLedgerError,
    TransientLedgerError,
    build_ledger_client,
)
from donations.integrations.retry import exponential_delay
from donations.models import RecurringSchedule, ScheduleExecutionLog, Transaction
from donations.tasks.timer import RepeatingTimer

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
FAILED = "failed"
SKIPPED = "skipped"
DEFERRED = "deferred"

SUMMARY_KEYS = ("due", SUCCEEDED, FAILED, SKIPPED, DEFERRED)


def _empty_summary():
    return {key: 0 for key in SUMMARY_KEYS}


class RecurringScheduler:
    """Timer-driven executor for due recurring donations.

    Schedules are processed one at a time. A payment is sent at most once per
    due instant: the ledger idempotency key is derived from the schedule id and
    its execution count, and a schedule executed within the dedup window is
    skipped.
    """

    def __init__(
        self,
        *,
        ledger_client=None,
        check_interval=None,
        max_attempts=None,
        backoff_base=None,
        backoff_max=None,
        dedup_window_seconds=None,
        pause_on_permanent_failure=None,
        sleep=time.sleep,
        clock=timezone.now,
        timer_factory=RepeatingTimer,
    ):
        self.ledger_client = ledger_client or build_ledger_client()
        self.check_interval = check_interval or settings.SCHEDULER_CHECK_INTERVAL_SECONDS
        self.max_attempts = max_attempts or settings.SCHEDULER_MAX_ATTEMPTS
        self.backoff_base = (
            settings.SCHEDULER_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        )
        self.backoff_max = (
            settings.SCHEDULER_BACKOFF_MAX_SECONDS if backoff_max is None else backoff_max
        )
        self.dedup_window = timedelta(
            seconds=settings.SCHEDULER_DEDUP_WINDOW_SECONDS
            if dedup_window_seconds is None
            else dedup_window_seconds
        )
        self.pause_on_permanent_failure = (
            settings.SCHEDULER_PAUSE_ON_PERMANENT_FAILURE
            if pause_on_permanent_failure is None
            else pause_on_permanent_failure
        )
        self.sleep = sleep
        self.clock = clock
        self.timer_factory = timer_factory

        self._state_lock = threading.RLock()
        self._timer = None
        self._executing = set()
        self._in_progress = False
        self._last_run_at = None
        self._last_summary = None
        self._totals = _empty_summary()

    # lifecycle

    @property
    def is_running(self):
        return self._timer is not None

    def start(self):
        with self._state_lock:
            if self._timer is not None:
                logger.info("event=scheduler_start_ignored reason=already_running")
                return False
            timer = self.timer_factory(
                self.check_interval,
                self.process_schedules,
                run_immediately=True,
                name="recurring-scheduler",
            )
            self._timer = timer
            timer.start()
        logger.info(
            "event=scheduler_started check_interval=%s max_attempts=%s",
            self.check_interval,
            self.max_attempts,
        )
        return True

    def stop(self):
        with self._state_lock:
            timer, self._timer = self._timer, None
        if timer is None:
            logger.info("event=scheduler_stop_ignored reason=not_running")
            return False
        timer.cancel()
        logger.info("event=scheduler_stopped in_progress=%s", self._in_progress)
        return True

    # batch

    def process_schedules(self, now=None):
        now = now or self.clock()
        summary = _empty_summary()
        self._in_progress = True
        try:
            due_ids = list(
                RecurringSchedule.objects.filter(
                    status=RecurringSchedule.Status.ACTIVE,
                    next_execution_date__lte=now,
                )
                .order_by("next_execution_date", "id")
                .values_list("id", flat=True)
            )
            summary["due"] = len(due_ids)
            logger.info(
                "event=scheduler_tick_start now=%s due=%s", now.isoformat(), len(due_ids)
            )

            for schedule_id in due_ids:
                try:
                    outcome = self.execute_schedule_with_retry(schedule_id, now=now)
                except Exception:
                    logger.exception(
                        "event=scheduler_schedule_error schedule_id=%s", schedule_id
                    )
                    outcome = FAILED
                summary[outcome] += 1
        finally:
            self._in_progress = False

        self._last_run_at = now
        self._last_summary = summary
        for key in SUMMARY_KEYS:
            self._totals[key] += summary[key]
        logger.info(
            "event=scheduler_tick_end due=%s succeeded=%s failed=%s skipped=%s deferred=%s",
            summary["due"],
            summary[SUCCEEDED],
            summary[FAILED],
            summary[SKIPPED],
            summary[DEFERRED],
        )
        return summary

    def was_recently_executed(self, schedule, now=None):
        if schedule.last_execution_date is None:
            return False
        now = now or self.clock()
        return now - schedule.last_execution_date < self.dedup_window

    def calculate_backoff(self, attempt):
        return exponential_delay(
            attempt, base_delay=self.backoff_base, max_delay=self.backoff_max
        )

    def _claim(self, schedule_id):
        with self._state_lock:
            if schedule_id in self._executing:
                return False
            self._executing.add(schedule_id)
            return True

    def _unclaim(self, schedule_id):
        with self._state_lock:
            self._executing.discard(schedule_id)

    def execute_schedule_with_retry(self, schedule, now=None):
        schedule_id = getattr(schedule, "pk", schedule)
        if not self._claim(schedule_id):
            logger.info(
                "event=schedule_skipped reason=already_executing schedule_id=%s",
                schedule_id,
            )
            return SKIPPED

        try:
            return self._execute_with_retry(schedule_id, now)
        finally:
            self._unclaim(schedule_id)

    def _execute_with_retry(self, schedule_id, now):
        schedule = (
            RecurringSchedule.objects.select_related("donor", "recipient")
            .filter(pk=schedule_id)
            .first()
        )
        if schedule is None or schedule.status != RecurringSchedule.Status.ACTIVE:
            logger.info(
                "event=schedule_skipped reason=not_active schedule_id=%s status=%s",
                schedule_id,
                getattr(schedule, "status", None),
            )
            return SKIPPED

        now = now or self.clock()
        if self.was_recently_executed(schedule, now):
            logger.info(
                "event=schedule_skipped reason=recently_executed schedule_id=%s last_execution_date=%s",
                schedule.id,
                schedule.last_execution_date.isoformat(),
            )
            self._log_execution(
                schedule,
                ScheduleExecutionLog.Status.SKIPPED,
                attempt=0,
                error_code="recently_executed",
            )
            return SKIPPED

        for attempt in range(1, self.max_attempts + 1):
            try:
                self.execute_schedule(schedule, now, attempt=attempt)
                return SUCCEEDED
            except PermanentLedgerError as exc:
                self._log_failure(schedule, exc, attempt=attempt)
                logger.warning(
                    "event=schedule_permanent_failure schedule_id=%s attempt=%s code=%s",
                    schedule.id,
                    attempt,
                    exc.code,
                )
                if self.pause_on_permanent_failure:
                    RecurringSchedule.objects.filter(
                        pk=schedule.pk, status=RecurringSchedule.Status.ACTIVE
                    ).update(
                        status=RecurringSchedule.Status.PAUSED, updated_at=self.clock()
                    )
                    logger.warning("event=schedule_paused schedule_id=%s", schedule.id)
                return FAILED
            except TransientLedgerError as exc:
                self._log_failure(schedule, exc, attempt=attempt)
                if attempt >= self.max_attempts:
                    break
                delay = self.calculate_backoff(attempt)
                logger.warning(
                    "event=schedule_retry_scheduled schedule_id=%s attempt=%s max_attempts=%s delay_seconds=%s code=%s",
                    schedule.id,
                    attempt,
                    self.max_attempts,
                    delay,
                    exc.code,
                )
                self.sleep(delay)

        logger.error(
            "event=schedule_retries_exhausted schedule_id=%s max_attempts=%s",
            schedule.id,
            self.max_attempts,
        )
        return DEFERRED

    def execute_schedule(self, schedule, now=None, *, attempt=1):
        """Single attempt: balance check, payment, then one atomic local write."""
        donor = schedule.donor
        recipient = schedule.recipient
        amount = schedule.amount

        balance = self.ledger_client.get_balance(donor.public_key)
        if balance < amount:
            raise PermanentLedgerError(
                "insufficient_funds",
                f"balance={balance} is below amount={amount}",
            )

        payment_key = f"sched-{schedule.id}-{schedule.execution_count + 1}"
        memo = f"Recurring donation #{schedule.id}"
        logger.info(
            "event=schedule_execution_start schedule_id=%s attempt=%s amount=%s payment_key=%s",
            schedule.id,
            attempt,
            amount,
            payment_key,
        )
        payment = self.ledger_client.send_payment(
            donor.secret_ref,
            recipient.public_key,
            amount,
            memo,
            idempotency_key=payment_key,
        )

        now = now or self.clock()
        with transaction.atomic():
            tx = Transaction.objects.filter(external_tx_id=payment.external_tx_id).first()
            if tx is None:
                tx = TransactionService.create_pending(
                    amount=amount,
                    donor=donor.public_key,
                    recipient=recipient.public_key,
                    memo=memo,
                    source=Transaction.Source.SCHEDULE,
                    schedule=schedule,
                    idempotency_key=payment_key,
                )
                TransactionService.transition(tx, TransactionState.SUBMITTED, now=now)
                TransactionService.transition(
                    tx,
                    TransactionState.CONFIRMED,
                    now=now,
                    external_tx_id=payment.external_tx_id,
                    ledger_sequence=payment.ledger_sequence,
                )
            else:
                logger.info(
                    "event=schedule_payment_already_recorded schedule_id=%s tx_id=%s external_tx_id=%s",
                    schedule.id,
                    tx.id,
                    payment.external_tx_id,
                )

            execution_count = schedule.execution_count + 1
            status = RecurringSchedule.Status.ACTIVE
            if schedule.max_executions and execution_count >= schedule.max_executions:
                status = RecurringSchedule.Status.COMPLETED
            next_execution_date = calculate_next_execution_date(now, schedule.frequency)

            updated = RecurringSchedule.objects.filter(
                pk=schedule.pk,
                status=RecurringSchedule.Status.ACTIVE,
                execution_count=schedule.execution_count,
            ).update(
                last_execution_date=now,
                next_execution_date=next_execution_date,
                execution_count=execution_count,
                status=status,
                updated_at=now,
            )
            if updated:
                schedule.last_execution_date = now
                schedule.next_execution_date = next_execution_date
                schedule.execution_count = execution_count
                schedule.status = status
            else:
                logger.warning(
                    "event=schedule_advance_skipped schedule_id=%s reason=changed_concurrently",
                    schedule.id,
                )

            self._log_execution(
                schedule,
                ScheduleExecutionLog.Status.SUCCESS,
                attempt=attempt,
                external_tx_id=payment.external_tx_id,
            )

        logger.info(
            "event=schedule_executed schedule_id=%s tx_id=%s external_tx_id=%s execution_count=%s next_execution_date=%s status=%s",
            schedule.id,
            tx.id,
            payment.external_tx_id,
            schedule.execution_count,
            schedule.next_execution_date.isoformat(),
            schedule.status,
        )
        return tx

    # execution log

    def _log_execution(self, schedule, status, *, attempt, **fields):
        return ScheduleExecutionLog.objects.create(
            schedule=schedule, status=status, attempt=attempt, **fields
        )

    def _log_failure(self, schedule, exc, *, attempt):
        code = exc.code if isinstance(exc, LedgerError) else exc.__class__.__name__
        self._log_execution(
            schedule,
            ScheduleExecutionLog.Status.FAILED,
            attempt=attempt,
            error_code=code[:64],
            error_message=str(exc),
        )

    def get_execution_logs(self, schedule_id, limit=10):
        return list(
            ScheduleExecutionLog.objects.filter(schedule_id=schedule_id).order_by(
                "-created_at", "-id"
            )[:limit]
        )

    def get_recent_failures(self, limit=20):
        return list(
            ScheduleExecutionLog.objects.filter(status=ScheduleExecutionLog.Status.FAILED)
            .select_related("schedule")
            .order_by("-created_at", "-id")[:limit]
        )

    def get_status(self):
        with self._state_lock:
            executing = sorted(self._executing)
        return {
            "is_running": self.is_running,
            "in_progress": self._in_progress,
            "last_run_at": self._last_run_at.isoformat() if self._last_run_at else None,
            "check_interval": self.check_interval,
            "max_attempts": self.max_attempts,
            "executing_schedules": executing,
            "last_summary": self._last_summary,
            "totals": dict(self._totals),
        }
