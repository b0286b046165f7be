import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone

from donations.domain.constants import TransactionState
from donations.domain.exceptions import InvalidTransitionError
from donations.domain.lifecycle import normalize_state
from donations.domain.services import TransactionService
from donations.integrations.ledger_client import LedgerError, build_ledger_client
from donations.models import LedgerAccount, Transaction
from donations.tasks.timer import RepeatingTimer

logger = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"
STATUS_PARTIAL_FAILURE = "partial_failure"
STATUS_FAILED = "failed"
STATUS_CONFLICT = "conflict"

# ledger and local clocks may disagree by this much when matching by content
MATCH_CLOCK_SKEW = timedelta(minutes=1)

OPEN_STATES = (TransactionState.PENDING.value, TransactionState.SUBMITTED.value)


def _discrepancy(kind, external_tx_id, **details):
    logger.warning(
        "event=reconciliation_discrepancy kind=%s external_tx_id=%s details=%s",
        kind,
        external_tx_id,
        details,
    )
    return {"external_tx_id": external_tx_id, "kind": kind, **details}


@dataclass
class AccountSyncResult:
    public_key: str
    fetched: int = 0
    created: int = 0
    repaired: int = 0
    unchanged: int = 0
    discrepancies: list = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self):
        return self.error is None


@dataclass
class VerificationResult:
    checked: int = 0
    repaired: int = 0
    discrepancies: list = field(default_factory=list)
    errors: int = 0


@dataclass
class ReconciliationRun:
    status: str
    started_at: datetime
    finished_at: datetime | None = None
    accounts: list = field(default_factory=list)
    verification: VerificationResult = field(default_factory=VerificationResult)

    @property
    def in_progress(self):
        return self.finished_at is None and self.status != STATUS_CONFLICT

    @property
    def totals(self):
        totals = {
            "created": 0,
            "repaired": self.verification.repaired,
            "unchanged": 0,
            "discrepancies": len(self.verification.discrepancies),
        }
        for account in self.accounts:
            totals["created"] += account.created
            totals["repaired"] += account.repaired
            totals["unchanged"] += account.unchanged
            totals["discrepancies"] += len(account.discrepancies)
        return totals

    def as_dict(self):
        return {
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "in_progress": self.in_progress,
            "totals": self.totals,
            "accounts": [asdict(account) for account in self.accounts],
            "verification": asdict(self.verification),
        }


class LedgerReconciler:
    """Brings the local record in line with the ledger.

    A run sweeps account history (import unknown payments, repair records
    stuck in ``submitted``) and then verifies local records still open.
    Only one run executes per instance at a time; a concurrent ``reconcile``
    call returns a ``conflict`` result instead of waiting.
    """

    def __init__(
        self,
        *,
        ledger_client=None,
        check_interval=None,
        fetch_limit=None,
        stale_after_seconds=None,
        clock=timezone.now,
        timer_factory=RepeatingTimer,
    ):
        self.ledger_client = ledger_client or build_ledger_client()
        self.check_interval = check_interval or settings.RECONCILER_CHECK_INTERVAL_SECONDS
        self.fetch_limit = fetch_limit or settings.RECONCILER_FETCH_LIMIT
        self.stale_after = timedelta(
            seconds=settings.RECONCILER_STALE_AFTER_SECONDS
            if stale_after_seconds is None
            else stale_after_seconds
        )
        self.clock = clock
        self.timer_factory = timer_factory

        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._timer = None
        self._last_run_at = None
        self._last_result = None

    @property
    def is_running(self):
        return self._timer is not None

    @property
    def in_progress(self):
        return self._run_lock.locked()

    def start(self):
        with self._state_lock:
            if self._timer is not None:
                logger.info("event=reconciler_start_ignored reason=already_running")
                return False
            timer = self.timer_factory(
                self.check_interval,
                self.reconcile,
                run_immediately=True,
                name="ledger-reconciler",
            )
            self._timer = timer
            timer.start()
        logger.info("event=reconciler_started check_interval=%s", self.check_interval)
        return True

    def stop(self):
        with self._state_lock:
            timer, self._timer = self._timer, None
        if timer is None:
            logger.info("event=reconciler_stop_ignored reason=not_running")
            return False
        timer.cancel()
        logger.info("event=reconciler_stopped in_progress=%s", self.in_progress)
        return True

    def reconcile(self, public_keys=None):
        if not self._run_lock.acquire(blocking=False):
            logger.warning("event=reconciliation_conflict reason=already_in_progress")
            now = self.clock()
            return ReconciliationRun(status=STATUS_CONFLICT, started_at=now, finished_at=now)

        try:
            return self._reconcile(public_keys)
        finally:
            self._run_lock.release()

    def _reconcile(self, public_keys):
        run = ReconciliationRun(status=STATUS_COMPLETED, started_at=self.clock())
        scoped = public_keys is not None
        if not scoped:
            public_keys = list(
                LedgerAccount.objects.filter(sync_enabled=True)
                .order_by("id")
                .values_list("public_key", flat=True)
            )
        logger.info("event=reconciliation_start accounts=%s", len(public_keys))

        for public_key in public_keys:
            try:
                result = self.sync_wallet_transactions(public_key)
            except LedgerError as exc:
                logger.warning(
                    "event=reconciliation_account_failed public_key=%s code=%s transient=%s",
                    public_key,
                    exc.code,
                    exc.transient,
                )
                result = AccountSyncResult(public_key=public_key, error=exc.code)
            except Exception as exc:
                logger.exception(
                    "event=reconciliation_account_error public_key=%s", public_key
                )
                result = AccountSyncResult(
                    public_key=public_key, error=exc.__class__.__name__
                )
            run.accounts.append(result)

        seen = {
            d["external_tx_id"] for account in run.accounts for d in account.discrepancies
        }
        run.verification = self.verify_local_transactions(
            public_keys if scoped else None, skip_external_ids=seen
        )

        failures = sum(1 for account in run.accounts if not account.ok)
        if failures and failures == len(run.accounts):
            run.status = STATUS_FAILED
        elif failures or run.verification.errors:
            run.status = STATUS_PARTIAL_FAILURE
        run.finished_at = self.clock()

        self._last_run_at = run.finished_at
        self._last_result = run
        totals = run.totals
        logger.info(
            "event=reconciliation_end status=%s accounts=%s failed_accounts=%s created=%s repaired=%s unchanged=%s discrepancies=%s verified=%s",
            run.status,
            len(run.accounts),
            failures,
            totals["created"],
            totals["repaired"],
            totals["unchanged"],
            totals["discrepancies"],
            run.verification.checked,
        )
        return run

    def sync_wallet_transactions(self, public_key, limit=None):
        limit = limit or self.fetch_limit
        records = self.ledger_client.list_transactions_for_account(public_key, limit)
        result = AccountSyncResult(public_key=public_key, fetched=len(records))

        for record in records:
            outcome = self._apply_record(record)
            if isinstance(outcome, dict):
                result.discrepancies.append(outcome)
            else:
                setattr(result, outcome, getattr(result, outcome) + 1)

        logger.info(
            "event=account_sync_done public_key=%s fetched=%s created=%s repaired=%s unchanged=%s discrepancies=%s",
            public_key,
            result.fetched,
            result.created,
            result.repaired,
            result.unchanged,
            len(result.discrepancies),
        )
        return result

    def _apply_record(self, record):
        local = Transaction.objects.filter(external_tx_id=record.external_tx_id).first()
        if local is None:
            if record.amount <= 0:
                return _discrepancy(
                    "unsupported_record", record.external_tx_id, amount=str(record.amount)
                )
            orphan = self._find_unmatched_submission(record)
            if orphan is not None:
                return "repaired" if self._confirm(orphan, record) else "unchanged"
            return self._import(record)

        if local.amount != record.amount:
            return _discrepancy(
                "amount_mismatch",
                record.external_tx_id,
                tx_id=local.id,
                local_amount=str(local.amount),
                ledger_amount=str(record.amount),
            )

        state = normalize_state(local.state)
        if state == TransactionState.CONFIRMED.value:
            return "unchanged"
        if state == TransactionState.SUBMITTED.value:
            return "repaired" if self._confirm(local, record) else "unchanged"

        return _discrepancy(
            "state_mismatch", record.external_tx_id, tx_id=local.id, local_state=state
        )

    @staticmethod
    def _find_unmatched_submission(record):
        """A local ``submitted`` row that sent this payment but never learned its id."""
        candidates = Transaction.objects.filter(
            external_tx_id__isnull=True,
            state=TransactionState.SUBMITTED.value,
            donor=record.source,
            recipient=record.destination,
            amount=record.amount,
            memo=record.memo or "",
        )
        if record.timestamp is not None:
            candidates = candidates.filter(
                submitted_at__lte=record.timestamp + MATCH_CLOCK_SKEW
            )
        return candidates.order_by("submitted_at", "id").first()

    def _confirm(self, local, record):
        """Drive ``local`` to ``confirmed`` with the ledger's id; False if another writer won."""
        try:
            with transaction.atomic():
                if normalize_state(local.state) == TransactionState.PENDING.value:
                    TransactionService.transition(local, TransactionState.SUBMITTED)
                TransactionService.transition(
                    local,
                    TransactionState.CONFIRMED,
                    external_tx_id=record.external_tx_id,
                    ledger_sequence=local.ledger_sequence or record.ledger_sequence,
                )
        except (InvalidTransitionError, IntegrityError):
            logger.info(
                "event=reconciliation_repair_lost tx_id=%s external_tx_id=%s",
                local.id,
                record.external_tx_id,
            )
            return False
        logger.info(
            "event=reconciliation_repaired tx_id=%s external_tx_id=%s",
            local.id,
            record.external_tx_id,
        )
        return True

    def _import(self, record):
        confirmed_at = record.timestamp or self.clock()
        with transaction.atomic():
            tx, created = Transaction.objects.get_or_create(
                external_tx_id=record.external_tx_id,
                defaults={
                    "ledger_sequence": record.ledger_sequence,
                    "amount": record.amount,
                    "donor": record.source,
                    "recipient": record.destination,
                    "memo": (record.memo or "")[:64],
                    "state": TransactionState.CONFIRMED.value,
                    "source": Transaction.Source.RECONCILIATION,
                    "submitted_at": confirmed_at,
                    "confirmed_at": confirmed_at,
                },
            )
        if not created:
            return "unchanged"
        logger.info(
            "event=reconciliation_imported tx_id=%s external_tx_id=%s amount=%s",
            tx.id,
            tx.external_tx_id,
            tx.amount,
        )
        return "created"

    def verify_local_transactions(self, public_keys=None, *, skip_external_ids=()):
        """Check local ``pending``/``submitted`` records against the ledger."""
        result = VerificationResult()
        open_rows = Transaction.objects.filter(state__in=OPEN_STATES).order_by("id")
        if public_keys is not None:
            open_rows = open_rows.filter(
                Q(donor__in=public_keys) | Q(recipient__in=public_keys)
            )
        stale_before = self.clock() - self.stale_after

        for tx in open_rows:
            if tx.external_tx_id and tx.external_tx_id in skip_external_ids:
                continue
            result.checked += 1
            try:
                outcome = self._verify(tx, stale_before)
            except LedgerError as exc:
                logger.warning(
                    "event=reconciliation_verify_failed tx_id=%s code=%s", tx.id, exc.code
                )
                result.errors += 1
                continue
            except Exception:
                logger.exception("event=reconciliation_verify_error tx_id=%s", tx.id)
                result.errors += 1
                continue

            if isinstance(outcome, dict):
                result.discrepancies.append(outcome)
            elif outcome:
                result.repaired += 1

        logger.info(
            "event=reconciliation_verify_done checked=%s repaired=%s discrepancies=%s errors=%s",
            result.checked,
            result.repaired,
            len(result.discrepancies),
            result.errors,
        )
        return result

    def _verify(self, tx, stale_before):
        state = normalize_state(tx.state)
        if not tx.external_tx_id:
            last_touched = tx.submitted_at or tx.created_at
            if last_touched < stale_before:
                return _discrepancy(
                    "stale_local_transaction",
                    None,
                    tx_id=tx.id,
                    local_state=state,
                    since=last_touched.isoformat(),
                )
            return False

        record = self.ledger_client.get_transaction(tx.external_tx_id)
        if record is None:
            return _discrepancy(
                "missing_on_ledger", tx.external_tx_id, tx_id=tx.id, local_state=state
            )
        if record.amount != tx.amount:
            return _discrepancy(
                "amount_mismatch",
                tx.external_tx_id,
                tx_id=tx.id,
                local_amount=str(tx.amount),
                ledger_amount=str(record.amount),
            )
        return self._confirm(tx, record)

    def get_status(self):
        return {
            "is_running": self.is_running,
            "in_progress": self.in_progress,
            "last_run_at": self._last_run_at.isoformat() if self._last_run_at else None,
            "check_interval": self.check_interval,
            "last_result": self._last_result.as_dict() if self._last_result else None,
        }
