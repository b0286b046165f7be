from datetime import timedelta
from decimal import Decimal
from unittest.mock import Mock

from django.test import TestCase
from django.utils import timezone

from donations.domain.services import TransactionService
from donations.integrations.ledger_client import TransientLedgerError
from donations.integrations.simulated_ledger import SimulatedLedgerClient
from donations.models import LedgerAccount, Transaction
from donations.tasks.ledger_reconciler import LedgerReconciler


class FakeTimer:
    def __init__(self, interval, function, *, run_immediately=False, name=None):
        self.interval = interval
        self.function = function
        self.run_immediately = run_immediately
        self.cancelled = False

    def start(self):
        return self

    def cancel(self):
        self.cancelled = True


class LedgerReconcilerTests(TestCase):
    def setUp(self):
        self.ledger = SimulatedLedgerClient()
        self.ledger.create_account("GDONOR", balance="100")
        self.ledger.create_account("GRECIPIENT")
        LedgerAccount.objects.create(public_key="GDONOR", secret_ref="secret-GDONOR")
        LedgerAccount.objects.create(
            public_key="GRECIPIENT", secret_ref="secret-GRECIPIENT"
        )
        self.reconciler = LedgerReconciler(
            ledger_client=self.ledger, timer_factory=FakeTimer, fetch_limit=200
        )

    def test_imports_unknown_ledger_transactions_as_confirmed(self):
        payment = self.ledger.record_external_payment("GDONOR", "GRECIPIENT", "12.5", "gift")

        run = self.reconciler.reconcile()

        self.assertEqual(run.status, "completed")
        tx = Transaction.objects.get(external_tx_id=payment.external_tx_id)
        self.assertEqual(tx.state, "confirmed")
        self.assertEqual(tx.source, "reconciliation")
        self.assertEqual(tx.amount, Decimal("12.5"))
        self.assertEqual(tx.donor, "GDONOR")
        self.assertEqual(tx.recipient, "GRECIPIENT")
        self.assertEqual(tx.memo, "gift")
        self.assertEqual(tx.ledger_sequence, payment.ledger_sequence)
        self.assertEqual(run.totals["created"], 1)

    def test_reconciliation_is_idempotent(self):
        self.ledger.record_external_payment("GDONOR", "GRECIPIENT", "1")
        self.ledger.record_external_payment("GDONOR", "GRECIPIENT", "2")

        first = self.reconciler.reconcile()
        snapshot = list(Transaction.objects.order_by("id").values())
        second = self.reconciler.reconcile()

        self.assertEqual(first.totals["created"], 2)
        self.assertEqual(second.totals["created"], 0)
        self.assertEqual(second.totals["repaired"], 0)
        self.assertEqual(list(Transaction.objects.order_by("id").values()), snapshot)

    def test_submitted_record_is_repaired_to_confirmed(self):
        payment = self.ledger.record_external_payment("GDONOR", "GRECIPIENT", "3")
        tx = TransactionService.create_pending(
            amount="3",
            donor="GDONOR",
            recipient="GRECIPIENT",
            source=Transaction.Source.DONATION,
            external_tx_id=payment.external_tx_id,
        )
        TransactionService.transition(tx, "submitted")

        run = self.reconciler.reconcile(["GDONOR"])

        tx.refresh_from_db()
        self.assertEqual(tx.state, "confirmed")
        self.assertIsNotNone(tx.confirmed_at)
        self.assertEqual(tx.ledger_sequence, payment.ledger_sequence)
        self.assertEqual(run.totals["repaired"], 1)

    def test_terminal_and_mismatched_records_are_reported_not_changed(self):
        failed_payment = self.ledger.record_external_payment("GDONOR", "GRECIPIENT", "4")
        mismatch_payment = self.ledger.record_external_payment("GDONOR", "GRECIPIENT", "5")
        failed = Transaction.objects.create(
            external_tx_id=failed_payment.external_tx_id,
            amount=Decimal("4"),
            donor="GDONOR",
            recipient="GRECIPIENT",
            state="failed",
        )
        mismatched = Transaction.objects.create(
            external_tx_id=mismatch_payment.external_tx_id,
            amount=Decimal("6"),
            donor="GDONOR",
            recipient="GRECIPIENT",
            state="submitted",
        )

        run = self.reconciler.reconcile(["GDONOR"])

        kinds = sorted(d["kind"] for d in run.accounts[0].discrepancies)
        self.assertEqual(kinds, ["amount_mismatch", "state_mismatch"])
        failed.refresh_from_db()
        mismatched.refresh_from_db()
        self.assertEqual(failed.state, "failed")
        self.assertEqual(mismatched.state, "submitted")

    def test_one_account_failure_does_not_abort_others(self):
        self.ledger.record_external_payment("GDONOR", "GRECIPIENT", "1")
        ledger = Mock(wraps=self.ledger)

        def list_transactions(public_key, limit):
            if public_key == "GDONOR":
                raise TransientLedgerError("upstream_status_503")
            return self.ledger.list_transactions_for_account(public_key, limit)

        ledger.list_transactions_for_account.side_effect = list_transactions
        reconciler = LedgerReconciler(ledger_client=ledger, timer_factory=FakeTimer)

        run = reconciler.reconcile()

        self.assertEqual(run.status, "partial_failure")
        errors = {account.public_key: account.error for account in run.accounts}
        self.assertEqual(errors, {"GDONOR": "upstream_status_503", "GRECIPIENT": None})
        self.assertEqual(Transaction.objects.count(), 1)

    def test_all_accounts_failing_marks_run_failed(self):
        ledger = Mock()
        ledger.list_transactions_for_account.side_effect = TransientLedgerError("network_error")
        reconciler = LedgerReconciler(ledger_client=ledger, timer_factory=FakeTimer)

        self.assertEqual(reconciler.reconcile().status, "failed")

    def test_only_sync_enabled_accounts_are_swept(self):
        LedgerAccount.objects.filter(public_key="GRECIPIENT").update(sync_enabled=False)

        run = self.reconciler.reconcile()

        self.assertEqual([account.public_key for account in run.accounts], ["GDONOR"])

    def test_concurrent_run_returns_conflict_without_second_run(self):
        self.ledger.record_external_payment("GDONOR", "GRECIPIENT", "1")
        ledger = Mock(wraps=self.ledger)
        nested = []

        def list_transactions(public_key, limit):
            nested.append(self.reconciler.reconcile())
            return self.ledger.list_transactions_for_account(public_key, limit)

        ledger.list_transactions_for_account.side_effect = list_transactions
        self.reconciler.ledger_client = ledger

        run = self.reconciler.reconcile(["GDONOR"])

        self.assertEqual(run.status, "completed")
        self.assertEqual([inner.status for inner in nested], ["conflict"])
        self.assertEqual(ledger.list_transactions_for_account.call_count, 1)
        self.assertFalse(self.reconciler.in_progress)

    def test_non_payment_records_are_reported(self):
        self.ledger.record_external_payment("GDONOR", "GRECIPIENT", "0")

        run = self.reconciler.reconcile(["GDONOR"])

        self.assertEqual(run.accounts[0].discrepancies[0]["kind"], "unsupported_record")
        self.assertFalse(Transaction.objects.exists())

    def test_start_stop_and_status(self):
        self.assertTrue(self.reconciler.start())
        self.assertFalse(self.reconciler.start())
        timer = self.reconciler._timer
        self.reconciler.reconcile()

        status = self.reconciler.get_status()

        self.assertTrue(status["is_running"])
        self.assertFalse(status["in_progress"])
        self.assertEqual(status["last_result"]["status"], "completed")
        self.assertTrue(self.reconciler.stop())
        self.assertTrue(timer.cancelled)
        self.assertFalse(self.reconciler.stop())
        self.assertFalse(self.reconciler.get_status()["is_running"])

    def test_timestamps_come_from_ledger_when_present(self):
        payment = self.ledger.record_external_payment("GDONOR", "GRECIPIENT", "1")
        record = self.ledger.list_transactions_for_account("GDONOR")[0]

        self.reconciler.reconcile(["GDONOR"])

        tx = Transaction.objects.get(external_tx_id=payment.external_tx_id)
        self.assertEqual(tx.confirmed_at, record.timestamp)
        self.assertLessEqual(tx.confirmed_at, timezone.now())


class LocalRecordRepairTests(TestCase):
    def setUp(self):
        self.ledger = SimulatedLedgerClient()
        self.ledger.create_account("GDONOR", balance="100")
        self.ledger.create_account("GRECIPIENT")
        LedgerAccount.objects.create(public_key="GDONOR", secret_ref="secret-GDONOR")
        self.reconciler = LedgerReconciler(
            ledger_client=self.ledger, timer_factory=FakeTimer, stale_after_seconds=600
        )

    def _submitted(self, amount="7", memo="thanks", **kwargs):
        tx = TransactionService.create_pending(
            amount=amount,
            donor="GDONOR",
            recipient="GRECIPIENT",
            memo=memo,
            source=Transaction.Source.DONATION,
            **kwargs,
        )
        TransactionService.transition(tx, "submitted")
        return tx

    def test_submission_without_ledger_id_is_matched_instead_of_imported(self):
        tx = self._submitted()
        payment = self.ledger.record_external_payment("GDONOR", "GRECIPIENT", "7", "thanks")

        run = self.reconciler.reconcile()

        tx.refresh_from_db()
        self.assertEqual(tx.state, "confirmed")
        self.assertEqual(tx.external_tx_id, payment.external_tx_id)
        self.assertEqual(Transaction.objects.count(), 1)
        self.assertEqual(run.totals["repaired"], 1)
        self.assertEqual(run.totals["created"], 0)

    def test_payment_with_different_memo_is_imported_separately(self):
        tx = self._submitted(memo="thanks")
        self.ledger.record_external_payment("GDONOR", "GRECIPIENT", "7", "other")

        run = self.reconciler.reconcile()

        tx.refresh_from_db()
        self.assertEqual(tx.state, "submitted")
        self.assertEqual(run.totals["created"], 1)

    def test_verify_pass_confirms_open_record_outside_the_sweep(self):
        LedgerAccount.objects.update(sync_enabled=False)
        payment = self.ledger.record_external_payment("GDONOR", "GRECIPIENT", "7")
        tx = self._submitted(memo="", external_tx_id=payment.external_tx_id)

        run = self.reconciler.reconcile()

        tx.refresh_from_db()
        self.assertEqual(tx.state, "confirmed")
        self.assertEqual(tx.ledger_sequence, payment.ledger_sequence)
        self.assertEqual(run.verification.checked, 1)
        self.assertEqual(run.verification.repaired, 1)
        self.assertEqual(run.status, "completed")

    def test_verify_pass_reports_unknown_and_stale_records(self):
        LedgerAccount.objects.update(sync_enabled=False)
        missing = self._submitted(external_tx_id="not-on-ledger")
        stale = self._submitted(amount="8")
        Transaction.objects.filter(pk=stale.pk).update(
            submitted_at=timezone.now() - timedelta(hours=1)
        )
        fresh = self._submitted(amount="9")

        run = self.reconciler.reconcile()

        kinds = {d["tx_id"]: d["kind"] for d in run.verification.discrepancies}
        self.assertEqual(
            kinds,
            {missing.pk: "missing_on_ledger", stale.pk: "stale_local_transaction"},
        )
        self.assertNotIn(fresh.pk, kinds)
        states = set(Transaction.objects.values_list("state", flat=True))
        self.assertEqual(states, {"submitted"})
        self.assertEqual(run.as_dict()["verification"]["checked"], 3)

    def test_verify_errors_mark_run_partial(self):
        LedgerAccount.objects.update(sync_enabled=False)
        self._submitted(external_tx_id="tx-unreachable")
        ledger = Mock(wraps=self.ledger)
        ledger.get_transaction.side_effect = TransientLedgerError("network_error")
        reconciler = LedgerReconciler(ledger_client=ledger, timer_factory=FakeTimer)

        run = reconciler.reconcile()

        self.assertEqual(run.verification.errors, 1)
        self.assertEqual(run.status, "partial_failure")

    def test_start_reconciles_immediately(self):
        self.reconciler.start()

        self.assertTrue(self.reconciler._timer.run_immediately)
        self.reconciler.stop()
