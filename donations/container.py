import threading
from dataclasses import dataclass

from donations.domain.services import DonationService
from donations.integrations.idempotency import IdempotencyGuard
from donations.integrations.ledger_client import build_ledger_client
from donations.tasks.ledger_reconciler import LedgerReconciler
from donations.tasks.recurring_scheduler import RecurringScheduler


@dataclass
class ServiceContainer:
    """One ledger client shared by every long-lived service in the process."""

    ledger_client: object
    guard: IdempotencyGuard
    donations: DonationService
    scheduler: RecurringScheduler
    reconciler: LedgerReconciler

    def start(self):
        self.scheduler.start()
        self.reconciler.start()

    def stop(self):
        self.scheduler.stop()
        self.reconciler.stop()


def build_container(*, ledger_client=None, **overrides):
    ledger_client = ledger_client or build_ledger_client()
    guard = overrides.pop("guard", None) or IdempotencyGuard()
    return ServiceContainer(
        ledger_client=ledger_client,
        guard=guard,
        donations=overrides.pop("donations", None)
        or DonationService(ledger_client=ledger_client, guard=guard),
        scheduler=overrides.pop("scheduler", None)
        or RecurringScheduler(ledger_client=ledger_client),
        reconciler=overrides.pop("reconciler", None)
        or LedgerReconciler(ledger_client=ledger_client),
    )


_container = None
_container_lock = threading.Lock()


def get_container():
    global _container
    with _container_lock:
        if _container is None:
            _container = build_container()
        return _container


def set_container(container):
    """Install ``container`` as the process-wide one; returns the previous one."""
    global _container
    with _container_lock:
        previous, _container = _container, container
    return previous
