import hashlib
import itertools
import logging
import threading
from collections import deque
from decimal import Decimal

from django.utils import timezone

from donations.integrations.ledger_client import (
    LedgerTransaction,
    PaymentResult,
    PermanentLedgerError,
)

logger = logging.getLogger(__name__)


class SimulatedLedgerClient:
    """In-memory ledger with the same interface as ``LedgerClient``.

    Used for local runs (``LEDGER_BACKEND=simulated``) and tests. Queued
    failures from :meth:`fail_next` are raised by the next ``send_payment``
    calls before any balance changes.
    """

    def __init__(self, *, starting_sequence=1000):
        self._lock = threading.Lock()
        self._balances = {}
        self._secrets = {}
        self._history = []
        self._payments_by_key = {}
        self._failures = deque()
        self._sequence = itertools.count(starting_sequence)
        self.send_payment_calls = 0

    def create_account(self, public_key, *, secret=None, balance="0"):
        with self._lock:
            self._balances[public_key] = Decimal(str(balance))
            self._secrets[secret or f"secret-{public_key}"] = public_key
        return public_key

    def fail_next(self, *errors):
        with self._lock:
            self._failures.extend(errors)

    def record_external_payment(self, source, destination, amount, memo=""):
        """Book a transfer that did not go through ``send_payment``."""
        with self._lock:
            return self._book(source, destination, Decimal(str(amount)), memo)

    def _book(self, source, destination, amount, memo):
        ledger_sequence = next(self._sequence)
        external_tx_id = hashlib.sha256(
            f"{source}:{destination}:{amount}:{ledger_sequence}".encode()
        ).hexdigest()
        self._balances[source] = self._balances.get(source, Decimal("0")) - amount
        self._balances[destination] = self._balances.get(destination, Decimal("0")) + amount
        self._history.append(
            LedgerTransaction(
                external_tx_id=external_tx_id,
                ledger_sequence=ledger_sequence,
                timestamp=timezone.now(),
                amount=amount,
                source=source,
                destination=destination,
                memo=memo or "",
            )
        )
        return PaymentResult(external_tx_id=external_tx_id, ledger_sequence=ledger_sequence)

    def send_payment(
        self,
        source_secret,
        destination_public_key,
        amount,
        memo="",
        *,
        idempotency_key=None,
    ):
        amount = Decimal(str(amount))
        with self._lock:
            self.send_payment_calls += 1
            if self._failures:
                raise self._failures.popleft()

            if idempotency_key and idempotency_key in self._payments_by_key:
                return self._payments_by_key[idempotency_key]

            source = self._secrets.get(source_secret)
            if source is None:
                raise PermanentLedgerError("invalid_source", "unknown source secret")
            if destination_public_key not in self._balances:
                raise PermanentLedgerError(
                    "destination_not_found", "destination account does not exist"
                )
            if source == destination_public_key:
                raise PermanentLedgerError(
                    "invalid_transaction", "source and destination must be different"
                )
            if self._balances[source] < amount:
                raise PermanentLedgerError("insufficient_funds", "insufficient balance")

            result = self._book(source, destination_public_key, amount, memo)
            if idempotency_key:
                self._payments_by_key[idempotency_key] = result

        logger.info(
            "event=simulated_ledger_payment external_tx_id=%s ledger_sequence=%s",
            result.external_tx_id,
            result.ledger_sequence,
        )
        return result

    def get_balance(self, public_key):
        with self._lock:
            if public_key not in self._balances:
                raise PermanentLedgerError("account_not_found", "account does not exist")
            return self._balances[public_key]

    def list_transactions_for_account(self, public_key, limit=200):
        with self._lock:
            matching = [
                tx
                for tx in reversed(self._history)
                if public_key in (tx.source, tx.destination)
            ]
        return matching[:limit]

    def get_transaction(self, external_tx_id):
        with self._lock:
            for tx in self._history:
                if tx.external_tx_id == external_tx_id:
                    return tx
        return None
