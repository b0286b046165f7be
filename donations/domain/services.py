import logging
from dataclasses import dataclass

from django.db import IntegrityError, transaction
from django.utils import timezone

from donations.domain.constants import ScheduleStatus, TransactionState
from donations.domain.exceptions import (
    AccountNotFound,
    InvalidScheduleState,
    InvalidStateError,
    InvalidTransitionError,
    ScheduleNotFound,
    TransactionNotFound,
    ValidationError,
)
from donations.domain.lifecycle import (
    assert_transition,
    assert_valid_state,
    normalize_state,
)
from donations.domain.policies import (
    calculate_next_execution_date,
    validate_aware_datetime,
    validate_distinct_accounts,
    validate_frequency,
    validate_memo,
    validate_positive_amount,
)
from donations.integrations.idempotency import IdempotencyGuard
from donations.integrations.ledger_client import (
    PermanentLedgerError,
    TransientLedgerError,
    build_ledger_client,
)
from donations.models import LedgerAccount, RecurringSchedule, Transaction

logger = logging.getLogger(__name__)

STATE_TIMESTAMP_FIELDS = {
    TransactionState.SUBMITTED.value: "submitted_at",
    TransactionState.CONFIRMED.value: "confirmed_at",
    TransactionState.FAILED.value: "failed_at",
}

# failure_reason of an attempt row whose payment is recorded under another row
SUPERSEDED_PREFIX = "duplicate_of:"


def _isoformat(value):
    return value.isoformat() if value else None


def transaction_snapshot(tx):
    return {
        "id": tx.id,
        "external_tx_id": tx.external_tx_id,
        "ledger_sequence": tx.ledger_sequence,
        "amount": str(tx.amount),
        "donor": tx.donor,
        "recipient": tx.recipient,
        "memo": tx.memo,
        "state": normalize_state(tx.state),
        "source": tx.source,
        "idempotency_key": tx.idempotency_key,
        "failure_reason": tx.failure_reason,
        "created_at": _isoformat(tx.created_at),
        "submitted_at": _isoformat(tx.submitted_at),
        "confirmed_at": _isoformat(tx.confirmed_at),
        "failed_at": _isoformat(tx.failed_at),
    }


def get_account_by_public_key(public_key):
    try:
        return LedgerAccount.objects.get(public_key=public_key)
    except LedgerAccount.DoesNotExist as exc:
        raise AccountNotFound(f"account={public_key} does not exist") from exc


def validate_address(value, *, field):
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} must be a non-empty ledger address")
    value = value.strip()
    if len(value) > 128:
        raise ValidationError(f"{field} must not exceed 128 characters")
    return value


class TransactionService:
    @staticmethod
    def get(transaction_id):
        try:
            return Transaction.objects.get(pk=transaction_id)
        except Transaction.DoesNotExist as exc:
            raise TransactionNotFound(
                f"transaction={transaction_id} does not exist"
            ) from exc

    @staticmethod
    def create_pending(*, amount, donor, recipient, memo="", source, **fields):
        return Transaction.objects.create(
            amount=validate_positive_amount(amount),
            donor=donor,
            recipient=recipient,
            memo=validate_memo(memo),
            state=TransactionState.PENDING.value,
            source=source,
            **fields,
        )

    @staticmethod
    def transition(tx, to_state, *, now=None, **fields):
        """Move ``tx`` to ``to_state`` through the lifecycle guard.

        The write is conditional on the state this instance was loaded with;
        if another writer got there first nothing is written and
        ``InvalidTransitionError`` is raised.
        """
        current = assert_valid_state(normalize_state(tx.state))
        to_state = assert_transition(current, to_state)

        new_external_tx_id = fields.get("external_tx_id")
        if (
            new_external_tx_id is not None
            and tx.external_tx_id
            and new_external_tx_id != tx.external_tx_id
        ):
            raise InvalidStateError(
                f"transaction={tx.id} external_tx_id is immutable once set"
            )

        now = now or timezone.now()
        updates = dict(fields)
        updates["state"] = to_state
        updates.setdefault(STATE_TIMESTAMP_FIELDS[to_state], now)
        updates["updated_at"] = now

        updated = Transaction.objects.filter(pk=tx.pk, state=tx.state).update(**updates)
        if not updated:
            logger.error(
                "event=transaction_transition_lost tx_id=%s from_state=%s to_state=%s",
                tx.id,
                tx.state,
                to_state,
            )
            raise InvalidTransitionError(
                f"transaction={tx.id} is no longer in state={tx.state}"
            )

        for field, value in updates.items():
            setattr(tx, field, value)
        logger.info(
            "event=transaction_transition tx_id=%s from_state=%s to_state=%s external_tx_id=%s",
            tx.id,
            current,
            to_state,
            tx.external_tx_id,
        )
        return tx


@dataclass(frozen=True)
class DonationResult:
    transaction: Transaction | None
    response: dict
    replayed: bool

    @property
    def status_code(self):
        return self.response.get("status_code", 201)


class DonationService:
    """Create-and-submit for one-shot donations, guarded by an idempotency key."""

    def __init__(self, *, ledger_client=None, guard=None):
        self.ledger_client = ledger_client or build_ledger_client()
        self.guard = guard or IdempotencyGuard()

    @staticmethod
    def _response(tx, status_code):
        return {"status_code": status_code, "transaction": transaction_snapshot(tx)}

    @staticmethod
    def _latest_for_key(key):
        return (
            Transaction.objects.filter(idempotency_key=key)
            .exclude(failure_reason__startswith=SUPERSEDED_PREFIX)
            .order_by("-created_at", "-id")
            .first()
        )

    def _replay(self, outcome):
        tx_id = (outcome.response.get("transaction") or {}).get("id")
        tx = Transaction.objects.filter(pk=tx_id).first() if tx_id else None
        if tx is None:
            tx = self._latest_for_key(outcome.key)
        return DonationResult(transaction=tx, response=outcome.response, replayed=True)

    def _resume_abandoned(self, key):
        """Return a result if a previous claim of ``key`` already reached the ledger."""
        previous = self._latest_for_key(key)
        if previous is None:
            return None, None

        state = normalize_state(previous.state)
        if state == TransactionState.PENDING.value:
            return None, previous
        if state == TransactionState.FAILED.value and (
            previous.failure_reason or ""
        ).startswith("ledger_transient:"):
            return None, None

        status_code = 202 if state == TransactionState.SUBMITTED.value else 201
        if state == TransactionState.FAILED.value:
            status_code = 502
        response = self._response(previous, status_code)
        self.guard.complete(key, response)
        logger.warning(
            "event=donation_resumed_from_previous_claim key=%s tx_id=%s state=%s",
            key,
            previous.id,
            state,
        )
        return DonationResult(transaction=previous, response=response, replayed=True), None

    def _record_payment(self, tx, payment):
        """Confirm ``tx`` with the ledger's id, or defer to a row that already holds it.

        The reconciler may have imported or repaired the payment while the
        ledger response was outstanding.
        """
        existing = (
            Transaction.objects.filter(external_tx_id=payment.external_tx_id)
            .exclude(pk=tx.pk)
            .first()
        )
        if existing is None:
            try:
                with transaction.atomic():
                    TransactionService.transition(
                        tx,
                        TransactionState.CONFIRMED,
                        external_tx_id=payment.external_tx_id,
                        ledger_sequence=payment.ledger_sequence,
                    )
                return tx
            except IntegrityError:
                existing = Transaction.objects.get(external_tx_id=payment.external_tx_id)
            except InvalidTransitionError:
                tx.refresh_from_db()
                if tx.external_tx_id != payment.external_tx_id:
                    raise
                logger.info(
                    "event=donation_confirmed_by_reconciler tx_id=%s external_tx_id=%s",
                    tx.id,
                    tx.external_tx_id,
                )
                return tx

        with transaction.atomic():
            TransactionService.transition(
                tx,
                TransactionState.FAILED,
                failure_reason=f"{SUPERSEDED_PREFIX}{existing.id}",
            )
            if normalize_state(existing.state) == TransactionState.SUBMITTED.value:
                TransactionService.transition(
                    existing,
                    TransactionState.CONFIRMED,
                    ledger_sequence=existing.ledger_sequence or payment.ledger_sequence,
                )
            if not existing.idempotency_key:
                Transaction.objects.filter(pk=existing.pk).update(
                    idempotency_key=tx.idempotency_key
                )
                existing.idempotency_key = tx.idempotency_key
        logger.warning(
            "event=donation_payment_already_recorded tx_id=%s existing_tx_id=%s external_tx_id=%s",
            tx.id,
            existing.id,
            payment.external_tx_id,
        )
        return existing

    def create_donation(self, *, donor_public_key, recipient, amount, memo="", idempotency_key):
        validated_amount = validate_positive_amount(amount)
        validated_memo = validate_memo(memo)
        recipient = validate_address(recipient, field="recipient")
        self.guard.validate_key(idempotency_key)
        donor = get_account_by_public_key(donor_public_key)
        validate_distinct_accounts(donor.public_key, recipient)

        payload = {
            "donor": donor.public_key,
            "recipient": recipient,
            "amount": validated_amount,
            "memo": validated_memo,
        }
        outcome = self.guard.begin(idempotency_key, payload)
        if outcome.is_replay:
            return self._replay(outcome)

        resumed, tx = self._resume_abandoned(idempotency_key)
        if resumed is not None:
            return resumed

        if tx is None:
            tx = TransactionService.create_pending(
                amount=validated_amount,
                donor=donor.public_key,
                recipient=recipient,
                memo=validated_memo,
                source=Transaction.Source.DONATION,
                idempotency_key=idempotency_key,
            )
        TransactionService.transition(tx, TransactionState.SUBMITTED)

        try:
            payment = self.ledger_client.send_payment(
                donor.secret_ref,
                recipient,
                validated_amount,
                validated_memo,
                idempotency_key=idempotency_key,
            )
        except TransientLedgerError as exc:
            TransactionService.transition(
                tx,
                TransactionState.FAILED,
                failure_reason=f"ledger_transient:{exc.code}",
            )
            self.guard.release(idempotency_key)
            logger.warning(
                "event=donation_transient_failure tx_id=%s key=%s code=%s",
                tx.id,
                idempotency_key,
                exc.code,
            )
            raise
        except PermanentLedgerError as exc:
            TransactionService.transition(
                tx,
                TransactionState.FAILED,
                failure_reason=f"ledger_rejected:{exc.code}",
            )
            response = self._response(tx, 502)
            self.guard.complete(idempotency_key, response)
            logger.warning(
                "event=donation_rejected tx_id=%s key=%s code=%s",
                tx.id,
                idempotency_key,
                exc.code,
            )
            return DonationResult(transaction=tx, response=response, replayed=False)

        tx = self._record_payment(tx, payment)
        response = self._response(tx, 201)
        self.guard.complete(idempotency_key, response)
        logger.info(
            "event=donation_confirmed tx_id=%s key=%s external_tx_id=%s",
            tx.id,
            idempotency_key,
            payment.external_tx_id,
        )
        return DonationResult(transaction=tx, response=response, replayed=False)


class ScheduleService:
    @staticmethod
    def get(schedule_id):
        try:
            return RecurringSchedule.objects.select_related("donor", "recipient").get(
                pk=schedule_id
            )
        except RecurringSchedule.DoesNotExist as exc:
            raise ScheduleNotFound(f"schedule={schedule_id} does not exist") from exc

    @staticmethod
    def create_schedule(
        donor_public_key,
        recipient_public_key,
        amount,
        frequency,
        *,
        start_at=None,
        max_executions=None,
        now=None,
    ):
        validated_amount = validate_positive_amount(amount)
        validated_frequency = validate_frequency(frequency)
        if max_executions is not None and (
            isinstance(max_executions, bool)
            or not isinstance(max_executions, int)
            or max_executions < 1
        ):
            raise ValidationError("max_executions must be a positive integer")

        donor = get_account_by_public_key(donor_public_key)
        recipient = get_account_by_public_key(recipient_public_key)
        validate_distinct_accounts(donor.pk, recipient.pk)

        now = now or timezone.now()
        if start_at is None:
            next_execution_date = calculate_next_execution_date(now, validated_frequency)
        else:
            next_execution_date = validate_aware_datetime(start_at, field="start_at")

        schedule = RecurringSchedule.objects.create(
            donor=donor,
            recipient=recipient,
            amount=validated_amount,
            frequency=validated_frequency.value,
            status=RecurringSchedule.Status.ACTIVE,
            next_execution_date=next_execution_date,
            max_executions=max_executions,
        )
        logger.info(
            "event=schedule_created schedule_id=%s frequency=%s amount=%s next_execution_date=%s",
            schedule.id,
            schedule.frequency,
            schedule.amount,
            next_execution_date.isoformat(),
        )
        return schedule

    @staticmethod
    def _change_status(schedule_id, *, from_statuses, to_status, **fields):
        with transaction.atomic():
            schedule = ScheduleService.get(schedule_id)
            if schedule.status == to_status:
                return schedule
            if schedule.status not in from_statuses:
                raise InvalidScheduleState(
                    f"schedule={schedule_id} cannot move from {schedule.status} to {to_status}"
                )

            now = timezone.now()
            updated = RecurringSchedule.objects.filter(
                pk=schedule.pk, status=schedule.status
            ).update(status=to_status, updated_at=now, **fields)
            if not updated:
                raise InvalidScheduleState(
                    f"schedule={schedule_id} changed concurrently; retry the request"
                )
            schedule.refresh_from_db()

        logger.info(
            "event=schedule_status_changed schedule_id=%s status=%s",
            schedule.id,
            to_status,
        )
        return schedule

    @staticmethod
    def cancel_schedule(schedule_id):
        return ScheduleService._change_status(
            schedule_id,
            from_statuses={ScheduleStatus.ACTIVE.value, ScheduleStatus.PAUSED.value},
            to_status=ScheduleStatus.CANCELLED.value,
            cancelled_at=timezone.now(),
        )

    @staticmethod
    def pause_schedule(schedule_id):
        return ScheduleService._change_status(
            schedule_id,
            from_statuses={ScheduleStatus.ACTIVE.value},
            to_status=ScheduleStatus.PAUSED.value,
        )

    @staticmethod
    def resume_schedule(schedule_id, *, now=None):
        now = now or timezone.now()
        schedule = ScheduleService.get(schedule_id)
        fields = {}
        if schedule.next_execution_date < now:
            fields["next_execution_date"] = now
        return ScheduleService._change_status(
            schedule_id,
            from_statuses={ScheduleStatus.PAUSED.value},
            to_status=ScheduleStatus.ACTIVE.value,
            **fields,
        )
