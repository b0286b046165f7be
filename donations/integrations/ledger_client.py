import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.utils.dateparse import parse_datetime

from donations.integrations.http import HttpClient, NetworkRequestFailed
from donations.integrations.rate_limiter import (
    RateLimiterUnavailable,
    build_rate_limiter,
)
from donations.integrations.retry import parse_retry_after_seconds

logger = logging.getLogger(__name__)

# Statuses where the gateway did not (or may not have) finished the request and
# asking again later can succeed.
TRANSIENT_HTTP_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})


class LedgerError(Exception):
    transient = False

    def __init__(self, code, message=None, *, http_status=None, retry_after_seconds=None):
        super().__init__(message or code)
        self.code = code
        self.http_status = http_status
        self.retry_after_seconds = retry_after_seconds


class TransientLedgerError(LedgerError):
    """Timeouts, unavailability and throttling; the same call may succeed later."""

    transient = True


class PermanentLedgerError(LedgerError):
    """The ledger rejected the request; repeating it cannot succeed."""


@dataclass(frozen=True)
class PaymentResult:
    external_tx_id: str
    ledger_sequence: int | None = None


@dataclass(frozen=True)
class LedgerTransaction:
    external_tx_id: str
    ledger_sequence: int | None
    timestamp: datetime | None
    amount: Decimal
    source: str
    destination: str
    memo: str = ""


def _as_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_decimal(value):
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return Decimal("0")


def classify_response(response):
    """Return ``(body, None)`` for 2xx, otherwise ``(body, LedgerError)``.

    Classification order: an explicit boolean ``retryable`` in the body, then
    the HTTP status against ``TRANSIENT_HTTP_STATUSES``; anything else
    non-2xx is permanent.
    """
    try:
        body = response.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        body = {}

    status_code = response.status_code
    if 200 <= status_code < 300:
        if not body:
            return body, TransientLedgerError(
                "invalid_json_response",
                f"invalid_json_response_http_{status_code}",
                http_status=status_code,
            )
        return body, None

    code = str(
        body.get("error_code") or body.get("code") or f"upstream_status_{status_code}"
    )
    message = body.get("detail") or body.get("title") or code
    retry_after_seconds = parse_retry_after_seconds(response.headers.get("Retry-After"))

    retryable = body.get("retryable")
    if isinstance(retryable, bool):
        transient = retryable
    else:
        transient = status_code in TRANSIENT_HTTP_STATUSES

    error_class = TransientLedgerError if transient else PermanentLedgerError
    return body, error_class(
        code,
        str(message),
        http_status=status_code,
        retry_after_seconds=retry_after_seconds,
    )


class LedgerClient:
    """HTTP client for the ledger gateway.

    ``send_payment`` is a single attempt: retry policy belongs to the caller,
    which knows whether repeating a payment is safe. Reads retry connection
    failures inside ``HttpClient``.
    """

    def __init__(self, *, base_url=None, http_client=None, rate_limiter=None):
        self.base_url = (base_url or settings.LEDGER_BASE_URL).rstrip("/")
        self.http_client = http_client or HttpClient(
            connect_timeout=settings.LEDGER_TIMEOUT,
            read_timeout=settings.LEDGER_TIMEOUT,
            max_attempts=settings.LEDGER_READ_RETRY_COUNT + 1,
            retry_base_delay=settings.LEDGER_RETRY_BASE_DELAY,
            retry_max_delay=settings.LEDGER_RETRY_MAX_DELAY,
        )
        self.rate_limiter = rate_limiter or build_rate_limiter()

    def _acquire_rate_limit(self, *, operation):
        try:
            acquire_result = self.rate_limiter.acquire(cost=1)
        except RateLimiterUnavailable:
            logger.warning(
                "event=ledger_rate_limit_unavailable operation=%s limiter_wait_ms=0",
                operation,
            )
            return 0.0

        wait_ms = int(acquire_result.wait_seconds * 1000)
        if wait_ms > 0:
            logger.info(
                "event=ledger_rate_limit_wait operation=%s limiter_wait_ms=%s",
                operation,
                wait_ms,
            )
        return acquire_result.wait_seconds

    def _get(self, path, *, operation, params=None):
        self._acquire_rate_limit(operation=operation)
        try:
            response = self.http_client.get_json(f"{self.base_url}{path}", params=params)
        except NetworkRequestFailed as exc:
            logger.warning("event=ledger_network_error operation=%s", operation)
            raise TransientLedgerError("network_error", str(exc)) from exc

        body, error = classify_response(response)
        if error is not None:
            logger.warning(
                "event=ledger_request_failed operation=%s http_status=%s code=%s transient=%s",
                operation,
                response.status_code,
                error.code,
                error.transient,
            )
            raise error
        return body

    def send_payment(
        self,
        source_secret,
        destination_public_key,
        amount,
        memo="",
        *,
        idempotency_key=None,
    ):
        logger.info(
            "event=ledger_payment_request destination=%s amount=%s idempotency_key=%s",
            destination_public_key,
            amount,
            idempotency_key,
        )
        payload = {
            "source_secret": source_secret,
            "destination": destination_public_key,
            "amount": str(amount),
            "memo": memo or "",
        }
        headers = {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        self._acquire_rate_limit(operation="send_payment")
        try:
            response = self.http_client.post_json(
                f"{self.base_url}/payments", json=payload, headers=headers
            )
        except NetworkRequestFailed as exc:
            logger.warning(
                "event=ledger_payment_unknown reason=network_error idempotency_key=%s",
                idempotency_key,
            )
            raise TransientLedgerError("network_error", str(exc)) from exc

        body, error = classify_response(response)
        if error is not None:
            logger.warning(
                "event=ledger_payment_failed http_status=%s code=%s transient=%s idempotency_key=%s",
                response.status_code,
                error.code,
                error.transient,
                idempotency_key,
            )
            raise error

        external_tx_id = body.get("id") or body.get("hash") or body.get("transaction_id")
        if not external_tx_id:
            raise TransientLedgerError(
                "invalid_payment_response",
                "ledger accepted the payment without a transaction id",
                http_status=response.status_code,
            )

        result = PaymentResult(
            external_tx_id=str(external_tx_id),
            ledger_sequence=_as_int(body.get("ledger")),
        )
        logger.info(
            "event=ledger_payment_success external_tx_id=%s ledger_sequence=%s idempotency_key=%s",
            result.external_tx_id,
            result.ledger_sequence,
            idempotency_key,
        )
        return result

    def get_balance(self, public_key):
        body = self._get(f"/accounts/{public_key}", operation="get_balance")
        if "balance" in body:
            return _as_decimal(body["balance"])

        for balance in body.get("balances") or []:
            if balance.get("asset_type") == "native":
                return _as_decimal(balance.get("balance"))
        return Decimal("0")

    def list_transactions_for_account(self, public_key, limit=200):
        body = self._get(
            f"/accounts/{public_key}/transactions",
            operation="list_transactions",
            params={"limit": limit, "order": "desc"},
        )
        embedded = body.get("_embedded") or {}
        records = embedded.get("records")
        if records is None:
            records = body.get("records") or []

        transactions = []
        for record in records:
            normalized = self._normalize_transaction(record)
            if normalized is None:
                logger.warning(
                    "event=ledger_record_skipped reason=missing_id public_key=%s",
                    public_key,
                )
                continue
            transactions.append(normalized)
        return transactions

    def get_transaction(self, external_tx_id):
        """Look up one payment by id; ``None`` when the ledger does not know it."""
        try:
            body = self._get(
                f"/transactions/{external_tx_id}", operation="get_transaction"
            )
        except PermanentLedgerError as exc:
            if exc.http_status == 404:
                return None
            raise
        return self._normalize_transaction(body)

    @staticmethod
    def _normalize_transaction(record):
        external_tx_id = record.get("id") or record.get("hash")
        if not external_tx_id:
            return None

        source = record.get("source_account") or ""
        operations = record.get("operations") or []
        operation = operations[0] if operations else {}

        created_at = record.get("created_at")
        return LedgerTransaction(
            external_tx_id=str(external_tx_id),
            ledger_sequence=_as_int(record.get("ledger") or record.get("ledger_attr")),
            timestamp=parse_datetime(created_at) if created_at else None,
            amount=_as_decimal(operation.get("amount") or "0"),
            source=operation.get("from") or source,
            destination=operation.get("to") or operation.get("destination") or source,
            memo=record.get("memo") or "",
        )


def build_ledger_client():
    if settings.LEDGER_BACKEND == "simulated":
        from donations.integrations.simulated_ledger import SimulatedLedgerClient

        return SimulatedLedgerClient()
    return LedgerClient()
