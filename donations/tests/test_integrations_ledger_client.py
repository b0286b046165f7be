from decimal import Decimal
from unittest.mock import Mock

from django.test import SimpleTestCase
from django.test.utils import override_settings

from donations.integrations.http import NetworkRequestFailed
from donations.integrations.ledger_client import (
    LedgerClient,
    PermanentLedgerError,
    TransientLedgerError,
    build_ledger_client,
    classify_response,
)
from donations.integrations.rate_limiter import (
    AcquireResult,
    NoopRateLimiter,
    RateLimiterUnavailable,
)
from donations.integrations.simulated_ledger import SimulatedLedgerClient


def make_response(status_code, body=None, headers=None):
    response = Mock()
    response.status_code = status_code
    response.headers = headers or {}
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body
    return response


class ClassifyResponseTests(SimpleTestCase):
    def test_success_body_is_returned(self):
        body, error = classify_response(make_response(200, {"id": "abc"}))
        self.assertEqual(body, {"id": "abc"})
        self.assertIsNone(error)

    def test_transient_statuses(self):
        for status_code in (408, 425, 429, 500, 502, 503, 504):
            with self.subTest(status_code=status_code):
                _, error = classify_response(make_response(status_code, {}))
                self.assertIsInstance(error, TransientLedgerError)
                self.assertTrue(error.transient)
                self.assertEqual(error.code, f"upstream_status_{status_code}")

    def test_other_client_errors_are_permanent(self):
        for status_code in (400, 401, 403, 404, 409, 422):
            with self.subTest(status_code=status_code):
                _, error = classify_response(
                    make_response(status_code, {"error_code": "op_underfunded"})
                )
                self.assertIsInstance(error, PermanentLedgerError)
                self.assertFalse(error.transient)
                self.assertEqual(error.code, "op_underfunded")

    def test_explicit_retryable_flag_wins(self):
        _, error = classify_response(
            make_response(400, {"code": "tx_bad_seq", "retryable": True})
        )
        self.assertIsInstance(error, TransientLedgerError)

        _, error = classify_response(
            make_response(503, {"code": "maintenance", "retryable": False})
        )
        self.assertIsInstance(error, PermanentLedgerError)

    def test_retry_after_is_parsed_for_throttling(self):
        _, error = classify_response(
            make_response(429, {"detail": "slow down"}, headers={"Retry-After": "3"})
        )
        self.assertEqual(error.retry_after_seconds, 3.0)
        self.assertEqual(str(error), "slow down")

    def test_unparseable_success_body_is_transient(self):
        _, error = classify_response(make_response(200, ValueError("no json")))
        self.assertIsInstance(error, TransientLedgerError)
        self.assertEqual(error.code, "invalid_json_response")


class LedgerClientTests(SimpleTestCase):
    def setUp(self):
        self.http_client = Mock()
        self.client = LedgerClient(
            base_url="http://ledger.local/",
            http_client=self.http_client,
            rate_limiter=NoopRateLimiter(),
        )

    def test_send_payment_posts_once_with_idempotency_header(self):
        self.http_client.post_json.return_value = make_response(
            200, {"hash": "tx-hash-1", "ledger": "4512"}
        )

        result = self.client.send_payment(
            "secret-GA", "GB", Decimal("10.5"), "thanks", idempotency_key="sched-1-1"
        )

        self.assertEqual(result.external_tx_id, "tx-hash-1")
        self.assertEqual(result.ledger_sequence, 4512)
        self.http_client.post_json.assert_called_once_with(
            "http://ledger.local/payments",
            json={
                "source_secret": "secret-GA",
                "destination": "GB",
                "amount": "10.5",
                "memo": "thanks",
            },
            headers={"Idempotency-Key": "sched-1-1"},
        )

    def test_send_payment_network_failure_is_transient(self):
        self.http_client.post_json.side_effect = NetworkRequestFailed("timeout")

        with self.assertRaises(TransientLedgerError) as ctx:
            self.client.send_payment("secret-GA", "GB", Decimal("1"))
        self.assertEqual(ctx.exception.code, "network_error")

    def test_send_payment_rejection_is_permanent(self):
        self.http_client.post_json.return_value = make_response(
            400, {"error_code": "insufficient_funds"}
        )

        with self.assertRaises(PermanentLedgerError) as ctx:
            self.client.send_payment("secret-GA", "GB", Decimal("1"))
        self.assertEqual(ctx.exception.code, "insufficient_funds")

    def test_send_payment_without_transaction_id_is_transient(self):
        self.http_client.post_json.return_value = make_response(200, {"status": "ok"})

        with self.assertRaises(TransientLedgerError) as ctx:
            self.client.send_payment("secret-GA", "GB", Decimal("1"))
        self.assertEqual(ctx.exception.code, "invalid_payment_response")

    def test_get_balance_reads_native_balance(self):
        self.http_client.get_json.return_value = make_response(
            200,
            {
                "balances": [
                    {"asset_type": "credit_alphanum4", "balance": "5"},
                    {"asset_type": "native", "balance": "120.5000000"},
                ]
            },
        )

        self.assertEqual(self.client.get_balance("GA"), Decimal("120.5"))
        self.http_client.get_json.assert_called_once_with(
            "http://ledger.local/accounts/GA", params=None
        )

    def test_get_balance_missing_account_is_permanent(self):
        self.http_client.get_json.return_value = make_response(404, {})

        with self.assertRaises(PermanentLedgerError):
            self.client.get_balance("GA")

    def test_list_transactions_normalizes_embedded_records(self):
        self.http_client.get_json.return_value = make_response(
            200,
            {
                "_embedded": {
                    "records": [
                        {
                            "hash": "tx-2",
                            "ledger": 11,
                            "created_at": "2024-05-01T10:00:00Z",
                            "source_account": "GA",
                            "memo": "hello",
                            "operations": [{"amount": "7.25", "to": "GB"}],
                        },
                        {"source_account": "GA"},
                        {"id": "tx-1", "source_account": "GA"},
                    ]
                }
            },
        )

        records = self.client.list_transactions_for_account("GA", limit=50)

        self.assertEqual([record.external_tx_id for record in records], ["tx-2", "tx-1"])
        first, second = records
        self.assertEqual(first.amount, Decimal("7.25"))
        self.assertEqual(first.destination, "GB")
        self.assertEqual(first.ledger_sequence, 11)
        self.assertEqual(first.memo, "hello")
        self.assertEqual(first.timestamp.year, 2024)
        self.assertEqual(second.amount, Decimal("0"))
        self.assertEqual(second.destination, "GA")
        self.http_client.get_json.assert_called_once_with(
            "http://ledger.local/accounts/GA/transactions",
            params={"limit": 50, "order": "desc"},
        )

    def test_get_transaction_normalizes_record(self):
        self.http_client.get_json.return_value = make_response(
            200,
            {
                "id": "tx-9",
                "ledger": 40,
                "source_account": "GA",
                "operations": [{"amount": "3", "to": "GB"}],
            },
        )

        record = self.client.get_transaction("tx-9")

        self.assertEqual(record.external_tx_id, "tx-9")
        self.assertEqual(record.amount, Decimal("3"))
        self.assertEqual(record.destination, "GB")
        self.http_client.get_json.assert_called_once_with(
            "http://ledger.local/transactions/tx-9", params=None
        )

    def test_get_transaction_not_found_returns_none(self):
        self.http_client.get_json.return_value = make_response(404, {"code": "not_found"})

        self.assertIsNone(self.client.get_transaction("tx-404"))

    def test_get_transaction_other_failures_propagate(self):
        self.http_client.get_json.return_value = make_response(503, {})

        with self.assertRaises(TransientLedgerError):
            self.client.get_transaction("tx-1")

    def test_list_transactions_network_failure_is_transient(self):
        self.http_client.get_json.side_effect = NetworkRequestFailed("down")

        with self.assertRaises(TransientLedgerError):
            self.client.list_transactions_for_account("GA")

    def test_rate_limiter_outage_does_not_block_requests(self):
        limiter = Mock()
        limiter.acquire.side_effect = RateLimiterUnavailable("down")
        client = LedgerClient(
            base_url="http://ledger.local",
            http_client=self.http_client,
            rate_limiter=limiter,
        )
        self.http_client.get_json.return_value = make_response(200, {"balance": "1"})

        self.assertEqual(client.get_balance("GA"), Decimal("1"))

    def test_rate_limiter_is_consulted_per_request(self):
        limiter = Mock()
        limiter.acquire.return_value = AcquireResult(wait_seconds=0.2, wait_events=1)
        client = LedgerClient(
            base_url="http://ledger.local",
            http_client=self.http_client,
            rate_limiter=limiter,
        )
        self.http_client.get_json.return_value = make_response(200, {"balance": "1"})

        client.get_balance("GA")
        client.get_balance("GA")

        self.assertEqual(limiter.acquire.call_count, 2)


class BuildLedgerClientTests(SimpleTestCase):
    @override_settings(LEDGER_BACKEND="simulated")
    def test_simulated_backend(self):
        self.assertIsInstance(build_ledger_client(), SimulatedLedgerClient)

    @override_settings(LEDGER_BACKEND="http", LEDGER_MAX_RPS=0)
    def test_http_backend(self):
        client = build_ledger_client()
        self.assertIsInstance(client, LedgerClient)
        self.assertIsInstance(client.rate_limiter, NoopRateLimiter)
