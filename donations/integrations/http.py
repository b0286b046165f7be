import logging

import requests
from django.conf import settings

from donations.integrations.retry import retry_on_exceptions

logger = logging.getLogger(__name__)

NETWORK_EXCEPTIONS = (requests.Timeout, requests.ConnectionError)


class NetworkRequestFailed(Exception):
    """The request never produced an HTTP response."""


def build_session():
    """One pooled session per ledger client; connections are reused across calls."""
    adapter = requests.adapters.HTTPAdapter(
        pool_connections=settings.LEDGER_HTTP_MAX_CONNECTIONS,
        pool_maxsize=settings.LEDGER_HTTP_MAX_KEEPALIVE,
    )
    session = requests.Session()
    for prefix in ("http://", "https://"):
        session.mount(prefix, adapter)
    return session


class HttpClient:
    """``requests`` wrapper that retries reads on connection-level failures.

    Writes are sent exactly once: a resent payment could reach the ledger
    twice, so retrying writes is left to callers holding an idempotency key.
    """

    def __init__(
        self,
        *,
        session=None,
        connect_timeout=1.0,
        read_timeout=3.0,
        max_attempts=1,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
    ):
        self.session = session or build_session()
        self.timeout = (connect_timeout, read_timeout)
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay

    @staticmethod
    def _log_retry(url):
        def on_retry(*, attempt, delay_seconds, exception):
            logger.warning(
                "event=http_retry url=%s attempt=%s delay=%.3f error=%s",
                url,
                attempt,
                delay_seconds,
                type(exception).__name__,
            )

        return on_retry

    def request(self, method, url, *, max_attempts=1, **kwargs):
        send = getattr(self.session, method)
        try:
            return retry_on_exceptions(
                lambda: send(url, timeout=self.timeout, **kwargs),
                exceptions=NETWORK_EXCEPTIONS,
                max_attempts=max_attempts,
                base_delay=self.retry_base_delay,
                max_delay=self.retry_max_delay,
                on_retry=self._log_retry(url),
            )
        except NETWORK_EXCEPTIONS as exc:
            raise NetworkRequestFailed(
                f"{method.upper()} {url} failed after {max_attempts} attempt(s)"
            ) from exc

    def post_json(self, url, *, json=None, headers=None):
        return self.request("post", url, json=json, headers=headers)

    def get_json(self, url, *, params=None, headers=None):
        return self.request(
            "get", url, max_attempts=self.max_attempts, params=params, headers=headers
        )
