import random
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime


def exponential_delay(attempt, *, base_delay, max_delay):
    """Delay before retry number ``attempt``: base, 2*base, 4*base, ... capped at ``max_delay``."""
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    if min(base_delay, max_delay) < 0:
        raise ValueError("delays must be non-negative")
    return min(max_delay, base_delay * 2 ** (attempt - 1))


def full_jitter_delay(attempt, *, base_delay, max_delay):
    ceiling = exponential_delay(attempt, base_delay=base_delay, max_delay=max_delay)
    return random.uniform(0, ceiling)


def _http_date_to_seconds(raw):
    try:
        retry_at = parsedate_to_datetime(raw)
    except (TypeError, ValueError, OverflowError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return (retry_at - datetime.now(timezone.utc)).total_seconds()


def parse_retry_after_seconds(value):
    """Read a ``Retry-After`` header given as seconds or an HTTP date; None when unusable."""
    raw = "" if value is None else str(value).strip()
    if not raw:
        return None
    try:
        seconds = float(raw)
    except ValueError:
        seconds = _http_date_to_seconds(raw)
    return None if seconds is None else max(0.0, seconds)


def retry_on_exceptions(
    func,
    *,
    exceptions,
    max_attempts,
    base_delay,
    max_delay,
    on_retry=None,
    sleep=time.sleep,
    delay_for=full_jitter_delay,
):
    """Call ``func`` up to ``max_attempts`` times, sleeping between failures.

    Only ``exceptions`` are retried; the last one is re-raised unchanged.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    for attempt in range(1, max_attempts + 1):
        try:
            return func()
        except exceptions as exc:
            if attempt == max_attempts:
                raise
            delay = delay_for(attempt, base_delay=base_delay, max_delay=max_delay)
            if on_retry is not None:
                on_retry(attempt=attempt, delay_seconds=delay, exception=exc)
            if delay > 0:
                sleep(delay)
