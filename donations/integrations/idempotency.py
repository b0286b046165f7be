import hashlib
import json
import logging
import re
import secrets
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from uuid import UUID

from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.db import IntegrityError, transaction
from django.utils import timezone

from donations.domain.exceptions import (
    IdempotencyConflict,
    IdempotencyRequestInProgress,
    InvalidIdempotencyKey,
)
from donations.models import IdempotencyRecord

logger = logging.getLogger(__name__)

MIN_KEY_LENGTH = 16
MAX_KEY_LENGTH = 255
KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def generate_idempotency_key():
    return f"idem_{int(time.time() * 1000)}_{secrets.token_hex(16)}"


def validate_idempotency_key(key):
    if not key or not isinstance(key, str):
        raise InvalidIdempotencyKey("idempotency key must be a non-empty string")
    if len(key) < MIN_KEY_LENGTH:
        raise InvalidIdempotencyKey(
            f"idempotency key must be at least {MIN_KEY_LENGTH} characters long"
        )
    if len(key) > MAX_KEY_LENGTH:
        raise InvalidIdempotencyKey(
            f"idempotency key must not exceed {MAX_KEY_LENGTH} characters"
        )
    if not KEY_PATTERN.match(key):
        raise InvalidIdempotencyKey(
            "idempotency key must contain only alphanumeric characters, "
            "hyphens, and underscores"
        )
    return key


def _canonical(value):
    if isinstance(value, dict):
        return {str(k): _canonical(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical(item) for item in value]
    if isinstance(value, Enum):
        return _canonical(value.value)
    if isinstance(value, Decimal):
        normalized = value.normalize()
        if normalized == 0:
            return "0"
        return format(normalized, "f")
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    return value


def compute_request_hash(payload):
    """SHA-256 over canonical JSON; key order and decimal scale do not matter."""
    normalized = json.dumps(
        _canonical(payload),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class IdempotencyAction(str, Enum):
    PROCEED = "PROCEED"
    REPLAY = "REPLAY"


@dataclass(frozen=True)
class IdempotencyOutcome:
    action: IdempotencyAction
    key: str
    request_hash: str
    response: dict | None = None

    @property
    def should_proceed(self):
        return self.action == IdempotencyAction.PROCEED

    @property
    def is_replay(self):
        return self.action == IdempotencyAction.REPLAY

    @classmethod
    def proceed(cls, *, key, request_hash):
        return cls(action=IdempotencyAction.PROCEED, key=key, request_hash=request_hash)

    @classmethod
    def replay(cls, *, key, request_hash, response):
        return cls(
            action=IdempotencyAction.REPLAY,
            key=key,
            request_hash=request_hash,
            response=response,
        )


class IdempotencyGuard:
    """Collapses repeated client submissions into one execution per key.

    ``begin`` claims the key with a plain INSERT on the unique column, so two
    concurrent first requests cannot both proceed. A claimed key without a
    stored response is "in flight"; once older than the in-flight timeout it
    is treated as abandoned (the worker died) and may be reclaimed.
    """

    max_claim_attempts = 3

    def __init__(self, *, ttl_seconds=None, in_flight_timeout_seconds=None, clock=None):
        self.ttl = timedelta(
            seconds=ttl_seconds or settings.IDEMPOTENCY_TTL_SECONDS
        )
        self.in_flight_timeout = timedelta(
            seconds=in_flight_timeout_seconds
            or settings.IDEMPOTENCY_IN_FLIGHT_TIMEOUT_SECONDS
        )
        self.clock = clock or timezone.now

    validate_key = staticmethod(validate_idempotency_key)
    request_hash = staticmethod(compute_request_hash)
    generate_key = staticmethod(generate_idempotency_key)

    def _try_insert(self, key, request_hash, now):
        try:
            with transaction.atomic():
                IdempotencyRecord.objects.create(
                    key=key,
                    request_hash=request_hash,
                    response=None,
                    created_at=now,
                    expires_at=now + self.ttl,
                )
        except IntegrityError:
            return False
        return True

    def begin(self, key, payload):
        key = self.validate_key(key)
        request_hash = self.request_hash(payload)

        for _ in range(self.max_claim_attempts):
            now = self.clock()
            if self._try_insert(key, request_hash, now):
                logger.info("event=idempotency_key_claimed key=%s", key)
                return IdempotencyOutcome.proceed(key=key, request_hash=request_hash)

            record = IdempotencyRecord.objects.filter(key=key).first()
            if record is None:
                continue

            if record.expires_at <= now:
                replaced = IdempotencyRecord.objects.filter(
                    pk=record.pk, expires_at=record.expires_at
                ).update(
                    request_hash=request_hash,
                    response=None,
                    created_at=now,
                    expires_at=now + self.ttl,
                )
                if replaced:
                    logger.info("event=idempotency_key_expired_reclaimed key=%s", key)
                    return IdempotencyOutcome.proceed(key=key, request_hash=request_hash)
                continue

            if record.request_hash != request_hash:
                logger.warning(
                    "event=idempotency_conflict key=%s stored_hash=%s request_hash=%s",
                    key,
                    record.request_hash,
                    request_hash,
                )
                raise IdempotencyConflict(
                    "idempotency key already used with a different request payload"
                )

            if record.is_completed:
                logger.info("event=idempotency_replay key=%s", key)
                return IdempotencyOutcome.replay(
                    key=key, request_hash=request_hash, response=record.response
                )

            if now - record.created_at < self.in_flight_timeout:
                raise IdempotencyRequestInProgress(
                    "a request with this idempotency key is still being processed"
                )

            reclaimed = IdempotencyRecord.objects.filter(
                pk=record.pk,
                created_at=record.created_at,
                response__isnull=True,
            ).update(created_at=now)
            if reclaimed:
                logger.warning(
                    "event=idempotency_key_abandoned_reclaimed key=%s claimed_at=%s",
                    key,
                    record.created_at.isoformat(),
                )
                return IdempotencyOutcome.proceed(key=key, request_hash=request_hash)

        raise IdempotencyRequestInProgress(
            "could not claim idempotency key; another request holds it"
        )

    def complete(self, key, response):
        stored = json.loads(json.dumps(response, cls=DjangoJSONEncoder))
        updated = IdempotencyRecord.objects.filter(key=key).update(response=stored)
        if not updated:
            logger.warning("event=idempotency_complete_missing_record key=%s", key)
            return False
        logger.info("event=idempotency_response_stored key=%s", key)
        return True

    def release(self, key):
        deleted, _ = IdempotencyRecord.objects.filter(
            key=key, response__isnull=True
        ).delete()
        if deleted:
            logger.info("event=idempotency_key_released key=%s", key)
        return bool(deleted)

    def purge_expired(self, now=None):
        now = now or self.clock()
        deleted, _ = IdempotencyRecord.objects.filter(expires_at__lte=now).delete()
        logger.info("event=idempotency_purge deleted=%s", deleted)
        return deleted

    def get_stats(self, now=None):
        now = now or self.clock()
        total = IdempotencyRecord.objects.count()
        expired = IdempotencyRecord.objects.filter(expires_at__lte=now).count()
        return {"total": total, "active": total - expired, "expired": expired}
