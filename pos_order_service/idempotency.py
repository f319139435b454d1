"""Idempotent handling of guest order submissions.

A guest device may resend the same order (flaky connection, double tap). A
client-chosen ``Idempotency-Key`` together with a SHA-256 digest of the body
lets us replay the first response instead of creating a second order.

Bookkeeping is best-effort: when the idempotency store is unavailable the
request still goes through, just without dedup. A duplicate order is a
recoverable business error; refusing to take orders is not.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from . import metrics
from .database import placeholder
from .repository import BaseRepository
from .schemas import CreateGuestOrderRequest

logger = logging.getLogger(__name__)

KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
CONFLICT_ERROR = "Idempotency key conflict: request body differs"


def default_ttl() -> timedelta:
    return timedelta(hours=float(os.environ.get("IDEMPOTENCY_TTL_HOURS", "24")))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ServiceResponse:
    status: int
    body: dict = field(default_factory=dict)


@dataclass(frozen=True)
class IdempotencyRecord:
    key: str
    request_hash: str
    response_status: int
    response_body: dict
    expires_at: datetime


def compute_request_hash(submission: CreateGuestOrderRequest) -> str:
    canonical = {
        "items": [item.model_dump() for item in submission.items],
        "total": submission.total,
        "tableCode": submission.tableCode,
    }
    encoded = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class IdempotencyRepository(BaseRepository):
    def find_valid_record(self, key: str, now: datetime) -> IdempotencyRecord | None:
        with self._connection() as conn:
            p = placeholder(conn)
            row = conn.execute(
                f"""
                SELECT key, request_hash, response_status, response_body, expires_at
                FROM idempotency_keys
                WHERE key = {p};
                """,
                (key,),
            ).fetchone()
        if row is None:
            return None
        expires_at = datetime.fromisoformat(row["expires_at"])
        if now >= expires_at:
            return None
        return IdempotencyRecord(
            key=row["key"],
            request_hash=row["request_hash"],
            response_status=int(row["response_status"]),
            response_body=json.loads(row["response_body"]),
            expires_at=expires_at,
        )

    def insert_record(
        self,
        key: str,
        request_hash: str,
        status: int,
        body: dict,
        expires_at: datetime,
        now: datetime | None = None,
    ) -> None:
        created_at = (now or utcnow()).isoformat()
        with self._connection() as conn:
            p = placeholder(conn)
            # An expired row for the same key is replaced in place.
            conn.execute(
                f"""
                INSERT INTO idempotency_keys (
                    key, request_hash, response_status, response_body, expires_at, created_at
                ) VALUES ({p}, {p}, {p}, {p}, {p}, {p})
                ON CONFLICT(key) DO UPDATE SET
                    request_hash=excluded.request_hash,
                    response_status=excluded.response_status,
                    response_body=excluded.response_body,
                    expires_at=excluded.expires_at,
                    created_at=excluded.created_at;
                """,
                (key, request_hash, status, json.dumps(body), expires_at.isoformat(), created_at),
            )
            conn.commit()


class IdempotencyGate:
    def __init__(
        self,
        repository: IdempotencyRepository,
        ttl: timedelta | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._repo = repository
        self._ttl = ttl if ttl is not None else default_ttl()
        self._clock = clock

    @staticmethod
    def accepts_key(key: Optional[str]) -> bool:
        return bool(key) and KEY_PATTERN.match(key) is not None

    def get_idempotent_response(
        self,
        key: Optional[str],
        request_hash: str,
        handler: Callable[[], ServiceResponse],
    ) -> ServiceResponse:
        if not self.accepts_key(key):
            metrics.idempotency_requests.labels(outcome="bypassed").inc()
            return handler()

        now = self._clock()
        try:
            existing = self._repo.find_valid_record(key, now)
        except Exception:
            logger.warning("Idempotency lookup failed for key=%s, proceeding without dedup", key, exc_info=True)
            metrics.idempotency_requests.labels(outcome="store_unavailable").inc()
            return handler()

        if existing is not None:
            if existing.request_hash != request_hash:
                logger.info("Idempotency conflict for key=%s", key)
                metrics.idempotency_requests.labels(outcome="conflict").inc()
                return ServiceResponse(status=409, body={"error": CONFLICT_ERROR})
            logger.info("Replaying stored response for key=%s status=%d", key, existing.response_status)
            metrics.idempotency_requests.labels(outcome="replayed").inc()
            return ServiceResponse(status=existing.response_status, body=existing.response_body)

        response = handler()
        metrics.idempotency_requests.labels(outcome="executed").inc()
        try:
            self._repo.insert_record(
                key,
                request_hash,
                response.status,
                response.body,
                expires_at=now + self._ttl,
                now=now,
            )
        except Exception:
            logger.warning("Failed to record idempotency key=%s", key, exc_info=True)
        return response
