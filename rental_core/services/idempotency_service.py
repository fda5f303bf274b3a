"""
Replay protection for the create endpoints (new contract, new dispute).

A client that retries with the same Idempotency-Key gets the first response back
instead of a second contract or dispute.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rental_core.core.clock import Clock, SystemClock
from rental_core.core.errors import IdempotencyKeyReused
from rental_core.core.hashing import canonical_dumps, sha256_hex
from rental_core.models.idempotency_key import IdempotencyKeyRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdempotencyScope:
    user_id: str
    endpoint_key: str
    idem_key: str


@dataclass(frozen=True)
class StoredResponse:
    status_code: int
    body: Dict[str, Any]


def request_fingerprint(payload: Dict[str, Any]) -> str:
    return sha256_hex(canonical_dumps(payload))


class IdempotencyService:
    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()

    def _find(self, db: Session, scope: IdempotencyScope) -> Optional[IdempotencyKeyRecord]:
        return db.execute(
            select(IdempotencyKeyRecord).where(
                IdempotencyKeyRecord.user_id == scope.user_id,
                IdempotencyKeyRecord.endpoint_key == scope.endpoint_key,
                IdempotencyKeyRecord.idem_key == scope.idem_key,
            )
        ).scalar_one_or_none()

    def lookup(
        self, db: Session, scope: IdempotencyScope, *, payload: Dict[str, Any]
    ) -> Tuple[Optional[StoredResponse], str]:
        """
        Returns (stored response or None, request fingerprint).
        Raises IdempotencyKeyReused when the key was first used with another body.
        """
        fingerprint = request_fingerprint(payload)
        row = self._find(db, scope)
        if row is None:
            return None, fingerprint
        if row.request_hash != fingerprint:
            raise IdempotencyKeyReused(
                "Idempotency-Key was already used with a different request body.",
                blocking="use a new Idempotency-Key",
            )
        return StoredResponse(status_code=int(row.response_status), body=row.response_json), fingerprint

    def remember(self, db: Session, scope: IdempotencyScope, *, fingerprint: str, response: StoredResponse) -> None:
        if self._find(db, scope) is not None:
            return

        db.add(
            IdempotencyKeyRecord(
                user_id=scope.user_id,
                endpoint_key=scope.endpoint_key,
                idem_key=scope.idem_key,
                request_hash=fingerprint,
                response_status=str(response.status_code),
                response_json=response.body,
                created_at=self.clock.now(),
            )
        )
        try:
            db.commit()
        except IntegrityError:
            # a concurrent retry with the same key stored first; its response wins
            db.rollback()
            logger.info("idempotency key stored concurrently", extra={"endpoint": scope.endpoint_key})
