from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from rental_core.core.auth_deps import get_current_principal
from rental_core.core.errors import IdempotencyKeyReused
from rental_core.db.session import get_db
from rental_core.policies.rbac import Principal
from rental_core.services.idempotency_service import IdempotencyScope, IdempotencyService, StoredResponse

MAX_KEY_LENGTH = 128


@dataclass
class IdempotentRequest:
    scope: IdempotencyScope
    fingerprint: str
    replay: Optional[StoredResponse] = None

    def remember(self, db: Session, body: Dict[str, Any], status_code: int) -> None:
        IdempotencyService().remember(
            db, self.scope, fingerprint=self.fingerprint, response=StoredResponse(status_code=status_code, body=body)
        )


async def idempotency_guard(
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
) -> Optional[IdempotentRequest]:
    """
    For create endpoints. Without an Idempotency-Key header the request runs normally
    and nothing is stored.
    """
    key = request.headers.get("Idempotency-Key")
    if not key:
        return None
    if len(key) > MAX_KEY_LENGTH:
        raise HTTPException(status_code=400, detail="Idempotency-Key too long.")

    try:
        payload = await request.json()
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {"_": payload}

    scope = IdempotencyScope(
        user_id=principal.user_id,
        endpoint_key=f"{request.method}:{request.url.path}",
        idem_key=key,
    )

    def _lookup():
        try:
            return IdempotencyService().lookup(db, scope, payload=payload)
        finally:
            # the lookup is read-only; do not hold its transaction open across the handler
            db.rollback()

    # blocking database work stays off the event loop
    try:
        replay, fingerprint = await asyncio.to_thread(_lookup)
    except IdempotencyKeyReused as err:
        raise HTTPException(
            status_code=409,
            detail={"code": err.code, "reason": err.message, "blocking": err.blocking},
        )

    return IdempotentRequest(scope=scope, fingerprint=fingerprint, replay=replay)
