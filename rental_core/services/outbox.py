"""
Notifications raised inside a unit of work are parked on the session and only
dispatched after the commit that made them true; a rollback discards them.

Contract document renders follow the same rule: the contract id is parked here
and the document is generated only once the fully-signed edge is committed.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List

from sqlalchemy.orm import Session

_OUTBOX_KEY = "rental_core.outbox"
_RENDER_KEY = "rental_core.outbox.renders"


@dataclass(frozen=True)
class PendingNotification:
    user_id: str
    template_code: str
    payload: Dict[str, Any] = field(default_factory=dict)


def enqueue(db: Session, user_id: str, template_code: str, payload: Dict[str, Any]) -> None:
    db.info.setdefault(_OUTBOX_KEY, []).append(PendingNotification(user_id, template_code, payload))


def drain(db: Session) -> List[PendingNotification]:
    return db.info.pop(_OUTBOX_KEY, [])


def request_render(db: Session, contract_id: uuid.UUID) -> None:
    pending = db.info.setdefault(_RENDER_KEY, [])
    if contract_id not in pending:
        pending.append(contract_id)


def drain_renders(db: Session) -> List[uuid.UUID]:
    return db.info.pop(_RENDER_KEY, [])


def discard(db: Session) -> None:
    db.info.pop(_OUTBOX_KEY, None)
    db.info.pop(_RENDER_KEY, None)
