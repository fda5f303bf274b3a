"""
Optimistic, versioned writes for the three mutable aggregates.

Every mutation is one UPDATE guarded by (id, version[, status IN expected]) that bumps
the version; a zero-row result means another instance won the race.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, TypeVar

from sqlalchemy import update
from sqlalchemy.orm import Session

from rental_core.core.errors import ConcurrentModification
from rental_core.services.history_service import HistoryService

logger = logging.getLogger(__name__)

Row = TypeVar("Row")


def record_creation(
    db: Session,
    row: Any,
    *,
    entity_type: str,
    event: str,
    at: datetime,
    actor_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    HistoryService().append(
        db,
        entity_type=entity_type,
        entity_id=row.id,
        seq=row.version,
        from_status=None,
        to_status=row.status,
        event=event,
        actor_id=actor_id,
        at=at,
        details=details,
    )


def compare_and_set(
    db: Session,
    row: Row,
    *,
    entity_type: str,
    event: str,
    values: Dict[str, Any],
    at: datetime,
    expected_statuses: Optional[Iterable[str]] = None,
    actor_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> Row:
    model = type(row)
    from_status = row.status
    new_version = row.version + 1

    stmt = update(model).where(model.id == row.id, model.version == row.version)
    if expected_statuses is not None:
        stmt = stmt.where(model.status.in_(list(expected_statuses)))

    payload = dict(values)
    payload["version"] = new_version
    payload["updated_at"] = at

    result = db.execute(stmt.values(**payload).execution_options(synchronize_session=False))
    if result.rowcount != 1:
        logger.info(
            "compare-and-set lost",
            extra={"entity_type": entity_type, "entity_id": str(row.id), "expected_version": row.version, "event": event},
        )
        raise ConcurrentModification(
            f"{entity_type} {row.id} was modified concurrently; refresh and retry."
        )

    db.refresh(row)

    HistoryService().append(
        db,
        entity_type=entity_type,
        entity_id=row.id,
        seq=new_version,
        from_status=from_status,
        to_status=row.status,
        event=event,
        actor_id=actor_id,
        at=at,
        details=details,
    )
    if from_status != row.status:
        logger.info(
            "status transition",
            extra={"entity_type": entity_type, "entity_id": str(row.id), "from": from_status, "to": row.status, "event": event},
        )
    return row
