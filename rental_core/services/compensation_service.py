from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from rental_core.models.compensation_log import CompensationLogEntry
from rental_core.models.enums import CompensationStatus

logger = logging.getLogger(__name__)


class CompensationService:
    """
    Reconciliation work items. Recording is idempotent per dedupe_key.
    """

    def record(
        self,
        db: Session,
        *,
        entity_type: str,
        entity_id: uuid.UUID,
        action: str,
        dedupe_key: str,
        at: datetime,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> CompensationLogEntry:
        existing = db.execute(
            select(CompensationLogEntry).where(CompensationLogEntry.dedupe_key == dedupe_key)
        ).scalar_one_or_none()
        if existing:
            return existing

        row = CompensationLogEntry(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            dedupe_key=dedupe_key,
            status=CompensationStatus.OPEN.value,
            attempts=0,
            last_error=error,
            details_json=details or {},
            created_at=at,
        )
        db.add(row)
        db.flush()
        logger.warning(
            "compensation item recorded",
            extra={"action": action, "entity_type": entity_type, "entity_id": str(entity_id), "error": error},
        )
        return row

    def list_open(self, db: Session, *, action: str, limit: int = 100) -> List[CompensationLogEntry]:
        return (
            db.execute(
                select(CompensationLogEntry)
                .where(
                    CompensationLogEntry.status == CompensationStatus.OPEN.value,
                    CompensationLogEntry.action == action,
                )
                .order_by(CompensationLogEntry.created_at.asc())
                .limit(limit)
            )
            .scalars()
            .all()
        )

    def mark_attempt(self, db: Session, item: CompensationLogEntry, *, error: Optional[str]) -> None:
        db.execute(
            update(CompensationLogEntry)
            .where(CompensationLogEntry.id == item.id)
            .values(attempts=CompensationLogEntry.attempts + 1, last_error=error)
            .execution_options(synchronize_session=False)
        )
        db.refresh(item)

    def resolve(self, db: Session, item: CompensationLogEntry, *, at: datetime) -> None:
        db.execute(
            update(CompensationLogEntry)
            .where(
                CompensationLogEntry.id == item.id,
                CompensationLogEntry.status == CompensationStatus.OPEN.value,
            )
            .values(status=CompensationStatus.RESOLVED.value, resolved_at=at)
            .execution_options(synchronize_session=False)
        )
        db.refresh(item)

    def resolve_for_entity(self, db: Session, *, entity_id: uuid.UUID, action: str, at: datetime) -> int:
        result = db.execute(
            update(CompensationLogEntry)
            .where(
                CompensationLogEntry.entity_id == entity_id,
                CompensationLogEntry.action == action,
                CompensationLogEntry.status == CompensationStatus.OPEN.value,
            )
            .values(status=CompensationStatus.RESOLVED.value, resolved_at=at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def has_open(self, db: Session, *, entity_id: uuid.UUID, action: str) -> bool:
        return (
            db.execute(
                select(CompensationLogEntry.id)
                .where(
                    CompensationLogEntry.entity_id == entity_id,
                    CompensationLogEntry.action == action,
                    CompensationLogEntry.status == CompensationStatus.OPEN.value,
                )
                .limit(1)
            ).scalar_one_or_none()
            is not None
        )
