#rental_core/services/history_service.py
from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from rental_core.core.hashing import GENESIS_HASH, canonical_dumps, hash_chain
from rental_core.models.status_history import StatusHistoryEntry


class HistoryService:
    """
    Append-only status history, hash-chained per entity.
    This is the audit trail for contracts, escrow entries and disputes.
    """

    # ─────────────────────────────────────────────
    # INTERNAL HELPERS
    # ─────────────────────────────────────────────

    def _get_last_entry(
        self,
        db: Session,
        *,
        entity_type: str,
        entity_id: uuid.UUID,
    ) -> Optional[StatusHistoryEntry]:
        return db.execute(
            select(StatusHistoryEntry)
            .where(
                StatusHistoryEntry.entity_type == entity_type,
                StatusHistoryEntry.entity_id == entity_id,
            )
            .order_by(StatusHistoryEntry.seq.desc())
            .limit(1)
        ).scalar_one_or_none()

    # ─────────────────────────────────────────────
    # PUBLIC API
    # ─────────────────────────────────────────────

    def append(
        self,
        db: Session,
        *,
        entity_type: str,
        entity_id: uuid.UUID,
        seq: int,
        from_status: Optional[str],
        to_status: str,
        event: str,
        actor_id: Optional[str],
        at: datetime,
        details: Optional[Dict[str, Any]] = None,
    ) -> StatusHistoryEntry:
        """
        Append one immutable history row. Does not commit: it belongs to the
        caller's unit of work, next to the write it describes.
        """
        last = self._get_last_entry(db, entity_type=entity_type, entity_id=entity_id)
        prev_hash = last.entry_hash if last else GENESIS_HASH

        payload = {
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "seq": seq,
            "from": from_status,
            "to": to_status,
            "event": event,
            "actor": actor_id,
            "at": at.isoformat(),
            # normalised through JSON so the stored payload re-hashes identically
            "details": json.loads(canonical_dumps(details or {})),
        }

        row = StatusHistoryEntry(
            entity_type=entity_type,
            entity_id=entity_id,
            seq=seq,
            from_status=from_status,
            to_status=to_status,
            event=event,
            actor_id=actor_id,
            prev_hash=prev_hash,
            entry_hash=hash_chain(prev_hash, payload),
            payload_json=payload,
            created_at=at,
        )
        db.add(row)
        db.flush()
        return row

    # ─────────────────────────────────────────────
    # READ-ONLY HELPERS (AUDIT)
    # ─────────────────────────────────────────────

    def list_entries(
        self,
        db: Session,
        *,
        entity_type: str,
        entity_id: uuid.UUID,
    ) -> List[StatusHistoryEntry]:
        return (
            db.execute(
                select(StatusHistoryEntry)
                .where(
                    StatusHistoryEntry.entity_type == entity_type,
                    StatusHistoryEntry.entity_id == entity_id,
                )
                .order_by(StatusHistoryEntry.seq.asc())
            )
            .scalars()
            .all()
        )

    def verify_chain(
        self,
        db: Session,
        *,
        entity_type: str,
        entity_id: uuid.UUID,
    ) -> bool:
        """
        Verifies the entity's hash chain and that seq is gap-free.
        """
        prev_hash = GENESIS_HASH
        expected_seq = 1
        for e in self.list_entries(db, entity_type=entity_type, entity_id=entity_id):
            if e.seq != expected_seq or e.prev_hash != prev_hash:
                return False
            if e.entry_hash != hash_chain(prev_hash, e.payload_json):
                return False
            prev_hash = e.entry_hash
            expected_seq += 1
        return True
