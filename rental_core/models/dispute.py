#rental_core/models/dispute.py
from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy import ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from rental_core.db.base import Base
from rental_core.db.types import JSONType, UTCDateTime
from rental_core.models.enums import DisputeStatus


class Dispute(Base):
    """
    Claim against a contract, optionally against one escrow entry.

    `active_entry_lock` equals escrow_entry_id while the dispute is OPEN/MEDIATOR_ASSIGNED
    and NULL once terminal; the UNIQUE constraint on it is what rejects a second open
    dispute for the same entry across service instances.
    """

    __tablename__ = "disputes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    reference: Mapped[str] = mapped_column(String(32), nullable=False)

    contract_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("contracts.id", ondelete="RESTRICT"), nullable=False
    )
    escrow_entry_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("escrow_entries.id", ondelete="RESTRICT"), nullable=True
    )
    active_entry_lock: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    claimant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    respondent_id: Mapped[str] = mapped_column(String(128), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    motif: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    evidence_json: Mapped[List[Any]] = mapped_column(JSONType, nullable=False, default=list)

    mediator_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    status: Mapped[str] = mapped_column(String(24), nullable=False, default=DisputeStatus.OPEN.value)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    outcome: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    split_release_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)

    opened_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    withdrawn_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    sla_flagged_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("reference", name="uq_disputes_reference"),
        UniqueConstraint("active_entry_lock", name="uq_disputes_active_entry"),
        Index("ix_disputes_contract", "contract_id"),
        Index("ix_disputes_entry", "escrow_entry_id"),
        Index("ix_disputes_status", "status"),
        Index("ix_disputes_mediator", "mediator_id"),
    )
