#rental_core/models/contract.py
from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from rental_core.db.base import Base
from rental_core.db.types import JSONType, UTCDateTime
from rental_core.models.enums import ContractStatus, DocumentStatus


class Contract(Base):
    """
    One rental agreement instance.

    `status` has a single writer (ContractCoordinator); every write is a versioned
    compare-and-set mirrored by one status_history row.
    `signature_count` is the number of legally effective signatures (reset to 0 on withdrawal,
    signature rows themselves are never deleted).
    """

    __tablename__ = "contracts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    reference: Mapped[str] = mapped_column(String(32), nullable=False)

    listing_id: Mapped[str] = mapped_column(String(64), nullable=False)
    landlord_id: Mapped[str] = mapped_column(String(128), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    landlord_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    tenant_phone: Mapped[str] = mapped_column(String(32), nullable=False)

    monthly_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    custom_fields_json: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    # hash of canonical terms at creation; what each party signs
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    status: Mapped[str] = mapped_column(
        String(24), nullable=False, server_default=text(f"'{ContractStatus.DRAFT.value}'")
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    signature_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # rendering
    document_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=DocumentStatus.NOT_REQUESTED.value
    )
    document_ref: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    document_sha256: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # lifecycle timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    sent_for_signature_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    fully_signed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    retraction_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    retraction_reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    activated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    terminated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    closing_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # escrow schedule
    next_due_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    escrow_schedule_stopped: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("reference", name="uq_contracts_reference"),
        CheckConstraint("signature_count >= 0 AND signature_count <= 2", name="ck_contracts_signature_count"),
        CheckConstraint("monthly_amount > 0", name="ck_contracts_amount_positive"),
        Index("ix_contracts_status", "status"),
        Index("ix_contracts_landlord", "landlord_id"),
        Index("ix_contracts_tenant", "tenant_id"),
    )
