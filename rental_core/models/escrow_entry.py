#rental_core/models/escrow_entry.py
from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from rental_core.db.base import Base
from rental_core.db.types import UTCDateTime
from rental_core.models.enums import EscrowEntryKind, EscrowStatus


class EscrowEntry(Base):
    """
    Custody record for one payment obligation under a contract.

    PENDING → AUTHORIZED → CAPTURED → HELD → RELEASED | REFUNDED
    FROZEN is entered from CAPTURED/HELD by a dispute and left through dispute resolution only;
    `frozen_from_status` remembers where to return on withdrawal.
    Terminal rows are kept (archived), never deleted.
    """

    __tablename__ = "escrow_entries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    contract_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("contracts.id", ondelete="RESTRICT"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default=EscrowEntryKind.INSTALLMENT.value)
    split_from_entry_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("escrow_entries.id", ondelete="RESTRICT"), nullable=True
    )

    payer_id: Mapped[str] = mapped_column(String(128), nullable=False)
    beneficiary_id: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=EscrowStatus.PENDING.value)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    frozen_from_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    frozen_by_dispute_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    # gateway bookkeeping
    gateway_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_idempotency_key: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    gateway_ref: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    needs_attention: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # custody timeline
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    authorized_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    captured_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    held_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    auto_release_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    beneficiary_confirmed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # settlement
    released_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    released_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    refunded_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    refund_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payout_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    payout_idempotency_key: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        UniqueConstraint("contract_id", "due_date", "kind", name="uq_escrow_contract_due_kind"),
        CheckConstraint("amount > 0", name="ck_escrow_amount_positive"),
        Index("ix_escrow_status", "status"),
        Index("ix_escrow_contract", "contract_id"),
        Index("ix_escrow_auto_release", "status", "auto_release_at"),
    )
