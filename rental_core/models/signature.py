#rental_core/models/signature.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import ForeignKey, Index, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from rental_core.db.base import Base
from rental_core.db.types import UTCDateTime


class Signature(Base):
    """
    One party's assent to a contract. Immutable: never updated, never deleted.
    """

    __tablename__ = "signatures"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    contract_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("contracts.id", ondelete="RESTRICT"), nullable=False
    )
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    signer_id: Mapped[str] = mapped_column(String(128), nullable=False)

    otp_challenge_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("otp_challenges.id", ondelete="RESTRICT"), nullable=False
    )
    otp_verified_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    signed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    signature_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    __table_args__ = (
        UniqueConstraint("contract_id", "role", name="uq_signatures_contract_role"),
        Index("ix_signatures_contract", "contract_id"),
    )
