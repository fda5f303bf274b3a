#rental_core/models/otp_challenge.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from rental_core.db.base import Base
from rental_core.db.types import UTCDateTime


class OtpChallenge(Base):
    """
    Single-use code bound to (subject, purpose, scope_ref, phone).
    Only the hash of the code is stored. `consumed_at` is set exactly once.
    """

    __tablename__ = "otp_challenges"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    subject: Mapped[str] = mapped_column(String(128), nullable=False)
    purpose: Mapped[str] = mapped_column(String(32), nullable=False)
    scope_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)

    code_hash: Mapped[str] = mapped_column(String(256), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    consumed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    # OK | INVALID | EXPIRED | TOO_MANY_ATTEMPTS | SUPERSEDED | UNDELIVERED
    consumed_result: Mapped[Optional[str]] = mapped_column(String(24), nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("ix_otp_subject_purpose_created", "subject", "purpose", "created_at"),
        Index("ix_otp_scope", "subject", "purpose", "scope_ref"),
    )
