#rental_core/services/otp_verifier.py
from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from rental_core.core.clock import Clock
from rental_core.core.config import Settings
from rental_core.core.errors import OtpDeliveryFailed, TooManyAttempts
from rental_core.core.retry import RetryExhausted, RetryPolicy
from rental_core.core.security import hash_otp_code, verify_otp_code
from rental_core.integrations.otp_transport import OtpDeliveryError, OtpSender
from rental_core.models.enums import OtpResult
from rental_core.models.otp_challenge import OtpChallenge

logger = logging.getLogger(__name__)

SUPERSEDED = "SUPERSEDED"
UNDELIVERED = "UNDELIVERED"


@dataclass(frozen=True)
class OtpVerification:
    result: OtpResult
    challenge: Optional[OtpChallenge]
    verified_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.result == OtpResult.OK


class OtpVerifier:
    """
    Issues and validates single-use, short-lived codes bound to (subject, purpose, scope, phone).
    Knows nothing about contracts or payments.

    Rules:
    - at most `otp_issue_limit` codes per (subject, purpose) per rolling window
    - a new code supersedes older unconsumed codes for the same (subject, purpose, scope)
    - a code is consumed exactly once: on success, on expiry, or when attempts run out
    """

    def __init__(
        self,
        settings: Settings,
        clock: Clock,
        sender: OtpSender,
        retry_policy: RetryPolicy,
        sleep: Callable[[float], None],
    ):
        self.settings = settings
        self.clock = clock
        self.sender = sender
        self.retry_policy = retry_policy
        self.sleep = sleep

    # ─────────────────────────────────────────────
    # INTERNAL HELPERS
    # ─────────────────────────────────────────────

    def _generate_code(self) -> str:
        length = self.settings.otp_code_length
        return str(secrets.randbelow(10 ** length)).zfill(length)

    def _issued_in_window(self, db: Session, subject: str, purpose: str, now: datetime) -> int:
        since = now - timedelta(seconds=self.settings.otp_issue_window_seconds)
        return int(
            db.execute(
                select(func.count(OtpChallenge.id)).where(
                    OtpChallenge.subject == subject,
                    OtpChallenge.purpose == purpose,
                    OtpChallenge.created_at >= since,
                )
            ).scalar_one()
        )

    def _consume(
        self,
        db: Session,
        challenge: OtpChallenge,
        *,
        result: str,
        now: datetime,
        attempts: Optional[int] = None,
        verified: bool = False,
    ) -> bool:
        values = {"consumed_at": now, "consumed_result": result}
        if attempts is not None:
            values["attempts"] = attempts
        if verified:
            values["verified_at"] = now
        res = db.execute(
            update(OtpChallenge)
            .where(
                OtpChallenge.id == challenge.id,
                OtpChallenge.consumed_at.is_(None),
                OtpChallenge.attempts == challenge.attempts,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.refresh(challenge)
        return res.rowcount == 1

    # ─────────────────────────────────────────────
    # PUBLIC API
    # ─────────────────────────────────────────────

    def issue(self, db: Session, *, subject: str, purpose: str, phone: str, scope_ref: str) -> OtpChallenge:
        now = self.clock.now()

        if self._issued_in_window(db, subject, purpose, now) >= self.settings.otp_issue_limit:
            logger.warning("otp issue rate limit hit", extra={"subject": subject, "purpose": purpose})
            raise TooManyAttempts(
                "Too many codes requested. Please retry later.",
                blocking=f"code requests for {subject} are rate limited",
            )

        code = self._generate_code()
        challenge = OtpChallenge(
            id=uuid.uuid4(),
            subject=subject,
            purpose=purpose,
            scope_ref=scope_ref,
            phone=phone,
            code_hash=hash_otp_code(code),
            attempts=0,
            max_attempts=self.settings.otp_max_attempts,
            created_at=now,
            expires_at=now + timedelta(seconds=self.settings.otp_ttl_seconds),
        )
        db.add(challenge)
        db.flush()

        try:
            self.retry_policy.run(
                lambda: self.sender.send(phone, code, purpose),
                retry_on=(OtpDeliveryError,),
                sleep=self.sleep,
                label="otp send",
            )
        except RetryExhausted as exc:
            self._consume(db, challenge, result=UNDELIVERED, now=now)
            raise OtpDeliveryFailed(
                "The verification code could not be delivered. Please request a new one.",
                blocking="code delivery provider unavailable",
            ) from exc

        # older codes stay usable until the new one has actually been sent
        db.execute(
            update(OtpChallenge)
            .where(
                OtpChallenge.subject == subject,
                OtpChallenge.purpose == purpose,
                OtpChallenge.scope_ref == scope_ref,
                OtpChallenge.id != challenge.id,
                OtpChallenge.consumed_at.is_(None),
            )
            .values(consumed_at=now, consumed_result=SUPERSEDED)
            .execution_options(synchronize_session=False)
        )

        logger.info("otp issued", extra={"challenge_id": str(challenge.id), "subject": subject, "purpose": purpose})
        return challenge

    def get(self, db: Session, challenge_id: uuid.UUID) -> Optional[OtpChallenge]:
        return db.execute(select(OtpChallenge).where(OtpChallenge.id == challenge_id)).scalar_one_or_none()

    def verify(self, db: Session, *, challenge_id: uuid.UUID, code: str) -> OtpVerification:
        challenge = self.get(db, challenge_id)
        if not challenge:
            return OtpVerification(OtpResult.INVALID, None)

        if challenge.consumed_at is not None:
            if challenge.consumed_result == OtpResult.EXPIRED.value:
                return OtpVerification(OtpResult.EXPIRED, challenge)
            if challenge.consumed_result == OtpResult.TOO_MANY_ATTEMPTS.value:
                return OtpVerification(OtpResult.TOO_MANY_ATTEMPTS, challenge)
            return OtpVerification(OtpResult.INVALID, challenge)

        now = self.clock.now()
        if now >= challenge.expires_at:
            self._consume(db, challenge, result=OtpResult.EXPIRED.value, now=now)
            return OtpVerification(OtpResult.EXPIRED, challenge)

        if not verify_otp_code(code, challenge.code_hash):
            attempts = challenge.attempts + 1
            if attempts >= challenge.max_attempts:
                self._consume(db, challenge, result=OtpResult.TOO_MANY_ATTEMPTS.value, now=now, attempts=attempts)
                logger.warning("otp locked after failed attempts", extra={"challenge_id": str(challenge.id), "attempts": attempts})
                return OtpVerification(OtpResult.TOO_MANY_ATTEMPTS, challenge)

            res = db.execute(
                update(OtpChallenge)
                .where(
                    OtpChallenge.id == challenge.id,
                    OtpChallenge.consumed_at.is_(None),
                    OtpChallenge.attempts == challenge.attempts,
                )
                .values(attempts=attempts)
                .execution_options(synchronize_session=False)
            )
            db.refresh(challenge)
            if res.rowcount != 1:
                logger.info("otp attempt lost a race", extra={"challenge_id": str(challenge.id)})
            return OtpVerification(OtpResult.INVALID, challenge)

        if not self._consume(db, challenge, result=OtpResult.OK.value, now=now, verified=True):
            # a concurrent verification consumed it first
            return OtpVerification(OtpResult.INVALID, challenge)

        return OtpVerification(OtpResult.OK, challenge, verified_at=now)
