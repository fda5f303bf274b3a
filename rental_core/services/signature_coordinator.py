#rental_core/services/signature_coordinator.py
from __future__ import annotations

import logging
import uuid
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from rental_core.core.clock import Clock
from rental_core.core.errors import (
    AlreadySigned,
    CodeExpired,
    ContractNotSignable,
    InvalidCode,
    NotAParty,
    TooManyAttempts,
)
from rental_core.core.hashing import canonical_dumps, sha256_hex
from rental_core.models.contract import Contract
from rental_core.models.enums import SIGNABLE_CONTRACT_STATUSES, OtpPurpose, OtpResult, SignerRole
from rental_core.models.otp_challenge import OtpChallenge
from rental_core.models.signature import Signature
from rental_core.services.otp_verifier import OtpVerifier

logger = logging.getLogger(__name__)


def party_for_role(contract: Contract, role: SignerRole) -> str:
    return contract.landlord_id if role == SignerRole.LANDLORD else contract.tenant_id


def phone_for_role(contract: Contract, role: SignerRole) -> str:
    return contract.landlord_phone if role == SignerRole.LANDLORD else contract.tenant_phone


class SignatureCoordinator:
    """
    Sole writer of Signature rows.

    A signature is only recorded in the same unit of work as a successful OTP verification.
    Reading the effective count and advancing Contract status is left to the caller
    (ContractCoordinator owns Contract.status).
    """

    def __init__(self, otp_verifier: OtpVerifier, clock: Clock):
        self.otp = otp_verifier
        self.clock = clock

    # ─────────────────────────────────────────────
    # READS
    # ─────────────────────────────────────────────

    def get_signature(self, db: Session, contract_id: uuid.UUID, role: SignerRole) -> Optional[Signature]:
        return db.execute(
            select(Signature).where(Signature.contract_id == contract_id, Signature.role == role.value)
        ).scalar_one_or_none()

    def list_signatures(self, db: Session, contract_id: uuid.UUID) -> List[Signature]:
        return (
            db.execute(select(Signature).where(Signature.contract_id == contract_id).order_by(Signature.signed_at.asc()))
            .scalars()
            .all()
        )

    def count_signatures(self, db: Session, contract_id: uuid.UUID) -> int:
        return int(
            db.execute(select(func.count(Signature.id)).where(Signature.contract_id == contract_id)).scalar_one()
        )

    # ─────────────────────────────────────────────
    # GUARDS
    # ─────────────────────────────────────────────

    def _ensure_can_sign(self, db: Session, contract: Contract, role: SignerRole, signer_id: str) -> None:
        if self.get_signature(db, contract.id, role):
            raise AlreadySigned(
                f"The {role.value.lower()} has already signed contract {contract.reference}.",
            )
        if contract.status not in SIGNABLE_CONTRACT_STATUSES:
            raise ContractNotSignable(
                f"Contract {contract.reference} is {contract.status} and cannot be signed.",
                blocking="contract is not awaiting signatures",
            )
        if party_for_role(contract, role) != signer_id:
            raise NotAParty(f"User is not the {role.value.lower()} of contract {contract.reference}.")

    # ─────────────────────────────────────────────
    # PUBLIC API
    # ─────────────────────────────────────────────

    def request_signature(self, db: Session, *, contract: Contract, role: SignerRole, signer_id: str) -> OtpChallenge:
        self._ensure_can_sign(db, contract, role, signer_id)
        challenge = self.otp.issue(
            db,
            subject=signer_id,
            purpose=OtpPurpose.CONTRACT_SIGN.value,
            phone=phone_for_role(contract, role),
            scope_ref=str(contract.id),
        )
        logger.info(
            "signature requested",
            extra={"contract_id": str(contract.id), "role": role.value, "challenge_id": str(challenge.id)},
        )
        return challenge

    def confirm_signature(
        self,
        db: Session,
        *,
        contract: Contract,
        role: SignerRole,
        signer_id: str,
        challenge_id: uuid.UUID,
        code: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Signature:
        # checked before the code is touched, so a replay never burns a fresh challenge
        self._ensure_can_sign(db, contract, role, signer_id)

        challenge = self.otp.get(db, challenge_id)
        if (
            challenge is None
            or challenge.subject != signer_id
            or challenge.purpose != OtpPurpose.CONTRACT_SIGN.value
            or challenge.scope_ref != str(contract.id)
        ):
            raise InvalidCode("Invalid verification code.")

        verification = self.otp.verify(db, challenge_id=challenge_id, code=code)
        if verification.result == OtpResult.EXPIRED:
            raise CodeExpired("The verification code has expired. Request a new one.")
        if verification.result == OtpResult.TOO_MANY_ATTEMPTS:
            raise TooManyAttempts("Too many invalid attempts. Request a new code.")
        if not verification.ok:
            raise InvalidCode("Invalid verification code.")

        signed_at = self.clock.now()
        if signed_at < verification.verified_at:
            signed_at = verification.verified_at

        signature_hash = sha256_hex(
            canonical_dumps(
                {
                    "contract_id": str(contract.id),
                    "reference": contract.reference,
                    "role": role.value,
                    "signer_id": signer_id,
                    "signed_at": signed_at.isoformat(),
                    "ip": ip_address,
                    "content_hash": contract.content_hash,
                }
            )
        )

        signature = Signature(
            id=uuid.uuid4(),
            contract_id=contract.id,
            role=role.value,
            signer_id=signer_id,
            otp_challenge_id=challenge.id,
            otp_verified_at=verification.verified_at,
            signed_at=signed_at,
            content_hash=contract.content_hash,
            signature_hash=signature_hash,
            ip_address=ip_address,
            user_agent=(user_agent or None) and user_agent[:256],
        )
        db.add(signature)
        db.flush()

        logger.info(
            "signature recorded",
            extra={"contract_id": str(contract.id), "role": role.value, "signature_id": str(signature.id)},
        )
        return signature
