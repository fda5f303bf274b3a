from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from rental_core.models.enums import SignerRole
from rental_core.schemas.escrow import EscrowEntryView


class ContractCreateRequest(BaseModel):
    listingId: str = Field(..., min_length=1, max_length=64)
    landlordId: str = Field(..., min_length=1, max_length=128)
    tenantId: str = Field(..., min_length=1, max_length=128)
    landlordPhone: str = Field(..., min_length=6, max_length=32)
    tenantPhone: str = Field(..., min_length=6, max_length=32)
    monthlyAmount: Decimal = Field(..., gt=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    startDate: date
    endDate: date
    customFields: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_dates(self):
        if self.endDate <= self.startDate:
            raise ValueError("endDate must be after startDate.")
        return self


class SignatureRequest(BaseModel):
    role: SignerRole


class SignatureConfirmRequest(BaseModel):
    role: SignerRole
    challengeId: str
    code: str = Field(..., min_length=4, max_length=12)


class ReasonRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class DocumentIntegrityRequest(BaseModel):
    sha256: str = Field(..., min_length=64, max_length=64)


class SignatureChallengeView(BaseModel):
    challengeId: str
    role: str
    expiresAtIso: str


class SignatureView(BaseModel):
    role: str
    signerId: str
    otpVerifiedAtIso: str
    signedAtIso: str
    contentHash: str
    signatureHash: str


class ContractView(BaseModel):
    contractId: str
    reference: str
    listingId: str
    landlordId: str
    tenantId: str
    monthlyAmount: str
    currency: str
    startDate: str
    endDate: str
    customFields: Dict[str, Any]
    contentHash: str

    status: str
    version: int
    signatureCount: int
    signatures: List[SignatureView] = Field(default_factory=list)
    waitingOn: List[str] = Field(default_factory=list)

    documentStatus: str
    documentRef: Optional[str] = None
    documentSha256: Optional[str] = None

    createdAtIso: str
    fullySignedAtIso: Optional[str] = None
    retractionExpiresAtIso: Optional[str] = None
    activatedAtIso: Optional[str] = None
    terminatedAtIso: Optional[str] = None
    cancelledAtIso: Optional[str] = None
    closingReason: Optional[str] = None
    nextDueDate: Optional[str] = None

    escrowEntries: List[EscrowEntryView] = Field(default_factory=list)


class HistoryEntryView(BaseModel):
    seq: int
    fromStatus: Optional[str] = None
    toStatus: str
    event: str
    actorId: Optional[str] = None
    atIso: str
    entryHash: str


class AuditTrailView(BaseModel):
    entityType: str
    entityId: str
    chainValid: bool
    entries: List[HistoryEntryView]
