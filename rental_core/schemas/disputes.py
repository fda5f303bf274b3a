from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from rental_core.models.enums import DisputeOutcome


class DisputeOpenRequest(BaseModel):
    contractId: str
    escrowEntryId: Optional[str] = None
    category: str = Field(..., min_length=1, max_length=100)
    motif: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=1, max_length=5000)
    evidence: List[Dict[str, Any]] = Field(default_factory=list)


class MediatorAssignRequest(BaseModel):
    mediatorId: str = Field(..., min_length=1, max_length=128)


class DisputeResolveRequest(BaseModel):
    outcome: DisputeOutcome
    notes: str = Field(..., min_length=1, max_length=5000)
    releaseAmount: Optional[Decimal] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _split_needs_amount(self):
        if self.outcome != DisputeOutcome.SPLIT and self.releaseAmount is not None:
            raise ValueError("releaseAmount is only allowed for SPLIT outcomes.")
        return self


class DisputeWithdrawRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2000)


class DisputeView(BaseModel):
    disputeId: str
    reference: str
    contractId: str
    escrowEntryId: Optional[str] = None
    claimantId: str
    respondentId: str
    category: str
    motif: str
    description: str
    evidence: List[Dict[str, Any]]
    mediatorId: Optional[str] = None
    status: str
    version: int
    outcome: Optional[str] = None
    resolutionNotes: Optional[str] = None
    splitReleaseAmount: Optional[str] = None
    openedAtIso: str
    assignedAtIso: Optional[str] = None
    resolvedAtIso: Optional[str] = None
    withdrawnAtIso: Optional[str] = None
    slaFlagged: bool = False
