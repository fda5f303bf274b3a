from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class EscrowEntryView(BaseModel):
    entryId: str
    contractId: str
    kind: str
    splitFromEntryId: Optional[str] = None
    payerId: str
    beneficiaryId: str
    amount: str
    currency: str
    dueDate: str
    status: str
    version: int

    frozenByDisputeId: Optional[str] = None
    needsAttention: bool = False
    lastError: Optional[str] = None

    capturedAtIso: Optional[str] = None
    autoReleaseAtIso: Optional[str] = None
    beneficiaryConfirmedAtIso: Optional[str] = None
    releasedAtIso: Optional[str] = None
    refundedAtIso: Optional[str] = None
    releasedAmount: Optional[str] = None
    refundedAmount: Optional[str] = None
    payoutStatus: Optional[str] = None


class RefundRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class PaymentWebhookPayload(BaseModel):
    """
    Asynchronous outcome pushed by the payment provider.
    """

    entryId: str
    operation: str = Field(..., pattern="^(authorize|capture|release|refund)$")
    status: str = Field(..., pattern="^(SUCCESS|DECLINED|PENDING)$")
    gatewayRef: Optional[str] = Field(default=None, max_length=128)
    message: Optional[str] = Field(default=None, max_length=500)
