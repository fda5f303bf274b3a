#rental_core/models/enums.py
from __future__ import annotations
from enum import Enum


class PrincipalRole(str, Enum):
    USER = "USER"
    MEDIATOR = "MEDIATOR"
    ADMIN = "ADMIN"


class SignerRole(str, Enum):
    LANDLORD = "LANDLORD"
    TENANT = "TENANT"


class ContractStatus(str, Enum):
    DRAFT = "DRAFT"
    AWAITING_SIGNATURES = "AWAITING_SIGNATURES"
    PARTIALLY_SIGNED = "PARTIALLY_SIGNED"
    FULLY_SIGNED = "FULLY_SIGNED"
    ACTIVE = "ACTIVE"
    TERMINATED = "TERMINATED"
    CANCELLED = "CANCELLED"


SIGNABLE_CONTRACT_STATUSES = {ContractStatus.AWAITING_SIGNATURES.value, ContractStatus.PARTIALLY_SIGNED.value}
BINDING_CONTRACT_STATUSES = {
    ContractStatus.FULLY_SIGNED.value,
    ContractStatus.ACTIVE.value,
    ContractStatus.TERMINATED.value,
}


class EscrowStatus(str, Enum):
    PENDING = "PENDING"
    AUTHORIZED = "AUTHORIZED"
    CAPTURED = "CAPTURED"
    HELD = "HELD"
    FROZEN = "FROZEN"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"


TERMINAL_ESCROW_STATUSES = {EscrowStatus.RELEASED.value, EscrowStatus.REFUNDED.value}
CUSTODY_ESCROW_STATUSES = {EscrowStatus.CAPTURED.value, EscrowStatus.HELD.value}


class EscrowEntryKind(str, Enum):
    INSTALLMENT = "INSTALLMENT"
    SPLIT_REFUND = "SPLIT_REFUND"


class PayoutStatus(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    NOT_REQUIRED = "NOT_REQUIRED"


class DisputeStatus(str, Enum):
    OPEN = "OPEN"
    MEDIATOR_ASSIGNED = "MEDIATOR_ASSIGNED"
    RESOLVED = "RESOLVED"
    WITHDRAWN = "WITHDRAWN"


ACTIVE_DISPUTE_STATUSES = {DisputeStatus.OPEN.value, DisputeStatus.MEDIATOR_ASSIGNED.value}


class DisputeOutcome(str, Enum):
    RELEASE_TO_BENEFICIARY = "RELEASE_TO_BENEFICIARY"
    REFUND_TO_PAYER = "REFUND_TO_PAYER"
    SPLIT = "SPLIT"


class OtpResult(str, Enum):
    OK = "OK"
    INVALID = "INVALID"
    EXPIRED = "EXPIRED"
    TOO_MANY_ATTEMPTS = "TOO_MANY_ATTEMPTS"


class OtpPurpose(str, Enum):
    CONTRACT_SIGN = "contract-sign"


class DocumentStatus(str, Enum):
    NOT_REQUESTED = "NOT_REQUESTED"
    REQUESTED = "REQUESTED"
    RENDERED = "RENDERED"
    FAILED = "FAILED"


class CompensationStatus(str, Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"


class CompensationAction(str, Enum):
    RETRY_PAYOUT = "RETRY_PAYOUT"
    INVARIANT_BREACH = "INVARIANT_BREACH"
    CAPTURE_UNCONFIRMED = "CAPTURE_UNCONFIRMED"
    LATE_CAPTURE_REFUND = "LATE_CAPTURE_REFUND"
