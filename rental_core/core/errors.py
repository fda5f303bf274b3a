"""
Error taxonomy shared by every component.

All errors derive from ValueError so existing `except ValueError` call sites keep working.
`kind` drives translation into caller-facing outcomes; `blocking` names which party/action
holds progress up (e.g. "waiting on landlord signature").
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION"
    CONFLICT = "CONFLICT"
    TRANSIENT = "TRANSIENT"
    TERMINAL = "TERMINAL"
    INVARIANT = "INVARIANT"


class DomainError(ValueError):
    kind: ErrorKind = ErrorKind.VALIDATION
    code: str = "VALIDATION_ERROR"
    # when True the unit of work is committed before the error is reported
    keeps_state: bool = False

    def __init__(self, message: str, *, blocking: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.blocking = blocking


# ─────────── VALIDATION ───────────

class ValidationFailed(DomainError):
    code = "VALIDATION_ERROR"


class NotFound(DomainError):
    code = "NOT_FOUND"


class NotAParty(DomainError):
    code = "NOT_A_PARTY"


class InvalidCode(DomainError):
    code = "INVALID_CODE"
    keeps_state = True


class CodeExpired(DomainError):
    code = "CODE_EXPIRED"
    keeps_state = True


class TooManyAttempts(DomainError):
    code = "TOO_MANY_ATTEMPTS"
    keeps_state = True


# ─────────── CONFLICT ───────────

class ConflictError(DomainError):
    kind = ErrorKind.CONFLICT
    code = "CONFLICT"


class ConcurrentModification(ConflictError):
    code = "CONCURRENT_MODIFICATION"


class IdempotencyKeyReused(ConflictError):
    code = "IDEMPOTENCY_KEY_REUSED"


class InvalidTransition(ConflictError):
    code = "INVALID_TRANSITION"


class AlreadySigned(ConflictError):
    code = "ALREADY_SIGNED"


class ContractNotSignable(ConflictError):
    code = "CONTRACT_NOT_SIGNABLE"


class DuplicateOpenDispute(ConflictError):
    code = "DUPLICATE_OPEN_DISPUTE"


class DisputePending(ConflictError):
    code = "DISPUTE_PENDING"


class NotHeld(ConflictError):
    code = "NOT_HELD"


class NotRefundable(ConflictError):
    code = "NOT_REFUNDABLE"


class NotFreezable(ConflictError):
    code = "NOT_FREEZABLE"


class NotAssigned(ConflictError):
    code = "NOT_ASSIGNED"


class AlreadyResolved(ConflictError):
    code = "ALREADY_RESOLVED"


class EscrowSettled(ConflictError):
    code = "ESCROW_SETTLED"


class ReleaseNotDue(ConflictError):
    code = "RELEASE_NOT_DUE"


class RetractionWindowOpen(ConflictError):
    code = "RETRACTION_WINDOW_OPEN"


class RetractionWindowClosed(ConflictError):
    code = "RETRACTION_WINDOW_CLOSED"


# ─────────── EXTERNAL ───────────

class TransientExternalError(DomainError):
    kind = ErrorKind.TRANSIENT
    code = "TRANSIENT_EXTERNAL"
    keeps_state = True


class GatewayTimeout(TransientExternalError):
    code = "GATEWAY_TIMEOUT"


class OtpDeliveryFailed(TransientExternalError):
    code = "OTP_DELIVERY_FAILED"


class PaymentUnreconciled(TransientExternalError):
    code = "PAYMENT_UNRECONCILED"
    # nothing to keep: the caller retries once the gateway webhook has landed
    keeps_state = False


class GatewayDeclined(DomainError):
    kind = ErrorKind.TERMINAL
    code = "GATEWAY_DECLINED"
    keeps_state = True


# ─────────── INVARIANT ───────────

class InvariantBreach(DomainError):
    kind = ErrorKind.INVARIANT
    code = "INVARIANT_BREACH"
