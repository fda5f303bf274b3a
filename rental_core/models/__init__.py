from rental_core.models.contract import Contract
from rental_core.models.signature import Signature
from rental_core.models.otp_challenge import OtpChallenge
from rental_core.models.escrow_entry import EscrowEntry
from rental_core.models.dispute import Dispute
from rental_core.models.status_history import StatusHistoryEntry
from rental_core.models.compensation_log import CompensationLogEntry
from rental_core.models.idempotency_key import IdempotencyKeyRecord

__all__ = [
    "Contract",
    "Signature",
    "OtpChallenge",
    "EscrowEntry",
    "Dispute",
    "StatusHistoryEntry",
    "CompensationLogEntry",
    "IdempotencyKeyRecord",
]
