from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class GatewayStatus(str, Enum):
    SUCCESS = "SUCCESS"
    DECLINED = "DECLINED"
    PENDING = "PENDING"


class GatewayTimeoutError(Exception):
    """Network-level timeout: the outcome upstream is unknown."""


@dataclass(frozen=True)
class GatewayResult:
    status: GatewayStatus
    gateway_ref: Optional[str] = None
    message: Optional[str] = None


class PaymentGateway(Protocol):
    def authorize(self, idempotency_key: str, entry_ref: str, amount: Decimal) -> GatewayResult: ...

    def capture(self, idempotency_key: str, entry_ref: str, amount: Decimal) -> GatewayResult: ...

    def release(self, idempotency_key: str, entry_ref: str, amount: Decimal) -> GatewayResult: ...

    def refund(self, idempotency_key: str, entry_ref: str, amount: Decimal) -> GatewayResult: ...


class DeferredPaymentGateway:
    """
    Mobile-money style gateway where every call is acknowledged and the final status
    arrives later on the payment webhook (EscrowLedger.reconcile).
    """

    def _ack(self, op: str, idempotency_key: str, entry_ref: str, amount: Decimal) -> GatewayResult:
        ref = f"{op}-{uuid.uuid5(uuid.NAMESPACE_URL, idempotency_key).hex[:16]}"
        logger.info("gateway request acknowledged", extra={"op": op, "entry_ref": entry_ref, "amount": str(amount), "gateway_ref": ref})
        return GatewayResult(status=GatewayStatus.PENDING, gateway_ref=ref)

    def authorize(self, idempotency_key: str, entry_ref: str, amount: Decimal) -> GatewayResult:
        return self._ack("authorize", idempotency_key, entry_ref, amount)

    def capture(self, idempotency_key: str, entry_ref: str, amount: Decimal) -> GatewayResult:
        return self._ack("capture", idempotency_key, entry_ref, amount)

    def release(self, idempotency_key: str, entry_ref: str, amount: Decimal) -> GatewayResult:
        return self._ack("release", idempotency_key, entry_ref, amount)

    def refund(self, idempotency_key: str, entry_ref: str, amount: Decimal) -> GatewayResult:
        return self._ack("refund", idempotency_key, entry_ref, amount)
