# rental_core/api/v1/webhooks.py
from __future__ import annotations

import hmac

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from rental_core.api.v1.responses import parse_uuid, respond
from rental_core.core.config import get_settings
from rental_core.core.deps import get_coordinator
from rental_core.db.session import get_db
from rental_core.integrations.payments import GatewayStatus
from rental_core.schemas.escrow import PaymentWebhookPayload
from rental_core.schemas.outcomes import OperationResultResponse
from rental_core.services.contract_coordinator import ContractCoordinator

router = APIRouter(prefix="/webhooks")


async def require_webhook_secret(request: Request) -> None:
    supplied = request.headers.get("X-Webhook-Secret") or ""
    expected = get_settings().payment_webhook_secret
    if not hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Invalid webhook secret.")


@router.post("/payments", response_model=OperationResultResponse, dependencies=[Depends(require_webhook_secret)])
def payment_webhook(
    body: PaymentWebhookPayload,
    db: Session = Depends(get_db),
    coordinator: ContractCoordinator = Depends(get_coordinator),
):
    eid = parse_uuid(body.entryId, "entryId")
    result = coordinator.reconcile_payment(
        db,
        eid,
        operation=body.operation,
        final_status=GatewayStatus(body.status),
        gateway_ref=body.gatewayRef,
        message=body.message,
    )
    return respond(result)
