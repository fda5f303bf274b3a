# rental_core/api/v1/escrow.py
from __future__ import annotations

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from rental_core.api.v1.responses import parse_uuid, respond, status_code_for
from rental_core.core.auth_deps import get_current_principal
from rental_core.core.deps import get_coordinator
from rental_core.db.session import get_db
from rental_core.policies.rbac import Principal
from rental_core.schemas.escrow import RefundRequest
from rental_core.schemas.outcomes import OperationResultResponse
from rental_core.services.contract_coordinator import ContractCoordinator

router = APIRouter(prefix="/escrow")


@router.get("/{entryId}", response_model=OperationResultResponse)
def get_entry(
    entryId: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    coordinator: ContractCoordinator = Depends(get_coordinator),
):
    eid = parse_uuid(entryId, "entryId")
    return respond(coordinator.get_escrow_entry(db, eid, actor=principal))


@router.post("/{entryId}/pay", response_model=OperationResultResponse)
def pay_entry(
    entryId: str,
    response: Response,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    coordinator: ContractCoordinator = Depends(get_coordinator),
):
    eid = parse_uuid(entryId, "entryId")
    result = coordinator.pay(db, eid, actor=principal)
    out = respond(result)
    response.status_code = status_code_for(result)
    return out


@router.post("/{entryId}/confirm-receipt", response_model=OperationResultResponse)
def confirm_receipt(
    entryId: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    coordinator: ContractCoordinator = Depends(get_coordinator),
):
    eid = parse_uuid(entryId, "entryId")
    return respond(coordinator.confirm_receipt(db, eid, actor=principal))


@router.post("/{entryId}/release", response_model=OperationResultResponse)
def release_entry(
    entryId: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    coordinator: ContractCoordinator = Depends(get_coordinator),
):
    eid = parse_uuid(entryId, "entryId")
    return respond(coordinator.release(db, eid, actor=principal))


@router.post("/{entryId}/refund", response_model=OperationResultResponse)
def refund_entry(
    entryId: str,
    body: RefundRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    coordinator: ContractCoordinator = Depends(get_coordinator),
):
    eid = parse_uuid(entryId, "entryId")
    return respond(coordinator.refund(db, eid, actor=principal, reason=body.reason))
