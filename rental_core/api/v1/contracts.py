# rental_core/api/v1/contracts.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session

from rental_core.api.v1.responses import parse_uuid, respond, status_code_for
from rental_core.core.auth_deps import get_current_principal
from rental_core.core.deps import get_coordinator
from rental_core.core.deps_idempotency import IdempotentRequest, idempotency_guard
from rental_core.db.session import get_db
from rental_core.policies.rbac import Principal
from rental_core.schemas.contracts import (
    ContractCreateRequest,
    DocumentIntegrityRequest,
    ReasonRequest,
    SignatureConfirmRequest,
    SignatureRequest,
)
from rental_core.schemas.outcomes import OperationResultResponse
from rental_core.services.contract_coordinator import ContractCoordinator

router = APIRouter(prefix="/contracts")


@router.post("", response_model=OperationResultResponse, status_code=201)
def create_contract(
    body: ContractCreateRequest,
    response: Response,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    coordinator: ContractCoordinator = Depends(get_coordinator),
    idem: Optional[IdempotentRequest] = Depends(idempotency_guard),
):
    if idem and idem.replay:
        response.status_code = idem.replay.status_code
        return idem.replay.body

    result = coordinator.create_contract(
        db,
        actor=principal,
        listing_id=body.listingId,
        landlord_id=body.landlordId,
        tenant_id=body.tenantId,
        landlord_phone=body.landlordPhone,
        tenant_phone=body.tenantPhone,
        monthly_amount=body.monthlyAmount,
        currency=body.currency,
        start_date=body.startDate,
        end_date=body.endDate,
        custom_fields=body.customFields,
    )
    out = respond(result)

    if idem:
        idem.remember(db, out, 201)
    return out


@router.get("/{contractId}", response_model=OperationResultResponse)
def get_contract(
    contractId: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    coordinator: ContractCoordinator = Depends(get_coordinator),
):
    cid = parse_uuid(contractId, "contractId")
    return respond(coordinator.get_contract(db, cid, actor=principal))


@router.post("/{contractId}/send", response_model=OperationResultResponse)
def send_for_signature(
    contractId: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    coordinator: ContractCoordinator = Depends(get_coordinator),
):
    cid = parse_uuid(contractId, "contractId")
    return respond(coordinator.send_for_signature(db, cid, actor=principal))


@router.post("/{contractId}/signatures/request", response_model=OperationResultResponse)
def request_signature(
    contractId: str,
    body: SignatureRequest,
    response: Response,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    coordinator: ContractCoordinator = Depends(get_coordinator),
):
    cid = parse_uuid(contractId, "contractId")
    result = coordinator.request_signature(db, cid, actor=principal, role=body.role)
    out = respond(result)
    response.status_code = status_code_for(result)
    return out


@router.post("/{contractId}/signatures/confirm", response_model=OperationResultResponse)
def confirm_signature(
    contractId: str,
    body: SignatureConfirmRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    coordinator: ContractCoordinator = Depends(get_coordinator),
):
    cid = parse_uuid(contractId, "contractId")
    challenge_id = parse_uuid(body.challengeId, "challengeId")
    result = coordinator.confirm_signature(
        db,
        cid,
        actor=principal,
        role=body.role,
        challenge_id=challenge_id,
        code=body.code,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    return respond(result)


@router.post("/{contractId}/cancel", response_model=OperationResultResponse)
def cancel_contract(
    contractId: str,
    body: ReasonRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    coordinator: ContractCoordinator = Depends(get_coordinator),
):
    cid = parse_uuid(contractId, "contractId")
    return respond(coordinator.cancel(db, cid, actor=principal, reason=body.reason))


@router.post("/{contractId}/withdraw", response_model=OperationResultResponse)
def withdraw_contract(
    contractId: str,
    body: ReasonRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    coordinator: ContractCoordinator = Depends(get_coordinator),
):
    cid = parse_uuid(contractId, "contractId")
    return respond(coordinator.withdraw(db, cid, actor=principal, reason=body.reason))


@router.post("/{contractId}/terminate", response_model=OperationResultResponse)
def terminate_contract(
    contractId: str,
    body: ReasonRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    coordinator: ContractCoordinator = Depends(get_coordinator),
):
    cid = parse_uuid(contractId, "contractId")
    return respond(coordinator.terminate(db, cid, actor=principal, reason=body.reason))


@router.get("/{contractId}/history", response_model=OperationResultResponse)
def contract_history(
    contractId: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    coordinator: ContractCoordinator = Depends(get_coordinator),
):
    cid = parse_uuid(contractId, "contractId")
    return respond(coordinator.audit_trail(db, actor=principal, entity_type="contract", entity_id=cid))


@router.post("/{contractId}/document/verify", response_model=OperationResultResponse)
def verify_document(
    contractId: str,
    body: DocumentIntegrityRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    coordinator: ContractCoordinator = Depends(get_coordinator),
):
    cid = parse_uuid(contractId, "contractId")
    return respond(coordinator.verify_document_integrity(db, cid, actor=principal, sha256=body.sha256))
