# rental_core/api/v1/disputes.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from rental_core.api.v1.responses import parse_uuid, respond
from rental_core.core.auth_deps import get_current_principal
from rental_core.core.deps import get_coordinator
from rental_core.core.deps_idempotency import IdempotentRequest, idempotency_guard
from rental_core.db.session import get_db
from rental_core.policies.rbac import Principal
from rental_core.schemas.disputes import (
    DisputeOpenRequest,
    DisputeResolveRequest,
    DisputeWithdrawRequest,
    MediatorAssignRequest,
)
from rental_core.schemas.outcomes import OperationResultResponse
from rental_core.services.contract_coordinator import ContractCoordinator

router = APIRouter(prefix="/disputes")


@router.post("", response_model=OperationResultResponse, status_code=201)
def open_dispute(
    body: DisputeOpenRequest,
    response: Response,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    coordinator: ContractCoordinator = Depends(get_coordinator),
    idem: Optional[IdempotentRequest] = Depends(idempotency_guard),
):
    if idem and idem.replay:
        response.status_code = idem.replay.status_code
        return idem.replay.body

    cid = parse_uuid(body.contractId, "contractId")
    eid = parse_uuid(body.escrowEntryId, "escrowEntryId") if body.escrowEntryId else None
    result = coordinator.open_dispute(
        db,
        actor=principal,
        contract_id=cid,
        escrow_entry_id=eid,
        category=body.category,
        motif=body.motif,
        description=body.description,
        evidence=body.evidence,
    )
    out = respond(result)

    if idem:
        idem.remember(db, out, 201)
    return out


@router.get("/{disputeId}", response_model=OperationResultResponse)
def get_dispute(
    disputeId: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    coordinator: ContractCoordinator = Depends(get_coordinator),
):
    did = parse_uuid(disputeId, "disputeId")
    return respond(coordinator.get_dispute(db, did, actor=principal))


@router.post("/{disputeId}/assign", response_model=OperationResultResponse)
def assign_mediator(
    disputeId: str,
    body: MediatorAssignRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    coordinator: ContractCoordinator = Depends(get_coordinator),
):
    did = parse_uuid(disputeId, "disputeId")
    return respond(coordinator.assign_mediator(db, did, actor=principal, mediator_id=body.mediatorId))


@router.post("/{disputeId}/resolve", response_model=OperationResultResponse)
def resolve_dispute(
    disputeId: str,
    body: DisputeResolveRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    coordinator: ContractCoordinator = Depends(get_coordinator),
):
    did = parse_uuid(disputeId, "disputeId")
    result = coordinator.resolve_dispute(
        db,
        did,
        actor=principal,
        outcome=body.outcome,
        notes=body.notes,
        release_amount=body.releaseAmount,
    )
    return respond(result)


@router.post("/{disputeId}/withdraw", response_model=OperationResultResponse)
def withdraw_dispute(
    disputeId: str,
    body: DisputeWithdrawRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    coordinator: ContractCoordinator = Depends(get_coordinator),
):
    did = parse_uuid(disputeId, "disputeId")
    return respond(coordinator.withdraw_dispute(db, did, actor=principal, reason=body.reason))
