# rental_core/api/v1/audit.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from rental_core.api.v1.responses import parse_uuid, respond
from rental_core.core.auth_deps import get_current_principal
from rental_core.core.deps import get_coordinator
from rental_core.db.session import get_db
from rental_core.policies.rbac import Principal
from rental_core.schemas.outcomes import OperationResultResponse
from rental_core.services.contract_coordinator import ContractCoordinator

router = APIRouter(prefix="/audit")


@router.get("/{entityType}/{entityId}", response_model=OperationResultResponse)
def audit_trail(
    entityType: str,
    entityId: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    coordinator: ContractCoordinator = Depends(get_coordinator),
):
    eid = parse_uuid(entityId, "entityId")
    return respond(coordinator.audit_trail(db, actor=principal, entity_type=entityType, entity_id=eid))
