from __future__ import annotations

from dataclasses import dataclass
from typing import Set

from rental_core.models.enums import PrincipalRole


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: PrincipalRole
    display_name: str


# --- Core action constants ---
ACTION_CREATE_CONTRACT = "CREATE_CONTRACT"
ACTION_SIGN = "SIGN"
ACTION_PAY = "PAY"
ACTION_OPEN_DISPUTE = "OPEN_DISPUTE"
ACTION_ASSIGN_MEDIATOR = "ASSIGN_MEDIATOR"
ACTION_RESOLVE_DISPUTE = "RESOLVE_DISPUTE"
ACTION_VIEW_AUDIT = "VIEW_AUDIT"


def allowed_actions(role: PrincipalRole) -> Set[str]:
    """
    Pure RBAC: which actions a role may attempt.
    Party-level checks (is this user the landlord?) happen in the services.
    """
    if role == PrincipalRole.USER:
        return {ACTION_CREATE_CONTRACT, ACTION_SIGN, ACTION_PAY, ACTION_OPEN_DISPUTE}

    if role == PrincipalRole.MEDIATOR:
        return {ACTION_RESOLVE_DISPUTE, ACTION_VIEW_AUDIT}

    if role == PrincipalRole.ADMIN:
        return {ACTION_ASSIGN_MEDIATOR, ACTION_RESOLVE_DISPUTE, ACTION_VIEW_AUDIT}

    return set()


def require_action(principal: Principal, action: str) -> None:
    if action not in allowed_actions(principal.role):
        raise PermissionError(
            f"Role {principal.role.value} not permitted for action {action}."
        )
