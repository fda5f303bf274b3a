#rental_core/services/dispute_arbiter.py
from __future__ import annotations

import logging
import secrets
import string
import uuid
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from rental_core.core.clock import Clock
from rental_core.core.errors import (
    AlreadyResolved,
    DuplicateOpenDispute,
    InvalidTransition,
    NotAParty,
    NotAssigned,
    NotFound,
    ValidationFailed,
)
from rental_core.models.contract import Contract
from rental_core.models.dispute import Dispute
from rental_core.models.enums import (
    ACTIVE_DISPUTE_STATUSES,
    BINDING_CONTRACT_STATUSES,
    DisputeOutcome,
    DisputeStatus,
    EscrowStatus,
)
from rental_core.models.escrow_entry import EscrowEntry
from rental_core.services import outbox
from rental_core.services.escrow_ledger import EscrowLedger
from rental_core.services.versioned_writes import compare_and_set, record_creation

logger = logging.getLogger(__name__)

ENTITY = "dispute"

_REF_ALPHABET = string.ascii_uppercase + string.digits


def generate_dispute_reference(year: int) -> str:
    return f"LIT-{year}-{''.join(secrets.choice(_REF_ALPHABET) for _ in range(5))}"


class DisputeArbiter:
    """
    Dispute lifecycle: OPEN → MEDIATOR_ASSIGNED → RESOLVED | WITHDRAWN.

    Every terminal write and the matching EscrowLedger.unfreeze happen in the same
    unit of work; the caller commits both or neither.
    """

    def __init__(self, ledger: EscrowLedger, clock: Clock):
        self.ledger = ledger
        self.clock = clock

    # ─────────────────────────────────────────────
    # READS
    # ─────────────────────────────────────────────

    def get(self, db: Session, dispute_id: uuid.UUID) -> Dispute:
        dispute = db.execute(select(Dispute).where(Dispute.id == dispute_id)).scalar_one_or_none()
        if not dispute:
            raise NotFound("Dispute not found.")
        return dispute

    def list_for_contract(self, db: Session, contract_id: uuid.UUID) -> List[Dispute]:
        return (
            db.execute(select(Dispute).where(Dispute.contract_id == contract_id).order_by(Dispute.opened_at.asc()))
            .scalars()
            .all()
        )

    def active_for_contract(self, db: Session, contract_id: uuid.UUID) -> List[Dispute]:
        return (
            db.execute(
                select(Dispute).where(
                    Dispute.contract_id == contract_id,
                    Dispute.status.in_(list(ACTIVE_DISPUTE_STATUSES)),
                )
            )
            .scalars()
            .all()
        )

    def active_load(self, db: Session, mediator_id: str) -> int:
        return int(
            db.execute(
                select(func.count(Dispute.id)).where(
                    Dispute.mediator_id == mediator_id,
                    Dispute.status.in_(list(ACTIVE_DISPUTE_STATUSES)),
                )
            ).scalar_one()
        )

    def unassigned_since(self, db: Session, *, before, limit: int = 100) -> List[Dispute]:
        return (
            db.execute(
                select(Dispute)
                .where(Dispute.status == DisputeStatus.OPEN.value, Dispute.opened_at <= before)
                .order_by(Dispute.opened_at.asc())
                .limit(limit)
            )
            .scalars()
            .all()
        )

    def terminal_with_frozen_entries(self, db: Session, *, limit: int = 100) -> List[Dispute]:
        return (
            db.execute(
                select(Dispute)
                .join(EscrowEntry, EscrowEntry.frozen_by_dispute_id == Dispute.id)
                .where(
                    Dispute.status.in_([DisputeStatus.RESOLVED.value, DisputeStatus.WITHDRAWN.value]),
                    EscrowEntry.status == EscrowStatus.FROZEN.value,
                )
                .limit(limit)
            )
            .scalars()
            .all()
        )

    # ─────────────────────────────────────────────
    # WRITES
    # ─────────────────────────────────────────────

    def open(
        self,
        db: Session,
        *,
        contract: Contract,
        claimant_id: str,
        category: str,
        motif: str,
        description: str,
        evidence: Optional[Sequence[Dict[str, Any]]] = None,
        escrow_entry_id: Optional[uuid.UUID] = None,
    ) -> Dispute:
        if claimant_id not in (contract.landlord_id, contract.tenant_id):
            raise NotAParty("Only a party to the contract can open a dispute.")
        if contract.status not in BINDING_CONTRACT_STATUSES:
            raise InvalidTransition(
                f"Contract {contract.reference} is {contract.status}; disputes need a signed contract.",
                blocking="contract is not fully signed",
            )
        if not (category or "").strip() or not (motif or "").strip() or not (description or "").strip():
            raise ValidationFailed("Category, motif and description are required.")

        if escrow_entry_id is not None:
            entry = self.ledger.get(db, escrow_entry_id)
            if entry.contract_id != contract.id:
                raise ValidationFailed("Escrow entry does not belong to this contract.")
            existing = self.ledger.active_dispute_for(db, escrow_entry_id)
            if existing:
                raise DuplicateOpenDispute(
                    f"Dispute {existing.reference} is already open for this payment.",
                    blocking=f"dispute {existing.reference} must be resolved first",
                )

        now = self.clock.now()
        respondent_id = contract.tenant_id if claimant_id == contract.landlord_id else contract.landlord_id
        dispute = Dispute(
            id=uuid.uuid4(),
            reference=generate_dispute_reference(now.year),
            contract_id=contract.id,
            escrow_entry_id=escrow_entry_id,
            active_entry_lock=escrow_entry_id,
            claimant_id=claimant_id,
            respondent_id=respondent_id,
            category=category.strip(),
            motif=motif.strip(),
            description=description.strip(),
            evidence_json=list(evidence or []),
            status=DisputeStatus.OPEN.value,
            version=1,
            opened_at=now,
            updated_at=now,
        )
        db.add(dispute)
        # the UNIQUE lock raises IntegrityError here when another instance won the race
        db.flush()
        record_creation(
            db,
            dispute,
            entity_type=ENTITY,
            event="opened",
            at=now,
            actor_id=claimant_id,
            details={"escrow_entry_id": str(escrow_entry_id) if escrow_entry_id else None, "category": dispute.category},
        )

        if escrow_entry_id is not None:
            self.ledger.freeze(db, escrow_entry_id, dispute=dispute)

        outbox.enqueue(db, respondent_id, "dispute.opened", {"dispute": dispute.reference, "contract_id": str(contract.id)})
        logger.info("dispute opened", extra={"dispute_id": str(dispute.id), "contract_id": str(contract.id)})
        return dispute

    def assign_mediator(self, db: Session, dispute_id: uuid.UUID, *, mediator_id: str, actor_id: Optional[str] = None) -> Dispute:
        dispute = self.get(db, dispute_id)
        if dispute.status not in ACTIVE_DISPUTE_STATUSES:
            raise AlreadyResolved(f"Dispute {dispute.reference} is already {dispute.status}.")
        if mediator_id in (dispute.claimant_id, dispute.respondent_id):
            raise ValidationFailed("A party to the dispute cannot mediate it.")
        if dispute.mediator_id == mediator_id:
            return dispute

        now = self.clock.now()
        compare_and_set(
            db,
            dispute,
            entity_type=ENTITY,
            event="mediator.assigned" if dispute.mediator_id is None else "mediator.reassigned",
            values={
                "status": DisputeStatus.MEDIATOR_ASSIGNED.value,
                "mediator_id": mediator_id,
                "assigned_at": now,
            },
            at=now,
            expected_statuses=list(ACTIVE_DISPUTE_STATUSES),
            actor_id=actor_id,
            details={"mediator_id": mediator_id},
        )
        payload = {"dispute": dispute.reference}
        outbox.enqueue(db, mediator_id, "dispute.assigned", payload)
        outbox.enqueue(db, dispute.claimant_id, "dispute.mediator_assigned", payload)
        outbox.enqueue(db, dispute.respondent_id, "dispute.mediator_assigned", payload)
        return dispute

    def resolve(
        self,
        db: Session,
        dispute_id: uuid.UUID,
        *,
        outcome: DisputeOutcome,
        notes: str,
        actor_id: str,
        release_amount: Optional[Decimal] = None,
        is_admin: bool = False,
        release_guard: Optional[Callable[[Dispute], None]] = None,
    ) -> Dispute:
        """
        `release_guard` runs before any write when the outcome pays the beneficiary from a
        frozen entry; it raises to keep the funds frozen.
        """
        dispute = self.get(db, dispute_id)
        if dispute.status in (DisputeStatus.RESOLVED.value, DisputeStatus.WITHDRAWN.value):
            raise AlreadyResolved(f"Dispute {dispute.reference} is already {dispute.status}.")
        if dispute.status == DisputeStatus.OPEN.value:
            raise NotAssigned(
                f"Dispute {dispute.reference} has no mediator yet.",
                blocking="waiting on mediator assignment",
            )
        if not is_admin and actor_id != dispute.mediator_id:
            raise NotAParty("Only the assigned mediator can resolve this dispute.")
        if outcome == DisputeOutcome.SPLIT and dispute.escrow_entry_id is not None and release_amount is None:
            raise ValidationFailed("A split resolution needs the amount released to the beneficiary.")
        pays_beneficiary = outcome in (DisputeOutcome.RELEASE_TO_BENEFICIARY, DisputeOutcome.SPLIT)
        if release_guard is not None and dispute.escrow_entry_id is not None and pays_beneficiary:
            release_guard(dispute)

        now = self.clock.now()
        compare_and_set(
            db,
            dispute,
            entity_type=ENTITY,
            event="resolved",
            values={
                "status": DisputeStatus.RESOLVED.value,
                "outcome": outcome.value,
                "resolution_notes": notes,
                "split_release_amount": release_amount if outcome == DisputeOutcome.SPLIT else None,
                "resolved_at": now,
                "active_entry_lock": None,
            },
            at=now,
            expected_statuses=[DisputeStatus.MEDIATOR_ASSIGNED.value],
            actor_id=actor_id,
            details={"outcome": outcome.value},
        )

        if dispute.escrow_entry_id is not None:
            self.ledger.unfreeze(
                db,
                dispute.escrow_entry_id,
                outcome,
                dispute=dispute,
                release_amount=release_amount,
                actor_id=actor_id,
            )

        payload = {"dispute": dispute.reference, "outcome": outcome.value}
        outbox.enqueue(db, dispute.claimant_id, "dispute.resolved", payload)
        outbox.enqueue(db, dispute.respondent_id, "dispute.resolved", payload)
        logger.info("dispute resolved", extra={"dispute_id": str(dispute.id), "outcome": outcome.value})
        return dispute

    def withdraw(self, db: Session, dispute_id: uuid.UUID, *, actor_id: str, reason: Optional[str] = None) -> Dispute:
        dispute = self.get(db, dispute_id)
        if actor_id != dispute.claimant_id:
            raise NotAParty("Only the claimant can withdraw a dispute.")
        if dispute.status not in ACTIVE_DISPUTE_STATUSES:
            raise AlreadyResolved(f"Dispute {dispute.reference} is already {dispute.status}.")

        now = self.clock.now()
        compare_and_set(
            db,
            dispute,
            entity_type=ENTITY,
            event="withdrawn",
            values={
                "status": DisputeStatus.WITHDRAWN.value,
                "withdrawn_at": now,
                "resolution_notes": reason,
                "active_entry_lock": None,
            },
            at=now,
            expected_statuses=list(ACTIVE_DISPUTE_STATUSES),
            actor_id=actor_id,
        )
        if dispute.escrow_entry_id is not None:
            self.ledger.unfreeze(db, dispute.escrow_entry_id, None, dispute=dispute, actor_id=actor_id)

        outbox.enqueue(db, dispute.respondent_id, "dispute.withdrawn", {"dispute": dispute.reference})
        return dispute

    def flag_assignment_overdue(self, db: Session, dispute: Dispute) -> bool:
        if dispute.sla_flagged_at is not None or dispute.status != DisputeStatus.OPEN.value:
            return False
        now = self.clock.now()
        compare_and_set(
            db,
            dispute,
            entity_type=ENTITY,
            event="assignment.sla_breached",
            values={"sla_flagged_at": now},
            at=now,
            expected_statuses=[DisputeStatus.OPEN.value],
        )
        logger.warning(
            "dispute unassigned past SLA",
            extra={"dispute_id": str(dispute.id), "opened_at": dispute.opened_at.isoformat()},
        )
        return True
