#rental_core/services/sweep_service.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, List, Optional, Sequence

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rental_core.core.errors import ConcurrentModification, DomainError, ErrorKind
from rental_core.models.contract import Contract
from rental_core.models.dispute import Dispute
from rental_core.models.enums import (
    ACTIVE_DISPUTE_STATUSES,
    BINDING_CONTRACT_STATUSES,
    CompensationAction,
    ContractStatus,
    DisputeStatus,
    DocumentStatus,
    EscrowStatus,
)
from rental_core.models.escrow_entry import EscrowEntry
from rental_core.services import outbox
from rental_core.services.contract_coordinator import ContractCoordinator, add_months, months_between
from rental_core.services.versioned_writes import compare_and_set

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

# a render still REQUESTED after this long lost its after-commit hook
RENDER_REQUEST_GRACE = timedelta(minutes=10)

# run order for a full tick; reminders go out before windows close
SWEEP_NAMES = (
    "retraction_reminders",
    "retraction_windows",
    "recurring_entries",
    "auto_release",
    "document_renders",
    "mediator_assignment",
    "reconciliation",
)


@dataclass
class SweepReport:
    name: str
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    details: List[str] = field(default_factory=list)


class SweepService:
    """
    Periodic, at-least-once background work.

    Each item is its own unit of work claimed through the same compare-and-set as
    request handlers, so several workers can run the same sweep concurrently: the
    loser of a race counts the item as skipped.
    """

    def __init__(self, coordinator: ContractCoordinator):
        self.coordinator = coordinator
        self.settings = coordinator.settings
        self.clock = coordinator.clock
        self.ledger = coordinator.ledger
        self.disputes = coordinator.disputes
        self.compensation = coordinator.compensation

    # ─────────────────────────────────────────────
    # INTERNAL HELPERS
    # ─────────────────────────────────────────────

    def _run_item(self, db: Session, report: SweepReport, item_id: uuid.UUID, fn: Callable[[], bool]) -> None:
        try:
            changed = fn()
        except ConcurrentModification:
            db.rollback()
            outbox.discard(db)
            report.skipped += 1
            return
        except DomainError as err:
            if err.keeps_state:
                db.commit()
                self.coordinator._after_commit(db)
            else:
                db.rollback()
                outbox.discard(db)
            if err.kind == ErrorKind.INVARIANT:
                logger.error("sweep item hit invariant breach", extra={"sweep": report.name, "item": str(item_id), "error": err.message})
                report.errors += 1
            else:
                report.skipped += 1
            return
        except IntegrityError:
            db.rollback()
            outbox.discard(db)
            report.skipped += 1
            return
        except Exception:
            db.rollback()
            outbox.discard(db)
            logger.exception("sweep item failed", extra={"sweep": report.name, "item": str(item_id)})
            report.errors += 1
            return

        db.commit()
        self.coordinator._after_commit(db)
        if changed:
            report.processed += 1
        else:
            report.skipped += 1

    def _ids(self, db: Session, stmt) -> List[uuid.UUID]:
        ids = list(db.execute(stmt).scalars().all())
        # the id scan is read-only; end it so each item starts a fresh transaction
        db.rollback()
        return ids

    @staticmethod
    def _log(report: SweepReport) -> SweepReport:
        if report.processed or report.errors:
            logger.info(
                "sweep finished",
                extra={"sweep": report.name, "processed": report.processed, "skipped": report.skipped, "errors": report.errors},
            )
        return report

    # ─────────────────────────────────────────────
    # CONTRACTS
    # ─────────────────────────────────────────────

    def sweep_retraction_windows(self, db: Session, *, limit: int = 100) -> SweepReport:
        report = SweepReport("retraction_windows")
        now = self.clock.now()
        ids = self._ids(
            db,
            select(Contract.id)
            .where(Contract.status == ContractStatus.FULLY_SIGNED.value, Contract.retraction_expires_at <= now)
            .limit(limit),
        )

        for contract_id in ids:
            def _activate(contract_id=contract_id) -> bool:
                contract = self.coordinator._get_contract(db, contract_id)
                at = self.clock.now()
                if contract.status != ContractStatus.FULLY_SIGNED.value or at < contract.retraction_expires_at:
                    return False
                next_due = add_months(contract.start_date, 1)
                has_next = next_due < contract.end_date
                compare_and_set(
                    db, contract, entity_type="contract", event="activated",
                    values={
                        "status": ContractStatus.ACTIVE.value,
                        "activated_at": at,
                        "next_due_date": next_due if has_next else None,
                        "escrow_schedule_stopped": not has_next,
                    },
                    at=at, expected_statuses=[ContractStatus.FULLY_SIGNED.value], actor_id=SYSTEM_ACTOR,
                )
                self.coordinator._notify_parties(db, contract, "contract.active", {})
                return True

            self._run_item(db, report, contract_id, _activate)
        return self._log(report)

    def sweep_retraction_reminders(self, db: Session, *, limit: int = 100) -> SweepReport:
        report = SweepReport("retraction_reminders")
        now = self.clock.now()
        horizon = now + timedelta(hours=self.settings.retraction_reminder_hours)
        ids = self._ids(
            db,
            select(Contract.id)
            .where(
                Contract.status == ContractStatus.FULLY_SIGNED.value,
                Contract.retraction_reminder_sent_at.is_(None),
                Contract.retraction_expires_at > now,
                Contract.retraction_expires_at <= horizon,
            )
            .limit(limit),
        )

        for contract_id in ids:
            def _remind(contract_id=contract_id) -> bool:
                contract = self.coordinator._get_contract(db, contract_id)
                if contract.retraction_reminder_sent_at is not None:
                    return False
                at = self.clock.now()
                compare_and_set(
                    db, contract, entity_type="contract", event="retraction.reminder_sent",
                    values={"retraction_reminder_sent_at": at},
                    at=at, expected_statuses=[ContractStatus.FULLY_SIGNED.value], actor_id=SYSTEM_ACTOR,
                )
                self.coordinator._notify_parties(
                    db, contract, "contract.retraction_reminder",
                    {"retraction_expires_at": contract.retraction_expires_at.isoformat()},
                )
                return True

            self._run_item(db, report, contract_id, _remind)
        return self._log(report)

    def sweep_recurring_entries(self, db: Session, *, limit: int = 100) -> SweepReport:
        report = SweepReport("recurring_entries")
        today = self.clock.now().date()
        horizon = today + timedelta(days=self.settings.escrow_recurrence_lead_days)
        ids = self._ids(
            db,
            select(Contract.id)
            .where(
                Contract.status == ContractStatus.ACTIVE.value,
                Contract.escrow_schedule_stopped.is_(False),
                Contract.next_due_date.is_not(None),
                Contract.next_due_date <= horizon,
            )
            .limit(limit),
        )

        for contract_id in ids:
            def _schedule(contract_id=contract_id) -> bool:
                contract = self.coordinator._get_contract(db, contract_id)
                if (
                    contract.status != ContractStatus.ACTIVE.value
                    or contract.escrow_schedule_stopped
                    or contract.next_due_date is None
                ):
                    return False
                due = contract.next_due_date
                self.ledger.open_entry(
                    db, contract=contract, amount=contract.monthly_amount, due_date=due, actor_id=SYSTEM_ACTOR
                )
                following = add_months(contract.start_date, months_between(contract.start_date, due) + 1)
                has_next = following < contract.end_date
                compare_and_set(
                    db, contract, entity_type="contract", event="schedule.advanced",
                    values={
                        "next_due_date": following if has_next else None,
                        "escrow_schedule_stopped": not has_next,
                    },
                    at=self.clock.now(), expected_statuses=[ContractStatus.ACTIVE.value], actor_id=SYSTEM_ACTOR,
                    details={"opened_due_date": due.isoformat()},
                )
                return True

            self._run_item(db, report, contract_id, _schedule)
        return self._log(report)

    def sweep_document_renders(self, db: Session, *, limit: int = 50) -> SweepReport:
        report = SweepReport("document_renders")
        ids = self._ids(
            db,
            select(Contract.id)
            .where(
                Contract.status.in_([ContractStatus.FULLY_SIGNED.value, ContractStatus.ACTIVE.value]),
                or_(
                    Contract.document_status == DocumentStatus.FAILED.value,
                    and_(
                        Contract.document_status == DocumentStatus.REQUESTED.value,
                        Contract.fully_signed_at <= self.clock.now() - RENDER_REQUEST_GRACE,
                    ),
                ),
            )
            .limit(limit),
        )
        for contract_id in ids:
            def _render(contract_id=contract_id) -> bool:
                contract = self.coordinator._get_contract(db, contract_id)
                if contract.document_status not in (DocumentStatus.REQUESTED.value, DocumentStatus.FAILED.value):
                    return False
                return self.coordinator._render_document(db, contract)

            self._run_item(db, report, contract_id, _render)
        return self._log(report)

    # ─────────────────────────────────────────────
    # ESCROW
    # ─────────────────────────────────────────────

    def sweep_auto_release(self, db: Session, *, limit: int = 100) -> SweepReport:
        report = SweepReport("auto_release")
        now = self.clock.now()
        ids = [e.id for e in self.ledger.due_for_release(db, now=now, limit=limit)]
        db.rollback()

        for entry_id in ids:
            def _release(entry_id=entry_id) -> bool:
                self.coordinator._release(db, entry_id, actor_id=SYSTEM_ACTOR)
                return True

            self._run_item(db, report, entry_id, _release)
        return self._log(report)

    def sweep_reconciliation(self, db: Session, *, limit: int = 100) -> SweepReport:
        """
        Retries failed payouts and records (never repairs) invariant breaches.
        """
        report = SweepReport("reconciliation")

        failed = [e.id for e in self.ledger.failed_payouts(db, limit=limit)]
        db.rollback()
        for entry_id in failed:
            def _retry(entry_id=entry_id) -> bool:
                ok = self.ledger.retry_payout(db, entry_id)
                if not ok:
                    entry = self.ledger.get(db, entry_id)
                    for item in self.compensation.list_open(db, action=CompensationAction.RETRY_PAYOUT.value):
                        if item.entity_id == entry_id:
                            self.compensation.mark_attempt(db, item, error=entry.last_error)
                return ok

            self._run_item(db, report, entry_id, _retry)

        for breach in self._detect_breaches(db, limit=limit):
            self._run_item(db, report, breach[1], lambda breach=breach: self._record_breach(db, *breach))
        return self._log(report)

    def _detect_breaches(self, db: Session, *, limit: int):
        now = self.clock.now()
        found = []

        for dispute in self.disputes.terminal_with_frozen_entries(db, limit=limit):
            found.append(("escrow_entry", dispute.escrow_entry_id, f"frozen:{dispute.escrow_entry_id}:{dispute.id}",
                          f"dispute {dispute.reference} is {dispute.status} but its entry is still FROZEN"))

        released_disputed = db.execute(
            select(EscrowEntry.id, Dispute.id)
            .join(Dispute, Dispute.escrow_entry_id == EscrowEntry.id)
            .where(
                EscrowEntry.status == EscrowStatus.RELEASED.value,
                Dispute.status.in_(list(ACTIVE_DISPUTE_STATUSES)),
            )
            .limit(limit)
        ).all()
        for entry_id, dispute_id in released_disputed:
            found.append(("escrow_entry", entry_id, f"released-disputed:{entry_id}:{dispute_id}",
                          "entry RELEASED while a dispute on it is active"))

        binding = list(BINDING_CONTRACT_STATUSES)
        bad_contracts = db.execute(
            select(Contract.id)
            .where(
                or_(
                    and_(Contract.status.in_(binding), Contract.signature_count != 2),
                    and_(Contract.status.not_in(binding), Contract.signature_count == 2),
                )
            )
            .limit(limit)
        ).scalars().all()
        for contract_id in bad_contracts:
            found.append(("contract", contract_id, f"signature-count:{contract_id}",
                          "signature count disagrees with contract status"))

        db.rollback()
        if found:
            logger.error("invariant breaches detected", extra={"count": len(found), "at": now.isoformat()})
        return found

    def _record_breach(self, db: Session, entity_type: str, entity_id: uuid.UUID, key: str, description: str) -> bool:
        self.compensation.record(
            db,
            entity_type=entity_type,
            entity_id=entity_id,
            action=CompensationAction.INVARIANT_BREACH.value,
            dedupe_key=f"invariant:{key}",
            at=self.clock.now(),
            details={"description": description},
            error=description,
        )
        return True

    # ─────────────────────────────────────────────
    # DISPUTES
    # ─────────────────────────────────────────────

    def _pick_mediator(self, db: Session, dispute: Dispute, pool: Sequence[str]) -> Optional[str]:
        parties = {dispute.claimant_id, dispute.respondent_id}
        best: Optional[str] = None
        best_load = None
        for mediator_id in sorted(pool):
            if mediator_id in parties:
                continue
            load = self.disputes.active_load(db, mediator_id)
            if load >= self.settings.mediator_max_active_disputes:
                continue
            if best_load is None or load < best_load:
                best, best_load = mediator_id, load
        return best

    def sweep_mediator_assignment(self, db: Session, *, limit: int = 100) -> SweepReport:
        report = SweepReport("mediator_assignment")
        now = self.clock.now()
        cutoff = now - timedelta(hours=self.settings.dispute_auto_assign_after_hours)
        ids = [d.id for d in self.disputes.unassigned_since(db, before=cutoff, limit=limit)]
        db.rollback()
        pool = self.coordinator.integrations.mediators.available_mediators()

        for dispute_id in ids:
            def _assign(dispute_id=dispute_id) -> bool:
                dispute = self.disputes.get(db, dispute_id)
                if dispute.status != DisputeStatus.OPEN.value:
                    return False
                mediator_id = self._pick_mediator(db, dispute, pool)
                if mediator_id:
                    self.disputes.assign_mediator(db, dispute.id, mediator_id=mediator_id, actor_id=SYSTEM_ACTOR)
                    return True

                sla_cutoff = self.clock.now() - timedelta(hours=self.settings.dispute_assignment_sla_hours)
                if dispute.opened_at <= sla_cutoff and self.disputes.flag_assignment_overdue(db, dispute):
                    for m in pool:
                        outbox.enqueue(db, m, "dispute.unassigned_sla", {"dispute": dispute.reference})
                    return True
                return False

            self._run_item(db, report, dispute_id, _assign)
        return self._log(report)

    # ─────────────────────────────────────────────
    # ALL
    # ─────────────────────────────────────────────

    def run(self, name: str, db: Session) -> SweepReport:
        if name not in SWEEP_NAMES:
            raise KeyError(f"unknown sweep {name!r}")
        return getattr(self, f"sweep_{name}")(db)

    def run_all(self, db: Session) -> List[SweepReport]:
        return [self.run(name, db) for name in SWEEP_NAMES]
