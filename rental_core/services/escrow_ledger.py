#rental_core/services/escrow_ledger.py
from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from rental_core.core.clock import Clock
from rental_core.core.config import Settings
from rental_core.core.errors import (
    DisputePending,
    EscrowSettled,
    GatewayDeclined,
    GatewayTimeout,
    InvalidTransition,
    InvariantBreach,
    NotAParty,
    NotFound,
    NotFreezable,
    NotHeld,
    NotRefundable,
    PaymentUnreconciled,
    ReleaseNotDue,
    ValidationFailed,
)
from rental_core.core.hashing import derive_idempotency_key
from rental_core.core.retry import RetryExhausted, RetryPolicy
from rental_core.integrations.payments import GatewayResult, GatewayStatus, GatewayTimeoutError, PaymentGateway
from rental_core.models.contract import Contract
from rental_core.models.dispute import Dispute
from rental_core.models.enums import (
    ACTIVE_DISPUTE_STATUSES,
    TERMINAL_ESCROW_STATUSES,
    CompensationAction,
    DisputeOutcome,
    DisputeStatus,
    EscrowEntryKind,
    EscrowStatus,
    PayoutStatus,
)
from rental_core.models.escrow_entry import EscrowEntry
from rental_core.services import outbox
from rental_core.services.compensation_service import CompensationService
from rental_core.services.versioned_writes import compare_and_set, record_creation

logger = logging.getLogger(__name__)

ENTITY = "escrow_entry"

OP_AUTHORIZE = "authorize"
OP_CAPTURE = "capture"
OP_RELEASE = "release"
OP_REFUND = "refund"
GATEWAY_OPERATIONS = (OP_AUTHORIZE, OP_CAPTURE, OP_RELEASE, OP_REFUND)


class EscrowLedger:
    """
    Sole writer of EscrowEntry.status.

    FROZEN is entered through `freeze` and left through `unfreeze`, both driven by the
    DisputeArbiter inside the dispute's own unit of work. Nothing here commits.

    Payouts: the ledger status moves first (RELEASED/REFUNDED are decided facts), the
    gateway transfer is tracked separately in `payout_status` and repaired by reconciliation.
    """

    def __init__(
        self,
        settings: Settings,
        clock: Clock,
        payments: PaymentGateway,
        retry_policy: RetryPolicy,
        sleep: Callable[[float], None],
        compensation: Optional[CompensationService] = None,
    ):
        self.settings = settings
        self.clock = clock
        self.payments = payments
        self.retry_policy = retry_policy
        self.sleep = sleep
        self.compensation = compensation or CompensationService()

    # ─────────────────────────────────────────────
    # READS
    # ─────────────────────────────────────────────

    def get(self, db: Session, entry_id: uuid.UUID) -> EscrowEntry:
        entry = db.execute(select(EscrowEntry).where(EscrowEntry.id == entry_id)).scalar_one_or_none()
        if not entry:
            raise NotFound("Escrow entry not found.")
        return entry

    def list_for_contract(self, db: Session, contract_id: uuid.UUID) -> List[EscrowEntry]:
        return (
            db.execute(
                select(EscrowEntry)
                .where(EscrowEntry.contract_id == contract_id)
                .order_by(EscrowEntry.due_date.asc(), EscrowEntry.created_at.asc())
            )
            .scalars()
            .all()
        )

    def active_dispute_for(self, db: Session, entry_id: uuid.UUID) -> Optional[Dispute]:
        return db.execute(
            select(Dispute).where(
                Dispute.escrow_entry_id == entry_id,
                Dispute.status.in_(list(ACTIVE_DISPUTE_STATUSES)),
            )
        ).scalar_one_or_none()

    def due_for_release(self, db: Session, *, now: datetime, limit: int = 100) -> List[EscrowEntry]:
        return (
            db.execute(
                select(EscrowEntry)
                .where(
                    EscrowEntry.status == EscrowStatus.HELD.value,
                    or_(
                        EscrowEntry.beneficiary_confirmed_at.is_not(None),
                        EscrowEntry.auto_release_at <= now,
                    ),
                )
                .order_by(EscrowEntry.auto_release_at.asc())
                .limit(limit)
            )
            .scalars()
            .all()
        )

    def failed_payouts(self, db: Session, *, limit: int = 100) -> List[EscrowEntry]:
        return (
            db.execute(
                select(EscrowEntry)
                .where(EscrowEntry.payout_status == PayoutStatus.FAILED.value)
                .order_by(EscrowEntry.updated_at.asc())
                .limit(limit)
            )
            .scalars()
            .all()
        )

    # ─────────────────────────────────────────────
    # INTERNAL HELPERS
    # ─────────────────────────────────────────────

    def _call_gateway(self, op: str, idempotency_key: str, entry: EscrowEntry, amount: Decimal) -> GatewayResult:
        call = getattr(self.payments, op)
        return self.retry_policy.run(
            lambda: call(idempotency_key, str(entry.id), amount),
            retry_on=(GatewayTimeoutError,),
            sleep=self.sleep,
            label=f"gateway {op}",
        )

    def _begin_attempt(self, db: Session, entry: EscrowEntry, op: str, expected: str) -> str:
        attempt = entry.gateway_attempts + 1
        key = derive_idempotency_key(str(entry.id), op, attempt)
        compare_and_set(
            db,
            entry,
            entity_type=ENTITY,
            event=f"{op}.attempt",
            values={"gateway_attempts": attempt, "last_idempotency_key": key},
            at=self.clock.now(),
            expected_statuses=[expected],
            details={"attempt": attempt},
        )
        return key

    def _mark_held(self, db: Session, entry: EscrowEntry, gateway_ref: Optional[str], *, actor_id: Optional[str]) -> None:
        now = self.clock.now()
        compare_and_set(
            db,
            entry,
            entity_type=ENTITY,
            event="captured",
            values={
                "status": EscrowStatus.CAPTURED.value,
                "captured_at": now,
                "auto_release_at": now + timedelta(days=self.settings.escrow_auto_release_days),
                "gateway_ref": gateway_ref or entry.gateway_ref,
                "needs_attention": False,
                "last_error": None,
            },
            at=now,
            expected_statuses=[EscrowStatus.AUTHORIZED.value, EscrowStatus.PENDING.value],
            actor_id=actor_id,
        )
        compare_and_set(
            db,
            entry,
            entity_type=ENTITY,
            event="held",
            values={"status": EscrowStatus.HELD.value, "held_at": now},
            at=now,
            expected_statuses=[EscrowStatus.CAPTURED.value],
            actor_id=actor_id,
        )
        payload = {"entry_id": str(entry.id), "amount": str(entry.amount), "currency": entry.currency}
        outbox.enqueue(db, entry.beneficiary_id, "escrow.funds_held", payload)
        outbox.enqueue(db, entry.payer_id, "escrow.payment_received", payload)

    def _payout(self, db: Session, entry: EscrowEntry, op: str, amount: Decimal) -> bool:
        """
        Gateway transfer for an already-settled entry. Failures never undo the ledger
        status; they are recorded for the reconciliation sweep.
        """
        key = entry.payout_idempotency_key
        error: Optional[str] = None
        try:
            result = self._call_gateway(op, key, entry, amount)
        except RetryExhausted as exc:
            error = f"gateway timeout: {exc.last_error}"
        else:
            if result.status == GatewayStatus.SUCCESS:
                compare_and_set(
                    db,
                    entry,
                    entity_type=ENTITY,
                    event=f"payout.{op}.succeeded",
                    values={
                        "payout_status": PayoutStatus.SUCCEEDED.value,
                        "gateway_ref": result.gateway_ref or entry.gateway_ref,
                        "needs_attention": False,
                        "last_error": None,
                    },
                    at=self.clock.now(),
                )
                return True
            if result.status == GatewayStatus.PENDING:
                return False
            error = f"gateway declined: {result.message or 'no reason given'}"

        self._payout_failed(db, entry, op, error)
        return False

    def _payout_failed(self, db: Session, entry: EscrowEntry, op: str, error: str) -> None:
        now = self.clock.now()
        if entry.payout_status != PayoutStatus.FAILED.value or not entry.needs_attention:
            compare_and_set(
                db,
                entry,
                entity_type=ENTITY,
                event=f"payout.{op}.failed",
                values={"payout_status": PayoutStatus.FAILED.value, "needs_attention": True, "last_error": error},
                at=now,
            )
        self.compensation.record(
            db,
            entity_type=ENTITY,
            entity_id=entry.id,
            action=CompensationAction.RETRY_PAYOUT.value,
            dedupe_key=f"payout:{entry.id}:{entry.payout_idempotency_key}",
            at=now,
            details={"operation": op, "amount": str(self._payout_amount(entry))},
            error=error,
        )
        logger.error("payout failed", extra={"entry_id": str(entry.id), "operation": op, "error": error})

    @staticmethod
    def _payout_amount(entry: EscrowEntry) -> Decimal:
        if entry.status == EscrowStatus.RELEASED.value:
            return entry.released_amount or Decimal("0")
        return entry.refunded_amount or Decimal("0")

    def _settle_release(
        self,
        db: Session,
        entry: EscrowEntry,
        *,
        amount: Decimal,
        expected: List[str],
        event: str,
        actor_id: Optional[str],
        details: Optional[dict] = None,
    ) -> EscrowEntry:
        now = self.clock.now()
        compare_and_set(
            db,
            entry,
            entity_type=ENTITY,
            event=event,
            values={
                "status": EscrowStatus.RELEASED.value,
                "released_at": now,
                "released_amount": amount,
                "payout_status": PayoutStatus.PENDING.value,
                "payout_idempotency_key": derive_idempotency_key(str(entry.id), OP_RELEASE, 1),
                "frozen_from_status": None,
                "frozen_by_dispute_id": None,
            },
            at=now,
            expected_statuses=expected,
            actor_id=actor_id,
            details=details,
        )
        outbox.enqueue(
            db,
            entry.beneficiary_id,
            "escrow.released",
            {"entry_id": str(entry.id), "amount": str(amount), "currency": entry.currency},
        )
        self._payout(db, entry, OP_RELEASE, amount)
        return entry

    def _settle_refund(
        self,
        db: Session,
        entry: EscrowEntry,
        *,
        amount: Decimal,
        reason: str,
        expected: List[str],
        event: str,
        actor_id: Optional[str],
        details: Optional[dict] = None,
    ) -> EscrowEntry:
        now = self.clock.now()
        voided = amount == 0
        compare_and_set(
            db,
            entry,
            entity_type=ENTITY,
            event=event,
            values={
                "status": EscrowStatus.REFUNDED.value,
                "refunded_at": now,
                "refunded_amount": amount,
                "refund_reason": reason,
                "payout_status": PayoutStatus.NOT_REQUIRED.value if voided else PayoutStatus.PENDING.value,
                "payout_idempotency_key": None if voided else derive_idempotency_key(str(entry.id), OP_REFUND, 1),
                "frozen_from_status": None,
                "frozen_by_dispute_id": None,
            },
            at=now,
            expected_statuses=expected,
            actor_id=actor_id,
            details=details,
        )
        outbox.enqueue(
            db,
            entry.payer_id,
            "escrow.refunded",
            {"entry_id": str(entry.id), "amount": str(amount), "currency": entry.currency, "reason": reason},
        )
        if not voided:
            self._payout(db, entry, OP_REFUND, amount)
        return entry

    @staticmethod
    def _is_voided(entry: EscrowEntry) -> bool:
        return (
            entry.status == EscrowStatus.REFUNDED.value
            and entry.payout_status == PayoutStatus.NOT_REQUIRED.value
        )

    def _refund_late_capture(self, db: Session, entry: EscrowEntry, gateway_ref: Optional[str]) -> None:
        """
        The provider confirmed a capture for an obligation that was already voided:
        the payer was charged, so the full amount goes back through a gateway refund.
        """
        now = self.clock.now()
        compare_and_set(
            db,
            entry,
            entity_type=ENTITY,
            event="capture.after_void",
            values={
                "captured_at": now,
                "gateway_ref": gateway_ref or entry.gateway_ref,
                "refunded_amount": entry.amount,
                "payout_status": PayoutStatus.PENDING.value,
                "payout_idempotency_key": derive_idempotency_key(str(entry.id), OP_REFUND, 1),
                "needs_attention": True,
                "last_error": "capture confirmed after the entry was voided",
            },
            at=now,
            expected_statuses=[EscrowStatus.REFUNDED.value],
            details={"amount": str(entry.amount), "gateway_ref": gateway_ref},
        )
        self.compensation.record(
            db,
            entity_type=ENTITY,
            entity_id=entry.id,
            action=CompensationAction.LATE_CAPTURE_REFUND.value,
            dedupe_key=f"late-capture:{entry.id}",
            at=now,
            details={"amount": str(entry.amount), "gateway_ref": gateway_ref},
            error="capture confirmed after the entry was voided",
        )
        self.compensation.resolve_for_entity(
            db, entity_id=entry.id, action=CompensationAction.CAPTURE_UNCONFIRMED.value, at=now
        )
        outbox.enqueue(
            db,
            entry.payer_id,
            "escrow.refunded",
            {"entry_id": str(entry.id), "amount": str(entry.amount), "currency": entry.currency, "reason": entry.refund_reason},
        )
        if self._payout(db, entry, OP_REFUND, entry.amount):
            self._resolve_payout_items(db, entry)

    def _resolve_payout_items(self, db: Session, entry: EscrowEntry) -> None:
        now = self.clock.now()
        for action in (CompensationAction.RETRY_PAYOUT, CompensationAction.LATE_CAPTURE_REFUND):
            self.compensation.resolve_for_entity(db, entity_id=entry.id, action=action.value, at=now)

    def _ensure_not_disputed(self, db: Session, entry: EscrowEntry) -> None:
        if entry.status == EscrowStatus.FROZEN.value or self.active_dispute_for(db, entry.id):
            raise DisputePending(
                "Funds are frozen by an open dispute.",
                blocking="release blocked by open dispute",
            )

    # ─────────────────────────────────────────────
    # ENTRY CREATION
    # ─────────────────────────────────────────────

    def open_entry(
        self,
        db: Session,
        *,
        contract: Contract,
        amount: Decimal,
        due_date: date,
        actor_id: Optional[str] = None,
    ) -> EscrowEntry:
        """
        Idempotent per (contract, due date): a replayed trigger returns the existing entry.
        """
        if amount is None or Decimal(amount) <= 0:
            raise ValidationFailed("Escrow amount must be positive.")

        existing = db.execute(
            select(EscrowEntry).where(
                EscrowEntry.contract_id == contract.id,
                EscrowEntry.due_date == due_date,
                EscrowEntry.kind == EscrowEntryKind.INSTALLMENT.value,
            )
        ).scalar_one_or_none()
        if existing:
            return existing

        now = self.clock.now()
        entry = EscrowEntry(
            id=uuid.uuid4(),
            contract_id=contract.id,
            kind=EscrowEntryKind.INSTALLMENT.value,
            payer_id=contract.tenant_id,
            beneficiary_id=contract.landlord_id,
            amount=Decimal(amount),
            currency=contract.currency,
            due_date=due_date,
            status=EscrowStatus.PENDING.value,
            version=1,
            gateway_attempts=0,
            needs_attention=False,
            created_at=now,
            updated_at=now,
        )
        db.add(entry)
        db.flush()
        record_creation(
            db,
            entry,
            entity_type=ENTITY,
            event="opened",
            at=now,
            actor_id=actor_id,
            details={"amount": str(entry.amount), "due_date": due_date.isoformat()},
        )
        outbox.enqueue(
            db,
            entry.payer_id,
            "escrow.payment_due",
            {"entry_id": str(entry.id), "amount": str(entry.amount), "currency": entry.currency, "due_date": due_date.isoformat()},
        )
        logger.info("escrow entry opened", extra={"entry_id": str(entry.id), "contract_id": str(contract.id)})
        return entry

    # ─────────────────────────────────────────────
    # COLLECTION
    # ─────────────────────────────────────────────

    def authorize(self, db: Session, entry_id: uuid.UUID, *, actor_id: Optional[str] = None) -> EscrowEntry:
        entry = self.get(db, entry_id)
        if entry.status != EscrowStatus.PENDING.value:
            raise InvalidTransition(f"Escrow entry is {entry.status}; only PENDING entries can be authorized.")
        if self.compensation.has_open(db, entity_id=entry.id, action=CompensationAction.CAPTURE_UNCONFIRMED.value):
            raise InvalidTransition(
                "A previous capture is awaiting confirmation from the payment provider.",
                blocking="payment awaiting reconciliation",
            )

        key = self._begin_attempt(db, entry, OP_AUTHORIZE, EscrowStatus.PENDING.value)
        try:
            result = self._call_gateway(OP_AUTHORIZE, key, entry, entry.amount)
        except RetryExhausted as exc:
            compare_and_set(
                db,
                entry,
                entity_type=ENTITY,
                event="authorize.timeout",
                values={"needs_attention": True, "last_error": f"gateway timeout: {exc.last_error}"},
                at=self.clock.now(),
            )
            raise GatewayTimeout(
                "The payment provider did not answer. Please retry.",
                blocking="payment provider unavailable",
            ) from exc

        return self._apply_authorize_result(db, entry, result, actor_id=actor_id)

    def _apply_authorize_result(
        self, db: Session, entry: EscrowEntry, result: GatewayResult, *, actor_id: Optional[str]
    ) -> EscrowEntry:
        now = self.clock.now()
        if result.status == GatewayStatus.SUCCESS:
            return compare_and_set(
                db,
                entry,
                entity_type=ENTITY,
                event="authorized",
                values={
                    "status": EscrowStatus.AUTHORIZED.value,
                    "authorized_at": now,
                    "gateway_ref": result.gateway_ref,
                    "needs_attention": False,
                    "last_error": None,
                },
                at=now,
                expected_statuses=[EscrowStatus.PENDING.value],
                actor_id=actor_id,
            )

        if result.status == GatewayStatus.PENDING:
            return compare_and_set(
                db,
                entry,
                entity_type=ENTITY,
                event="authorize.pending",
                values={"gateway_ref": result.gateway_ref},
                at=now,
            )

        compare_and_set(
            db,
            entry,
            entity_type=ENTITY,
            event="authorize.declined",
            values={"last_error": result.message or "declined"},
            at=now,
            actor_id=actor_id,
        )
        raise GatewayDeclined(
            f"Payment was declined: {result.message or 'no reason given'}.",
            blocking="payer must use another payment method",
        )

    def capture(self, db: Session, entry_id: uuid.UUID, *, actor_id: Optional[str] = None) -> EscrowEntry:
        entry = self.get(db, entry_id)
        if entry.status != EscrowStatus.AUTHORIZED.value:
            raise InvalidTransition(f"Escrow entry is {entry.status}; only AUTHORIZED entries can be captured.")

        key = self._begin_attempt(db, entry, OP_CAPTURE, EscrowStatus.AUTHORIZED.value)
        try:
            result = self._call_gateway(OP_CAPTURE, key, entry, entry.amount)
        except RetryExhausted as exc:
            # the charge may have gone through upstream: park it, never auto-refund
            now = self.clock.now()
            error = f"capture unconfirmed after {exc.attempts} attempt(s): {exc.last_error}"
            compare_and_set(
                db,
                entry,
                entity_type=ENTITY,
                event="capture.unconfirmed",
                values={"status": EscrowStatus.PENDING.value, "needs_attention": True, "last_error": error},
                at=now,
                expected_statuses=[EscrowStatus.AUTHORIZED.value],
            )
            self.compensation.record(
                db,
                entity_type=ENTITY,
                entity_id=entry.id,
                action=CompensationAction.CAPTURE_UNCONFIRMED.value,
                dedupe_key=f"capture:{entry.id}:{key}",
                at=now,
                details={"idempotency_key": key, "amount": str(entry.amount)},
                error=error,
            )
            raise GatewayTimeout(
                "The payment provider did not confirm the capture. It will be reconciled.",
                blocking="payment awaiting reconciliation",
            ) from exc

        if result.status == GatewayStatus.SUCCESS:
            self._mark_held(db, entry, result.gateway_ref, actor_id=actor_id)
            return entry

        if result.status == GatewayStatus.PENDING:
            return compare_and_set(
                db,
                entry,
                entity_type=ENTITY,
                event="capture.pending",
                values={"gateway_ref": result.gateway_ref or entry.gateway_ref},
                at=self.clock.now(),
            )

        compare_and_set(
            db,
            entry,
            entity_type=ENTITY,
            event="capture.declined",
            values={"last_error": result.message or "declined"},
            at=self.clock.now(),
            actor_id=actor_id,
        )
        raise GatewayDeclined(
            f"Capture was declined: {result.message or 'no reason given'}.",
            blocking="payer must use another payment method",
        )

    # ─────────────────────────────────────────────
    # WEBHOOK RECONCILIATION
    # ─────────────────────────────────────────────

    def reconcile(
        self,
        db: Session,
        entry_id: uuid.UUID,
        *,
        operation: str,
        final_status: GatewayStatus,
        gateway_ref: Optional[str] = None,
        message: Optional[str] = None,
    ) -> bool:
        """
        Applies an asynchronous gateway outcome. The webhook is authoritative over any
        earlier synchronous answer. Replays are no-ops. Returns True when something changed.
        """
        if operation not in GATEWAY_OPERATIONS:
            raise ValidationFailed(f"Unknown gateway operation '{operation}'.")
        if final_status == GatewayStatus.PENDING:
            return False

        entry = self.get(db, entry_id)
        now = self.clock.now()
        success = final_status == GatewayStatus.SUCCESS

        if operation == OP_AUTHORIZE:
            if entry.status != EscrowStatus.PENDING.value:
                return False
            if success:
                self._apply_authorize_result(db, entry, GatewayResult(GatewayStatus.SUCCESS, gateway_ref), actor_id=None)
            else:
                compare_and_set(
                    db, entry, entity_type=ENTITY, event="authorize.declined",
                    values={"last_error": message or "declined"}, at=now,
                )
            return True

        if operation == OP_CAPTURE:
            if success and self._is_voided(entry):
                self._refund_late_capture(db, entry, gateway_ref)
                return True
            if entry.status not in (EscrowStatus.AUTHORIZED.value, EscrowStatus.PENDING.value):
                return False
            if entry.status == EscrowStatus.PENDING.value and not self.compensation.has_open(
                db, entity_id=entry.id, action=CompensationAction.CAPTURE_UNCONFIRMED.value
            ):
                return False
            if success:
                self._mark_held(db, entry, gateway_ref, actor_id=None)
            else:
                compare_and_set(
                    db, entry, entity_type=ENTITY, event="capture.declined",
                    values={"needs_attention": False, "last_error": message or "declined"}, at=now,
                )
            self.compensation.resolve_for_entity(
                db, entity_id=entry.id, action=CompensationAction.CAPTURE_UNCONFIRMED.value, at=now
            )
            return True

        settled_status = EscrowStatus.RELEASED.value if operation == OP_RELEASE else EscrowStatus.REFUNDED.value
        if entry.status != settled_status or entry.payout_status not in (
            PayoutStatus.PENDING.value,
            PayoutStatus.FAILED.value,
        ):
            return False

        if success:
            compare_and_set(
                db,
                entry,
                entity_type=ENTITY,
                event=f"payout.{operation}.succeeded",
                values={
                    "payout_status": PayoutStatus.SUCCEEDED.value,
                    "gateway_ref": gateway_ref or entry.gateway_ref,
                    "needs_attention": False,
                    "last_error": None,
                },
                at=now,
            )
            self._resolve_payout_items(db, entry)
        else:
            self._payout_failed(db, entry, operation, f"gateway declined: {message or 'no reason given'}")
        return True

    def retry_payout(self, db: Session, entry_id: uuid.UUID) -> bool:
        """
        Re-sends a failed payout with its original idempotency key.
        """
        entry = self.get(db, entry_id)
        if entry.payout_status != PayoutStatus.FAILED.value:
            return entry.payout_status == PayoutStatus.SUCCEEDED.value
        op = OP_RELEASE if entry.status == EscrowStatus.RELEASED.value else OP_REFUND
        ok = self._payout(db, entry, op, self._payout_amount(entry))
        if ok:
            self._resolve_payout_items(db, entry)
        return ok

    # ─────────────────────────────────────────────
    # RELEASE / REFUND
    # ─────────────────────────────────────────────

    def confirm_receipt(self, db: Session, entry_id: uuid.UUID, *, actor_id: str) -> EscrowEntry:
        entry = self.get(db, entry_id)
        if actor_id != entry.beneficiary_id:
            raise NotAParty("Only the beneficiary can confirm receipt.")
        self._ensure_not_disputed(db, entry)
        if entry.status != EscrowStatus.HELD.value:
            raise NotHeld(f"Escrow entry is {entry.status}; funds are not held.")
        if entry.beneficiary_confirmed_at is not None:
            return entry

        return compare_and_set(
            db,
            entry,
            entity_type=ENTITY,
            event="receipt.confirmed",
            values={"beneficiary_confirmed_at": self.clock.now()},
            at=self.clock.now(),
            expected_statuses=[EscrowStatus.HELD.value],
            actor_id=actor_id,
        )

    def release_if_eligible(self, db: Session, entry_id: uuid.UUID, *, actor_id: Optional[str] = None) -> EscrowEntry:
        entry = self.get(db, entry_id)
        self._ensure_not_disputed(db, entry)
        if entry.status != EscrowStatus.HELD.value:
            raise NotHeld(f"Escrow entry is {entry.status}; funds are not held.")

        now = self.clock.now()
        confirmed = entry.beneficiary_confirmed_at is not None
        lapsed = entry.auto_release_at is not None and entry.auto_release_at <= now
        if not (confirmed or lapsed):
            raise ReleaseNotDue(
                "Funds are not yet eligible for release.",
                blocking=f"waiting on beneficiary confirmation or auto-release at {entry.auto_release_at.isoformat()}",
            )

        return self._settle_release(
            db,
            entry,
            amount=entry.amount,
            expected=[EscrowStatus.HELD.value],
            event="released",
            actor_id=actor_id,
            details={"trigger": "confirmation" if confirmed else "auto_release"},
        )

    def refund(self, db: Session, entry_id: uuid.UUID, *, reason: str, actor_id: Optional[str] = None) -> EscrowEntry:
        entry = self.get(db, entry_id)
        if entry.status in TERMINAL_ESCROW_STATUSES:
            raise NotRefundable(f"Escrow entry is already {entry.status}.")
        if entry.status == EscrowStatus.FROZEN.value:
            raise DisputePending(
                "Funds are frozen by an open dispute.",
                blocking="refund blocked by open dispute",
            )
        if entry.status == EscrowStatus.PENDING.value and self.compensation.has_open(
            db, entity_id=entry.id, action=CompensationAction.CAPTURE_UNCONFIRMED.value
        ):
            # the charge may have landed upstream; voiding now would keep the payer's money
            raise PaymentUnreconciled(
                "A capture for this entry is still awaiting confirmation from the payment provider.",
                blocking="payment awaiting reconciliation",
            )

        if entry.status in (EscrowStatus.PENDING.value, EscrowStatus.AUTHORIZED.value):
            # nothing was captured: the obligation is voided
            return self._settle_refund(
                db,
                entry,
                amount=Decimal("0"),
                reason=reason,
                expected=[EscrowStatus.PENDING.value, EscrowStatus.AUTHORIZED.value],
                event="voided",
                actor_id=actor_id,
            )

        return self._settle_refund(
            db,
            entry,
            amount=entry.amount,
            reason=reason,
            expected=[EscrowStatus.CAPTURED.value, EscrowStatus.HELD.value],
            event="refunded",
            actor_id=actor_id,
        )

    # ─────────────────────────────────────────────
    # DISPUTE HOOKS (DisputeArbiter only)
    # ─────────────────────────────────────────────

    def freeze(self, db: Session, entry_id: uuid.UUID, *, dispute: Dispute) -> EscrowEntry:
        entry = self.get(db, entry_id)
        if entry.status in TERMINAL_ESCROW_STATUSES:
            raise EscrowSettled(f"Escrow entry is already {entry.status}; there is nothing to freeze.")
        if entry.status not in (EscrowStatus.CAPTURED.value, EscrowStatus.HELD.value):
            raise NotFreezable(
                f"Escrow entry is {entry.status}; only captured funds can be frozen.",
                blocking="waiting on payment capture",
            )

        compare_and_set(
            db,
            entry,
            entity_type=ENTITY,
            event="frozen",
            values={
                "status": EscrowStatus.FROZEN.value,
                "frozen_from_status": entry.status,
                "frozen_by_dispute_id": dispute.id,
            },
            at=self.clock.now(),
            expected_statuses=[EscrowStatus.CAPTURED.value, EscrowStatus.HELD.value],
            actor_id=dispute.claimant_id,
            details={"dispute_id": str(dispute.id)},
        )
        outbox.enqueue(db, entry.beneficiary_id, "escrow.frozen", {"entry_id": str(entry.id), "dispute": dispute.reference})
        return entry

    def unfreeze(
        self,
        db: Session,
        entry_id: uuid.UUID,
        outcome: Optional[DisputeOutcome],
        *,
        dispute: Dispute,
        release_amount: Optional[Decimal] = None,
        actor_id: Optional[str] = None,
    ) -> EscrowEntry:
        """
        Leaves FROZEN on the dispute's terminal decision.
        outcome=None (withdrawn dispute) restores the pre-freeze status.
        """
        entry = self.get(db, entry_id)
        if entry.status != EscrowStatus.FROZEN.value or entry.frozen_by_dispute_id != dispute.id:
            raise InvariantBreach(
                f"Escrow entry {entry.id} is not frozen by dispute {dispute.reference}."
            )
        if dispute.status not in (DisputeStatus.RESOLVED.value, DisputeStatus.WITHDRAWN.value):
            raise InvariantBreach(f"Dispute {dispute.reference} is not terminal; entry stays frozen.")

        details = {"dispute_id": str(dispute.id), "outcome": outcome.value if outcome else None}
        frozen = [EscrowStatus.FROZEN.value]

        if outcome is None:
            return compare_and_set(
                db,
                entry,
                entity_type=ENTITY,
                event="unfrozen",
                values={
                    "status": entry.frozen_from_status or EscrowStatus.HELD.value,
                    "frozen_from_status": None,
                    "frozen_by_dispute_id": None,
                },
                at=self.clock.now(),
                expected_statuses=frozen,
                actor_id=actor_id,
                details=details,
            )

        if outcome == DisputeOutcome.RELEASE_TO_BENEFICIARY:
            return self._settle_release(
                db, entry, amount=entry.amount, expected=frozen,
                event="released.dispute", actor_id=actor_id, details=details,
            )

        if outcome == DisputeOutcome.REFUND_TO_PAYER:
            return self._settle_refund(
                db, entry, amount=entry.amount, reason=f"dispute {dispute.reference}",
                expected=frozen, event="refunded.dispute", actor_id=actor_id, details=details,
            )

        if release_amount is None:
            raise ValidationFailed("A split resolution needs the amount released to the beneficiary.")
        release_amount = Decimal(release_amount)
        if not (Decimal("0") < release_amount < entry.amount):
            raise ValidationFailed("Split release amount must be strictly between 0 and the entry amount.")

        remainder = entry.amount - release_amount
        self._settle_release(
            db, entry, amount=release_amount, expected=frozen,
            event="released.split", actor_id=actor_id,
            details={**details, "released": str(release_amount), "refunded": str(remainder)},
        )
        self._open_split_refund(db, entry, remainder, dispute=dispute, actor_id=actor_id)
        return entry

    def _open_split_refund(
        self, db: Session, original: EscrowEntry, amount: Decimal, *, dispute: Dispute, actor_id: Optional[str]
    ) -> EscrowEntry:
        now = self.clock.now()
        leg_id = uuid.uuid4()
        leg = EscrowEntry(
            id=leg_id,
            contract_id=original.contract_id,
            kind=EscrowEntryKind.SPLIT_REFUND.value,
            split_from_entry_id=original.id,
            payer_id=original.payer_id,
            beneficiary_id=original.beneficiary_id,
            amount=amount,
            currency=original.currency,
            due_date=original.due_date,
            status=EscrowStatus.REFUNDED.value,
            version=1,
            gateway_attempts=0,
            needs_attention=False,
            created_at=now,
            updated_at=now,
            captured_at=original.captured_at,
            refunded_at=now,
            refunded_amount=amount,
            refund_reason=f"dispute {dispute.reference} split",
            payout_status=PayoutStatus.PENDING.value,
            payout_idempotency_key=derive_idempotency_key(str(leg_id), OP_REFUND, 1),
        )
        db.add(leg)
        db.flush()
        record_creation(
            db,
            leg,
            entity_type=ENTITY,
            event="refunded.split",
            at=now,
            actor_id=actor_id,
            details={"split_from": str(original.id), "dispute_id": str(dispute.id), "amount": str(amount)},
        )
        outbox.enqueue(
            db,
            leg.payer_id,
            "escrow.refunded",
            {"entry_id": str(leg.id), "amount": str(amount), "currency": leg.currency, "reason": leg.refund_reason},
        )
        self._payout(db, leg, OP_REFUND, amount)
        return leg
