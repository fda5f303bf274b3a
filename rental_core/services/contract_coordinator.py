#rental_core/services/contract_coordinator.py
from __future__ import annotations

import calendar
import logging
import secrets
import string
import uuid
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rental_core.core.config import Settings
from rental_core.core.errors import (
    ConcurrentModification,
    ConflictError,
    DisputePending,
    DomainError,
    DuplicateOpenDispute,
    ErrorKind,
    InvalidTransition,
    InvariantBreach,
    NotAParty,
    NotFound,
    ReleaseNotDue,
    RetractionWindowClosed,
    RetractionWindowOpen,
    ValidationFailed,
)
from rental_core.core.hashing import canonical_dumps, sha256_hex
from rental_core.core.retry import RetryPolicy
from rental_core.integrations import Integrations
from rental_core.integrations.documents import DocumentRenderError
from rental_core.integrations.payments import GatewayStatus
from rental_core.models.contract import Contract
from rental_core.models.enums import (
    BINDING_CONTRACT_STATUSES,
    SIGNABLE_CONTRACT_STATUSES,
    TERMINAL_ESCROW_STATUSES,
    ContractStatus,
    DisputeOutcome,
    DocumentStatus,
    EscrowStatus,
    PrincipalRole,
    SignerRole,
)
from rental_core.policies.rbac import (
    ACTION_ASSIGN_MEDIATOR,
    ACTION_CREATE_CONTRACT,
    ACTION_OPEN_DISPUTE,
    ACTION_PAY,
    ACTION_RESOLVE_DISPUTE,
    ACTION_SIGN,
    Principal,
    require_action,
)
from rental_core.services import outbox, projections
from rental_core.services.compensation_service import CompensationService
from rental_core.services.dispute_arbiter import DisputeArbiter
from rental_core.services.escrow_ledger import EscrowLedger
from rental_core.services.history_service import HistoryService
from rental_core.services.otp_verifier import OtpVerifier
from rental_core.services.outcomes import OperationResult, Outcome
from rental_core.services.signature_coordinator import SignatureCoordinator
from rental_core.services.versioned_writes import compare_and_set, record_creation

logger = logging.getLogger(__name__)

ENTITY = "contract"

_REF_ALPHABET = string.ascii_uppercase + string.digits

AUDITABLE_ENTITIES = ("contract", "escrow_entry", "dispute")


def generate_contract_reference(year: int) -> str:
    return f"BAIL-{year}-{''.join(secrets.choice(_REF_ALPHABET) for _ in range(8))}"


def add_months(d: date, months: int) -> date:
    """
    Calendar month arithmetic clamped to the last day of the target month.
    """
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def months_between(start: date, later: date) -> int:
    return (later.year - start.year) * 12 + (later.month - start.month)


class ContractCoordinator:
    """
    Top-level state machine and the only writer of Contract.status.

    Owns the unit of work: every public operation runs inside `_execute`, which commits,
    rolls back, and translates component errors into an OperationResult. Components
    (signatures, ledger, arbiter, OTP) only flush.
    """

    def __init__(self, settings: Settings, integrations: Integrations):
        self.settings = settings
        self.integrations = integrations
        self.clock = integrations.clock

        retry_policy = RetryPolicy.from_settings(settings)
        self.history = HistoryService()
        self.compensation = CompensationService()
        self.otp = OtpVerifier(settings, self.clock, integrations.otp_sender, retry_policy, integrations.sleep)
        self.signatures = SignatureCoordinator(self.otp, self.clock)
        self.ledger = EscrowLedger(
            settings, self.clock, integrations.payments, retry_policy, integrations.sleep, self.compensation
        )
        self.disputes = DisputeArbiter(self.ledger, self.clock)

    # ─────────────────────────────────────────────
    # UNIT OF WORK
    # ─────────────────────────────────────────────

    def _dispatch_notifications(self, db: Session) -> None:
        for n in outbox.drain(db):
            try:
                self.integrations.notifications.notify(n.user_id, n.template_code, n.payload)
            except Exception:
                # fire-and-forget: delivery problems never reach the caller
                logger.exception("notification dispatch failed", extra={"template": n.template_code, "user_id": n.user_id})

    def _render_requested_documents(self, db: Session) -> None:
        for contract_id in outbox.drain_renders(db):
            try:
                contract = self._get_contract(db, contract_id)
                if contract.document_status not in (DocumentStatus.REQUESTED.value, DocumentStatus.FAILED.value):
                    db.rollback()
                    continue
                self._render_document(db, contract)
                db.commit()
            except Exception:
                # the render sweep picks up whatever is left REQUESTED
                db.rollback()
                logger.exception("document rendering after commit failed", extra={"contract_id": str(contract_id)})
            self._dispatch_notifications(db)

    def _after_commit(self, db: Session) -> None:
        self._dispatch_notifications(db)
        self._render_requested_documents(db)

    def _commit(self, db: Session) -> None:
        try:
            db.commit()
        except Exception:
            db.rollback()
            outbox.discard(db)
            raise
        self._after_commit(db)

    def _execute(
        self,
        db: Session,
        operation: str,
        fn: Callable[[], Any],
        *,
        on_integrity: Optional[Callable[[], DomainError]] = None,
    ) -> OperationResult:
        try:
            result = fn()
        except DomainError as err:
            if err.keeps_state:
                self._commit(db)
            else:
                db.rollback()
                outbox.discard(db)
            self._log_rejection(operation, err)
            return OperationResult.from_error(err)
        except IntegrityError as exc:
            db.rollback()
            outbox.discard(db)
            err = on_integrity() if on_integrity else ConflictError(
                "The record was changed by another request. Refresh and retry."
            )
            logger.info("integrity conflict", extra={"operation": operation, "error": str(exc.orig)})
            return OperationResult.from_error(err)
        except PermissionError as exc:
            db.rollback()
            outbox.discard(db)
            logger.info("operation forbidden", extra={"operation": operation, "error": str(exc)})
            return OperationResult(Outcome.REJECTED, code="FORBIDDEN", reason=str(exc), kind=ErrorKind.VALIDATION)
        except Exception:
            db.rollback()
            outbox.discard(db)
            raise

        self._commit(db)
        if isinstance(result, OperationResult):
            return result
        return OperationResult.accept(result)

    @staticmethod
    def _log_rejection(operation: str, err: DomainError) -> None:
        extra = {"operation": operation, "code": err.code, "kind": err.kind.value, "blocking": err.blocking}
        if err.kind == ErrorKind.INVARIANT:
            logger.error("invariant breach, operation aborted: %s", err.message, extra=extra)
        elif err.kind in (ErrorKind.TRANSIENT, ErrorKind.TERMINAL):
            logger.warning("operation failed externally: %s", err.message, extra=extra)
        else:
            logger.info("operation rejected: %s", err.message, extra=extra)

    # ─────────────────────────────────────────────
    # LOOKUPS / GUARDS
    # ─────────────────────────────────────────────

    def _get_contract(self, db: Session, contract_id: uuid.UUID) -> Contract:
        contract = db.execute(select(Contract).where(Contract.id == contract_id)).scalar_one_or_none()
        if not contract:
            raise NotFound("Contract not found.")
        return contract

    @staticmethod
    def _is_party(contract: Contract, user_id: str) -> bool:
        return user_id in (contract.landlord_id, contract.tenant_id)

    def _ensure_party(self, contract: Contract, actor: Principal, *, allow_admin: bool = False) -> None:
        if allow_admin and actor.role == PrincipalRole.ADMIN:
            return
        if not self._is_party(contract, actor.user_id):
            raise NotAParty(f"User is not a party to contract {contract.reference}.")

    def _ensure_can_view(self, contract: Contract, actor: Principal) -> None:
        if actor.role in (PrincipalRole.ADMIN, PrincipalRole.MEDIATOR):
            return
        self._ensure_party(contract, actor)

    @staticmethod
    def _require_admin(actor: Principal, what: str) -> None:
        if actor.role != PrincipalRole.ADMIN:
            raise PermissionError(f"Only an administrator can {what}.")

    def _waiting_on(self, db: Session, contract: Contract) -> List[str]:
        status = contract.status
        if status == ContractStatus.DRAFT.value:
            return ["waiting on a party to send the contract for signature"]
        if status in SIGNABLE_CONTRACT_STATUSES:
            signed = {s.role for s in self.signatures.list_signatures(db, contract.id)}
            return [f"waiting on {role.value.lower()} signature" for role in SignerRole if role.value not in signed]
        waiting: List[str] = []
        if status == ContractStatus.FULLY_SIGNED.value and contract.retraction_expires_at:
            waiting.append(f"retraction window open until {contract.retraction_expires_at.isoformat()}")
        if status in BINDING_CONTRACT_STATUSES and contract.document_status in (
            DocumentStatus.REQUESTED.value, DocumentStatus.FAILED.value,
        ):
            waiting.append("waiting on contract document rendering")
        return waiting

    def _contract_view(self, db: Session, contract: Contract):
        return projections.contract_view(
            contract,
            signatures=self.signatures.list_signatures(db, contract.id),
            entries=self.ledger.list_for_contract(db, contract.id),
            waiting_on=self._waiting_on(db, contract),
        )

    # ─────────────────────────────────────────────
    # CONTRACT LIFECYCLE
    # ─────────────────────────────────────────────

    def create_contract(
        self,
        db: Session,
        *,
        actor: Principal,
        listing_id: str,
        landlord_id: str,
        tenant_id: str,
        landlord_phone: str,
        tenant_phone: str,
        monthly_amount: Decimal,
        start_date: date,
        end_date: date,
        currency: Optional[str] = None,
        custom_fields: Optional[Dict[str, Any]] = None,
    ) -> OperationResult:
        def _run():
            require_action(actor, ACTION_CREATE_CONTRACT)
            if actor.user_id not in (landlord_id, tenant_id):
                raise NotAParty("Contracts can only be generated by the landlord or the tenant.")
            if landlord_id == tenant_id:
                raise ValidationFailed("Landlord and tenant must be different users.")
            try:
                amount = Decimal(str(monthly_amount))
            except (InvalidOperation, TypeError):
                raise ValidationFailed("Monthly amount must be a number.")
            if amount <= 0:
                raise ValidationFailed("Monthly amount must be positive.")
            if end_date <= start_date:
                raise ValidationFailed("End date must be after start date.")
            if not (landlord_phone or "").strip() or not (tenant_phone or "").strip():
                raise ValidationFailed("Both parties need a phone number for signature codes.")

            cur = (currency or self.settings.escrow_currency).upper()
            fields = dict(custom_fields or {})
            terms = {
                "listing_id": listing_id,
                "landlord_id": landlord_id,
                "tenant_id": tenant_id,
                "monthly_amount": str(amount),
                "currency": cur,
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
                "custom_fields": fields,
            }

            now = self.clock.now()
            contract = Contract(
                id=uuid.uuid4(),
                reference=generate_contract_reference(now.year),
                listing_id=listing_id,
                landlord_id=landlord_id,
                tenant_id=tenant_id,
                landlord_phone=landlord_phone.strip(),
                tenant_phone=tenant_phone.strip(),
                monthly_amount=amount,
                currency=cur,
                start_date=start_date,
                end_date=end_date,
                custom_fields_json=fields,
                content_hash=sha256_hex(canonical_dumps(terms)),
                status=ContractStatus.DRAFT.value,
                version=1,
                signature_count=0,
                document_status=DocumentStatus.NOT_REQUESTED.value,
                escrow_schedule_stopped=False,
                created_at=now,
                updated_at=now,
            )
            db.add(contract)
            db.flush()
            record_creation(
                db, contract, entity_type=ENTITY, event="created", at=now, actor_id=actor.user_id,
                details={"content_hash": contract.content_hash},
            )
            logger.info("contract created", extra={"contract_id": str(contract.id), "reference": contract.reference})
            return self._contract_view(db, contract)

        return self._execute(db, "create_contract", _run)

    def send_for_signature(self, db: Session, contract_id: uuid.UUID, *, actor: Principal) -> OperationResult:
        def _run():
            contract = self._get_contract(db, contract_id)
            self._ensure_party(contract, actor)
            if contract.status == ContractStatus.AWAITING_SIGNATURES.value:
                return self._contract_view(db, contract)
            if contract.status != ContractStatus.DRAFT.value:
                raise InvalidTransition(f"Contract {contract.reference} is {contract.status}; it was already sent.")

            now = self.clock.now()
            compare_and_set(
                db, contract, entity_type=ENTITY, event="sent_for_signature",
                values={"status": ContractStatus.AWAITING_SIGNATURES.value, "sent_for_signature_at": now},
                at=now, expected_statuses=[ContractStatus.DRAFT.value], actor_id=actor.user_id,
            )
            payload = {"contract_id": str(contract.id), "reference": contract.reference}
            outbox.enqueue(db, contract.landlord_id, "contract.signature_requested", payload)
            outbox.enqueue(db, contract.tenant_id, "contract.signature_requested", payload)
            return self._contract_view(db, contract)

        return self._execute(db, "send_for_signature", _run)

    def request_signature(
        self, db: Session, contract_id: uuid.UUID, *, actor: Principal, role: SignerRole
    ) -> OperationResult:
        def _run():
            require_action(actor, ACTION_SIGN)
            contract = self._get_contract(db, contract_id)
            challenge = self.signatures.request_signature(db, contract=contract, role=role, signer_id=actor.user_id)
            return projections.challenge_view(challenge, role.value)

        return self._execute(db, "request_signature", _run)

    def confirm_signature(
        self,
        db: Session,
        contract_id: uuid.UUID,
        *,
        actor: Principal,
        role: SignerRole,
        challenge_id: uuid.UUID,
        code: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> OperationResult:
        def _run():
            require_action(actor, ACTION_SIGN)
            contract = self._get_contract(db, contract_id)
            self.signatures.confirm_signature(
                db,
                contract=contract,
                role=role,
                signer_id=actor.user_id,
                challenge_id=challenge_id,
                code=code,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self._apply_signature(db, contract, actor_id=actor.user_id)
            view = self._contract_view(db, contract)
            return OperationResult.accept(view, blocking=view.waitingOn[0] if view.waitingOn else None)

        return self._execute(db, "confirm_signature", _run)

    def _apply_signature(self, db: Session, contract: Contract, *, actor_id: Optional[str]) -> bool:
        """
        Advances Contract status from the signature rows. Returns True when this call
        made the FULLY_SIGNED edge; only then do the edge side effects run.
        """
        for _ in range(3):
            count = self.signatures.count_signatures(db, contract.id)
            fully = count >= 2
            target = ContractStatus.FULLY_SIGNED.value if fully else ContractStatus.PARTIALLY_SIGNED.value
            if contract.status == target and contract.signature_count == count:
                return False

            now = self.clock.now()
            if fully:
                self._check_fully_signed_guard(db, contract)
                values = {
                    "status": target,
                    "signature_count": 2,
                    "fully_signed_at": now,
                    "retraction_expires_at": now + timedelta(hours=self.settings.retraction_window_hours),
                    "document_status": DocumentStatus.REQUESTED.value,
                }
            else:
                values = {"status": target, "signature_count": count}

            try:
                compare_and_set(
                    db, contract, entity_type=ENTITY,
                    event="fully_signed" if fully else "partially_signed",
                    values=values, at=now, expected_statuses=SIGNABLE_CONTRACT_STATUSES, actor_id=actor_id,
                    details={"signature_count": count},
                )
                break
            except ConcurrentModification:
                db.refresh(contract)
                if contract.status not in SIGNABLE_CONTRACT_STATUSES:
                    return False
        else:
            raise ConcurrentModification(f"Contract {contract.reference} is under heavy concurrent update; retry.")

        if not fully:
            signed = {s.role for s in self.signatures.list_signatures(db, contract.id)}
            for role in SignerRole:
                if role.value not in signed:
                    party = contract.landlord_id if role == SignerRole.LANDLORD else contract.tenant_id
                    outbox.enqueue(
                        db, party, "contract.awaiting_your_signature",
                        {"contract_id": str(contract.id), "reference": contract.reference},
                    )
            return False

        self._on_fully_signed(db, contract, actor_id=actor_id)
        return True

    def _check_fully_signed_guard(self, db: Session, contract: Contract) -> None:
        sigs = {s.role: s for s in self.signatures.list_signatures(db, contract.id)}
        for role in SignerRole:
            s = sigs.get(role.value)
            if s is None:
                raise InvariantBreach(f"Contract {contract.reference} lacks the {role.value.lower()} signature.")
            if s.otp_verified_at > s.signed_at:
                raise InvariantBreach(f"Signature {s.id} was recorded before its code was verified.")
            if s.content_hash != contract.content_hash:
                raise InvariantBreach(f"Signature {s.id} covers different contract content.")

    def _on_fully_signed(self, db: Session, contract: Contract, *, actor_id: Optional[str]) -> None:
        self.ledger.open_entry(
            db,
            contract=contract,
            amount=contract.monthly_amount,
            due_date=contract.start_date,
            actor_id=actor_id,
        )
        outbox.request_render(db, contract.id)
        payload = {
            "contract_id": str(contract.id),
            "reference": contract.reference,
            "retraction_expires_at": contract.retraction_expires_at.isoformat(),
        }
        outbox.enqueue(db, contract.landlord_id, "contract.fully_signed", payload)
        outbox.enqueue(db, contract.tenant_id, "contract.fully_signed", payload)
        logger.info("contract fully signed", extra={"contract_id": str(contract.id)})

    def _document_snapshot(self, db: Session, contract: Contract) -> Dict[str, Any]:
        return {
            "reference": contract.reference,
            "listing_id": contract.listing_id,
            "landlord_id": contract.landlord_id,
            "tenant_id": contract.tenant_id,
            "monthly_amount": str(contract.monthly_amount),
            "currency": contract.currency,
            "start_date": contract.start_date.isoformat(),
            "end_date": contract.end_date.isoformat(),
            "custom_fields": contract.custom_fields_json or {},
            "content_hash": contract.content_hash,
            "signatures": [
                {
                    "role": s.role,
                    "signer_id": s.signer_id,
                    "signed_at": s.signed_at.isoformat(),
                    "signature_hash": s.signature_hash,
                }
                for s in self.signatures.list_signatures(db, contract.id)
            ],
        }

    def _render_document(self, db: Session, contract: Contract) -> bool:
        now = self.clock.now()
        try:
            rendered = self.integrations.documents.render(str(contract.id), self._document_snapshot(db, contract))
        except DocumentRenderError as exc:
            logger.warning("document rendering failed", extra={"contract_id": str(contract.id), "error": str(exc)})
            if contract.document_status != DocumentStatus.FAILED.value:
                compare_and_set(
                    db, contract, entity_type=ENTITY, event="document.failed",
                    values={"document_status": DocumentStatus.FAILED.value}, at=now,
                )
            return False

        compare_and_set(
            db, contract, entity_type=ENTITY, event="document.rendered",
            values={
                "document_status": DocumentStatus.RENDERED.value,
                "document_ref": rendered.ref,
                "document_sha256": rendered.sha256,
            },
            at=now,
            details={"sha256": rendered.sha256},
        )
        return True

    def cancel(self, db: Session, contract_id: uuid.UUID, *, actor: Principal, reason: str) -> OperationResult:
        def _run():
            contract = self._get_contract(db, contract_id)
            self._ensure_party(contract, actor, allow_admin=True)
            cancellable = [ContractStatus.DRAFT.value, ContractStatus.AWAITING_SIGNATURES.value]
            if contract.status in (ContractStatus.PARTIALLY_SIGNED.value, ContractStatus.FULLY_SIGNED.value):
                raise InvalidTransition(
                    f"Contract {contract.reference} already carries signatures; use withdrawal instead.",
                    blocking="withdrawal required once a party has signed",
                )
            if contract.status not in cancellable:
                raise InvalidTransition(f"Contract {contract.reference} is {contract.status} and cannot be cancelled.")

            now = self.clock.now()
            compare_and_set(
                db, contract, entity_type=ENTITY, event="cancelled",
                values={
                    "status": ContractStatus.CANCELLED.value,
                    "cancelled_at": now,
                    "closing_reason": reason,
                    "escrow_schedule_stopped": True,
                },
                at=now, expected_statuses=cancellable, actor_id=actor.user_id,
            )
            self._notify_parties(db, contract, "contract.cancelled", {"reason": reason})
            return self._contract_view(db, contract)

        return self._execute(db, "cancel", _run)

    def withdraw(self, db: Session, contract_id: uuid.UUID, *, actor: Principal, reason: str) -> OperationResult:
        def _run():
            contract = self._get_contract(db, contract_id)
            self._ensure_party(contract, actor)
            now = self.clock.now()

            if contract.status == ContractStatus.FULLY_SIGNED.value:
                if contract.retraction_expires_at is None or now >= contract.retraction_expires_at:
                    raise RetractionWindowClosed(
                        f"The retraction window for {contract.reference} has closed.",
                    )
            elif contract.status in (ContractStatus.ACTIVE.value, ContractStatus.TERMINATED.value):
                raise RetractionWindowClosed(f"Contract {contract.reference} is already binding.")
            elif contract.status != ContractStatus.PARTIALLY_SIGNED.value:
                raise InvalidTransition(
                    f"Contract {contract.reference} is {contract.status}; withdrawal applies to signed contracts only.",
                )

            open_disputes = self.disputes.active_for_contract(db, contract.id)
            if open_disputes:
                raise DisputePending(
                    "An open dispute must be closed before withdrawing.",
                    blocking=f"dispute {open_disputes[0].reference} is open",
                )

            superseded = self.signatures.count_signatures(db, contract.id)
            compare_and_set(
                db, contract, entity_type=ENTITY, event="withdrawn",
                values={
                    "status": ContractStatus.CANCELLED.value,
                    "signature_count": 0,
                    "cancelled_at": now,
                    "closing_reason": reason,
                    "escrow_schedule_stopped": True,
                    "next_due_date": None,
                },
                at=now,
                expected_statuses=[ContractStatus.PARTIALLY_SIGNED.value, ContractStatus.FULLY_SIGNED.value],
                actor_id=actor.user_id,
                details={"superseded_signatures": superseded},
            )
            for entry in self.ledger.list_for_contract(db, contract.id):
                if entry.status not in TERMINAL_ESCROW_STATUSES:
                    self.ledger.refund(
                        db, entry.id, reason=f"contract {contract.reference} withdrawn", actor_id=actor.user_id
                    )
            self._notify_parties(db, contract, "contract.withdrawn", {"reason": reason, "by": actor.user_id})
            return self._contract_view(db, contract)

        return self._execute(db, "withdraw", _run)

    def terminate(self, db: Session, contract_id: uuid.UUID, *, actor: Principal, reason: str) -> OperationResult:
        def _run():
            contract = self._get_contract(db, contract_id)
            self._ensure_party(contract, actor, allow_admin=True)
            if contract.status != ContractStatus.ACTIVE.value:
                raise InvalidTransition(f"Contract {contract.reference} is {contract.status}; only ACTIVE contracts terminate.")

            now = self.clock.now()
            compare_and_set(
                db, contract, entity_type=ENTITY, event="terminated",
                values={
                    "status": ContractStatus.TERMINATED.value,
                    "terminated_at": now,
                    "closing_reason": reason,
                    "escrow_schedule_stopped": True,
                    "next_due_date": None,
                },
                at=now, expected_statuses=[ContractStatus.ACTIVE.value], actor_id=actor.user_id,
            )
            self._notify_parties(db, contract, "contract.terminated", {"reason": reason})
            return self._contract_view(db, contract)

        return self._execute(db, "terminate", _run)

    def _notify_parties(self, db: Session, contract: Contract, template: str, extra: Dict[str, Any]) -> None:
        payload = {"contract_id": str(contract.id), "reference": contract.reference, **extra}
        outbox.enqueue(db, contract.landlord_id, template, payload)
        outbox.enqueue(db, contract.tenant_id, template, payload)

    # ─────────────────────────────────────────────
    # READS / AUDIT
    # ─────────────────────────────────────────────

    def get_contract(self, db: Session, contract_id: uuid.UUID, *, actor: Principal) -> OperationResult:
        def _run():
            contract = self._get_contract(db, contract_id)
            self._ensure_can_view(contract, actor)
            return self._contract_view(db, contract)

        return self._execute(db, "get_contract", _run)

    def audit_trail(
        self, db: Session, *, actor: Principal, entity_type: str, entity_id: uuid.UUID
    ) -> OperationResult:
        def _run():
            if entity_type not in AUDITABLE_ENTITIES:
                raise ValidationFailed(f"Unknown entity type '{entity_type}'.")
            if entity_type == "contract":
                contract = self._get_contract(db, entity_id)
            elif entity_type == "escrow_entry":
                contract = self._get_contract(db, self.ledger.get(db, entity_id).contract_id)
            else:
                contract = self._get_contract(db, self.disputes.get(db, entity_id).contract_id)
            self._ensure_can_view(contract, actor)

            entries = self.history.list_entries(db, entity_type=entity_type, entity_id=entity_id)
            valid = self.history.verify_chain(db, entity_type=entity_type, entity_id=entity_id)
            if not valid:
                logger.error("audit chain broken", extra={"entity_type": entity_type, "entity_id": str(entity_id)})
            return projections.audit_trail_view(entity_type, entity_id, entries, chain_valid=valid)

        return self._execute(db, "audit_trail", _run)

    def verify_document_integrity(
        self, db: Session, contract_id: uuid.UUID, *, actor: Principal, sha256: str
    ) -> OperationResult:
        def _run():
            contract = self._get_contract(db, contract_id)
            self._ensure_can_view(contract, actor)
            if contract.document_sha256 is None:
                raise InvalidTransition(
                    f"Contract {contract.reference} has no rendered document yet.",
                    blocking="waiting on contract document rendering",
                )
            return {
                "contractId": str(contract.id),
                "matches": secrets.compare_digest(sha256.lower(), contract.document_sha256),
                "documentSha256": contract.document_sha256,
            }

        return self._execute(db, "verify_document_integrity", _run)

    # ─────────────────────────────────────────────
    # ESCROW
    # ─────────────────────────────────────────────

    def _release_checks(self, db: Session, contract: Contract) -> None:
        if contract.status not in BINDING_CONTRACT_STATUSES:
            raise InvalidTransition(
                f"Release blocked: contract {contract.reference} is {contract.status}.",
                blocking=f"contract is {contract.status.lower()}",
            )
        if contract.status == ContractStatus.FULLY_SIGNED.value and self.clock.now() < contract.retraction_expires_at:
            raise RetractionWindowOpen(
                "Funds cannot be released while the retraction window is open.",
                blocking=f"release blocked until retraction window closes at {contract.retraction_expires_at.isoformat()}",
            )

    def _release(self, db: Session, entry_id: uuid.UUID, *, actor_id: Optional[str]):
        entry = self.ledger.get(db, entry_id)
        self._release_checks(db, self._get_contract(db, entry.contract_id))
        return self.ledger.release_if_eligible(db, entry_id, actor_id=actor_id)

    def _entry_for(self, db: Session, entry_id: uuid.UUID):
        entry = self.ledger.get(db, entry_id)
        contract = self._get_contract(db, entry.contract_id)
        return entry, contract

    def pay(self, db: Session, entry_id: uuid.UUID, *, actor: Principal) -> OperationResult:
        def _run():
            require_action(actor, ACTION_PAY)
            entry, contract = self._entry_for(db, entry_id)
            if actor.user_id != entry.payer_id:
                raise NotAParty("Only the payer can pay this escrow entry.")
            if contract.status not in BINDING_CONTRACT_STATUSES:
                raise InvalidTransition(
                    f"Contract {contract.reference} is {contract.status}; payments need a signed contract.",
                )

            if entry.status == EscrowStatus.PENDING.value:
                self.ledger.authorize(db, entry.id, actor_id=actor.user_id)
            if entry.status == EscrowStatus.AUTHORIZED.value:
                self.ledger.capture(db, entry.id, actor_id=actor.user_id)

            blocking = None
            if entry.status in (EscrowStatus.PENDING.value, EscrowStatus.AUTHORIZED.value):
                blocking = "waiting on payment provider confirmation"
            return OperationResult.accept(projections.escrow_entry_view(entry), blocking=blocking)

        return self._execute(db, "pay", _run)

    def confirm_receipt(self, db: Session, entry_id: uuid.UUID, *, actor: Principal) -> OperationResult:
        def _run():
            entry, contract = self._entry_for(db, entry_id)
            self.ledger.confirm_receipt(db, entry.id, actor_id=actor.user_id)
            blocking = None
            try:
                self._release(db, entry.id, actor_id=actor.user_id)
            except (RetractionWindowOpen, ReleaseNotDue) as err:
                # confirmation is stored; the auto-release sweep completes it later
                blocking = err.blocking
            return OperationResult.accept(projections.escrow_entry_view(entry), blocking=blocking)

        return self._execute(db, "confirm_receipt", _run)

    def release(self, db: Session, entry_id: uuid.UUID, *, actor: Principal) -> OperationResult:
        def _run():
            entry, contract = self._entry_for(db, entry_id)
            if actor.role != PrincipalRole.ADMIN and actor.user_id != entry.beneficiary_id:
                raise NotAParty("Only the beneficiary or an administrator can request a release.")
            self._release(db, entry.id, actor_id=actor.user_id)
            return projections.escrow_entry_view(entry)

        return self._execute(db, "release", _run)

    def refund(self, db: Session, entry_id: uuid.UUID, *, actor: Principal, reason: str) -> OperationResult:
        def _run():
            self._require_admin(actor, "refund an escrow entry")
            entry = self.ledger.refund(db, entry_id, reason=reason, actor_id=actor.user_id)
            return projections.escrow_entry_view(entry)

        return self._execute(db, "refund", _run)

    def reconcile_payment(
        self,
        db: Session,
        entry_id: uuid.UUID,
        *,
        operation: str,
        final_status: GatewayStatus,
        gateway_ref: Optional[str] = None,
        message: Optional[str] = None,
    ) -> OperationResult:
        def _run():
            applied = self.ledger.reconcile(
                db, entry_id, operation=operation, final_status=final_status, gateway_ref=gateway_ref, message=message
            )
            return {"entryId": str(entry_id), "applied": applied}

        return self._execute(db, "reconcile_payment", _run)

    def get_escrow_entry(self, db: Session, entry_id: uuid.UUID, *, actor: Principal) -> OperationResult:
        def _run():
            entry, contract = self._entry_for(db, entry_id)
            self._ensure_can_view(contract, actor)
            return projections.escrow_entry_view(entry)

        return self._execute(db, "get_escrow_entry", _run)

    # ─────────────────────────────────────────────
    # DISPUTES
    # ─────────────────────────────────────────────

    def open_dispute(
        self,
        db: Session,
        *,
        actor: Principal,
        contract_id: uuid.UUID,
        category: str,
        motif: str,
        description: str,
        evidence: Optional[Sequence[Dict[str, Any]]] = None,
        escrow_entry_id: Optional[uuid.UUID] = None,
    ) -> OperationResult:
        def _run():
            require_action(actor, ACTION_OPEN_DISPUTE)
            contract = self._get_contract(db, contract_id)
            dispute = self.disputes.open(
                db,
                contract=contract,
                claimant_id=actor.user_id,
                category=category,
                motif=motif,
                description=description,
                evidence=evidence,
                escrow_entry_id=escrow_entry_id,
            )
            return projections.dispute_view(dispute)

        return self._execute(
            db,
            "open_dispute",
            _run,
            on_integrity=lambda: DuplicateOpenDispute(
                "A dispute is already open for this payment.",
                blocking="the open dispute must be resolved first",
            ),
        )

    def assign_mediator(
        self, db: Session, dispute_id: uuid.UUID, *, actor: Principal, mediator_id: str
    ) -> OperationResult:
        def _run():
            require_action(actor, ACTION_ASSIGN_MEDIATOR)
            pool = self.integrations.mediators.available_mediators()
            if pool and mediator_id not in pool:
                raise ValidationFailed(f"'{mediator_id}' is not an available mediator.")
            dispute = self.disputes.assign_mediator(db, dispute_id, mediator_id=mediator_id, actor_id=actor.user_id)
            return projections.dispute_view(dispute)

        return self._execute(db, "assign_mediator", _run)

    def resolve_dispute(
        self,
        db: Session,
        dispute_id: uuid.UUID,
        *,
        actor: Principal,
        outcome: DisputeOutcome,
        notes: str,
        release_amount: Optional[Decimal] = None,
    ) -> OperationResult:
        def _run():
            require_action(actor, ACTION_RESOLVE_DISPUTE)
            dispute = self.disputes.resolve(
                db,
                dispute_id,
                outcome=outcome,
                notes=notes,
                actor_id=actor.user_id,
                release_amount=release_amount,
                is_admin=actor.role == PrincipalRole.ADMIN,
                release_guard=lambda d: self._release_checks(db, self._get_contract(db, d.contract_id)),
            )
            return projections.dispute_view(dispute)

        return self._execute(db, "resolve_dispute", _run)

    def withdraw_dispute(
        self, db: Session, dispute_id: uuid.UUID, *, actor: Principal, reason: Optional[str] = None
    ) -> OperationResult:
        def _run():
            dispute = self.disputes.withdraw(db, dispute_id, actor_id=actor.user_id, reason=reason)
            return projections.dispute_view(dispute)

        return self._execute(db, "withdraw_dispute", _run)

    def get_dispute(self, db: Session, dispute_id: uuid.UUID, *, actor: Principal) -> OperationResult:
        def _run():
            dispute = self.disputes.get(db, dispute_id)
            if actor.role == PrincipalRole.USER and actor.user_id not in (dispute.claimant_id, dispute.respondent_id):
                raise NotAParty("User is not a party to this dispute.")
            return projections.dispute_view(dispute)

        return self._execute(db, "get_dispute", _run)
