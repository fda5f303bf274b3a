import uuid
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from rental_core.models.enums import BINDING_CONTRACT_STATUSES, DisputeOutcome, SignerRole
from rental_core.models.status_history import StatusHistoryEntry
from rental_core.services.outcomes import Outcome
from rental_core.tests.flows import (
    LANDLORD_ID,
    LANDLORD_PHONE,
    MONTHLY,
    TENANT_ID,
    TENANT_PHONE,
    contract_view,
    create_contract,
    entry_view,
    fully_signed_contract,
    held_entry,
    request_code,
    send,
    sign,
)


def assert_signature_count_matches_status(view):
    assert (view.signatureCount == 2) == (view.status in BINDING_CONTRACT_STATUSES)


# ─────────────────────────────────────────────
# SIGNING
# ─────────────────────────────────────────────

def test_two_signatures_make_contract_fully_signed(db, coordinator, otp_sender, documents, landlord, tenant):
    contract_id = create_contract(coordinator, db, landlord)
    assert contract_view(coordinator, db, contract_id, landlord).status == "DRAFT"

    send(coordinator, db, contract_id, landlord)
    assert contract_view(coordinator, db, contract_id, landlord).status == "AWAITING_SIGNATURES"

    first = sign(coordinator, db, otp_sender, contract_id, landlord, SignerRole.LANDLORD)
    assert first.accepted
    assert first.data.status == "PARTIALLY_SIGNED"
    assert first.blocking == "waiting on tenant signature"
    assert_signature_count_matches_status(first.data)

    second = sign(coordinator, db, otp_sender, contract_id, tenant, SignerRole.TENANT)
    assert second.accepted
    view = second.data
    assert view.status == "FULLY_SIGNED"
    assert view.signatureCount == 2
    # the response reflects the committed edge; the document follows it
    assert view.documentStatus == "REQUESTED"
    assert view.retractionExpiresAtIso is not None
    assert_signature_count_matches_status(view)

    assert documents.renders == [str(contract_id)]
    assert contract_view(coordinator, db, contract_id, landlord).documentStatus == "RENDERED"

    # the FULLY_SIGNED edge opens the first installment
    assert len(view.escrowEntries) == 1
    entry = view.escrowEntries[0]
    assert entry.status == "PENDING"
    assert Decimal(entry.amount) == MONTHLY
    assert entry.payerId == TENANT_ID
    assert entry.beneficiaryId == LANDLORD_ID
    assert entry.dueDate == "2026-03-01"

    trail = coordinator.audit_trail(db, actor=landlord, entity_type="contract", entity_id=contract_id).data
    assert trail.chainValid is True
    assert [e.event for e in trail.entries] == [
        "created",
        "sent_for_signature",
        "partially_signed",
        "fully_signed",
        "document.rendered",
    ]
    assert [e.seq for e in trail.entries] == [1, 2, 3, 4, 5]


def test_signatures_bind_to_contract_content(db, coordinator, otp_sender, landlord, tenant):
    contract_id = fully_signed_contract(coordinator, db, otp_sender, landlord, tenant)
    view = contract_view(coordinator, db, contract_id, tenant)

    assert {s.role for s in view.signatures} == {"LANDLORD", "TENANT"}
    for s in view.signatures:
        assert s.contentHash == view.contentHash
        assert s.otpVerifiedAtIso <= s.signedAtIso


def test_replayed_confirmation_never_signs_twice(db, coordinator, otp_sender, documents, landlord, tenant):
    contract_id = create_contract(coordinator, db, landlord)
    send(coordinator, db, contract_id, landlord)

    challenge_id, code = request_code(coordinator, db, otp_sender, contract_id, landlord, SignerRole.LANDLORD)
    ok = coordinator.confirm_signature(
        db, contract_id, actor=landlord, role=SignerRole.LANDLORD, challenge_id=challenge_id, code=code
    )
    assert ok.accepted

    replay = coordinator.confirm_signature(
        db, contract_id, actor=landlord, role=SignerRole.LANDLORD, challenge_id=challenge_id, code=code
    )
    assert replay.outcome == Outcome.REJECTED
    assert replay.code == "ALREADY_SIGNED"
    assert contract_view(coordinator, db, contract_id, landlord).signatureCount == 1

    challenge_id, code = request_code(coordinator, db, otp_sender, contract_id, tenant, SignerRole.TENANT)
    for _ in range(2):
        coordinator.confirm_signature(
            db, contract_id, actor=tenant, role=SignerRole.TENANT, challenge_id=challenge_id, code=code
        )

    view = contract_view(coordinator, db, contract_id, tenant)
    assert view.status == "FULLY_SIGNED"
    assert len(view.signatures) == 2
    assert len(view.escrowEntries) == 1
    assert len(documents.renders) == 1


def test_document_is_rendered_only_after_signature_commits(
    db, coordinator, otp_sender, documents, monkeypatch, landlord, tenant
):
    contract_id = create_contract(coordinator, db, landlord)
    send(coordinator, db, contract_id, landlord)
    sign(coordinator, db, otp_sender, contract_id, landlord, SignerRole.LANDLORD)
    challenge_id, code = request_code(coordinator, db, otp_sender, contract_id, tenant, SignerRole.TENANT)

    def dropped_connection():
        raise OperationalError("COMMIT", {}, Exception("connection dropped"))

    monkeypatch.setattr(db, "commit", dropped_connection)
    with pytest.raises(OperationalError):
        coordinator.confirm_signature(
            db, contract_id, actor=tenant, role=SignerRole.TENANT, challenge_id=challenge_id, code=code
        )
    monkeypatch.undo()

    assert documents.renders == []
    view = contract_view(coordinator, db, contract_id, tenant)
    assert view.status == "PARTIALLY_SIGNED"
    assert view.documentStatus == "NOT_REQUESTED"

    retried = coordinator.confirm_signature(
        db, contract_id, actor=tenant, role=SignerRole.TENANT, challenge_id=challenge_id, code=code
    )
    assert retried.accepted
    assert retried.data.status == "FULLY_SIGNED"
    assert documents.renders == [str(contract_id)]
    assert contract_view(coordinator, db, contract_id, tenant).documentStatus == "RENDERED"


def test_code_after_ttl_is_expired_even_if_correct(db, coordinator, otp_sender, clock, settings, landlord):
    contract_id = create_contract(coordinator, db, landlord)
    send(coordinator, db, contract_id, landlord)
    challenge_id, code = request_code(coordinator, db, otp_sender, contract_id, landlord, SignerRole.LANDLORD)

    clock.advance(seconds=settings.otp_ttl_seconds + 1)

    result = coordinator.confirm_signature(
        db, contract_id, actor=landlord, role=SignerRole.LANDLORD, challenge_id=challenge_id, code=code
    )
    assert result.outcome == Outcome.REJECTED
    assert result.code == "CODE_EXPIRED"
    assert contract_view(coordinator, db, contract_id, landlord).status == "AWAITING_SIGNATURES"


def test_wrong_code_is_rejected_and_counted(db, coordinator, otp_sender, landlord):
    contract_id = create_contract(coordinator, db, landlord)
    send(coordinator, db, contract_id, landlord)
    challenge_id, code = request_code(coordinator, db, otp_sender, contract_id, landlord, SignerRole.LANDLORD)
    wrong = "000000" if code != "000000" else "111111"

    codes = [
        coordinator.confirm_signature(
            db, contract_id, actor=landlord, role=SignerRole.LANDLORD, challenge_id=challenge_id, code=wrong
        ).code
        for _ in range(3)
    ]
    assert codes == ["INVALID_CODE", "INVALID_CODE", "TOO_MANY_ATTEMPTS"]

    late = coordinator.confirm_signature(
        db, contract_id, actor=landlord, role=SignerRole.LANDLORD, challenge_id=challenge_id, code=code
    )
    assert late.code == "TOO_MANY_ATTEMPTS"


def test_challenge_is_bound_to_its_contract(db, coordinator, otp_sender, landlord):
    first = create_contract(coordinator, db, landlord)
    other = create_contract(coordinator, db, landlord)
    send(coordinator, db, first, landlord)
    send(coordinator, db, other, landlord)

    challenge_id, code = request_code(coordinator, db, otp_sender, first, landlord, SignerRole.LANDLORD)
    result = coordinator.confirm_signature(
        db, other, actor=landlord, role=SignerRole.LANDLORD, challenge_id=challenge_id, code=code
    )
    assert result.code == "INVALID_CODE"

    # the challenge was not burned by the mismatch
    ok = coordinator.confirm_signature(
        db, first, actor=landlord, role=SignerRole.LANDLORD, challenge_id=challenge_id, code=code
    )
    assert ok.accepted


def test_only_the_matching_party_can_sign_a_role(db, coordinator, landlord, tenant, stranger):
    contract_id = create_contract(coordinator, db, landlord)
    send(coordinator, db, contract_id, landlord)

    as_other_role = coordinator.request_signature(db, contract_id, actor=tenant, role=SignerRole.LANDLORD)
    assert as_other_role.code == "NOT_A_PARTY"

    outsider = coordinator.request_signature(db, contract_id, actor=stranger, role=SignerRole.TENANT)
    assert outsider.code == "NOT_A_PARTY"


def test_draft_contract_cannot_be_signed(db, coordinator, landlord):
    contract_id = create_contract(coordinator, db, landlord)
    result = coordinator.request_signature(db, contract_id, actor=landlord, role=SignerRole.LANDLORD)
    assert result.code == "CONTRACT_NOT_SIGNABLE"
    assert result.blocking == "contract is not awaiting signatures"


def test_otp_delivery_failure_is_pending_retry(db, coordinator, otp_sender, landlord):
    contract_id = create_contract(coordinator, db, landlord)
    send(coordinator, db, contract_id, landlord)
    otp_sender.failures_left = 100

    result = coordinator.request_signature(db, contract_id, actor=landlord, role=SignerRole.LANDLORD)
    assert result.outcome == Outcome.PENDING_RETRY
    assert result.code == "OTP_DELIVERY_FAILED"

    otp_sender.failures_left = 0
    assert coordinator.request_signature(db, contract_id, actor=landlord, role=SignerRole.LANDLORD).accepted


# ─────────────────────────────────────────────
# CREATION
# ─────────────────────────────────────────────

def test_create_requires_a_party_as_author(db, coordinator, stranger):
    result = coordinator.create_contract(
        db,
        actor=stranger,
        listing_id="listing-42",
        landlord_id=LANDLORD_ID,
        tenant_id=TENANT_ID,
        landlord_phone=LANDLORD_PHONE,
        tenant_phone=TENANT_PHONE,
        monthly_amount=MONTHLY,
        start_date=date(2026, 3, 1),
        end_date=date(2027, 2, 28),
    )
    assert result.code == "NOT_A_PARTY"


def test_mediator_cannot_create_contracts(db, coordinator, mediator):
    result = coordinator.create_contract(
        db,
        actor=mediator,
        listing_id="listing-42",
        landlord_id=LANDLORD_ID,
        tenant_id=TENANT_ID,
        landlord_phone=LANDLORD_PHONE,
        tenant_phone=TENANT_PHONE,
        monthly_amount=MONTHLY,
        start_date=date(2026, 3, 1),
        end_date=date(2027, 2, 28),
    )
    assert result.outcome == Outcome.REJECTED
    assert result.code == "FORBIDDEN"


def test_create_validates_terms(db, coordinator, landlord):
    base = dict(
        actor=landlord,
        listing_id="listing-42",
        landlord_id=LANDLORD_ID,
        tenant_id=TENANT_ID,
        landlord_phone=LANDLORD_PHONE,
        tenant_phone=TENANT_PHONE,
        monthly_amount=MONTHLY,
        start_date=date(2026, 3, 1),
        end_date=date(2027, 2, 28),
    )
    assert coordinator.create_contract(db, **{**base, "monthly_amount": Decimal("0")}).code == "VALIDATION_ERROR"
    assert coordinator.create_contract(db, **{**base, "end_date": date(2026, 2, 1)}).code == "VALIDATION_ERROR"
    assert coordinator.create_contract(db, **{**base, "tenant_id": LANDLORD_ID}).code == "VALIDATION_ERROR"


def test_contract_reference_format(db, coordinator, landlord):
    contract_id = create_contract(coordinator, db, landlord)
    ref = contract_view(coordinator, db, contract_id, landlord).reference
    assert ref.startswith("BAIL-2026-")
    assert len(ref) == len("BAIL-2026-") + 8


def test_outsider_cannot_read_contract(db, coordinator, landlord, stranger, mediator):
    contract_id = create_contract(coordinator, db, landlord)
    assert coordinator.get_contract(db, contract_id, actor=stranger).code == "NOT_A_PARTY"
    assert coordinator.get_contract(db, contract_id, actor=mediator).accepted
    assert coordinator.get_contract(db, uuid.uuid4(), actor=landlord).code == "NOT_FOUND"


# ─────────────────────────────────────────────
# CANCEL / WITHDRAW / TERMINATE
# ─────────────────────────────────────────────

def test_cancel_before_any_signature(db, coordinator, notifications, landlord):
    contract_id = create_contract(coordinator, db, landlord)
    send(coordinator, db, contract_id, landlord)

    result = coordinator.cancel(db, contract_id, actor=landlord, reason="listing rented elsewhere")
    assert result.accepted
    assert result.data.status == "CANCELLED"
    assert result.data.closingReason == "listing rented elsewhere"
    assert "contract.cancelled" in notifications.templates_for(TENANT_ID)


def test_cancel_after_a_signature_requires_withdrawal(db, coordinator, otp_sender, notifications, landlord):
    contract_id = create_contract(coordinator, db, landlord)
    send(coordinator, db, contract_id, landlord)
    sign(coordinator, db, otp_sender, contract_id, landlord, SignerRole.LANDLORD)
    sent_before = len(notifications.sent)

    result = coordinator.cancel(db, contract_id, actor=landlord, reason="changed my mind")
    assert result.code == "INVALID_TRANSITION"
    assert result.blocking == "withdrawal required once a party has signed"
    assert len(notifications.sent) == sent_before

    withdrawn = coordinator.withdraw(db, contract_id, actor=landlord, reason="changed my mind")
    assert withdrawn.accepted
    assert withdrawn.data.status == "CANCELLED"
    assert withdrawn.data.signatureCount == 0
    assert_signature_count_matches_status(withdrawn.data)


def test_withdraw_inside_retraction_window_voids_pending_entry(db, coordinator, otp_sender, clock, landlord, tenant):
    contract_id = fully_signed_contract(coordinator, db, otp_sender, landlord, tenant)
    clock.advance(hours=47)

    result = coordinator.withdraw(db, contract_id, actor=tenant, reason="found another flat")
    assert result.accepted
    view = result.data
    assert view.status == "CANCELLED"
    assert view.signatureCount == 0
    assert view.nextDueDate is None
    [entry] = view.escrowEntries
    assert entry.status == "REFUNDED"
    assert entry.payoutStatus == "NOT_REQUIRED"
    assert Decimal(entry.refundedAmount) == 0


def test_withdraw_after_retraction_window_is_rejected(db, coordinator, otp_sender, clock, settings, landlord, tenant):
    contract_id = fully_signed_contract(coordinator, db, otp_sender, landlord, tenant)
    clock.advance(hours=settings.retraction_window_hours)

    result = coordinator.withdraw(db, contract_id, actor=tenant, reason="too late")
    assert result.code == "RETRACTION_WINDOW_CLOSED"
    assert contract_view(coordinator, db, contract_id, tenant).status == "FULLY_SIGNED"


def test_terminate_only_active_contracts(db, coordinator, sweeps, otp_sender, clock, landlord, tenant):
    contract_id = fully_signed_contract(coordinator, db, otp_sender, landlord, tenant)
    assert coordinator.terminate(db, contract_id, actor=landlord, reason="early").code == "INVALID_TRANSITION"

    clock.advance(hours=49)
    sweeps.sweep_retraction_windows(db)

    result = coordinator.terminate(db, contract_id, actor=landlord, reason="tenant moved out")
    assert result.accepted
    assert result.data.status == "TERMINATED"
    assert result.data.nextDueDate is None
    assert_signature_count_matches_status(result.data)

    assert coordinator.withdraw(db, contract_id, actor=tenant, reason="x").code == "RETRACTION_WINDOW_CLOSED"


def active_contract_with_held_entry(coordinator, db, sweeps, otp_sender, settings, clock, landlord, tenant):
    contract_id, entry_id = held_entry(coordinator, db, otp_sender, landlord, tenant)
    clock.advance(hours=settings.retraction_window_hours)
    sweeps.sweep_retraction_windows(db)
    assert contract_view(coordinator, db, contract_id, tenant).status == "ACTIVE"
    return contract_id, entry_id


def test_termination_leaves_held_funds_releasable(db, coordinator, sweeps, otp_sender, payments, settings, clock, landlord, tenant):
    contract_id, entry_id = active_contract_with_held_entry(
        coordinator, db, sweeps, otp_sender, settings, clock, landlord, tenant
    )
    before = entry_view(coordinator, db, entry_id, tenant)

    assert coordinator.terminate(db, contract_id, actor=tenant, reason="job relocation").accepted

    after = entry_view(coordinator, db, entry_id, tenant)
    assert after.status == "HELD"
    assert after.version == before.version

    released = coordinator.confirm_receipt(db, entry_id, actor=landlord)
    assert released.accepted
    assert released.blocking is None
    assert released.data.status == "RELEASED"
    assert len(payments.calls_for("release")) == 1


def test_dispute_open_at_termination_still_resolves(db, coordinator, sweeps, otp_sender, settings, clock, landlord, tenant, admin, mediator):
    contract_id, entry_id = active_contract_with_held_entry(
        coordinator, db, sweeps, otp_sender, settings, clock, landlord, tenant
    )
    opened = coordinator.open_dispute(
        db, actor=tenant, contract_id=contract_id, category="deposit", motif="damage",
        description="Landlord kept the keys.", escrow_entry_id=entry_id,
    )
    assert opened.accepted
    dispute_id = uuid.UUID(opened.data.disputeId)

    assert coordinator.terminate(db, contract_id, actor=landlord, reason="sold the apartment").accepted
    assert entry_view(coordinator, db, entry_id, tenant).status == "FROZEN"
    assert coordinator.get_dispute(db, dispute_id, actor=tenant).data.status == "OPEN"

    assert coordinator.assign_mediator(db, dispute_id, actor=admin, mediator_id=mediator.user_id).accepted
    resolved = coordinator.resolve_dispute(
        db, dispute_id, actor=mediator, outcome=DisputeOutcome.RELEASE_TO_BENEFICIARY, notes="no damage found"
    )
    assert resolved.accepted, resolved.as_dict()
    assert resolved.data.status == "RESOLVED"
    assert entry_view(coordinator, db, entry_id, tenant).status == "RELEASED"
    assert contract_view(coordinator, db, contract_id, tenant).status == "TERMINATED"


# ─────────────────────────────────────────────
# DOCUMENT / AUDIT
# ─────────────────────────────────────────────

def test_document_integrity_check(db, coordinator, otp_sender, landlord, tenant):
    contract_id = create_contract(coordinator, db, landlord)
    early = coordinator.verify_document_integrity(db, contract_id, actor=landlord, sha256="a" * 64)
    assert early.code == "INVALID_TRANSITION"

    send(coordinator, db, contract_id, landlord)
    sign(coordinator, db, otp_sender, contract_id, landlord, SignerRole.LANDLORD)
    sign(coordinator, db, otp_sender, contract_id, tenant, SignerRole.TENANT)
    digest = contract_view(coordinator, db, contract_id, landlord).documentSha256

    assert coordinator.verify_document_integrity(db, contract_id, actor=tenant, sha256=digest).data["matches"] is True
    assert coordinator.verify_document_integrity(db, contract_id, actor=tenant, sha256="b" * 64).data["matches"] is False


def test_failed_render_surfaces_in_waiting_on(db, coordinator, otp_sender, documents, landlord, tenant):
    documents.fail = True
    contract_id = fully_signed_contract(coordinator, db, otp_sender, landlord, tenant)

    view = contract_view(coordinator, db, contract_id, landlord)
    assert view.status == "FULLY_SIGNED"
    assert view.documentStatus == "FAILED"
    assert "waiting on contract document rendering" in view.waitingOn


def test_tampered_history_breaks_the_chain(db, coordinator, landlord):
    contract_id = create_contract(coordinator, db, landlord)
    send(coordinator, db, contract_id, landlord)

    row = db.execute(
        select(StatusHistoryEntry).where(
            StatusHistoryEntry.entity_id == contract_id, StatusHistoryEntry.seq == 2
        )
    ).scalar_one()
    forged = dict(row.payload_json)
    forged["actor"] = "someone-else"
    db.execute(
        update(StatusHistoryEntry)
        .where(StatusHistoryEntry.id == row.id)
        .values(payload_json=forged)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    trail = coordinator.audit_trail(db, actor=landlord, entity_type="contract", entity_id=contract_id)
    assert trail.accepted
    assert trail.data.chainValid is False


def test_audit_trail_rejects_unknown_entity(db, coordinator, admin):
    result = coordinator.audit_trail(db, actor=admin, entity_type="invoice", entity_id=uuid.uuid4())
    assert result.code == "VALIDATION_ERROR"
