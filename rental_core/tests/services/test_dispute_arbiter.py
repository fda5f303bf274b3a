import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from rental_core.models.dispute import Dispute
from rental_core.models.enums import DisputeOutcome, PrincipalRole
from rental_core.policies.rbac import Principal
from rental_core.services.outcomes import Outcome
from rental_core.tests.flows import (
    LANDLORD_ID,
    MONTHLY,
    TENANT_ID,
    contract_view,
    create_contract,
    entry_view,
    first_entry_id,
    fully_signed_contract,
    held_entry,
)


def open_dispute(coordinator, db, actor, contract_id, entry_id=None):
    return coordinator.open_dispute(
        db,
        actor=actor,
        contract_id=contract_id,
        category="deposit",
        motif="apartment not as described",
        description="Water damage in the bedroom was not disclosed.",
        evidence=[{"type": "photo", "ref": "s3://evidence/1.jpg"}],
        escrow_entry_id=entry_id,
    )


def dispute_count(db):
    return db.execute(select(func.count(Dispute.id))).scalar_one()


@pytest.fixture
def disputed(db, coordinator, otp_sender, landlord, tenant):
    contract_id, entry_id = held_entry(coordinator, db, otp_sender, landlord, tenant)
    opened = open_dispute(coordinator, db, tenant, contract_id, entry_id)
    assert opened.accepted, opened.as_dict()
    return contract_id, entry_id, uuid.UUID(opened.data.disputeId)


@pytest.fixture
def assigned(db, coordinator, disputed, settings, clock, admin, mediator):
    """
    Mediator assigned and the retraction window closed, so every outcome can settle.
    """
    result = coordinator.assign_mediator(db, disputed[2], actor=admin, mediator_id=mediator.user_id)
    assert result.accepted, result.as_dict()
    clock.advance(hours=settings.retraction_window_hours)
    return disputed


def test_dispute_freezes_funds_until_refund(db, coordinator, sweeps, otp_sender, payments, clock, landlord, tenant, admin, mediator):
    contract_id, entry_id = held_entry(coordinator, db, otp_sender, landlord, tenant)

    clock.advance(days=3)
    opened = open_dispute(coordinator, db, tenant, contract_id, entry_id)
    assert opened.accepted
    dispute_id = uuid.UUID(opened.data.disputeId)
    assert opened.data.status == "OPEN"
    assert opened.data.respondentId == LANDLORD_ID
    assert entry_view(coordinator, db, entry_id, tenant).status == "FROZEN"

    clock.advance(days=1)
    confirm = coordinator.confirm_receipt(db, entry_id, actor=landlord)
    assert confirm.outcome == Outcome.REJECTED
    assert confirm.code == "DISPUTE_PENDING"
    assert confirm.blocking == "release blocked by open dispute"

    # past the auto-release deadline: frozen funds stay put
    clock.advance(days=1)
    assert sweeps.sweep_auto_release(db).processed == 0
    assert entry_view(coordinator, db, entry_id, tenant).status == "FROZEN"

    assert coordinator.assign_mediator(db, dispute_id, actor=admin, mediator_id=mediator.user_id).accepted

    clock.advance(days=1)
    resolved = coordinator.resolve_dispute(
        db, dispute_id, actor=mediator, outcome=DisputeOutcome.REFUND_TO_PAYER, notes="damage confirmed by inspection"
    )
    assert resolved.accepted
    assert resolved.data.status == "RESOLVED"
    assert resolved.data.outcome == "REFUND_TO_PAYER"

    view = entry_view(coordinator, db, entry_id, tenant)
    assert view.status == "REFUNDED"
    assert Decimal(view.refundedAmount) == MONTHLY

    clock.advance(days=30)
    assert sweeps.sweep_auto_release(db).processed == 0
    assert payments.calls_for("release") == []
    assert len(payments.calls_for("refund")) == 1


def test_second_open_dispute_for_same_entry_is_rejected(db, coordinator, disputed, landlord, tenant):
    contract_id, entry_id, _ = disputed

    again = open_dispute(coordinator, db, tenant, contract_id, entry_id)
    assert again.outcome == Outcome.REJECTED
    assert again.code == "DUPLICATE_OPEN_DISPUTE"

    from_other_party = open_dispute(coordinator, db, landlord, contract_id, entry_id)
    assert from_other_party.code == "DUPLICATE_OPEN_DISPUTE"

    assert dispute_count(db) == 1


def test_losing_the_insert_race_reports_duplicate(db, coordinator, otp_sender, clock, landlord, tenant):
    contract_id, entry_id = held_entry(coordinator, db, otp_sender, landlord, tenant)

    # a row committed by another instance still holding the entry lock
    now = clock.now()
    db.add(
        Dispute(
            id=uuid.uuid4(),
            reference="LIT-2026-RACE1",
            contract_id=contract_id,
            escrow_entry_id=entry_id,
            active_entry_lock=entry_id,
            claimant_id=LANDLORD_ID,
            respondent_id=TENANT_ID,
            category="deposit",
            motif="race",
            description="race",
            evidence_json=[],
            status="WITHDRAWN",
            version=1,
            opened_at=now,
            updated_at=now,
        )
    )
    db.commit()

    result = open_dispute(coordinator, db, tenant, contract_id, entry_id)
    assert result.code == "DUPLICATE_OPEN_DISPUTE"
    assert entry_view(coordinator, db, entry_id, tenant).status == "HELD"


def test_resolve_release_settles_entry_and_dispute_together(db, coordinator, assigned, payments, mediator, tenant):
    contract_id, entry_id, dispute_id = assigned

    resolved = coordinator.resolve_dispute(
        db, dispute_id, actor=mediator, outcome=DisputeOutcome.RELEASE_TO_BENEFICIARY, notes="claim unfounded"
    )
    assert resolved.accepted
    assert resolved.data.status == "RESOLVED"

    view = entry_view(coordinator, db, entry_id, tenant)
    assert view.status == "RELEASED"
    assert view.frozenByDisputeId is None
    assert coordinator.disputes.active_for_contract(db, contract_id) == []
    assert len(payments.calls_for("release")) == 1


def test_split_resolution_opens_refund_leg(db, coordinator, assigned, payments, mediator, tenant):
    contract_id, entry_id, dispute_id = assigned

    resolved = coordinator.resolve_dispute(
        db,
        dispute_id,
        actor=mediator,
        outcome=DisputeOutcome.SPLIT,
        notes="partial damage",
        release_amount=Decimal("1000000"),
    )
    assert resolved.accepted
    assert Decimal(resolved.data.splitReleaseAmount) == Decimal("1000000")

    entries = {e.kind: e for e in contract_view(coordinator, db, contract_id, tenant).escrowEntries}
    original, leg = entries["INSTALLMENT"], entries["SPLIT_REFUND"]
    assert original.status == "RELEASED"
    assert Decimal(original.releasedAmount) == Decimal("1000000")
    assert leg.status == "REFUNDED"
    assert leg.splitFromEntryId == str(entry_id)
    assert Decimal(leg.refundedAmount) == Decimal("500000")
    assert Decimal(original.releasedAmount) + Decimal(leg.refundedAmount) == MONTHLY

    assert [c[3] for c in payments.calls_for("release")] == [Decimal("1000000")]
    assert [c[3] for c in payments.calls_for("refund")] == [Decimal("500000")]


@pytest.mark.parametrize("outcome, amount", [
    (DisputeOutcome.RELEASE_TO_BENEFICIARY, None),
    (DisputeOutcome.SPLIT, Decimal("1000000")),
])
def test_resolution_cannot_pay_out_inside_retraction_window(
    db, coordinator, disputed, payments, settings, clock, admin, mediator, tenant, outcome, amount
):
    contract_id, entry_id, dispute_id = disputed
    assert coordinator.assign_mediator(db, dispute_id, actor=admin, mediator_id=mediator.user_id).accepted

    early = coordinator.resolve_dispute(
        db, dispute_id, actor=mediator, outcome=outcome, notes="claim unfounded", release_amount=amount
    )
    assert early.outcome == Outcome.REJECTED
    assert early.code == "RETRACTION_WINDOW_OPEN"
    assert early.blocking.startswith("release blocked until retraction window closes")

    assert coordinator.get_dispute(db, dispute_id, actor=mediator).data.status == "MEDIATOR_ASSIGNED"
    assert entry_view(coordinator, db, entry_id, tenant).status == "FROZEN"
    assert payments.calls_for("release") == []

    # the open dispute still keeps the tenant from walking away with the deposit released
    assert coordinator.withdraw(db, contract_id, actor=tenant, reason="leaving").code == "DISPUTE_PENDING"

    clock.advance(hours=settings.retraction_window_hours)
    late = coordinator.resolve_dispute(
        db, dispute_id, actor=mediator, outcome=outcome, notes="claim unfounded", release_amount=amount
    )
    assert late.accepted, late.as_dict()
    assert entry_view(coordinator, db, entry_id, tenant).status == "RELEASED"
    assert len(payments.calls_for("release")) == 1


def test_refund_resolution_is_allowed_inside_retraction_window(db, coordinator, disputed, admin, mediator, tenant):
    _, entry_id, dispute_id = disputed
    assert coordinator.assign_mediator(db, dispute_id, actor=admin, mediator_id=mediator.user_id).accepted

    resolved = coordinator.resolve_dispute(
        db, dispute_id, actor=mediator, outcome=DisputeOutcome.REFUND_TO_PAYER, notes="damage confirmed"
    )
    assert resolved.accepted
    assert entry_view(coordinator, db, entry_id, tenant).status == "REFUNDED"


@pytest.mark.parametrize("amount", [None, Decimal("1500000"), Decimal("2000000")])
def test_invalid_split_changes_nothing(db, coordinator, assigned, mediator, tenant, amount):
    _, entry_id, dispute_id = assigned

    result = coordinator.resolve_dispute(
        db, dispute_id, actor=mediator, outcome=DisputeOutcome.SPLIT, notes="split", release_amount=amount
    )
    assert result.code == "VALIDATION_ERROR"

    assert coordinator.get_dispute(db, dispute_id, actor=mediator).data.status == "MEDIATOR_ASSIGNED"
    assert entry_view(coordinator, db, entry_id, tenant).status == "FROZEN"


def test_resolve_needs_an_assigned_mediator(db, coordinator, disputed, admin, mediator):
    _, _, dispute_id = disputed

    result = coordinator.resolve_dispute(
        db, dispute_id, actor=admin, outcome=DisputeOutcome.RELEASE_TO_BENEFICIARY, notes="n"
    )
    assert result.code == "NOT_ASSIGNED"
    assert result.blocking == "waiting on mediator assignment"


def test_only_assigned_mediator_or_admin_resolves(db, coordinator, assigned, admin):
    _, _, dispute_id = assigned
    other = Principal(user_id="mediator-2", role=PrincipalRole.MEDIATOR, display_name="mediator-2")

    denied = coordinator.resolve_dispute(
        db, dispute_id, actor=other, outcome=DisputeOutcome.RELEASE_TO_BENEFICIARY, notes="n"
    )
    assert denied.code == "NOT_A_PARTY"

    ok = coordinator.resolve_dispute(
        db, dispute_id, actor=admin, outcome=DisputeOutcome.RELEASE_TO_BENEFICIARY, notes="n"
    )
    assert ok.accepted

    again = coordinator.resolve_dispute(
        db, dispute_id, actor=admin, outcome=DisputeOutcome.REFUND_TO_PAYER, notes="n"
    )
    assert again.code == "ALREADY_RESOLVED"


def test_parties_cannot_resolve_disputes(db, coordinator, assigned, tenant):
    _, _, dispute_id = assigned
    result = coordinator.resolve_dispute(
        db, dispute_id, actor=tenant, outcome=DisputeOutcome.REFUND_TO_PAYER, notes="n"
    )
    assert result.code == "FORBIDDEN"


def test_withdrawn_dispute_restores_previous_status(db, coordinator, disputed, clock, landlord, tenant):
    _, entry_id, dispute_id = disputed

    assert coordinator.withdraw_dispute(db, dispute_id, actor=landlord).code == "NOT_A_PARTY"

    withdrawn = coordinator.withdraw_dispute(db, dispute_id, actor=tenant, reason="settled privately")
    assert withdrawn.accepted
    assert withdrawn.data.status == "WITHDRAWN"
    assert entry_view(coordinator, db, entry_id, tenant).status == "HELD"

    clock.advance(days=3)
    assert coordinator.confirm_receipt(db, entry_id, actor=landlord).data.status == "RELEASED"


def test_uncaptured_entry_cannot_be_disputed(db, coordinator, otp_sender, landlord, tenant):
    contract_id = fully_signed_contract(coordinator, db, otp_sender, landlord, tenant)
    entry_id = first_entry_id(coordinator, db, contract_id, tenant)

    result = open_dispute(coordinator, db, tenant, contract_id, entry_id)
    assert result.code == "NOT_FREEZABLE"
    assert dispute_count(db) == 0

    # a contract-level dispute does not touch escrow
    assert open_dispute(coordinator, db, tenant, contract_id).accepted


def test_unsigned_contract_cannot_be_disputed(db, coordinator, landlord):
    contract_id = create_contract(coordinator, db, landlord)
    assert open_dispute(coordinator, db, landlord, contract_id).code == "INVALID_TRANSITION"


def test_assignment_rules(db, coordinator, disputed, admin, tenant):
    _, _, dispute_id = disputed

    assert coordinator.assign_mediator(db, dispute_id, actor=tenant, mediator_id="mediator-1").code == "FORBIDDEN"
    assert coordinator.assign_mediator(db, dispute_id, actor=admin, mediator_id="nobody").code == "VALIDATION_ERROR"

    assert coordinator.assign_mediator(db, dispute_id, actor=admin, mediator_id="mediator-1").accepted
    reassigned = coordinator.assign_mediator(db, dispute_id, actor=admin, mediator_id="mediator-2")
    assert reassigned.accepted
    assert reassigned.data.mediatorId == "mediator-2"


def test_open_dispute_blocks_contract_withdrawal(db, coordinator, otp_sender, landlord, tenant):
    contract_id = fully_signed_contract(coordinator, db, otp_sender, landlord, tenant)
    opened = open_dispute(coordinator, db, landlord, contract_id)
    assert opened.accepted

    result = coordinator.withdraw(db, contract_id, actor=tenant, reason="leaving")
    assert result.code == "DISPUTE_PENDING"
    assert result.blocking == f"dispute {opened.data.reference} is open"


def test_dispute_reference_and_visibility(db, coordinator, disputed, stranger, landlord):
    _, _, dispute_id = disputed

    view = coordinator.get_dispute(db, dispute_id, actor=landlord).data
    assert view.reference.startswith("LIT-2026-")
    assert len(view.reference) == len("LIT-2026-") + 5

    assert coordinator.get_dispute(db, dispute_id, actor=stranger).code == "NOT_A_PARTY"

    trail = coordinator.audit_trail(db, actor=landlord, entity_type="dispute", entity_id=dispute_id).data
    assert trail.chainValid is True
    assert trail.entries[0].toStatus == "OPEN"
