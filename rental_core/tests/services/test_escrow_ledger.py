from decimal import Decimal

from sqlalchemy import select

from rental_core.integrations.payments import GatewayResult, GatewayStatus
from rental_core.models.compensation_log import CompensationLogEntry
from rental_core.models.enums import CompensationAction, CompensationStatus
from rental_core.services.outcomes import Outcome
from rental_core.tests.flows import (
    MONTHLY,
    contract_view,
    entry_view,
    first_entry_id,
    fully_signed_contract,
    held_entry,
)


def open_items(db, action):
    return db.execute(
        select(CompensationLogEntry).where(
            CompensationLogEntry.action == action.value,
            CompensationLogEntry.status == CompensationStatus.OPEN.value,
        )
    ).scalars().all()


# ─────────────────────────────────────────────
# COLLECTION
# ─────────────────────────────────────────────

def test_pay_moves_entry_to_held(db, coordinator, otp_sender, payments, notifications, clock, landlord, tenant):
    _, entry_id = held_entry(coordinator, db, otp_sender, landlord, tenant)

    view = entry_view(coordinator, db, entry_id, tenant)
    assert view.status == "HELD"
    assert view.capturedAtIso == clock.now().isoformat()
    assert view.autoReleaseAtIso is not None
    assert [c[0] for c in payments.calls] == ["authorize", "capture"]
    assert payments.calls[0][1] != payments.calls[1][1]
    assert "escrow.funds_held" in notifications.templates_for(landlord.user_id)


def test_only_the_payer_can_pay(db, coordinator, otp_sender, landlord, tenant):
    contract_id = fully_signed_contract(coordinator, db, otp_sender, landlord, tenant)
    entry_id = first_entry_id(coordinator, db, contract_id, tenant)

    assert coordinator.pay(db, entry_id, actor=landlord).code == "NOT_A_PARTY"


def test_authorize_decline_is_terminal_and_payer_may_retry(db, coordinator, otp_sender, payments, landlord, tenant):
    contract_id = fully_signed_contract(coordinator, db, otp_sender, landlord, tenant)
    entry_id = first_entry_id(coordinator, db, contract_id, tenant)
    payments.decline("authorize", "card expired")

    declined = coordinator.pay(db, entry_id, actor=tenant)
    assert declined.outcome == Outcome.REJECTED
    assert declined.code == "GATEWAY_DECLINED"
    assert declined.blocking == "payer must use another payment method"

    view = entry_view(coordinator, db, entry_id, tenant)
    assert view.status == "PENDING"
    assert "card expired" in view.lastError

    retried = coordinator.pay(db, entry_id, actor=tenant)
    assert retried.accepted
    assert retried.data.status == "HELD"
    keys = [c[1] for c in payments.calls_for("authorize")]
    assert len(keys) == 2 and keys[0] != keys[1]


def test_authorize_timeout_is_pending_retry(db, coordinator, otp_sender, payments, settings, landlord, tenant):
    contract_id = fully_signed_contract(coordinator, db, otp_sender, landlord, tenant)
    entry_id = first_entry_id(coordinator, db, contract_id, tenant)
    payments.time_out("authorize", settings.gateway_retry_max_attempts)

    result = coordinator.pay(db, entry_id, actor=tenant)
    assert result.outcome == Outcome.PENDING_RETRY
    assert result.code == "GATEWAY_TIMEOUT"

    view = entry_view(coordinator, db, entry_id, tenant)
    assert view.status == "PENDING"
    assert view.needsAttention is True

    # every network retry of one attempt reused the same key
    assert len({c[1] for c in payments.calls_for("authorize")}) == 1


def test_unconfirmed_capture_is_parked_until_reconciled(db, coordinator, otp_sender, payments, settings, landlord, tenant):
    contract_id = fully_signed_contract(coordinator, db, otp_sender, landlord, tenant)
    entry_id = first_entry_id(coordinator, db, contract_id, tenant)
    payments.time_out("capture", settings.gateway_retry_max_attempts)

    result = coordinator.pay(db, entry_id, actor=tenant)
    assert result.outcome == Outcome.PENDING_RETRY
    assert result.code == "GATEWAY_TIMEOUT"

    view = entry_view(coordinator, db, entry_id, tenant)
    assert view.status == "PENDING"
    assert view.needsAttention is True
    assert len(open_items(db, CompensationAction.CAPTURE_UNCONFIRMED)) == 1
    assert len(payments.calls_for("capture")) == settings.gateway_retry_max_attempts

    # no second charge while the first one may still land
    again = coordinator.pay(db, entry_id, actor=tenant)
    assert again.code == "INVALID_TRANSITION"
    assert again.blocking == "payment awaiting reconciliation"

    applied = coordinator.reconcile_payment(
        db, entry_id, operation="capture", final_status=GatewayStatus.SUCCESS, gateway_ref="cap-late"
    )
    assert applied.accepted and applied.data["applied"] is True

    view = entry_view(coordinator, db, entry_id, tenant)
    assert view.status == "HELD"
    assert view.needsAttention is False
    assert open_items(db, CompensationAction.CAPTURE_UNCONFIRMED) == []

    replay = coordinator.reconcile_payment(
        db, entry_id, operation="capture", final_status=GatewayStatus.SUCCESS, gateway_ref="cap-late"
    )
    assert replay.data["applied"] is False


def test_withdrawal_waits_for_unconfirmed_capture(db, coordinator, otp_sender, payments, settings, landlord, tenant):
    contract_id = fully_signed_contract(coordinator, db, otp_sender, landlord, tenant)
    entry_id = first_entry_id(coordinator, db, contract_id, tenant)
    payments.time_out("capture", settings.gateway_retry_max_attempts)
    assert coordinator.pay(db, entry_id, actor=tenant).code == "GATEWAY_TIMEOUT"

    blocked = coordinator.withdraw(db, contract_id, actor=tenant, reason="found another flat")
    assert blocked.outcome == Outcome.PENDING_RETRY
    assert blocked.code == "PAYMENT_UNRECONCILED"
    assert blocked.blocking == "payment awaiting reconciliation"
    assert contract_view(coordinator, db, contract_id, tenant).status == "FULLY_SIGNED"
    assert entry_view(coordinator, db, entry_id, tenant).status == "PENDING"

    coordinator.reconcile_payment(
        db, entry_id, operation="capture", final_status=GatewayStatus.SUCCESS, gateway_ref="cap-late"
    )

    withdrawn = coordinator.withdraw(db, contract_id, actor=tenant, reason="found another flat")
    assert withdrawn.accepted, withdrawn.as_dict()
    view = entry_view(coordinator, db, entry_id, tenant)
    assert view.status == "REFUNDED"
    assert Decimal(view.refundedAmount) == MONTHLY
    assert [c[3] for c in payments.calls_for("refund")] == [MONTHLY]


def test_capture_confirmed_after_void_is_refunded(db, coordinator, otp_sender, payments, landlord, tenant):
    contract_id = fully_signed_contract(coordinator, db, otp_sender, landlord, tenant)
    entry_id = first_entry_id(coordinator, db, contract_id, tenant)
    payments.queue("capture", GatewayResult(GatewayStatus.PENDING, gateway_ref="cap-async"))
    assert coordinator.pay(db, entry_id, actor=tenant).data.status == "AUTHORIZED"

    assert coordinator.withdraw(db, contract_id, actor=tenant, reason="found another flat").accepted
    voided = entry_view(coordinator, db, entry_id, tenant)
    assert voided.status == "REFUNDED"
    assert voided.payoutStatus == "NOT_REQUIRED"

    late = coordinator.reconcile_payment(
        db, entry_id, operation="capture", final_status=GatewayStatus.SUCCESS, gateway_ref="cap-async"
    )
    assert late.data["applied"] is True

    view = entry_view(coordinator, db, entry_id, tenant)
    assert view.status == "REFUNDED"
    assert Decimal(view.refundedAmount) == MONTHLY
    assert view.payoutStatus == "SUCCEEDED"
    assert [c[3] for c in payments.calls_for("refund")] == [MONTHLY]

    items = db.execute(
        select(CompensationLogEntry).where(
            CompensationLogEntry.action == CompensationAction.LATE_CAPTURE_REFUND.value
        )
    ).scalars().all()
    assert [i.status for i in items] == [CompensationStatus.RESOLVED.value]

    replay = coordinator.reconcile_payment(
        db, entry_id, operation="capture", final_status=GatewayStatus.SUCCESS, gateway_ref="cap-async"
    )
    assert replay.data["applied"] is False
    assert len(payments.calls_for("refund")) == 1


def test_pending_gateway_answer_waits_for_webhook(db, coordinator, otp_sender, payments, landlord, tenant):
    contract_id = fully_signed_contract(coordinator, db, otp_sender, landlord, tenant)
    entry_id = first_entry_id(coordinator, db, contract_id, tenant)
    payments.queue("authorize", GatewayResult(GatewayStatus.PENDING, gateway_ref="auth-async"))

    result = coordinator.pay(db, entry_id, actor=tenant)
    assert result.accepted
    assert result.blocking == "waiting on payment provider confirmation"
    assert result.data.status == "PENDING"

    coordinator.reconcile_payment(db, entry_id, operation="authorize", final_status=GatewayStatus.SUCCESS)
    assert entry_view(coordinator, db, entry_id, tenant).status == "AUTHORIZED"

    finished = coordinator.pay(db, entry_id, actor=tenant)
    assert finished.data.status == "HELD"


# ─────────────────────────────────────────────
# RELEASE
# ─────────────────────────────────────────────

def test_confirmation_releases_without_waiting_for_sweep(db, coordinator, sweeps, otp_sender, payments, clock, landlord, tenant):
    _, entry_id = held_entry(coordinator, db, otp_sender, landlord, tenant)
    clock.advance(days=2, hours=1)

    result = coordinator.confirm_receipt(db, entry_id, actor=landlord)
    assert result.accepted
    assert result.blocking is None
    assert result.data.status == "RELEASED"
    assert Decimal(result.data.releasedAmount) == MONTHLY
    assert result.data.payoutStatus == "SUCCEEDED"
    assert len(payments.calls_for("release")) == 1

    clock.advance(days=10)
    assert sweeps.sweep_auto_release(db).processed == 0
    assert len(payments.calls_for("release")) == 1


def test_confirmation_inside_retraction_window_is_kept_for_later(db, coordinator, sweeps, otp_sender, clock, landlord, tenant):
    _, entry_id = held_entry(coordinator, db, otp_sender, landlord, tenant)

    result = coordinator.confirm_receipt(db, entry_id, actor=landlord)
    assert result.accepted
    assert result.blocking.startswith("release blocked until retraction window closes")
    assert result.data.status == "HELD"
    assert result.data.beneficiaryConfirmedAtIso is not None

    clock.advance(hours=49)
    report = sweeps.sweep_auto_release(db)
    assert report.processed == 1
    assert entry_view(coordinator, db, entry_id, landlord).status == "RELEASED"


def test_only_beneficiary_confirms_receipt(db, coordinator, otp_sender, landlord, tenant):
    _, entry_id = held_entry(coordinator, db, otp_sender, landlord, tenant)
    assert coordinator.confirm_receipt(db, entry_id, actor=tenant).code == "NOT_A_PARTY"


def test_release_waits_for_confirmation_or_deadline(db, coordinator, otp_sender, clock, landlord, tenant, admin):
    _, entry_id = held_entry(coordinator, db, otp_sender, landlord, tenant)

    early = coordinator.release(db, entry_id, actor=landlord)
    assert early.code == "RETRACTION_WINDOW_OPEN"

    clock.advance(days=3)
    not_due = coordinator.release(db, entry_id, actor=admin)
    assert not_due.code == "RELEASE_NOT_DUE"
    assert not_due.blocking.startswith("waiting on beneficiary confirmation")

    clock.advance(days=2)
    assert coordinator.release(db, entry_id, actor=admin).data.status == "RELEASED"
    assert coordinator.release(db, entry_id, actor=admin).code == "NOT_HELD"


def test_release_blocked_for_cancelled_contract(db, coordinator, otp_sender, payments, clock, landlord, tenant, admin):
    contract_id, entry_id = held_entry(coordinator, db, otp_sender, landlord, tenant)

    withdrawn = coordinator.withdraw(db, contract_id, actor=tenant, reason="retracted")
    assert withdrawn.accepted
    [entry] = withdrawn.data.escrowEntries
    assert entry.status == "REFUNDED"
    assert Decimal(entry.refundedAmount) == MONTHLY
    assert len(payments.calls_for("refund")) == 1

    clock.advance(days=10)
    result = coordinator.release(db, entry_id, actor=admin)
    assert result.code == "INVALID_TRANSITION"
    assert result.blocking == "contract is cancelled"


def test_failed_payout_keeps_ledger_status_and_is_retried(db, coordinator, sweeps, otp_sender, payments, clock, landlord, tenant):
    _, entry_id = held_entry(coordinator, db, otp_sender, landlord, tenant)
    clock.advance(days=2, hours=1)
    payments.decline("release", "beneficiary wallet closed")

    result = coordinator.confirm_receipt(db, entry_id, actor=landlord)
    assert result.accepted
    assert result.data.status == "RELEASED"
    assert result.data.payoutStatus == "FAILED"
    assert result.data.needsAttention is True
    assert len(open_items(db, CompensationAction.RETRY_PAYOUT)) == 1

    report = sweeps.sweep_reconciliation(db)
    assert report.processed == 1

    view = entry_view(coordinator, db, entry_id, landlord)
    assert view.status == "RELEASED"
    assert view.payoutStatus == "SUCCEEDED"
    assert open_items(db, CompensationAction.RETRY_PAYOUT) == []

    # the retry reused the original payout key
    assert len({c[1] for c in payments.calls_for("release")}) == 1


# ─────────────────────────────────────────────
# REFUND
# ─────────────────────────────────────────────

def test_refund_is_admin_only(db, coordinator, otp_sender, landlord, tenant, admin):
    _, entry_id = held_entry(coordinator, db, otp_sender, landlord, tenant)

    assert coordinator.refund(db, entry_id, actor=tenant, reason="please").code == "FORBIDDEN"

    refunded = coordinator.refund(db, entry_id, actor=admin, reason="duplicate payment")
    assert refunded.accepted
    assert refunded.data.status == "REFUNDED"
    assert Decimal(refunded.data.refundedAmount) == MONTHLY

    assert coordinator.refund(db, entry_id, actor=admin, reason="again").code == "NOT_REFUNDABLE"


def test_entry_history_is_a_valid_chain(db, coordinator, otp_sender, landlord, tenant):
    _, entry_id = held_entry(coordinator, db, otp_sender, landlord, tenant)

    trail = coordinator.audit_trail(db, actor=tenant, entity_type="escrow_entry", entity_id=entry_id).data
    assert trail.chainValid is True
    statuses = [e.toStatus for e in trail.entries]
    assert statuses[0] == "PENDING"
    assert statuses[-1] == "HELD"
    assert "AUTHORIZED" in statuses and "CAPTURED" in statuses
