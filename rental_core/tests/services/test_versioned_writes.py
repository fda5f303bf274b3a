import pytest
from sqlalchemy import update

from rental_core.core.errors import ConcurrentModification, IdempotencyKeyReused
from rental_core.models.contract import Contract
from rental_core.services.history_service import HistoryService
from rental_core.services.idempotency_service import IdempotencyScope, IdempotencyService, StoredResponse
from rental_core.services.versioned_writes import compare_and_set
from rental_core.tests.flows import create_contract


@pytest.fixture
def contract(db, coordinator, landlord):
    return db.get(Contract, create_contract(coordinator, db, landlord))


def test_write_bumps_version_and_appends_history(db, contract, clock):
    before = contract.version

    compare_and_set(
        db, contract, entity_type="contract", event="note",
        values={"closing_reason": "checked"}, at=clock.now(), actor_id="ops",
    )

    assert contract.version == before + 1
    assert contract.closing_reason == "checked"
    entries = HistoryService().list_entries(db, entity_type="contract", entity_id=contract.id)
    assert [e.seq for e in entries] == list(range(1, contract.version + 1))
    assert entries[-1].event == "note"
    assert HistoryService().verify_chain(db, entity_type="contract", entity_id=contract.id)


def test_stale_version_loses(db, contract, clock):
    # another instance committed in between; this session still holds the old version
    db.execute(
        update(Contract)
        .where(Contract.id == contract.id)
        .values(version=Contract.version + 1)
        .execution_options(synchronize_session=False)
    )

    with pytest.raises(ConcurrentModification):
        compare_and_set(
            db, contract, entity_type="contract", event="note",
            values={"closing_reason": "late"}, at=clock.now(),
        )


def test_unexpected_status_loses(db, contract, clock):
    with pytest.raises(ConcurrentModification):
        compare_and_set(
            db, contract, entity_type="contract", event="activated",
            values={"status": "ACTIVE"}, at=clock.now(), expected_statuses=["FULLY_SIGNED"],
        )
    db.rollback()
    assert db.get(Contract, contract.id).status == "DRAFT"


def test_edited_history_breaks_chain(db, contract, clock):
    history = HistoryService()
    compare_and_set(db, contract, entity_type="contract", event="note", values={"closing_reason": "x"}, at=clock.now())

    first = history.list_entries(db, entity_type="contract", entity_id=contract.id)[0]
    first.payload_json = {**first.payload_json, "actor": "someone-else"}
    db.flush()

    assert history.verify_chain(db, entity_type="contract", entity_id=contract.id) is False


# ─────────────────────────────────────────────
# IDEMPOTENCY KEYS
# ─────────────────────────────────────────────

def test_idempotency_replays_stored_response(db, clock):
    svc = IdempotencyService(clock)
    scope = IdempotencyScope(user_id="tenant-1", endpoint_key="POST:/api/v1/contracts", idem_key="k-1")

    replay, fingerprint = svc.lookup(db, scope, payload={"a": 1})
    assert replay is None

    svc.remember(db, scope, fingerprint=fingerprint, response=StoredResponse(status_code=201, body={"ok": True}))

    replay, _ = svc.lookup(db, scope, payload={"a": 1})
    assert replay == StoredResponse(status_code=201, body={"ok": True})

    with pytest.raises(IdempotencyKeyReused):
        svc.lookup(db, scope, payload={"a": 2})

    # keys are scoped per user
    other = IdempotencyScope(user_id="landlord-1", endpoint_key=scope.endpoint_key, idem_key="k-1")
    assert svc.lookup(db, other, payload={"a": 2})[0] is None
