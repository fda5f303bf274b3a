import inspect
import uuid

import pytest
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient
from jose import jwt

from rental_core.core.config import get_settings
from rental_core.core.deps import get_coordinator
from rental_core.core.security import create_access_token
from rental_core.db.session import get_db
from rental_core.main import create_app
from rental_core.tests.flows import LANDLORD_ID, LANDLORD_PHONE, TENANT_ID, TENANT_PHONE

API = "/api/v1"


@pytest.fixture
def client(session_factory, coordinator):
    app = create_app()

    def _db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    with TestClient(app) as c:
        yield c


def auth(user_id: str, role: str = "USER") -> dict:
    token = create_access_token(user_id, role)
    return {"Authorization": f"Bearer {token}"}


def contract_body(**overrides) -> dict:
    body = {
        "listingId": "listing-42",
        "landlordId": LANDLORD_ID,
        "tenantId": TENANT_ID,
        "landlordPhone": LANDLORD_PHONE,
        "tenantPhone": TENANT_PHONE,
        "monthlyAmount": "1500000.00",
        "startDate": "2026-03-01",
        "endDate": "2027-02-28",
    }
    body.update(overrides)
    return body


def create(client, key=None) -> dict:
    headers = auth(LANDLORD_ID)
    if key:
        headers["Idempotency-Key"] = key
    r = client.post(f"{API}/contracts", json=contract_body(), headers=headers)
    assert r.status_code == 201, r.text
    return r.json()


def sign(client, otp_sender, contract_id, user_id, role, phone):
    r = client.post(
        f"{API}/contracts/{contract_id}/signatures/request", json={"role": role}, headers=auth(user_id)
    )
    assert r.status_code == 200, r.text
    challenge_id = r.json()["data"]["challengeId"]

    r = client.post(
        f"{API}/contracts/{contract_id}/signatures/confirm",
        json={"role": role, "challengeId": challenge_id, "code": otp_sender.last_code(phone)},
        headers=auth(user_id),
    )
    assert r.status_code == 200, r.text
    return r.json()


def test_health_echoes_request_id(client):
    r = client.get(f"{API}/health", headers={"X-Request-Id": "req-1"})
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert r.json()["request_id"] == "req-1"
    assert r.headers["X-Request-Id"] == "req-1"

    r = client.get(f"{API}/health")
    assert r.headers["X-Request-Id"]


def test_readiness_checks_database(client):
    r = client.get(f"{API}/health/ready")
    assert r.status_code == 200
    assert r.json() == {"status": "ready"}


def test_create_replays_with_idempotency_key(client):
    first = create(client, key="create-1")
    again = create(client, key="create-1")
    assert again == first

    other = create(client, key="create-2")
    assert other["data"]["contractId"] != first["data"]["contractId"]


def test_idempotency_key_reuse_with_other_payload_conflicts(client):
    create(client, key="create-1")
    headers = {**auth(LANDLORD_ID), "Idempotency-Key": "create-1"}
    r = client.post(f"{API}/contracts", json=contract_body(listingId="listing-43"), headers=headers)
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "IDEMPOTENCY_KEY_REUSED"


def test_signing_flow_over_http(client, otp_sender):
    contract_id = create(client)["data"]["contractId"]

    r = client.post(f"{API}/contracts/{contract_id}/send", headers=auth(LANDLORD_ID))
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "AWAITING_SIGNATURES"

    sign(client, otp_sender, contract_id, LANDLORD_ID, "LANDLORD", LANDLORD_PHONE)
    body = sign(client, otp_sender, contract_id, TENANT_ID, "TENANT", TENANT_PHONE)
    assert body["outcome"] == "ACCEPTED"
    assert body["data"]["status"] == "FULLY_SIGNED"
    assert body["data"]["signatureCount"] == 2

    r = client.get(f"{API}/audit/contract/{contract_id}", headers=auth(TENANT_ID))
    assert r.status_code == 200
    assert r.json()["data"]["chainValid"] is True


def test_rejections_map_to_http_status(client):
    contract_id = create(client)["data"]["contractId"]

    r = client.get(f"{API}/contracts/{contract_id}", headers=auth("someone-else"))
    assert r.status_code == 403
    assert r.json()["detail"]["code"] == "NOT_A_PARTY"

    r = client.get(f"{API}/contracts/{uuid.uuid4()}", headers=auth(LANDLORD_ID))
    assert r.status_code == 404

    r = client.get(f"{API}/contracts/not-a-uuid", headers=auth(LANDLORD_ID))
    assert r.status_code == 400

    r = client.post(f"{API}/contracts/{contract_id}/send", headers=auth(LANDLORD_ID, role="NOT_A_ROLE"))
    assert r.status_code == 401


def test_webhook_requires_shared_secret(client):
    payload = {"entryId": str(uuid.uuid4()), "operation": "capture", "status": "SUCCESS"}

    r = client.post(f"{API}/webhooks/payments", json=payload)
    assert r.status_code == 401

    secret = get_settings().payment_webhook_secret
    r = client.post(f"{API}/webhooks/payments", json=payload, headers={"X-Webhook-Secret": secret})
    assert r.status_code == 404


def test_token_from_another_issuer_is_refused(client):
    settings = get_settings()
    token = jwt.encode(
        {"sub": LANDLORD_ID, "user_id": LANDLORD_ID, "role": "USER", "iss": "someone-else"},
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )
    r = client.get(f"{API}/contracts/{uuid.uuid4()}", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 401


def test_database_routes_run_in_the_threadpool():
    # the coordinator does blocking I/O; only handlers without it may be coroutines
    app = create_app()
    coroutine_routes = {
        route.path
        for route in app.routes
        if isinstance(route, APIRoute) and inspect.iscoroutinefunction(route.endpoint)
    }
    assert coroutine_routes == {f"{API}/health"}
