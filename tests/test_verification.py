"""Verification gateway: webhook replay, amount checks and the client fallback."""

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from conftest import ESEWA_SECRET, NPX_SECURITY_KEY, auth_header, esewa_callback_data, mock_client, seed_intent
from orderpipe.common.models import GatewayVerification, Job, PaymentIntent
from orderpipe.services.provider_adapter.esewa import EsewaAdapter
from orderpipe.services.provider_adapter.khalti import KhaltiAdapter
from orderpipe.services.provider_adapter.npx import NpxAdapter
from orderpipe.services.provider_adapter.registry import AdapterRegistry
from orderpipe.services.verification import main as verification_main
from orderpipe.services.verification import service as verification_service
from orderpipe.services.verification.service import AMOUNT_MISMATCH, SUCCESS, VerificationService


class FakeGateway:
    """Answers every gateway call with `reply` and counts the calls."""

    def __init__(self, reply=None, status_code=200):
        self.reply = reply or {}
        self.status_code = status_code
        self.calls = 0

    def __call__(self, request):
        self.calls += 1
        return httpx.Response(self.status_code, json=self.reply)


@pytest.fixture
def esewa_gateway():
    return FakeGateway({"status": "COMPLETE", "total_amount": "1000.00", "ref_id": "REF-1"})


@pytest.fixture
def npx_gateway():
    return FakeGateway(
        {
            "code": "0",
            "message": "Success",
            "data": {"Status": "Success", "Amount": "1000.00", "GatewayReferenceNo": "G-1"},
        }
    )


@pytest.fixture
def verification(session_factory, esewa_gateway, npx_gateway):
    registry = AdapterRegistry(
        {
            "esewa": EsewaAdapter(client=mock_client(esewa_gateway), secret_key=ESEWA_SECRET),
            "khalti": KhaltiAdapter(
                client=mock_client(FakeGateway({"status": "Completed", "total_amount": 100000})),
                secret_key="khalti-key",
            ),
            "npx": NpxAdapter(
                client=mock_client(npx_gateway),
                merchant_id="8574",
                api_username="kbstylish",
                api_password="secret",
                security_key=NPX_SECURITY_KEY,
            ),
        }
    )
    return VerificationService(session_factory, registry)


@pytest.fixture
def client(verification, monkeypatch):
    monkeypatch.setattr(verification_main, "service", verification)
    return TestClient(verification_main.app)


def _records(session_factory):
    with session_factory() as db:
        return db.execute(select(GatewayVerification)).scalars().all()


def _jobs(session_factory):
    with session_factory() as db:
        return db.execute(select(Job)).scalars().all()


def _intent(session_factory, payment_intent_id="pi_esewa_1"):
    with session_factory() as db:
        return db.get(PaymentIntent, payment_intent_id)


def test_duplicate_webhook_is_processed_once(session_factory, client, esewa_gateway):
    seed_intent(session_factory)
    data = esewa_callback_data("TXN123")

    first = client.get("/webhook/esewa", params={"data": data})
    second = client.get("/webhook/esewa", params={"data": data})

    assert first.status_code == 200
    assert first.text == "received"
    assert second.status_code == 200
    assert second.text == "already received"
    assert esewa_gateway.calls == 1
    assert len(_records(session_factory)) == 1
    jobs = _jobs(session_factory)
    assert len(jobs) == 1
    assert jobs[0].idempotency_key == "payment_esewa_TXN123"
    assert jobs[0].priority == 1
    assert _intent(session_factory).status == "succeeded"


def test_webhook_with_forged_signature_is_rejected(session_factory, client, esewa_gateway):
    seed_intent(session_factory)

    resp = client.get("/webhook/esewa", params={"data": esewa_callback_data("TXN123", secret="wrong")})

    assert resp.status_code == 400
    assert esewa_gateway.calls == 0
    assert _records(session_factory) == []


def test_webhook_for_unknown_provider_is_rejected(client):
    resp = client.get("/webhook/paypal", params={"token": "x"})

    assert resp.status_code == 400


def test_amount_mismatch_by_one_paisa_fails_intent_without_job(session_factory, verification, esewa_gateway):
    seed_intent(session_factory, amount_cents=100000)
    esewa_gateway.reply = {"status": "COMPLETE", "total_amount": "999.99"}

    outcome = verification.verify_payment("esewa", "TXN123", user_id="user-1")

    assert outcome.status == AMOUNT_MISMATCH
    assert not outcome.wake_worker
    record = _records(session_factory)[0]
    assert record.status == "amount_mismatch"
    assert record.amount_verified_cents == 99999
    assert _jobs(session_factory) == []
    assert _intent(session_factory).status == "failed"


def test_exact_amount_succeeds(session_factory, verification):
    seed_intent(session_factory, amount_cents=100000)

    outcome = verification.verify_payment("esewa", "TXN123", user_id="user-1")

    assert outcome.status == SUCCESS
    assert outcome.job_enqueued
    assert outcome.wake_worker


def test_gateway_outage_records_nothing_so_retry_can_succeed(session_factory, client, esewa_gateway):
    seed_intent(session_factory)
    esewa_gateway.status_code = 500
    data = esewa_callback_data("TXN123")

    resp = client.get("/webhook/esewa", params={"data": data})

    assert resp.status_code == 502
    assert _records(session_factory) == []
    assert _intent(session_factory).status == "pending"

    esewa_gateway.status_code = 200
    retry = client.get("/webhook/esewa", params={"data": data})
    assert retry.text == "received"
    assert _intent(session_factory).status == "succeeded"


def test_failed_job_insert_keeps_replay_key_free(session_factory, verification, monkeypatch):
    seed_intent(session_factory)
    data = esewa_callback_data("TXN123")
    real_enqueue = verification_service.enqueue_job
    failures = [OperationalError("INSERT INTO job_queue", {}, Exception("database is locked"))]

    def enqueue_once_broken(*args, **kwargs):
        if failures:
            raise failures.pop()
        return real_enqueue(*args, **kwargs)

    monkeypatch.setattr(verification_service, "enqueue_job", enqueue_once_broken)

    with pytest.raises(OperationalError):
        verification.handle_webhook("esewa", {"data": data})
    assert _records(session_factory) == []
    assert _intent(session_factory).status == "pending"

    retry = verification.handle_webhook("esewa", {"data": data})

    assert retry.already_verified is False
    assert retry.job_enqueued is True
    assert _intent(session_factory).status == "succeeded"
    assert [job.idempotency_key for job in _jobs(session_factory)] == ["payment_esewa_TXN123"]


def test_pending_answer_leaves_replay_key_free(session_factory, verification, esewa_gateway):
    seed_intent(session_factory)
    esewa_gateway.reply = {"status": "PENDING", "total_amount": "1000.00"}

    assert verification.verify_payment("esewa", "TXN123").status == "pending"
    assert _records(session_factory) == []

    esewa_gateway.reply = {"status": "COMPLETE", "total_amount": "1000.00"}
    assert verification.verify_payment("esewa", "TXN123").status == SUCCESS
    assert esewa_gateway.calls == 2


def test_npx_gateway_id_mismatch_is_rejected(session_factory, client, npx_gateway):
    seed_intent(session_factory, payment_intent_id="pi_npx_1", provider="npx", external_transaction_id=None)

    resp = client.get("/webhook/npx", params={"MerchantTxnId": "pi_npx_1", "GatewayTxnId": "G-OTHER"})

    assert resp.status_code == 400
    assert resp.text == "Gateway transaction id mismatch"
    assert _records(session_factory) == []
    assert _jobs(session_factory) == []


def test_npx_webhook_stores_gateway_id_on_intent(session_factory, client):
    seed_intent(session_factory, payment_intent_id="pi_npx_1", provider="npx", external_transaction_id=None)

    resp = client.get("/webhook/npx", params={"MerchantTxnId": "pi_npx_1", "GatewayTxnId": "G-1"})

    assert resp.text == "received"
    intent = _intent(session_factory, "pi_npx_1")
    assert intent.status == "succeeded"
    assert intent.external_transaction_id == "G-1"
    assert _jobs(session_factory)[0].idempotency_key == "payment_npx_G-1"


def test_npx_pull_then_push_is_deduplicated(session_factory, verification, npx_gateway):
    seed_intent(session_factory, payment_intent_id="pi_npx_1", provider="npx", external_transaction_id=None)

    pulled = verification.verify_payment("npx", "pi_npx_1", user_id="user-1")
    pushed = verification.handle_webhook("npx", {"MerchantTxnId": "pi_npx_1", "GatewayTxnId": "G-1"})

    assert pulled.status == SUCCESS
    assert pushed.already_verified
    assert npx_gateway.calls == 1
    assert len(_jobs(session_factory)) == 1


def test_khalti_webhook_by_pidx(session_factory, client):
    seed_intent(session_factory, payment_intent_id="pi_khalti_1", provider="khalti", external_transaction_id="pidx-1")

    resp = client.get("/webhook/khalti", params={"pidx": "pidx-1", "status": "Completed", "total_amount": "1"})

    assert resp.text == "received"
    # The claimed callback amount is ignored; the lookup amount decided.
    assert _records(session_factory)[0].amount_verified_cents == 100000


def test_verify_payment_endpoint_success(session_factory, client):
    seed_intent(session_factory)

    resp = client.post(
        "/verify-payment",
        json={"provider": "esewa", "transaction_ref": "TXN123", "callback_data": esewa_callback_data("TXN123")},
        headers=auth_header("user-1"),
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["payment_intent_id"] == "pi_esewa_1"
    assert body["amount_cents"] == 100000
    assert body["already_verified"] is False


def test_verify_payment_endpoint_amount_mismatch(session_factory, client, esewa_gateway):
    seed_intent(session_factory)
    esewa_gateway.reply = {"status": "COMPLETE", "total_amount": "999.99"}

    resp = client.post(
        "/verify-payment", json={"provider": "esewa", "transaction_ref": "TXN123"}, headers=auth_header("user-1")
    )

    assert resp.status_code == 400
    assert resp.json()["error_code"] == "AMOUNT_MISMATCH"


def test_verify_payment_endpoint_failed_payment(session_factory, client, esewa_gateway):
    seed_intent(session_factory)
    esewa_gateway.reply = {"status": "CANCELED", "total_amount": "1000.00"}

    resp = client.post(
        "/verify-payment", json={"provider": "esewa", "transaction_ref": "TXN123"}, headers=auth_header("user-1")
    )

    assert resp.status_code == 400
    assert resp.json()["error_code"] == "PAYMENT_FAILED"


def test_verify_payment_hides_foreign_intents(session_factory, client, esewa_gateway):
    seed_intent(session_factory, user_id="user-1")

    resp = client.post(
        "/verify-payment", json={"provider": "esewa", "transaction_ref": "TXN123"}, headers=auth_header("user-2")
    )

    assert resp.status_code == 404
    assert esewa_gateway.calls == 0


def test_verify_payment_requires_auth(client):
    resp = client.post("/verify-payment", json={"provider": "esewa", "transaction_ref": "TXN123"})

    assert resp.status_code == 401
    assert resp.json()["error_code"] == "AUTH_REQUIRED"
