"""Auth, rate limiting, error rendering and startup config helpers."""

import httpx
import pytest
import redis
from pydantic import SecretStr

from conftest import user_token
from orderpipe.common.auth import decode_user_token, require_service
from orderpipe.common.config import settings
from orderpipe.common.errors import AuthRequired, InsufficientInventory, RateLimited
from orderpipe.common.logging import job_id_ctx, log_context, payment_intent_id_ctx
from orderpipe.common.ratelimit import TokenBucket
from orderpipe.common.startup import _safe_env, missing_provider_credentials
from orderpipe.services.order_worker import client as worker_client


class FakeRedis:
    def __init__(self):
        self.hashes = {}

    def hmget(self, key, *fields):
        stored = self.hashes.get(key, {})
        return [stored.get(field) for field in fields]

    def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})

    def expire(self, key, seconds):
        return True


class BrokenRedis:
    def hmget(self, key, *fields):
        raise redis.ConnectionError("connection refused")


def test_user_token_is_decoded():
    user = decode_user_token(user_token("user-7", "seven@example.com"))

    assert user.user_id == "user-7"
    assert user.email == "seven@example.com"


def test_token_signed_with_other_secret_is_rejected():
    with pytest.raises(AuthRequired):
        decode_user_token(user_token(secret="not-the-secret"))


def test_service_key_is_checked():
    require_service(f"Bearer {settings.service_api_key.get_secret_value()}")
    with pytest.raises(AuthRequired):
        require_service("Bearer nope")
    with pytest.raises(AuthRequired):
        require_service(None)


def test_token_bucket_limits_per_subject():
    bucket = TokenBucket(client=FakeRedis(), limit_per_minute=2, prefix="test")

    bucket.enforce("user-1")
    bucket.enforce("user-1")
    with pytest.raises(RateLimited):
        bucket.enforce("user-1")
    bucket.enforce("user-2")


def test_token_bucket_fails_open_when_redis_is_down():
    TokenBucket(client=BrokenRedis(), limit_per_minute=1).enforce("user-1")


def test_disabled_token_bucket_never_touches_redis():
    TokenBucket(client=BrokenRedis(), limit_per_minute=0).enforce("user-1")


def test_error_body_carries_code_and_details():
    body = InsufficientInventory("variant-1", 2, 1).to_dict()

    assert body["success"] is False
    assert body["error_code"] == "INSUFFICIENT_INVENTORY"
    assert body["details"] == {"variant_id": "variant-1", "requested": 2, "available": 1}


def test_startup_config_redacts_secrets(monkeypatch):
    monkeypatch.setenv("ESEWA_SECRET_KEY", "8gBm/:&EnhH.1/q")
    monkeypatch.setenv("ESEWA_MERCHANT_CODE", "EPAYTEST")
    monkeypatch.delenv("NPX_MERCHANT_ID", raising=False)

    assert _safe_env("ESEWA_SECRET_KEY") == "<redacted>"
    assert _safe_env("ESEWA_MERCHANT_CODE") == "EPAYTEST"
    assert _safe_env("NPX_MERCHANT_ID") == "<unset>"


def test_worker_wake_failure_is_swallowed(monkeypatch):
    monkeypatch.setattr(settings, "order_worker_url", "http://order-worker.invalid/order-worker")

    def refuse(self, *args, **kwargs):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(httpx.Client, "post", refuse)

    worker_client.wake_order_worker("test")


def test_missing_gateway_credentials_are_reported(monkeypatch):
    monkeypatch.setattr(settings, "esewa_merchant_code", "EPAYTEST")
    monkeypatch.setattr(settings, "esewa_secret_key", SecretStr("8gBm/:&EnhH.1/q"))
    monkeypatch.setattr(settings, "khalti_secret_key", SecretStr(""))

    missing = missing_provider_credentials()

    assert "esewa" not in missing
    assert missing["khalti"] == ["khalti_secret_key"]


def test_log_context_is_restored_after_the_block():
    outer_job, outer_intent = job_id_ctx.get(), payment_intent_id_ctx.get()

    with log_context(job_id="job-1", payment_intent_id="pi_cod_1"):
        assert job_id_ctx.get() == "job-1"
        with log_context(job_id="job-2", payment_intent_id=None):
            assert job_id_ctx.get() == "job-2"
            assert payment_intent_id_ctx.get() == "pi_cod_1"
        assert job_id_ctx.get() == "job-1"

    assert job_id_ctx.get() == outer_job
    assert payment_intent_id_ctx.get() == outer_intent
