"""Central environment-driven settings shared by all services.

Each service process loads this once at startup. Provider credentials are
held as `SecretStr` so they never render in reprs or logs.
"""

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    database_dsn: str
    redis_url: str = "redis://redis:6379/0"
    service_api_key: SecretStr
    auth_jwt_secret: SecretStr
    auth_jwt_audience: str = "authenticated"
    public_base_url: str = "http://localhost:3000"
    order_worker_url: str = "http://order-worker:8003/order-worker"
    email_api_url: str = ""
    email_api_key: SecretStr = SecretStr("")
    email_sender: str = "Orders <noreply@example.com>"
    otel_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    rate_limit_per_minute: int = 30

    currency: str = "NPR"
    payment_intent_ttl_minutes: int = 30
    gateway_timeout_seconds: float = 15.0
    tax_rate_bps: int = 0
    shipping_flat_cents: int = 500
    inventory_max_retries: int = 3

    worker_lock_timeout_seconds: int = 30
    worker_max_jobs: int = 10
    worker_poll_interval_seconds: float = 0
    job_max_attempts: int = 3

    esewa_merchant_code: str = "EPAYTEST"
    esewa_secret_key: SecretStr = SecretStr("")
    esewa_test_mode: bool = True
    khalti_secret_key: SecretStr = SecretStr("")
    khalti_test_mode: bool = True
    npx_merchant_id: str = ""
    npx_api_username: str = ""
    npx_api_password: SecretStr = SecretStr("")
    npx_security_key: SecretStr = SecretStr("")
    npx_test_mode: bool = True

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
