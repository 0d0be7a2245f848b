"""Startup diagnostics: a redacted config dump and gateway credential checks."""

import os

from orderpipe.common.config import settings
from orderpipe.common.logging import logger

SECRET_MARKERS = ("KEY", "SECRET", "PASSWORD", "TOKEN", "DSN")

# Settings each gateway needs before it can take a real payment.
PROVIDER_CREDENTIALS = {
    "esewa": ("esewa_merchant_code", "esewa_secret_key"),
    "khalti": ("khalti_secret_key",),
    "npx": ("npx_merchant_id", "npx_api_username", "npx_api_password", "npx_security_key"),
}


def _safe_env(name: str) -> str:
    """Return env value with redaction for secret-like variable names."""

    value = os.getenv(name)
    if value is None:
        return "<unset>"
    if any(marker in name for marker in SECRET_MARKERS):
        return "<redacted>"
    return value


def _is_set(value) -> bool:
    if hasattr(value, "get_secret_value"):
        value = value.get_secret_value()
    return bool(value)


def missing_provider_credentials() -> dict[str, list[str]]:
    """Provider -> names of its empty credential settings."""

    missing = {}
    for provider, names in PROVIDER_CREDENTIALS.items():
        empty = [name for name in names if not _is_set(getattr(settings, name))]
        if empty:
            missing[provider] = empty
    return missing


def log_startup_config(service_name: str, keys: list[str], check_gateways: bool = False) -> None:
    """Log selected config keys, and warn about gateways that cannot be used yet."""

    config = {"service": service_name}
    for key in keys:
        config[key] = _safe_env(key)
    logger.info("startup_config=%s", config)
    if not check_gateways:
        return
    for provider, empty in sorted(missing_provider_credentials().items()):
        logger.warning("gateway credentials missing provider=%s settings=%s", provider, ",".join(empty))
