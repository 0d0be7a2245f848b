"""Eager wake-up call from producers to the order worker."""

import httpx

from orderpipe.common.config import settings
from orderpipe.common.logging import logger


def wake_order_worker(reason: str, timeout: float = 2.0) -> None:
    """Ask the worker to drain now instead of waiting for its next sweep.

    Best-effort: the job is already durable, so a failed wake only delays it.
    """

    if not settings.order_worker_url:
        return
    try:
        with httpx.Client(timeout=timeout) as client:
            client.post(
                settings.order_worker_url,
                headers={"Authorization": f"Bearer {settings.service_api_key.get_secret_value()}"},
            )
    except httpx.HTTPError as exc:
        logger.warning("order worker wake failed reason=%s error=%s", reason, exc)
        return
    logger.info("order worker woken reason=%s", reason)
