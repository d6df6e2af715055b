"""Dramatiq task definitions for post-commit side effects.

Once a receipt's points are committed two follow-ups run outside the
request: reporting a referral conversion and deleting the receipt
image.  Neither is part of the transactional guarantee, so they are
dramatiq actors with their own retries and logging, and the pipeline
only enqueues them.  ``reconcile_points`` recomputes a customer's cached
total from the ledger on demand.

To run these tasks start a Dramatiq worker pointed at the worker module:

```bash
dramatiq loyalty.worker --processes 1 --threads 4
```

``DRAMATIQ_BROKER=redis`` (default) uses Redis at ``REDIS_URL``;
``DRAMATIQ_BROKER=stub`` keeps messages in memory for tests and local
development.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import dramatiq
import httpx
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import AgeLimit, Retries, ShutdownNotifications, TimeLimit

from loyalty.core.config import settings
from loyalty.core.database import ServiceSessionLocal, service_engine
from loyalty.core.errors import SideEffectFailure
from loyalty.core.observability import sentry_breadcrumb, sentry_metric_inc
from loyalty.services.attribution_service import send_conversion_event
from loyalty.services.ledger_service import reconcile_customer_points
from loyalty.services.storage_service import StorageService

logger = logging.getLogger(__name__)


def _has_mw(broker, mw_cls) -> bool:
    return any(isinstance(m, mw_cls) for m in broker.middleware)


def _configure_broker() -> dramatiq.Broker:
    if (settings.DRAMATIQ_BROKER or "redis").lower() == "stub":
        broker = StubBroker()
        broker.emit_after("process_boot")
    else:
        from dramatiq.brokers.redis import RedisBroker

        broker = RedisBroker(url=settings.REDIS_URL)
        for mw_cls in (AgeLimit, TimeLimit, ShutdownNotifications):
            if not _has_mw(broker, mw_cls):
                broker.add_middleware(mw_cls())
    if not _has_mw(broker, Retries):
        # Exponential backoff up to ~1m
        broker.add_middleware(Retries(max_retries=settings.DRAMATIQ_MAX_RETRIES, min_backoff=5000, max_backoff=60000))
    dramatiq.set_broker(broker)
    logger.info("Dramatiq broker configured: %s", type(broker).__name__)
    return broker


# Export the broker for Dramatiq CLI
broker = _configure_broker()


@dramatiq.actor(max_retries=settings.DRAMATIQ_MAX_RETRIES)
def emit_attribution_event(payload: Dict[str, Any]) -> None:
    """Report a referral conversion.  Retried by dramatiq on HTTP errors."""
    try:
        sent = send_conversion_event(payload)
    except httpx.HTTPError as exc:
        logger.warning("[tasks] attribution event failed referrer=%s: %s", payload.get("referringBusiness"), exc)
        sentry_metric_inc("attribution.event", tags={"status": "error"})
        raise SideEffectFailure(f"attribution event failed: {exc}") from exc
    sentry_metric_inc("attribution.event", tags={"status": "sent" if sent else "skipped"})


@dramatiq.actor(max_retries=settings.DRAMATIQ_MAX_RETRIES)
def delete_receipt_image(image_path: str) -> None:
    """Remove a processed receipt's image from storage."""
    if image_path.startswith(("http://", "https://")):
        logger.info("[tasks] image %s is not in managed storage; nothing to delete", image_path)
        return
    try:
        removed = StorageService().delete(image_path)
    except Exception as exc:
        logger.warning("[tasks] image cleanup failed key=%s: %s", image_path, exc)
        raise SideEffectFailure(f"image cleanup failed: {exc}") from exc
    sentry_breadcrumb(category="cleanup", message="receipt.image.deleted", data={"key": image_path, "removed": removed})


async def _reconcile(customer_id: str):
    try:
        async with ServiceSessionLocal() as session:
            return await reconcile_customer_points(session, customer_id)
    finally:
        # Connections are bound to this event loop
        await service_engine.dispose()


@dramatiq.actor(max_retries=settings.DRAMATIQ_MAX_RETRIES)
def reconcile_points(customer_id: str) -> None:
    """Recompute a customer's cached points total from the ledger."""
    cached, ledger = asyncio.run(_reconcile(customer_id))
    if cached != ledger:
        sentry_metric_inc("points.reconciled")
    logger.info("[tasks] reconciled customer=%s cached=%s ledger=%s", customer_id, cached, ledger)


class PostCommitDispatcher:
    """Enqueue side-effect tasks after the ledger commit.

    Enqueue errors (broker down) are logged and absorbed; the receipt
    is already processed and its points recorded.
    """

    def attribution(self, payload: Optional[Dict[str, Any]]) -> bool:
        if not payload:
            return False
        return self._send(emit_attribution_event, payload)

    def cleanup(self, image_path: Optional[str]) -> bool:
        if not image_path:
            return False
        return self._send(delete_receipt_image, image_path)

    def _send(self, actor: dramatiq.Actor, *args: Any) -> bool:
        try:
            actor.send(*args)
            return True
        except Exception as exc:
            logger.error("[tasks] failed to enqueue %s: %s", actor.actor_name, exc)
            sentry_metric_inc("side_effect.enqueue_failed", tags={"actor": actor.actor_name})
            return False
