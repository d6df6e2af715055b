"""Dramatiq worker configuration.

Importing this module configures the broker and registers every actor
so a worker started against it can run them.

Run with:
    dramatiq loyalty.worker --processes 1 --threads 4
"""

import logging

from loyalty.core.config import settings
from loyalty.core.observability import init_sentry
from loyalty.core.tasks import (  # noqa: F401
    broker,
    delete_receipt_image,
    emit_attribution_event,
    reconcile_points,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

if init_sentry("worker"):
    logger.info("Sentry SDK initialized for worker")

logger.info("Worker ready (environment=%s, broker=%s)", settings.ENVIRONMENT, type(broker).__name__)
