"""Referral attribution for first purchases.

When a customer who signed up through a business's referral link makes
their first ever purchase at some business, the referring business
gets a conversion event on its Meta Pixel.  Eligibility is decided
right after the ledger commit; the event itself is delivered by a
background task so a slow or failing tracking endpoint never affects
the points pipeline.
"""

from __future__ import annotations

import logging
import time
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty.core.config import settings
from loyalty.models.schemas import AttributionTracking
from loyalty.models.tables import Business, Customer, PointsTransaction

logger = logging.getLogger(__name__)


async def build_attribution(
    session: AsyncSession,
    *,
    customer_id: str,
    business_id: str,
    amount: Decimal,
    currency: str,
) -> Optional[AttributionTracking]:
    """Return the tracking event for this purchase, or None when not eligible.

    Eligible when the ledger holds exactly one transaction for this
    customer at this business (the one just committed) and the customer
    was referred by an active business with a pixel configured.
    """
    count = (
        await session.execute(
            select(func.count(PointsTransaction.id)).where(
                PointsTransaction.customer_id == customer_id,
                PointsTransaction.business_id == business_id,
            )
        )
    ).scalar_one()
    if count != 1:
        return None

    customer = await session.get(Customer, customer_id)
    if customer is None or not customer.referred_by_business_id:
        return None
    referrer = await session.get(Business, customer.referred_by_business_id)
    if referrer is None or not referrer.is_active or not referrer.meta_pixel_id:
        logger.info("[attribution] referrer %s has no active tracking", customer.referred_by_business_id)
        return None

    return AttributionTracking(
        value=float(amount),
        currency=currency,
        first_transaction=True,
        referring_business=referrer.id,
        pixel_id=referrer.meta_pixel_id,
    )


def conversion_event_body(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "data": [
            {
                "event_name": settings.META_EVENT_NAME,
                "event_time": int(time.time()),
                "action_source": "system_generated",
                "custom_data": {
                    "value": payload["value"],
                    "currency": payload["currency"],
                    "first_transaction": payload.get("firstTransaction", True),
                    "referring_business": payload["referringBusiness"],
                },
            }
        ]
    }


def send_conversion_event(payload: Dict[str, Any], client: Optional[httpx.Client] = None) -> bool:
    """POST the event to the Meta Conversions API.

    Returns False when no access token is configured.  HTTP errors are
    raised for the caller to retry.
    """
    if not settings.META_ACCESS_TOKEN:
        logger.info("[attribution] META_ACCESS_TOKEN not set; skipping event for %s", payload.get("referringBusiness"))
        return False
    url = f"{settings.META_CONVERSIONS_API_URL.rstrip('/')}/{payload['pixelId']}/events"
    owns_client = client is None
    client = client or httpx.Client(timeout=settings.META_REQUEST_TIMEOUT_SECONDS)
    try:
        resp = client.post(url, params={"access_token": settings.META_ACCESS_TOKEN}, json=conversion_event_body(payload))
        resp.raise_for_status()
    finally:
        if owns_client:
            client.close()
    logger.info("[attribution] event sent pixel=%s referrer=%s", payload["pixelId"], payload["referringBusiness"])
    return True
