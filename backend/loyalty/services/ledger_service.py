"""Points ledger updater.

Crediting a receipt writes three rows in one transaction:

* a new ``PointsTransaction`` (the ledger is the source of truth and
  the unique ``receipt_id`` makes a second credit impossible),
* an atomic ``total_points = total_points + :points`` increment on the
  customer's cached aggregate,
* the receipt's ``processing -> processed`` transition, guarded on the
  current status so a receipt that lost its claim is never credited.

The updater runs on the service session factory because it changes a
balance on the customer's behalf.  Transient database errors are
retried with exponential backoff; everything else rolls back and
raises ``LedgerWriteFailure``.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty.core.config import settings
from loyalty.core.errors import LedgerWriteFailure
from loyalty.models.enums import ReceiptStatus
from loyalty.models.tables import Customer, PointsTransaction, Receipt

logger = logging.getLogger(__name__)


async def credit_points(
    session: AsyncSession,
    *,
    receipt_id: str,
    customer_id: str,
    business_id: str,
    amount_spent: Decimal,
    points_earned: int,
    extracted_data: Dict[str, Any],
    currency: Optional[str] = None,
) -> PointsTransaction:
    """Append the ledger entry, bump the aggregate and mark the receipt processed."""
    now = dt.datetime.now(dt.timezone.utc)
    txn = PointsTransaction(
        customer_id=customer_id,
        business_id=business_id,
        receipt_id=receipt_id,
        amount_spent=amount_spent,
        points_earned=points_earned,
        transaction_date=now,
    )
    try:
        session.add(txn)
        await session.flush()

        result = await session.execute(
            update(Customer)
            .where(Customer.id == customer_id)
            .values(total_points=Customer.total_points + points_earned, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise LedgerWriteFailure(f"Customer {customer_id} not found", receipt_id)

        result = await session.execute(
            update(Receipt)
            .where(Receipt.id == receipt_id, Receipt.status == ReceiptStatus.PROCESSING)
            .values(
                status=ReceiptStatus.PROCESSED,
                extracted_data=extracted_data,
                total_amount=amount_spent,
                currency_code=currency,
                points_earned=points_earned,
                failure_reason=None,
                failure_message=None,
                failure_details=None,
                processed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise LedgerWriteFailure("Receipt is no longer claimed for processing", receipt_id)

        await session.commit()
    except LedgerWriteFailure:
        await session.rollback()
        raise
    except IntegrityError as exc:
        await session.rollback()
        raise LedgerWriteFailure("Points for this receipt were already recorded", receipt_id) from exc
    except SQLAlchemyError:
        await session.rollback()
        raise
    logger.info(
        "[ledger] credited receipt=%s customer=%s business=%s points=%d amount=%s",
        receipt_id,
        customer_id,
        business_id,
        points_earned,
        amount_spent,
    )
    return txn


class LedgerUpdater:
    """Run ``credit_points`` on fresh service sessions with bounded retries."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
    ) -> None:
        self.session_factory = session_factory
        self.max_attempts = max(1, max_attempts or settings.LEDGER_WRITE_MAX_ATTEMPTS)
        self.backoff_seconds = settings.LEDGER_WRITE_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds

    async def record(self, **kwargs: Any) -> PointsTransaction:
        receipt_id = kwargs.get("receipt_id")
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with self.session_factory() as session:
                    return await credit_points(session, **kwargs)
            except OperationalError as exc:
                if attempt >= self.max_attempts:
                    logger.error("[ledger] giving up receipt=%s after %d attempts: %s", receipt_id, attempt, exc)
                    raise LedgerWriteFailure("The points ledger is temporarily unavailable", receipt_id) from exc
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning("[ledger] transient failure receipt=%s attempt=%d retry_in=%.2fs: %s", receipt_id, attempt, delay, exc)
                await asyncio.sleep(delay)
            except SQLAlchemyError as exc:
                logger.error("[ledger] write failed receipt=%s: %s", receipt_id, exc)
                raise LedgerWriteFailure("Points could not be recorded", receipt_id) from exc
        raise LedgerWriteFailure("Points could not be recorded", receipt_id)


async def reconcile_customer_points(session: AsyncSession, customer_id: str, *, fix: bool = True) -> Tuple[int, int]:
    """Compare the cached aggregate with the ledger sum.

    Returns ``(cached_total, ledger_total)``.  With ``fix`` the cache is
    recomputed from the ledger in a single UPDATE when they differ, so
    concurrent credits are not lost.
    """
    ledger_sum = select(func.coalesce(func.sum(PointsTransaction.points_earned), 0)).where(
        PointsTransaction.customer_id == customer_id
    )
    cached = (await session.execute(select(Customer.total_points).where(Customer.id == customer_id))).scalar_one()
    ledger = (await session.execute(ledger_sum)).scalar_one()
    ledger = int(ledger)
    if fix and cached != ledger:
        logger.warning("[ledger] reconciling customer=%s cached=%s ledger=%s", customer_id, cached, ledger)
        await session.execute(
            update(Customer)
            .where(Customer.id == customer_id)
            .values(total_points=ledger_sum.scalar_subquery())
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    return int(cached), ledger
