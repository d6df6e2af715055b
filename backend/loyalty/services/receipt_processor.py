"""Receipt processing state machine.

``ReceiptProcessor.process`` drives one receipt from ``uploaded`` to a
terminal state:

1. claim the receipt (``uploaded -> processing``) with one conditional
   UPDATE, so concurrent invocations on the same id cannot both proceed;
2. read merchant name, total and currency with the OCR adapter, bounded
   by ``OCR_TIMEOUT_SECONDS``;
3. load the business the QR code belongs to;
4. validate the amount, then check the detected merchant name against
   the business name;
5. compute points and hand them to the ledger updater, which marks the
   receipt ``processed`` in the same transaction;
6. after the commit, work out referral attribution and enqueue the
   attribution and image cleanup tasks.

Gate failures mark the receipt ``failed`` with a reason code and raise
the matching ``ReceiptProcessingError``.  A ledger failure releases the
claim instead so the receipt can be processed again later.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty.core.config import settings
from loyalty.core.database import AsyncSessionLocal, ServiceSessionLocal
from loyalty.core.errors import (
    AlreadyProcessedError,
    BusinessNotFound,
    InputError,
    LedgerWriteFailure,
    MerchantMismatch,
    NotFoundError,
    OcrFailure,
    ProcessingFailure,
    ReceiptProcessingError,
)
from loyalty.core.observability import sentry_breadcrumb, sentry_capture, sentry_metric_inc
from loyalty.core.tasks import PostCommitDispatcher
from loyalty.models.enums import FailureReason, ReceiptStatus
from loyalty.models.schemas import AttributionTracking, ExtractedData, ProcessingResult
from loyalty.models.tables import Business, Receipt
from loyalty.services.attribution_service import build_attribution
from loyalty.services.ledger_service import LedgerUpdater
from loyalty.services.merchant_matcher import MatchPolicy, traced_match
from loyalty.services.ocr_service import OcrAdapter, OpenAIReceiptOcr
from loyalty.services.points_service import compute_points, validate_amount

logger = logging.getLogger(__name__)

OCR_UNREADABLE = "The receipt could not be read. Please try again with a clearer photo."


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class ReceiptProcessor:
    def __init__(
        self,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        service_session_factory: Optional[Callable[[], AsyncSession]] = None,
        ocr: Optional[OcrAdapter] = None,
        dispatcher: Optional[PostCommitDispatcher] = None,
        policy: Optional[MatchPolicy] = None,
        ledger: Optional[LedgerUpdater] = None,
        ocr_timeout: Optional[float] = None,
    ) -> None:
        self.session_factory = session_factory or AsyncSessionLocal
        self.service_session_factory = service_session_factory or ServiceSessionLocal
        self.ocr = ocr or OpenAIReceiptOcr()
        self.dispatcher = dispatcher or PostCommitDispatcher()
        self.policy = policy or MatchPolicy.from_settings()
        self.ledger = ledger or LedgerUpdater(self.service_session_factory)
        self.ocr_timeout = settings.OCR_TIMEOUT_SECONDS if ocr_timeout is None else ocr_timeout

    async def process(self, receipt_id: Optional[str]) -> ProcessingResult:
        receipt_id = (receipt_id or "").strip()
        if not receipt_id:
            raise InputError("Please provide the ID of the receipt to process.")

        receipt = await self._claim(receipt_id)
        sentry_breadcrumb(category="receipt", message="receipt.claimed", data={"receipt_id": receipt_id})
        extracted: Optional[ExtractedData] = None
        try:
            extracted = await self._extract(receipt_id, receipt["image_path"])

            async with self.session_factory() as session:
                business = await session.get(Business, receipt["business_id"])
            if business is None:
                raise BusinessNotFound("The business for this receipt could not be found.", receipt_id)

            amount = validate_amount(extracted.total_amount, receipt_id)
            decision = traced_match(business.business_name, extracted.merchant_name, self.policy, receipt_id)
            if not decision:
                raise MerchantMismatch(business.business_name, extracted.merchant_name, receipt_id)

            points = compute_points(amount, business.points_per_currency)
            await self.ledger.record(
                receipt_id=receipt_id,
                customer_id=receipt["customer_id"],
                business_id=business.id,
                amount_spent=amount,
                points_earned=points,
                extracted_data=extracted.model_dump(by_alias=True),
                currency=extracted.currency,
            )
        except LedgerWriteFailure as exc:
            exc.receipt_id = receipt_id
            await self._release(receipt_id, exc)
            sentry_metric_inc("receipts.failed", tags={"reason": FailureReason.LEDGER_WRITE_FAILURE.value})
            raise
        except ReceiptProcessingError as exc:
            exc.receipt_id = exc.receipt_id or receipt_id
            await self._mark_failed(receipt_id, exc, extracted)
            raise
        except asyncio.CancelledError:
            failure = ProcessingFailure("Processing was interrupted. Please try again.", receipt_id)
            await asyncio.shield(self._mark_failed(receipt_id, failure, extracted))
            raise
        except Exception as exc:
            logger.exception("[processor] unexpected error receipt=%s", receipt_id)
            sentry_capture(exc)
            failure = ProcessingFailure("An unexpected error occurred while processing the receipt.", receipt_id)
            await self._mark_failed(receipt_id, failure, extracted)
            raise failure from exc

        sentry_metric_inc("receipts.processed")
        logger.info("[processor] processed receipt=%s points=%d", receipt_id, points)

        attribution = await self._attribution(receipt["customer_id"], business.id, amount, extracted.currency)
        if attribution is not None:
            self.dispatcher.attribution(attribution.model_dump(by_alias=True))
        self.dispatcher.cleanup(receipt["image_path"])

        return ProcessingResult(
            receipt_id=receipt_id,
            extracted_data=extracted,
            points_earned=points,
            attribution_tracking=attribution,
        )

    async def _claim(self, receipt_id: str) -> Dict[str, Any]:
        """Move the receipt to ``processing`` or explain why it cannot be."""
        now = _utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                update(Receipt)
                .where(Receipt.id == receipt_id, Receipt.status == ReceiptStatus.UPLOADED)
                .values(
                    status=ReceiptStatus.PROCESSING,
                    processing_attempts=Receipt.processing_attempts + 1,
                    processing_started_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            receipt = await session.get(Receipt, receipt_id)

        if receipt is None:
            raise NotFoundError("No receipt exists with this ID.", receipt_id)
        if result.rowcount != 1:
            status = ReceiptStatus(receipt.status).value
            logger.info("[processor] claim refused receipt=%s status=%s", receipt_id, status)
            if status == ReceiptStatus.PROCESSING.value:
                details = "This receipt is already being processed."
            else:
                details = f"This receipt has already been {status}."
            raise AlreadyProcessedError(details, receipt_id, status=status)
        return {
            "image_path": receipt.image_path,
            "business_id": receipt.business_id,
            "customer_id": receipt.customer_id,
        }

    async def _extract(self, receipt_id: str, image_path: str) -> ExtractedData:
        try:
            return await asyncio.wait_for(self.ocr.extract(image_path), timeout=self.ocr_timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("[processor] OCR timed out after %ss receipt=%s", self.ocr_timeout, receipt_id)
            raise OcrFailure("Reading the receipt took too long. Please try again.", receipt_id) from exc
        except OcrFailure:
            raise
        except Exception as exc:
            logger.warning("[processor] OCR adapter error receipt=%s: %s", receipt_id, exc)
            raise OcrFailure(OCR_UNREADABLE, receipt_id) from exc

    async def _attribution(self, customer_id: str, business_id: str, amount, currency: str) -> Optional[AttributionTracking]:
        try:
            async with self.session_factory() as session:
                return await build_attribution(
                    session,
                    customer_id=customer_id,
                    business_id=business_id,
                    amount=amount,
                    currency=currency,
                )
        except Exception as exc:
            logger.warning("[processor] attribution lookup failed customer=%s: %s", customer_id, exc)
            return None

    async def _mark_failed(
        self,
        receipt_id: str,
        exc: ReceiptProcessingError,
        extracted: Optional[ExtractedData] = None,
    ) -> None:
        reason = exc.failure_reason or FailureReason.UNEXPECTED_ERROR
        details: Optional[Dict[str, Any]] = None
        if isinstance(exc, MerchantMismatch):
            details = {"expected": exc.expected, "detected": exc.detected}
        values: Dict[str, Any] = {
            "status": ReceiptStatus.FAILED,
            "failure_reason": reason,
            "failure_message": exc.details,
            "failure_details": details,
            "updated_at": _utcnow(),
        }
        if extracted is not None:
            values["extracted_data"] = extracted.model_dump(by_alias=True)
        async with self.session_factory() as session:
            await session.execute(
                update(Receipt)
                .where(Receipt.id == receipt_id, Receipt.status == ReceiptStatus.PROCESSING)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        logger.info("[processor] receipt=%s failed reason=%s", receipt_id, reason.value)
        sentry_metric_inc("receipts.failed", tags={"reason": reason.value})

    async def _release(self, receipt_id: str, exc: LedgerWriteFailure) -> None:
        """Return a claimed receipt to ``uploaded`` after a ledger failure."""
        async with self.session_factory() as session:
            await session.execute(
                update(Receipt)
                .where(Receipt.id == receipt_id, Receipt.status == ReceiptStatus.PROCESSING)
                .values(
                    status=ReceiptStatus.UPLOADED,
                    failure_reason=FailureReason.LEDGER_WRITE_FAILURE,
                    failure_message=exc.details,
                    processing_started_at=None,
                    updated_at=_utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        logger.error("[processor] ledger write failed receipt=%s; claim released: %s", receipt_id, exc.details)


def get_receipt_processor() -> ReceiptProcessor:
    """FastAPI dependency returning a processor wired to the app's collaborators."""
    return ReceiptProcessor()
