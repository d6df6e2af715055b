from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import delete

from factories import FakeOcr, add_receipt, customer_points, ledger_count, load_receipt, seed
from loyalty.core.errors import (
    AlreadyProcessedError,
    BusinessNotFound,
    InputError,
    InvalidAmount,
    LedgerWriteFailure,
    MerchantMismatch,
    NotFoundError,
    OcrFailure,
    ProcessingFailure,
)
from loyalty.models.enums import FailureReason, ReceiptStatus
from loyalty.models.tables import Business
from loyalty.services.ledger_service import LedgerUpdater
from loyalty.services.receipt_processor import ReceiptProcessor


def make_processor(db, ocr, dispatcher, **kwargs):
    kwargs.setdefault("ledger", LedgerUpdater(db.Session, max_attempts=1, backoff_seconds=0))
    return ReceiptProcessor(
        session_factory=db.Session,
        service_session_factory=db.Session,
        ocr=ocr,
        dispatcher=dispatcher,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_end_to_end_credits_points(db, ocr, dispatcher):
    ids = await seed(db.Session)
    rid = ids.receipt_ids[0]

    result = await make_processor(db, ocr, dispatcher).process(rid)

    assert result.receipt_id == rid
    assert result.points_earned == 4
    assert result.extracted_data.merchant_name == "JOLLIBEE NAGA BRANCH"
    assert result.attribution_tracking is None

    receipt = await load_receipt(db.Session, rid)
    assert receipt.status == ReceiptStatus.PROCESSED
    assert receipt.points_earned == 4
    assert receipt.processing_attempts == 1
    assert receipt.extracted_data["merchantName"] == "JOLLIBEE NAGA BRANCH"
    assert await customer_points(db.Session, ids.customer_id) == 4
    assert await ledger_count(db.Session, rid) == 1
    assert dispatcher.cleanups == [receipt.image_path]
    assert dispatcher.attributions == []


@pytest.mark.asyncio
async def test_business_divisor_is_applied(db, dispatcher):
    ids = await seed(db.Session, points_per_currency=20)
    result = await make_processor(db, FakeOcr(total=250), dispatcher).process(ids.receipt_ids[0])
    assert result.points_earned == 12


@pytest.mark.asyncio
async def test_small_purchase_earns_zero_points(db, dispatcher):
    ids = await seed(db.Session)
    result = await make_processor(db, FakeOcr(total=99), dispatcher).process(ids.receipt_ids[0])
    assert result.points_earned == 0
    receipt = await load_receipt(db.Session, ids.receipt_ids[0])
    assert receipt.status == ReceiptStatus.PROCESSED
    assert await ledger_count(db.Session) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("receipt_id", [None, "", "   "])
async def test_missing_receipt_id(db, ocr, dispatcher, receipt_id):
    with pytest.raises(InputError) as exc_info:
        await make_processor(db, ocr, dispatcher).process(receipt_id)
    assert exc_info.value.status_code == 400
    assert ocr.calls == []


@pytest.mark.asyncio
async def test_unknown_receipt(db, ocr, dispatcher):
    with pytest.raises(NotFoundError) as exc_info:
        await make_processor(db, ocr, dispatcher).process("does-not-exist")
    assert exc_info.value.receipt_id == "does-not-exist"
    assert ocr.calls == []


@pytest.mark.asyncio
async def test_second_invocation_is_idempotent(db, ocr, dispatcher):
    ids = await seed(db.Session)
    rid = ids.receipt_ids[0]
    processor = make_processor(db, ocr, dispatcher)
    await processor.process(rid)

    with pytest.raises(AlreadyProcessedError) as exc_info:
        await processor.process(rid)

    assert exc_info.value.status == "processed"
    assert len(ocr.calls) == 1
    assert await ledger_count(db.Session) == 1
    assert await customer_points(db.Session, ids.customer_id) == 4


@pytest.mark.asyncio
async def test_failed_receipt_cannot_be_reprocessed(db, dispatcher):
    ids = await seed(db.Session)
    rid = ids.receipt_ids[0]
    processor = make_processor(db, FakeOcr(merchant="XYZ Mart"), dispatcher)
    with pytest.raises(MerchantMismatch):
        await processor.process(rid)
    with pytest.raises(AlreadyProcessedError) as exc_info:
        await processor.process(rid)
    assert exc_info.value.status == "failed"


@pytest.mark.asyncio
async def test_concurrent_invocations_credit_once(db, dispatcher):
    ids = await seed(db.Session)
    rid = ids.receipt_ids[0]
    ocr = FakeOcr(delay=0.05)
    processor = make_processor(db, ocr, dispatcher)

    results = await asyncio.gather(*(processor.process(rid) for _ in range(5)), return_exceptions=True)

    successes = [r for r in results if not isinstance(r, Exception)]
    refusals = [r for r in results if isinstance(r, AlreadyProcessedError)]
    assert len(successes) == 1
    assert len(refusals) == 4
    assert len(ocr.calls) == 1
    assert await ledger_count(db.Session, rid) == 1
    assert await customer_points(db.Session, ids.customer_id) == 4


@pytest.mark.asyncio
async def test_concurrent_receipts_of_one_customer_all_count(db, dispatcher):
    ids = await seed(db.Session, receipts=4)
    processor = make_processor(db, FakeOcr(delay=0.01), dispatcher)

    results = await asyncio.gather(*(processor.process(rid) for rid in ids.receipt_ids))

    assert [r.points_earned for r in results] == [4, 4, 4, 4]
    assert await ledger_count(db.Session) == 4
    assert await customer_points(db.Session, ids.customer_id) == 16


@pytest.mark.asyncio
async def test_merchant_mismatch_marks_failed_without_ledger_entry(db, dispatcher):
    ids = await seed(db.Session, business_name="ABC Store")
    rid = ids.receipt_ids[0]

    with pytest.raises(MerchantMismatch) as exc_info:
        await make_processor(db, FakeOcr(merchant="XYZ Mart"), dispatcher).process(rid)

    err = exc_info.value
    assert err.expected == "ABC Store"
    assert err.detected == "XYZ Mart"
    assert 'appears to be from "XYZ Mart"' in err.details
    assert err.to_dict()["expectedBusiness"] == "ABC Store"

    receipt = await load_receipt(db.Session, rid)
    assert receipt.status == ReceiptStatus.FAILED
    assert receipt.failure_reason == FailureReason.MERCHANT_MISMATCH
    assert receipt.failure_details == {"expected": "ABC Store", "detected": "XYZ Mart"}
    assert receipt.extracted_data["merchantName"] == "XYZ Mart"
    assert await ledger_count(db.Session) == 0
    assert await customer_points(db.Session, ids.customer_id) == 0
    assert dispatcher.cleanups == []


@pytest.mark.asyncio
async def test_zero_total_is_invalid_amount_even_for_wrong_merchant(db, dispatcher):
    ids = await seed(db.Session)
    rid = ids.receipt_ids[0]

    with pytest.raises(InvalidAmount):
        await make_processor(db, FakeOcr(merchant="XYZ Mart", total=0), dispatcher).process(rid)

    receipt = await load_receipt(db.Session, rid)
    assert receipt.status == ReceiptStatus.FAILED
    assert receipt.failure_reason == FailureReason.INVALID_AMOUNT
    assert await ledger_count(db.Session) == 0


@pytest.mark.asyncio
async def test_missing_total_is_invalid_amount(db, dispatcher):
    ids = await seed(db.Session)
    with pytest.raises(InvalidAmount):
        await make_processor(db, FakeOcr(total=None), dispatcher).process(ids.receipt_ids[0])


@pytest.mark.asyncio
async def test_ocr_failure_marks_failed(db, dispatcher):
    ids = await seed(db.Session)
    rid = ids.receipt_ids[0]
    ocr = FakeOcr(error=OcrFailure("The receipt could not be read."))

    with pytest.raises(OcrFailure) as exc_info:
        await make_processor(db, ocr, dispatcher).process(rid)

    assert exc_info.value.receipt_id == rid
    receipt = await load_receipt(db.Session, rid)
    assert receipt.status == ReceiptStatus.FAILED
    assert receipt.failure_reason == FailureReason.OCR_FAILURE
    assert receipt.failure_message == "The receipt could not be read."


@pytest.mark.asyncio
async def test_ocr_adapter_crash_is_reported_as_ocr_failure(db, dispatcher):
    ids = await seed(db.Session)
    with pytest.raises(OcrFailure):
        await make_processor(db, FakeOcr(error=RuntimeError("boom")), dispatcher).process(ids.receipt_ids[0])


@pytest.mark.asyncio
async def test_ocr_timeout_is_a_processing_failure(db, dispatcher):
    ids = await seed(db.Session)
    rid = ids.receipt_ids[0]

    with pytest.raises(OcrFailure) as exc_info:
        await make_processor(db, FakeOcr(delay=1.0), dispatcher, ocr_timeout=0.05).process(rid)

    assert "took too long" in exc_info.value.details
    receipt = await load_receipt(db.Session, rid)
    assert receipt.status == ReceiptStatus.FAILED
    assert receipt.failure_reason == FailureReason.OCR_FAILURE


@pytest.mark.asyncio
async def test_missing_business_marks_failed(db, ocr, dispatcher):
    ids = await seed(db.Session)
    rid = ids.receipt_ids[0]

    async with db.Session() as session:
        await session.execute(delete(Business).where(Business.id == ids.business_id))
        await session.commit()

    processor = make_processor(db, ocr, dispatcher)
    with pytest.raises(BusinessNotFound) as exc_info:
        await processor.process(rid)

    assert exc_info.value.status_code == 500
    receipt = await load_receipt(db.Session, rid)
    assert receipt.status == ReceiptStatus.FAILED
    assert receipt.failure_reason == FailureReason.BUSINESS_NOT_FOUND


@pytest.mark.asyncio
async def test_ledger_failure_releases_claim_for_retry(db, ocr, dispatcher):
    ids = await seed(db.Session)
    rid = ids.receipt_ids[0]

    class BrokenLedger:
        async def record(self, **kwargs):
            raise LedgerWriteFailure("The points ledger is temporarily unavailable")

    with pytest.raises(LedgerWriteFailure) as exc_info:
        await make_processor(db, ocr, dispatcher, ledger=BrokenLedger()).process(rid)

    assert exc_info.value.receipt_id == rid
    receipt = await load_receipt(db.Session, rid)
    assert receipt.status == ReceiptStatus.UPLOADED
    assert receipt.failure_reason == FailureReason.LEDGER_WRITE_FAILURE
    assert await ledger_count(db.Session) == 0
    assert dispatcher.cleanups == []

    # The released receipt can be processed once the ledger recovers
    result = await make_processor(db, ocr, dispatcher).process(rid)
    assert result.points_earned == 4
    receipt = await load_receipt(db.Session, rid)
    assert receipt.status == ReceiptStatus.PROCESSED
    assert receipt.failure_reason is None
    assert receipt.processing_attempts == 2


@pytest.mark.asyncio
async def test_unexpected_error_marks_failed(db, ocr, dispatcher, monkeypatch):
    ids = await seed(db.Session)
    rid = ids.receipt_ids[0]

    from loyalty.services import receipt_processor

    def explode(*args, **kwargs):
        raise ZeroDivisionError("boom")

    monkeypatch.setattr(receipt_processor, "compute_points", explode)
    with pytest.raises(ProcessingFailure) as exc_info:
        await make_processor(db, ocr, dispatcher).process(rid)

    assert exc_info.value.status_code == 500
    receipt = await load_receipt(db.Session, rid)
    assert receipt.status == ReceiptStatus.FAILED
    assert receipt.failure_reason == FailureReason.UNEXPECTED_ERROR


@pytest.mark.asyncio
async def test_first_purchase_by_referred_customer_is_attributed(db, ocr, dispatcher):
    ids = await seed(db.Session, referrer_pixel="pixel-123")
    processor = make_processor(db, ocr, dispatcher)

    result = await processor.process(ids.receipt_ids[0])

    tracking = result.attribution_tracking
    assert tracking is not None
    assert tracking.value == 450.0
    assert tracking.currency == "PHP"
    assert tracking.first_transaction is True
    assert tracking.referring_business == ids.referrer_id
    assert dispatcher.attributions == [
        {
            "value": 450.0,
            "currency": "PHP",
            "firstTransaction": True,
            "referringBusiness": ids.referrer_id,
            "pixelId": "pixel-123",
        }
    ]

    # A second purchase at the same business is not a first transaction
    second = await add_receipt(db.Session, business_id=ids.business_id, customer_id=ids.customer_id)
    result = await processor.process(second)
    assert result.attribution_tracking is None
    assert len(dispatcher.attributions) == 1


@pytest.mark.asyncio
async def test_inactive_referrer_is_not_attributed(db, ocr, dispatcher):
    ids = await seed(db.Session, referrer_pixel="pixel-123", referrer_active=False)
    result = await make_processor(db, ocr, dispatcher).process(ids.receipt_ids[0])
    assert result.attribution_tracking is None
    assert dispatcher.attributions == []


@pytest.mark.asyncio
async def test_side_effect_errors_do_not_affect_result(db, ocr, monkeypatch):
    ids = await seed(db.Session, referrer_pixel="pixel-123")

    from loyalty.core.tasks import PostCommitDispatcher, delete_receipt_image, emit_attribution_event

    def refuse(*args, **kwargs):
        raise ConnectionError("broker down")

    monkeypatch.setattr(emit_attribution_event, "send", refuse)
    monkeypatch.setattr(delete_receipt_image, "send", refuse)

    result = await make_processor(db, ocr, PostCommitDispatcher()).process(ids.receipt_ids[0])

    assert result.points_earned == 4
    assert result.attribution_tracking is not None
    receipt = await load_receipt(db.Session, ids.receipt_ids[0])
    assert receipt.status == ReceiptStatus.PROCESSED
