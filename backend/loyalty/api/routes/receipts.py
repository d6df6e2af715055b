"""API routes for processing receipts and reading their status."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty.core.database import get_db
from loyalty.core.errors import NotFoundError
from loyalty.models.schemas import ErrorResponse, ProcessReceiptRequest, ProcessReceiptResponse, ReceiptRead
from loyalty.models.tables import Receipt
from loyalty.services.receipt_processor import ReceiptProcessor, get_receipt_processor

router = APIRouter(prefix="/receipts", tags=["receipts"])

ERROR_RESPONSES = {
    code: {"model": ErrorResponse, "description": description}
    for code, description in (
        (400, "Missing receipt id, merchant mismatch or invalid amount"),
        (404, "Receipt not found"),
        (409, "Receipt already processed"),
        (422, "Receipt could not be read"),
        (500, "Points could not be recorded"),
    )
}


@router.post(
    "/process",
    response_model=ProcessReceiptResponse,
    response_model_by_alias=True,
    responses=ERROR_RESPONSES,
)
async def process_receipt(
    payload: Optional[ProcessReceiptRequest] = Body(default=None),
    processor: ReceiptProcessor = Depends(get_receipt_processor),
):
    """Extract, verify and credit points for an uploaded receipt.

    Errors are rendered by the ``ReceiptProcessingError`` handler as
    ``{error, details, receiptId}``.
    """
    result = await processor.process(payload.receipt_id if payload else None)
    return ProcessReceiptResponse.from_result(result)


@router.get(
    "/{receipt_id}",
    response_model=ReceiptRead,
    response_model_by_alias=True,
    responses={404: ERROR_RESPONSES[404]},
)
async def get_receipt(receipt_id: str, db: AsyncSession = Depends(get_db)):
    """Processing status of a receipt, for support and audit."""
    receipt = await db.get(Receipt, receipt_id)
    if receipt is None:
        raise NotFoundError("No receipt exists with this ID.", receipt_id)
    return ReceiptRead.model_validate(receipt)
