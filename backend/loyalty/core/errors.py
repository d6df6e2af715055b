"""Error taxonomy for the receipt processing pipeline.

Every gate of the pipeline raises a subclass of
``ReceiptProcessingError``.  Each carries a short ``error`` label, a
user-displayable ``details`` message and the HTTP status the API
responds with.  ``failure_reason`` is the code persisted on the receipt
when the error ends processing.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from loyalty.models.enums import FailureReason


class ReceiptProcessingError(Exception):
    """Base class for pipeline errors rendered as ``{error, details, receiptId}``."""

    status_code: int = 400
    error: str = "Failed to process receipt"
    failure_reason: Optional[FailureReason] = None

    def __init__(self, details: str, receipt_id: Optional[str] = None) -> None:
        super().__init__(details)
        self.details = details
        self.receipt_id = receipt_id

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error, "details": self.details, "receiptId": self.receipt_id}


class InputError(ReceiptProcessingError):
    status_code = 400
    error = "Receipt ID is required"


class NotFoundError(ReceiptProcessingError):
    status_code = 404
    error = "Receipt not found"


class AlreadyProcessedError(ReceiptProcessingError):
    status_code = 409
    error = "Receipt already processed"

    def __init__(self, details: str, receipt_id: Optional[str] = None, status: Optional[str] = None) -> None:
        super().__init__(details, receipt_id)
        self.status = status


class OcrFailure(ReceiptProcessingError):
    status_code = 422
    error = "Receipt could not be read"
    failure_reason = FailureReason.OCR_FAILURE


class MerchantMismatch(ReceiptProcessingError):
    status_code = 400
    error = "Business name mismatch"
    failure_reason = FailureReason.MERCHANT_MISMATCH

    def __init__(self, expected: str, detected: str, receipt_id: Optional[str] = None) -> None:
        details = (
            f'Receipt appears to be from "{detected}" but you scanned the QR code for "{expected}". '
            "Please make sure the receipt is from the correct business."
        )
        super().__init__(details, receipt_id)
        self.expected = expected
        self.detected = detected

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["expectedBusiness"] = self.expected
        body["detectedBusiness"] = self.detected
        return body


class InvalidAmount(ReceiptProcessingError):
    status_code = 400
    error = "Invalid receipt amount"
    failure_reason = FailureReason.INVALID_AMOUNT

    def __init__(self, details: Optional[str] = None, receipt_id: Optional[str] = None) -> None:
        super().__init__(
            details
            or "Could not detect a valid total amount on the receipt. Please ensure the receipt is clear and legible.",
            receipt_id,
        )


class BusinessNotFound(ReceiptProcessingError):
    status_code = 500
    error = "Failed to process receipt"
    failure_reason = FailureReason.BUSINESS_NOT_FOUND


class LedgerWriteFailure(ReceiptProcessingError):
    """The receipt validated but its points could not be recorded."""

    status_code = 500
    error = "Failed to record points"
    failure_reason = FailureReason.LEDGER_WRITE_FAILURE


class ProcessingFailure(ReceiptProcessingError):
    """An unexpected error ended processing."""

    status_code = 500
    error = "Failed to process receipt"
    failure_reason = FailureReason.UNEXPECTED_ERROR


class SideEffectFailure(Exception):
    """Attribution or cleanup task failed.  Logged and never surfaced."""


__all__ = [
    "ReceiptProcessingError",
    "InputError",
    "NotFoundError",
    "AlreadyProcessedError",
    "OcrFailure",
    "MerchantMismatch",
    "InvalidAmount",
    "BusinessNotFound",
    "LedgerWriteFailure",
    "ProcessingFailure",
    "SideEffectFailure",
]
