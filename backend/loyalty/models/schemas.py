"""Pydantic schemas for request and response models.

Pydantic models validate and serialise data that crosses the boundary
of the API or of an external collaborator.  ``ExtractedData`` is the
structured output of the OCR adapter; the remaining models describe the
HTTP payloads of the receipt endpoints.  Field names are snake_case in
Python and camelCase on the wire.

Schemas are intentionally separate from the ORM models so that the API
can expose a different shape than what is stored in the database.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from loyalty.core.config import settings

from .enums import FailureReason, ReceiptStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Domain schemas


class ExtractedData(CamelModel):
    """Purchase data read from a receipt image."""

    merchant_name: str = Field(default="", description="Business name printed on the receipt, empty if unreadable")
    total_amount: Optional[float] = Field(default=None, description="Grand total paid, null if not found")
    currency: str = Field(
        default_factory=lambda: settings.OCR_DEFAULT_CURRENCY,
        description="ISO 4217 currency code of the total",
    )


class AttributionTracking(CamelModel):
    """Referral conversion reported for a customer's first purchase at a business."""

    value: float
    currency: str
    first_transaction: bool = True
    referring_business: str
    pixel_id: str


class ProcessingResult(CamelModel):
    """Outcome of a successfully processed receipt."""

    receipt_id: str
    extracted_data: ExtractedData
    points_earned: int
    attribution_tracking: Optional[AttributionTracking] = None


# ---------------------------------------------------------------------------
# API request/response schemas


class ProcessReceiptRequest(CamelModel):
    receipt_id: Optional[str] = None


class ProcessReceiptResponse(CamelModel):
    success: bool = True
    receipt_id: str
    extracted_data: ExtractedData
    points_earned: int
    message: str
    attribution_tracking: Optional[AttributionTracking] = None

    @classmethod
    def from_result(cls, result: ProcessingResult) -> "ProcessReceiptResponse":
        return cls(
            receipt_id=result.receipt_id,
            extracted_data=result.extracted_data,
            points_earned=result.points_earned,
            message=f"Receipt processed successfully! You earned {result.points_earned} points.",
            attribution_tracking=result.attribution_tracking,
        )


class ErrorResponse(CamelModel):
    error: str
    details: Any = None
    receipt_id: Optional[str] = None


class ReceiptRead(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: str
    business_id: str
    customer_id: str
    status: ReceiptStatus
    extracted_data: Optional[Dict[str, Any]] = None
    points_earned: Optional[int] = None
    failure_reason: Optional[FailureReason] = None
    failure_message: Optional[str] = None
    failure_details: Optional[Dict[str, Any]] = None
    created_at: datetime
    processed_at: Optional[datetime] = None
