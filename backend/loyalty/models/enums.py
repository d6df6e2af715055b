"""Enumeration types used throughout the receipt-to-points service.

Enumerations constrain the values stored in the database or passed
through the API.  When modifying these enums update any corresponding
database columns or Pydantic validators so that new values are
accepted where appropriate.
"""

from enum import Enum


class ReceiptStatus(str, Enum):
    """Processing states for a receipt.

    ``uploaded`` is the only initial state; ``processed`` and ``failed``
    are terminal.
    """

    UPLOADED = "uploaded"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Reason codes persisted on a receipt when processing stops."""

    OCR_FAILURE = "ocr_failure"
    MERCHANT_MISMATCH = "merchant_mismatch"
    INVALID_AMOUNT = "invalid_amount"
    BUSINESS_NOT_FOUND = "business_not_found"
    LEDGER_WRITE_FAILURE = "ledger_write_failure"
    UNEXPECTED_ERROR = "unexpected_error"


class MatchStage(str, Enum):
    """Stage of the merchant match cascade that produced a decision."""

    EMPTY = "empty"
    EXACT = "exact"
    CONTAINMENT = "containment"
    WORDS = "words"
    BRAND = "brand"
    SIMILARITY = "similarity"
    NONE = "none"
