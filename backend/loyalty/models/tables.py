"""SQLAlchemy ORM models for the receipt-to-points service.

Only the tables the points pipeline reads or writes are modelled here:
businesses, customers, receipts and the append-only points ledger.
Enumerated fields are stored as their lowercase string values.

If you extend or modify these models remember to apply the matching
migration to production databases, or call the ``init_db`` helper
during development to create the tables.
"""

from __future__ import annotations

import datetime as dt
import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from loyalty.core.database import Base
from .enums import FailureReason, ReceiptStatus


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _values(enum_cls):
    return [member.value for member in enum_cls]


class Business(Base):
    """Merchant that issues points for receipts scanned against its QR code."""

    __tablename__ = "businesses"

    id = Column(String(36), primary_key=True, default=_uuid)
    business_name = Column(String, nullable=False)
    # Currency units per point; a receipt of 450 at 100 earns 4 points
    points_per_currency = Column(Integer, nullable=False, default=100)
    # Attribution tracking configuration; NULL disables tracking
    meta_pixel_id = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    receipts = relationship("Receipt", back_populates="business")


class Customer(Base):
    """Customer earning points.  ``total_points`` is a cache of the ledger sum."""

    __tablename__ = "customers"

    id = Column(String(36), primary_key=True, default=_uuid)
    total_points = Column(Integer, nullable=False, default=0)
    referred_by_business_id = Column(String(36), ForeignKey("businesses.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    referred_by = relationship("Business", foreign_keys=[referred_by_business_id])
    receipts = relationship("Receipt", back_populates="customer")
    transactions = relationship("PointsTransaction", back_populates="customer")


class Receipt(Base):
    """Uploaded proof of purchase and the outcome of processing it."""

    __tablename__ = "receipts"

    id = Column(String(36), primary_key=True, default=_uuid)
    image_path = Column(String, nullable=False)
    business_id = Column(String(36), ForeignKey("businesses.id"), nullable=False, index=True)
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=False, index=True)
    status = Column(
        Enum(ReceiptStatus, values_callable=_values, native_enum=False, length=16),
        default=ReceiptStatus.UPLOADED,
        nullable=False,
        index=True,
    )

    # Extraction results
    extracted_data = Column(JSON, nullable=True)
    total_amount = Column(Numeric(12, 2), nullable=True)
    currency_code = Column(String(8), nullable=True)
    points_earned = Column(Integer, nullable=True)

    # Failure bookkeeping for audit / support
    failure_reason = Column(
        Enum(FailureReason, values_callable=_values, native_enum=False, length=32),
        nullable=True,
    )
    failure_message = Column(Text, nullable=True)
    failure_details = Column(JSON, nullable=True)
    processing_attempts = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)
    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    business = relationship("Business", back_populates="receipts")
    customer = relationship("Customer", back_populates="receipts")
    transaction = relationship("PointsTransaction", back_populates="receipt", uselist=False)


class PointsTransaction(Base):
    """Append-only ledger entry.  Rows are inserted once and never updated."""

    __tablename__ = "points_transactions"

    id = Column(String(36), primary_key=True, default=_uuid)
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=False, index=True)
    business_id = Column(String(36), ForeignKey("businesses.id"), nullable=False, index=True)
    # Unique: a receipt can be credited at most once
    receipt_id = Column(String(36), ForeignKey("receipts.id"), nullable=False, unique=True)
    amount_spent = Column(Numeric(12, 2), nullable=False)
    points_earned = Column(Integer, nullable=False)
    transaction_date = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    customer = relationship("Customer", back_populates="transactions")
    receipt = relationship("Receipt", back_populates="transaction")
