# yqpay/database/payment_models.py
"""
Payment-related database models
"""
from sqlalchemy import Column, DateTime, Index, JSON, Numeric, String
from datetime import datetime

from yqpay.database.database import Base
from yqpay.database.models import new_id


TXN_INITIATED = "initiated"
TXN_PENDING = "pending"
TXN_PROCESSING = "processing"
TXN_SUCCESS = "success"
TXN_FAILED = "failed"
TXN_REFUNDED = "refunded"

OPEN_STATUSES = (TXN_INITIATED, TXN_PENDING, TXN_PROCESSING)
# no transition leaves these; a failed attempt can still settle as success
SETTLED_STATUSES = (TXN_SUCCESS, TXN_REFUNDED)


class PaymentTransaction(Base):
    """One attempted payment; authoritative about payment state"""
    __tablename__ = "payment_transactions"

    id = Column(String(32), primary_key=True, default=new_id)
    theater_id = Column(String(32), nullable=False, index=True)
    order_id = Column(String(32), nullable=False, index=True)
    method = Column(String(30), nullable=True)

    gateway_provider = Column(String(20), nullable=False)
    gateway_channel = Column(String(20), nullable=False)
    gateway_order_id = Column(String(100), nullable=True, index=True)
    gateway_payment_id = Column(String(100), nullable=True, index=True)
    gateway_signature = Column(String(500), nullable=True)

    amount_value = Column(Numeric(12, 2), nullable=False)  # major currency unit
    amount_currency = Column(String(10), nullable=False, default="INR")

    status = Column(String(20), nullable=False, default=TXN_PENDING, index=True)
    meta = Column(JSON, nullable=True)  # orderNumber, customerName, staleVerifications, ...
    error = Column(JSON, nullable=True)  # {code, message, timestamp}

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    verified_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    verification_ip = Column(String(64), nullable=True)

    __table_args__ = (
        Index("ix_payment_transactions_theater_status", "theater_id", "status"),
    )
