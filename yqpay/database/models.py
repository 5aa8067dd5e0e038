# yqpay/database/models.py
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String
from datetime import datetime
import uuid

from yqpay.database.database import Base


def new_id() -> str:
    return uuid.uuid4().hex


# ==========================
# THEATER MODEL
# ==========================
class Theater(Base):
    """
    Read-only from the payment core's standpoint.
    payment_gateway holds {"kiosk": {...}, "online": {...}} and is parsed into
    typed configs by yqpay.database.schemas.TheaterPaymentGateway.
    """
    __tablename__ = "theaters"

    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String(150), nullable=False)
    address = Column(String(500), nullable=True)
    phone = Column(String(20), nullable=True)
    email = Column(String(150), nullable=True)
    gst_number = Column(String(30), nullable=True)
    payment_gateway = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# ==========================
# ORDER MODELS (two physical layouts)
# ==========================
class Order(Base):
    """Standalone order document"""
    __tablename__ = "orders"

    id = Column(String(32), primary_key=True, default=new_id)
    theater_id = Column(String(32), ForeignKey("theaters.id"), nullable=False, index=True)
    order_number = Column(String(50), nullable=True)
    source = Column(String(50), nullable=True)
    order_type = Column(String(50), nullable=True)
    customer_info = Column(JSON, nullable=True)  # {name, email, phone, id}
    items = Column(JSON, nullable=False, default=list)  # [{productId, name, quantity, price}]
    pricing = Column(JSON, nullable=False, default=dict)  # {subtotal, taxAmount, discountAmount, total, currency}
    payment = Column(JSON, nullable=True)  # {method, status, paidAt, transactionId, razorpay*}
    status = Column(String(30), nullable=False, default="pending")
    stock_recorded = Column(Boolean, nullable=False, default=False)
    stock_recorded_items = Column(JSON, nullable=True)  # productIds already sent to stock service
    stock_claimed_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False, default=0)  # bumped on every guarded write
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class TheaterOrders(Base):
    """Per-theater container whose order_list holds order documents as JSON"""
    __tablename__ = "theater_orders"

    id = Column(Integer, primary_key=True, index=True)
    theater_id = Column(String(32), ForeignKey("theaters.id"), nullable=False, unique=True, index=True)
    order_list = Column(JSON, nullable=False, default=list)
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class OrderLocator(Base):
    """Maps an array-layout order id to its container row"""
    __tablename__ = "order_locator"

    order_id = Column(String(32), primary_key=True)
    theater_orders_id = Column(Integer, ForeignKey("theater_orders.id"), nullable=False, index=True)
