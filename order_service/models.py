"""
SQLAlchemy ORM models for the order/payment ledger.

Orders own their items. Refunds, stock operations, transactions and returns
reference an order or product by id but have their own lifecycle.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from order_service.database import Base


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    # Naive UTC; SQLite drops tzinfo anyway
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Product(Base):
    """
    Catalog product with its saleable stock counter.

    Only ``stock_quantity`` is written by this service, and only through
    the inventory adjuster.
    """
    __tablename__ = "products"

    id = Column(String, primary_key=True, default=new_id)
    store_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    image_url = Column(String, nullable=True)
    stock_quantity = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Order(Base):
    """
    Customer order.

    Attributes:
        user_id (str): Registered owner, or None for guest orders
        guest_email (str): Contact for guest orders
        total_amount (Decimal): Sum of item price x quantity at creation; never recomputed
        status (str): One of ``OrderStatus``
        payment_method (str): Descriptor, e.g. "stripe_payment_intent:pi_123"
        payment_intent_id (str): Gateway payment intent, set once known
    """
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, nullable=True, index=True)
    guest_email = Column(String, nullable=True)
    store_id = Column(String, nullable=False, index=True)
    store_name = Column(String, nullable=True)
    total_amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String, nullable=False, default="pending")
    shipping_address = Column(JSON, nullable=False)
    payment_method = Column(String, nullable=False)
    payment_intent_id = Column(String, nullable=True, index=True)
    tracking_number = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    shipped_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
    )


class OrderItem(Base):
    """Line item; name, price and image are snapshots taken at order time."""
    __tablename__ = "order_items"

    id = Column(String, primary_key=True, default=new_id)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    product_name = Column(String, nullable=False)
    product_image = Column(String, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    subtotal = Column(Numeric(10, 2), nullable=False)
    is_returnable = Column(Boolean, nullable=False, default=True)

    order = relationship("Order", back_populates="items")


class OrderEvent(Base):
    """Timeline entry written on creation and on every status change."""
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    event_type = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    old_value = Column(String, nullable=True)
    new_value = Column(String, nullable=True)
    user_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Refund(Base):
    """
    Local record of a gateway refund.

    Only written after the gateway accepted the refund. ``status`` mirrors
    the gateway and is the only column updated afterwards.
    """
    __tablename__ = "refunds"

    id = Column(String, primary_key=True, default=new_id)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    payment_intent_id = Column(String, nullable=False, index=True)
    refund_id = Column(String, nullable=False, unique=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String, nullable=False, default="usd")
    status = Column(String, nullable=False)
    reason = Column(String, nullable=True)
    item_ids = Column(JSON, nullable=True)
    refunded_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class StockOperation(Base):
    """Immutable record of one stock change; reversed by a compensating row."""
    __tablename__ = "stock_operations"

    id = Column(String, primary_key=True, default=new_id)
    product_id = Column(String, ForeignKey("products.id"), nullable=False, index=True)
    type = Column(String, nullable=False)  # in | out
    quantity = Column(Integer, nullable=False)
    reason = Column(Text, nullable=True)
    performed_by = Column(String, nullable=True)
    order_id = Column(String, nullable=True, index=True)
    return_id = Column(String, nullable=True)
    previous_quantity = Column(Integer, nullable=False)
    new_quantity = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class StoreTransaction(Base):
    """Append-only financial ledger entry; amount is signed."""
    __tablename__ = "store_transactions"

    id = Column(String, primary_key=True, default=new_id)
    store_id = Column(String, nullable=False, index=True)
    transaction_type = Column(String, nullable=False)  # sale | refund | payment | fee | commission
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String, nullable=False, default="usd")
    status = Column(String, nullable=False, default="pending")
    description = Column(Text, nullable=True)
    order_id = Column(String, nullable=True, index=True)
    payment_method = Column(String, nullable=True)
    created_by = Column(String, nullable=True)
    details = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class OrderReturn(Base):
    __tablename__ = "order_returns"

    id = Column(String, primary_key=True, default=new_id)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    order_item_id = Column(String, ForeignKey("order_items.id"), nullable=False, index=True)
    user_id = Column(String, nullable=True)
    reason = Column(Text, nullable=False)
    status = Column(String, nullable=False, default="pending")
    condition = Column(String, nullable=True)  # new | refurbished | open_box | used
    is_disposed = Column(Boolean, nullable=False, default=False)
    refund_amount = Column(Numeric(10, 2), nullable=True)
    return_tracking_number = Column(String, nullable=True)
    requested_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)
