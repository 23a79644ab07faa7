"""
Pydantic schemas for request/response validation.

Wire names are camelCase (``totalAmount``, ``isDisposed``); Python code uses
snake_case. Both spellings are accepted on input.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Schema(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class ShippingAddress(Schema):
    street_address: str
    apt_number: Optional[str] = None
    city: str
    state_province: str
    zip_code: str
    country: str


class OrderItemCreate(Schema):
    """Schema for an order line item, priced by the client at checkout."""
    product_id: str
    product_name: str
    product_image: Optional[str] = None
    price: Decimal = Field(..., ge=0, description="Price per unit")
    quantity: int = Field(..., gt=0, description="Quantity ordered")
    is_returnable: bool = True


class OrderCreate(Schema):
    store_id: str
    store_name: Optional[str] = None
    items: List[OrderItemCreate] = Field(default_factory=list)
    shipping_address: ShippingAddress
    payment_method: str
    guest_email: Optional[str] = None


class OrderItem(Schema):
    id: str
    product_id: str
    product_name: str
    product_image: Optional[str] = None
    price: Decimal
    quantity: int
    subtotal: Decimal
    is_returnable: bool


class Order(Schema):
    id: str
    user_id: Optional[str] = None
    guest_email: Optional[str] = None
    store_id: str
    store_name: Optional[str] = None
    items: List[OrderItem]
    total_amount: Decimal
    status: str
    shipping_address: dict
    payment_method: str
    payment_intent_id: Optional[str] = None
    tracking_number: Optional[str] = None
    created_at: datetime
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


class OrderEvent(Schema):
    id: int
    order_id: str
    event_type: str
    description: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime


class OrderStatusUpdate(Schema):
    status: str
    tracking_number: Optional[str] = None


class RefundCreate(Schema):
    """If ``amount`` is omitted the full remaining amount is refunded."""
    amount: Optional[Decimal] = Field(None, gt=0)
    reason: Optional[Literal["duplicate", "fraudulent", "requested_by_customer"]] = None
    item_ids: Optional[List[str]] = None


class Refund(Schema):
    id: str
    order_id: str
    payment_intent_id: str
    refund_id: str
    amount: Decimal
    currency: str
    status: str
    reason: Optional[str] = None
    item_ids: Optional[List[str]] = None
    refunded_by: Optional[str] = None
    created_at: datetime


ReturnCondition = Literal["new", "refurbished", "open_box", "used"]


class ReturnCreate(Schema):
    order_id: str
    order_item_id: str
    reason: str = Field(..., min_length=1)
    condition: Optional[ReturnCondition] = None
    is_disposed: bool = False


class ReturnStatusUpdate(Schema):
    status: Literal["pending", "approved", "rejected", "received", "refunded"]
    refund_amount: Optional[Decimal] = Field(None, gt=0)
    return_tracking_number: Optional[str] = None
    condition: Optional[ReturnCondition] = None
    is_disposed: bool = False


class OrderReturn(Schema):
    id: str
    order_id: str
    order_item_id: str
    user_id: Optional[str] = None
    reason: str
    status: str
    condition: Optional[str] = None
    is_disposed: bool
    refund_amount: Optional[Decimal] = None
    return_tracking_number: Optional[str] = None
    requested_at: datetime
    processed_at: Optional[datetime] = None


class StockOperationCreate(Schema):
    product_id: str
    type: Literal["in", "out"]
    quantity: int
    reason: Optional[str] = None
    order_id: Optional[str] = None


class StockOperation(Schema):
    id: str
    product_id: str
    type: str
    quantity: int
    reason: Optional[str] = None
    performed_by: Optional[str] = None
    order_id: Optional[str] = None
    return_id: Optional[str] = None
    previous_quantity: int
    new_quantity: int
    created_at: datetime


class PaymentIntent(Schema):
    payment_intent_id: str
    client_secret: Optional[str] = None
    status: Optional[str] = None
