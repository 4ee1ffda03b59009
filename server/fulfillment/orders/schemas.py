from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, condecimal, model_validator


DecimalValue = condecimal(max_digits=14, decimal_places=2)
OrderStatusValue = Literal["Placed", "Approved", "Assigned", "In_Transit", "Delivered", "Cancelled", "Failed"]
PaymentStatusValue = Literal["Pending", "Paid", "Failed", "Refunded"]


class OrderLineCreate(BaseModel):
    product_id: int
    quantity: int = Field(..., gt=0)


class ShippingDetails(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[Decimal] = Field(default=None, ge=-90, le=90)
    longitude: Optional[Decimal] = Field(default=None, ge=-180, le=180)


class OrderCreate(BaseModel):
    items: List[OrderLineCreate]
    shipping: Optional[ShippingDetails] = None

    @model_validator(mode="after")
    def validate_items(self):
        if not self.items:
            raise ValueError("Add at least one item.")
        return self


class OrderItemResponse(BaseModel):
    id: int
    product_id: int
    seller_id: int
    product_name: str
    quantity: int
    unit_price: DecimalValue
    line_total: DecimalValue
    is_backorder: bool

    model_config = ConfigDict(from_attributes=True)


class OrderResponse(BaseModel):
    id: int
    buyer_id: int
    total_amount: DecimalValue
    payment_status: PaymentStatusValue
    order_status: OrderStatusValue
    payment_reference: Optional[str] = None
    shipping_name: Optional[str] = None
    shipping_address: Optional[str] = None
    shipping_city: Optional[str] = None
    assigned_agent_id: Optional[int] = None
    delivery_fee: Optional[DecimalValue] = None
    delivery_distance_km: Optional[Decimal] = None
    paid_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    items: List[OrderItemResponse]
    allowed_transitions: List[str] = []

    model_config = ConfigDict(from_attributes=True)


class PaymentConfirmation(BaseModel):
    payment_reference: Optional[str] = None


class PaymentFailure(BaseModel):
    reason: Optional[str] = None


class OrderCancel(BaseModel):
    reason: Optional[str] = None
