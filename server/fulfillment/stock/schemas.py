from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ProductStockResponse(BaseModel):
    id: int
    seller_id: int
    name: str
    stock_quantity: int
    reserved_stock: int
    available_quantity: int
    low_stock_threshold: int
    minimum_order_quantity: int
    enable_stock_management: bool
    allow_backorders: bool
    availability_status: str

    model_config = ConfigDict(from_attributes=True)


class AvailabilityResponse(BaseModel):
    product_id: int
    quantity: int
    available: bool
    is_backorder: bool
    reason: Optional[str] = None
    available_quantity: Optional[int] = None


class RestockRequest(BaseModel):
    quantity: int = Field(..., gt=0)
    reason: Optional[str] = None


class AdjustStockRequest(BaseModel):
    new_quantity: int = Field(..., ge=0, description="Absolute stock quantity after the adjustment.")
    reason: Optional[str] = None


class StockMovementResponse(BaseModel):
    id: int
    product_id: int
    movement_type: str
    quantity: int
    previous_quantity: int
    new_quantity: int
    reserved_delta: int
    reference_type: Optional[str] = None
    reference_id: Optional[int] = None
    notes: Optional[str] = None
    performed_by: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class StockHistoryResponse(BaseModel):
    product_id: int
    total: int
    limit: int
    offset: int
    movements: List[StockMovementResponse]


class LedgerCheckResponse(BaseModel):
    product_id: int
    stock_quantity: int
    reserved_stock: int
    replayed_stock_quantity: int
    replayed_reserved_stock: int
    movement_count: int
    consistent: bool
