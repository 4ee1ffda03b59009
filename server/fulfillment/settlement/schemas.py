from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, condecimal


DecimalValue = condecimal(max_digits=14, decimal_places=2)
EarningStatusValue = Literal["pending", "available", "withdrawn", "on_hold"]
PayoutStatusValue = Literal["Pending", "Approved", "Processing", "Completed", "Rejected"]
OwnerTypeValue = Literal["seller", "agent"]


class EarningResponse(BaseModel):
    id: int
    owner_type: OwnerTypeValue
    owner_id: int
    order_id: int
    delivery_id: Optional[int] = None
    gross_amount: DecimalValue
    rate: Decimal
    commission_amount: DecimalValue
    bonus_amount: DecimalValue
    net_amount: DecimalValue
    allocated_amount: DecimalValue
    status: EarningStatusValue
    available_date: datetime
    payout_id: Optional[int] = None
    distance_km: Optional[Decimal] = None
    notes: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class EarningsSummaryResponse(BaseModel):
    owner_type: OwnerTypeValue
    owner_id: int
    total_earnings: DecimalValue
    pending: DecimalValue
    available: DecimalValue
    withdrawn: DecimalValue
    on_hold: DecimalValue
    total_commission: DecimalValue
    total_bonus: DecimalValue
    earning_count: int


class EarningHoldRequest(BaseModel):
    reason: Optional[str] = None


class MaturationResponse(BaseModel):
    matured: int


class WithdrawalRequest(BaseModel):
    owner_type: OwnerTypeValue
    amount: DecimalValue = Field(..., gt=0)
    notes: Optional[str] = None


class PayoutAllocationResponse(BaseModel):
    earning_id: int
    amount: DecimalValue
    reversed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PayoutResponse(BaseModel):
    id: int
    owner_type: OwnerTypeValue
    owner_id: int
    amount: DecimalValue
    status: PayoutStatusValue
    bank_name: str
    account_name: str
    account_number: str
    transaction_reference: Optional[str] = None
    payment_proof_url: Optional[str] = None
    rejection_reason: Optional[str] = None
    notes: Optional[str] = None
    requested_at: datetime
    approved_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    allocations: List[PayoutAllocationResponse] = []
    allowed_transitions: List[str] = []

    model_config = ConfigDict(from_attributes=True)


class PayoutCompletion(BaseModel):
    transaction_reference: str = Field(..., min_length=1)
    payment_proof_url: Optional[str] = None


class PayoutRejection(BaseModel):
    reason: str = Field(..., min_length=1)
