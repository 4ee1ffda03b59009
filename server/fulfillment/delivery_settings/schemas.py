from decimal import Decimal
from typing import Dict

from pydantic import BaseModel, Field


class DeliverySettingsResponse(BaseModel):
    base_delivery_fee: Decimal
    per_km_rate: Decimal
    min_delivery_fee: Decimal
    platform_commission_rate: Decimal
    agent_bonus_threshold: int
    agent_bonus_amount: Decimal
    min_withdrawal_amount: Decimal
    default_seller_commission_rate: Decimal
    agent_search_radius_km: Decimal


class DeliverySettingsUpdate(BaseModel):
    values: Dict[str, Decimal] = Field(..., min_length=1)
