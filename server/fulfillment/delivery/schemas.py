from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


DeliveryStatusValue = Literal["Pending", "Assigned", "In_Transit", "Delivered", "Failed", "Cancelled"]
VerificationMethodValue = Literal["otp", "qr"]


class AssignAgentRequest(BaseModel):
    agent_id: Optional[int] = None
    auto_assign: bool = False

    @model_validator(mode="after")
    def validate_target(self):
        if self.agent_id is None and not self.auto_assign:
            raise ValueError("Provide agent_id or set auto_assign.")
        return self


class HandoverCodes(BaseModel):
    otp: str
    qr_payload: str
    expires_at: datetime


class DeliveryResponse(BaseModel):
    id: int
    order_id: int
    agent_id: Optional[int] = None
    status: DeliveryStatusValue
    verification_method: Optional[VerificationMethodValue] = None
    codes_issued_at: Optional[datetime] = None
    codes_expires_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    pickup_confirmed_at: Optional[datetime] = None
    delivery_confirmed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class AssignmentResponse(BaseModel):
    delivery: DeliveryResponse
    distance_km: Optional[Decimal] = None
    codes: Optional[HandoverCodes] = None


class VerifyDeliveryRequest(BaseModel):
    method: VerificationMethodValue
    code: str = Field(..., min_length=1, max_length=512)


class ResendCodesResponse(BaseModel):
    order_id: int
    codes_expires_at: datetime
    codes: Optional[HandoverCodes] = None


class DeliveryFailureRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class AgentLocationUpdate(BaseModel):
    latitude: Decimal = Field(..., ge=-90, le=90)
    longitude: Decimal = Field(..., ge=-180, le=180)
    is_online: Optional[bool] = None


class NearbyAgentResponse(BaseModel):
    agent_id: int
    full_name: Optional[str] = None
    distance_km: Decimal


class NearbyAgentsResponse(BaseModel):
    latitude: Decimal
    longitude: Decimal
    radius_km: Decimal
    agents: List[NearbyAgentResponse]
