from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from fulfillment import config
from fulfillment.auth import get_current_user, is_admin, require_admin, require_roles
from fulfillment.db import get_db
from fulfillment.delivery import schemas
from fulfillment.delivery.codes import IssuedCodes
from fulfillment.delivery.geo import find_nearby_agents, update_agent_location
from fulfillment.delivery.service import (
    assign_agent,
    confirm_pickup,
    get_delivery_for_order,
    mark_delivery_failed,
    resend_codes,
    verify_delivery,
)
from fulfillment.delivery_settings.service import get_setting
from fulfillment.models import User
from fulfillment.statuses import UserRole
from fulfillment.transactions import run_in_transaction


router = APIRouter(prefix="/api/deliveries", tags=["deliveries"])


def _codes_payload(codes: IssuedCodes, *, reveal: bool = False) -> Optional[schemas.HandoverCodes]:
    # Only the buyer sees plaintext codes, except in development.
    if not (reveal or config.EXPOSE_HANDOVER_CODES):
        return None
    return schemas.HandoverCodes(otp=codes.otp, qr_payload=codes.qr_payload, expires_at=codes.expires_at)


@router.get("/orders/{order_id}", response_model=schemas.DeliveryResponse)
def get_delivery(order_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    delivery = get_delivery_for_order(db, order_id)
    if not is_admin(current_user) and current_user.id not in {delivery.agent_id, delivery.order.buyer_id}:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized for this delivery.")
    return delivery


@router.post("/orders/{order_id}/assign", response_model=schemas.AssignmentResponse)
def assign(
    order_id: int,
    payload: schemas.AssignAgentRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    result = run_in_transaction(
        db,
        lambda: assign_agent(
            db,
            order_id=order_id,
            agent_id=payload.agent_id,
            auto_assign=payload.auto_assign,
            assigned_by=current_user.id,
        ),
    )
    db.refresh(result.delivery)
    return schemas.AssignmentResponse(
        delivery=schemas.DeliveryResponse.model_validate(result.delivery),
        distance_km=result.distance_km,
        codes=_codes_payload(result.codes),
    )


@router.post("/orders/{order_id}/pickup", response_model=schemas.DeliveryResponse)
def pickup(order_id: int, db: Session = Depends(get_db), current_user: User = Depends(require_roles(UserRole.AGENT))):
    delivery = run_in_transaction(db, lambda: confirm_pickup(db, order_id=order_id, agent_id=current_user.id))
    db.refresh(delivery)
    return delivery


@router.post("/orders/{order_id}/verify", response_model=schemas.DeliveryResponse)
def verify(
    order_id: int,
    payload: schemas.VerifyDeliveryRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.AGENT)),
):
    delivery = run_in_transaction(
        db,
        lambda: verify_delivery(
            db,
            order_id=order_id,
            agent_id=current_user.id,
            method=payload.method,
            code=payload.code,
        ),
    )
    db.refresh(delivery)
    return delivery


@router.post("/orders/{order_id}/resend-codes", response_model=schemas.ResendCodesResponse)
def resend(order_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    buyer_id = get_delivery_for_order(db, order_id).order.buyer_id
    if not is_admin(current_user) and current_user.id != buyer_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized for this delivery.")
    codes = run_in_transaction(db, lambda: resend_codes(db, order_id=order_id, requested_by=current_user.id))
    return schemas.ResendCodesResponse(
        order_id=order_id,
        codes_expires_at=codes.expires_at,
        codes=_codes_payload(codes, reveal=current_user.id == buyer_id),
    )


@router.post("/orders/{order_id}/fail", response_model=schemas.DeliveryResponse)
def fail(
    order_id: int,
    payload: schemas.DeliveryFailureRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.AGENT)),
):
    delivery = run_in_transaction(
        db,
        lambda: mark_delivery_failed(
            db,
            order_id=order_id,
            reason=payload.reason,
            performed_by=current_user.id,
            is_admin=is_admin(current_user),
        ),
    )
    db.refresh(delivery)
    return delivery


@router.get("/agents/nearby", response_model=schemas.NearbyAgentsResponse)
def nearby_agents(
    latitude: Decimal = Query(..., ge=-90, le=90),
    longitude: Decimal = Query(..., ge=-180, le=180),
    radius_km: Optional[Decimal] = Query(None, gt=0),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    radius = radius_km if radius_km is not None else get_setting(db, "agent_search_radius_km")
    matches = find_nearby_agents(db, latitude=latitude, longitude=longitude, radius_km=radius)
    return schemas.NearbyAgentsResponse(
        latitude=latitude,
        longitude=longitude,
        radius_km=radius,
        agents=[
            schemas.NearbyAgentResponse(
                agent_id=match.agent.id,
                full_name=match.agent.full_name,
                distance_km=match.distance_km,
            )
            for match in matches
        ],
    )


@router.put("/agents/me/location")
def update_my_location(
    payload: schemas.AgentLocationUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.AGENT)),
):
    agent = run_in_transaction(
        db,
        lambda: update_agent_location(
            db,
            agent_id=current_user.id,
            latitude=payload.latitude,
            longitude=payload.longitude,
            is_online=payload.is_online,
        ),
    )
    db.refresh(agent)
    return {
        "agent_id": agent.id,
        "latitude": agent.current_latitude,
        "longitude": agent.current_longitude,
        "is_online": agent.is_online,
        "location_updated_at": agent.location_updated_at,
    }
