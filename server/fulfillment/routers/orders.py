from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from fulfillment.auth import get_current_user, is_admin, require_admin, require_roles
from fulfillment.db import get_db
from fulfillment.models import Order, User
from fulfillment.orders import schemas
from fulfillment.orders.service import (
    OrderLineInput,
    approve_order,
    cancel_order,
    confirm_payment,
    create_order,
    get_allowed_order_transitions,
    get_order,
    list_orders,
    order_involves_seller,
    record_payment_failure,
)
from fulfillment.statuses import UserRole
from fulfillment.transactions import run_in_transaction


router = APIRouter(prefix="/api/orders", tags=["orders"])


def _to_response(order: Order) -> schemas.OrderResponse:
    response = schemas.OrderResponse.model_validate(order)
    response.allowed_transitions = get_allowed_order_transitions(order)
    return response


def _can_view(order: Order, user: User) -> bool:
    if is_admin(user) or order.buyer_id == user.id:
        return True
    if user.role == UserRole.SELLER.value and order_involves_seller(order, user.id):
        return True
    return user.role == UserRole.AGENT.value and order.assigned_agent_id == user.id


def _reload(db: Session, order_id: int) -> schemas.OrderResponse:
    db.expire_all()
    return _to_response(get_order(db, order_id))


@router.get("", response_model=List[schemas.OrderResponse])
def list_my_orders(
    order_status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    buyer_id = None if is_admin(current_user) else current_user.id
    orders = list_orders(db, buyer_id=buyer_id, order_status=order_status, limit=limit, offset=offset)
    return [_to_response(order) for order in orders]


@router.post("", response_model=schemas.OrderResponse, status_code=status.HTTP_201_CREATED)
def place_order(
    payload: schemas.OrderCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.BUYER)),
):
    lines = [OrderLineInput(product_id=line.product_id, quantity=line.quantity) for line in payload.items]
    shipping = payload.shipping.model_dump() if payload.shipping else None
    order = run_in_transaction(db, lambda: create_order(db, buyer_id=current_user.id, items=lines, shipping=shipping))
    return _reload(db, order.id)


@router.get("/{order_id}", response_model=schemas.OrderResponse)
def get_order_detail(order_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    order = get_order(db, order_id)
    if not _can_view(order, current_user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized for this order.")
    return _to_response(order)


@router.post("/{order_id}/payment/confirm", response_model=schemas.OrderResponse)
def confirm_order_payment(
    order_id: int,
    payload: schemas.PaymentConfirmation,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    run_in_transaction(
        db,
        lambda: confirm_payment(
            db,
            order_id=order_id,
            payment_reference=payload.payment_reference,
            performed_by=current_user.id,
        ),
    )
    return _reload(db, order_id)


@router.post("/{order_id}/payment/fail", response_model=schemas.OrderResponse)
def fail_order_payment(
    order_id: int,
    payload: schemas.PaymentFailure,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    run_in_transaction(
        db,
        lambda: record_payment_failure(db, order_id=order_id, reason=payload.reason, performed_by=current_user.id),
    )
    return _reload(db, order_id)


@router.post("/{order_id}/approve", response_model=schemas.OrderResponse)
def approve(order_id: int, db: Session = Depends(get_db), current_user: User = Depends(require_admin)):
    run_in_transaction(db, lambda: approve_order(db, order_id=order_id, admin_id=current_user.id))
    return _reload(db, order_id)


@router.post("/{order_id}/cancel", response_model=schemas.OrderResponse)
def cancel(
    order_id: int,
    payload: schemas.OrderCancel,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    order = get_order(db, order_id)
    if not is_admin(current_user) and order.buyer_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized for this order.")
    run_in_transaction(
        db,
        lambda: cancel_order(db, order_id=order_id, reason=payload.reason, performed_by=current_user.id),
    )
    return _reload(db, order_id)
