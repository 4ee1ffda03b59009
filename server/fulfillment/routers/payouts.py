from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session, selectinload

from fulfillment.auth import get_current_user, is_admin, require_admin, require_roles
from fulfillment.db import get_db
from fulfillment.models import Payout, User
from fulfillment.routers.earnings import owner_type_for
from fulfillment.settlement import schemas
from fulfillment.settlement.payouts import (
    approve_payout,
    complete_payout,
    get_allowed_payout_transitions,
    list_payouts,
    mark_payout_processing,
    reject_payout,
    request_withdrawal,
)
from fulfillment.statuses import UserRole
from fulfillment.transactions import run_in_transaction


router = APIRouter(prefix="/api/payouts", tags=["payouts"])


def _to_response(payout: Payout) -> schemas.PayoutResponse:
    response = schemas.PayoutResponse.model_validate(payout)
    response.allowed_transitions = get_allowed_payout_transitions(payout)
    return response


def _load(db: Session, payout_id: int) -> schemas.PayoutResponse:
    db.expire_all()
    payout = db.query(Payout).options(selectinload(Payout.allocations)).filter(Payout.id == payout_id).first()
    if not payout:
        raise HTTPException(status_code=404, detail="Payout not found.")
    return _to_response(payout)


@router.post("", response_model=schemas.PayoutResponse, status_code=status.HTTP_201_CREATED)
def request_payout(
    payload: schemas.WithdrawalRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.SELLER, UserRole.AGENT)),
):
    if not is_admin(current_user) and payload.owner_type != owner_type_for(current_user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Owner type does not match your role.")
    payout = run_in_transaction(
        db,
        lambda: request_withdrawal(
            db,
            owner_type=payload.owner_type,
            owner_id=current_user.id,
            amount=payload.amount,
            notes=payload.notes,
        ),
    )
    return _load(db, payout.id)


@router.get("", response_model=List[schemas.PayoutResponse])
def list_all_payouts(
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    owner_id = None if is_admin(current_user) else current_user.id
    payouts = list_payouts(db, owner_id=owner_id, status=status, limit=limit, offset=offset)
    return [_to_response(payout) for payout in payouts]


@router.get("/{payout_id}", response_model=schemas.PayoutResponse)
def get_payout(payout_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    response = _load(db, payout_id)
    if not is_admin(current_user) and response.owner_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized for this payout.")
    return response


@router.post("/{payout_id}/approve", response_model=schemas.PayoutResponse)
def approve(payout_id: int, db: Session = Depends(get_db), current_user: User = Depends(require_admin)):
    run_in_transaction(db, lambda: approve_payout(db, payout_id=payout_id, admin_id=current_user.id))
    return _load(db, payout_id)


@router.post("/{payout_id}/process", response_model=schemas.PayoutResponse)
def process(payout_id: int, db: Session = Depends(get_db), current_user: User = Depends(require_admin)):
    run_in_transaction(db, lambda: mark_payout_processing(db, payout_id=payout_id, admin_id=current_user.id))
    return _load(db, payout_id)


@router.post("/{payout_id}/complete", response_model=schemas.PayoutResponse)
def complete(
    payout_id: int,
    payload: schemas.PayoutCompletion,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    run_in_transaction(
        db,
        lambda: complete_payout(
            db,
            payout_id=payout_id,
            transaction_reference=payload.transaction_reference,
            payment_proof_url=payload.payment_proof_url,
            admin_id=current_user.id,
        ),
    )
    return _load(db, payout_id)


@router.post("/{payout_id}/reject", response_model=schemas.PayoutResponse)
def reject(
    payout_id: int,
    payload: schemas.PayoutRejection,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    run_in_transaction(
        db,
        lambda: reject_payout(db, payout_id=payout_id, reason=payload.reason, admin_id=current_user.id),
    )
    return _load(db, payout_id)
