from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from fulfillment.auth import require_admin, require_roles
from fulfillment.db import get_db
from fulfillment.models import User
from fulfillment.settlement import schemas
from fulfillment.settlement.service import (
    get_earnings_summary,
    hold_earning,
    list_earnings,
    mature_earnings,
    release_earning_hold,
)
from fulfillment.statuses import OwnerType, UserRole
from fulfillment.transactions import run_in_transaction


router = APIRouter(prefix="/api/earnings", tags=["earnings"])


def owner_type_for(user: User) -> str:
    if user.role == UserRole.AGENT.value:
        return OwnerType.AGENT.value
    return OwnerType.SELLER.value


@router.get("/me/summary", response_model=schemas.EarningsSummaryResponse)
def my_summary(db: Session = Depends(get_db), current_user: User = Depends(require_roles(UserRole.SELLER, UserRole.AGENT))):
    return get_earnings_summary(db, owner_type=owner_type_for(current_user), owner_id=current_user.id)


@router.get("/me", response_model=List[schemas.EarningResponse])
def my_earnings(
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.SELLER, UserRole.AGENT)),
):
    return list_earnings(
        db,
        owner_type=owner_type_for(current_user),
        owner_id=current_user.id,
        status=status,
        limit=limit,
        offset=offset,
    )


@router.get("", response_model=List[schemas.EarningResponse])
def all_earnings(
    owner_type: Optional[str] = None,
    owner_id: Optional[int] = None,
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    return list_earnings(db, owner_type=owner_type, owner_id=owner_id, status=status, limit=limit, offset=offset)


@router.post("/{earning_id}/hold", response_model=schemas.EarningResponse)
def hold(
    earning_id: int,
    payload: schemas.EarningHoldRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    earning = run_in_transaction(db, lambda: hold_earning(db, earning_id=earning_id, reason=payload.reason))
    db.refresh(earning)
    return earning


@router.post("/{earning_id}/release", response_model=schemas.EarningResponse)
def release(earning_id: int, db: Session = Depends(get_db), current_user: User = Depends(require_admin)):
    earning = run_in_transaction(db, lambda: release_earning_hold(db, earning_id=earning_id))
    db.refresh(earning)
    return earning


@router.post("/mature", response_model=schemas.MaturationResponse)
def run_maturation(db: Session = Depends(get_db), current_user: User = Depends(require_admin)):
    return schemas.MaturationResponse(matured=run_in_transaction(db, lambda: mature_earnings(db)))
