from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from fulfillment.auth import get_current_user, is_admin, require_roles
from fulfillment.db import get_db
from fulfillment.models import Product, User
from fulfillment.statuses import UserRole
from fulfillment.stock import schemas
from fulfillment.stock.service import (
    adjust_stock,
    check_availability,
    get_product_for_update,
    get_low_stock_products,
    get_stock_history,
    replay_stock_ledger,
    restock,
)
from fulfillment.transactions import run_in_transaction


router = APIRouter(prefix="/api/stock", tags=["stock"])


def _get_product(db: Session, product_id: int) -> Product:
    product = db.query(Product).filter(Product.id == product_id).first()
    if not product:
        raise HTTPException(status_code=404, detail="Product not found.")
    return product


def _require_product_owner(product: Product, user: User) -> None:
    if not is_admin(user) and product.seller_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your product.")


@router.get("/products/{product_id}", response_model=schemas.ProductStockResponse)
def get_product_stock(product_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return _get_product(db, product_id)


@router.get("/products/{product_id}/availability", response_model=schemas.AvailabilityResponse)
def get_product_availability(
    product_id: int,
    quantity: int = Query(1, gt=0),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    product = _get_product(db, product_id)
    check = check_availability(product, quantity)
    return schemas.AvailabilityResponse(
        product_id=product.id,
        quantity=quantity,
        available=check.available,
        is_backorder=check.is_backorder,
        reason=check.reason,
        available_quantity=check.available_quantity,
    )


@router.get("/products/{product_id}/history", response_model=schemas.StockHistoryResponse)
def get_product_history(
    product_id: int,
    movement_type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.SELLER)),
):
    product = _get_product(db, product_id)
    _require_product_owner(product, current_user)
    rows, total = get_stock_history(db, product.id, movement_type=movement_type, limit=limit, offset=offset)
    return schemas.StockHistoryResponse(product_id=product.id, total=total, limit=limit, offset=offset, movements=rows)


@router.get("/products/{product_id}/ledger-check", response_model=schemas.LedgerCheckResponse)
def check_product_ledger(
    product_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.SELLER)),
):
    product = _get_product(db, product_id)
    _require_product_owner(product, current_user)
    try:
        replay = replay_stock_ledger(db, product.id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return schemas.LedgerCheckResponse(
        product_id=product.id,
        stock_quantity=product.stock_quantity,
        reserved_stock=product.reserved_stock,
        replayed_stock_quantity=replay.stock_quantity,
        replayed_reserved_stock=replay.reserved_stock,
        movement_count=replay.movement_count,
        consistent=(
            replay.stock_quantity == product.stock_quantity and replay.reserved_stock == product.reserved_stock
        ),
    )


@router.get("/low-stock", response_model=List[schemas.ProductStockResponse])
def list_low_stock(db: Session = Depends(get_db), current_user: User = Depends(require_roles(UserRole.SELLER))):
    seller_id = None if is_admin(current_user) else current_user.id
    return get_low_stock_products(db, seller_id=seller_id)


@router.post("/products/{product_id}/restock", response_model=schemas.StockMovementResponse)
def restock_product(
    product_id: int,
    payload: schemas.RestockRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.SELLER)),
):
    _require_product_owner(_get_product(db, product_id), current_user)

    def work():
        product = get_product_for_update(db, product_id)
        return restock(db, product=product, quantity=payload.quantity, reason=payload.reason, performed_by=current_user.id)

    movement = run_in_transaction(db, work)
    db.refresh(movement)
    return movement


@router.post("/products/{product_id}/adjust", response_model=schemas.StockMovementResponse)
def adjust_product_stock(
    product_id: int,
    payload: schemas.AdjustStockRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.SELLER)),
):
    _require_product_owner(_get_product(db, product_id), current_user)

    def work():
        product = get_product_for_update(db, product_id)
        return adjust_stock(
            db,
            product=product,
            new_quantity=payload.new_quantity,
            reason=payload.reason,
            performed_by=current_user.id,
        )

    movement = run_in_transaction(db, work)
    db.refresh(movement)
    return movement
