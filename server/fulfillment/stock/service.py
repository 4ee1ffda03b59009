from dataclasses import dataclass
import logging
from typing import Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from fulfillment.errors import InsufficientStockError, InvalidQuantityError, NotFoundError
from fulfillment.models import Product, StockMovement
from fulfillment.statuses import QUANTITY_MOVEMENT_TYPES, AvailabilityStatus, MovementType
from fulfillment.transactions import lock_for_update


logger = logging.getLogger(__name__)

REFERENCE_ORDER = "order"
REFERENCE_MANUAL = "manual"
REFERENCE_ADMIN_ADJUSTMENT = "admin_adjustment"


@dataclass(frozen=True)
class AvailabilityCheck:
    available: bool
    is_backorder: bool = False
    reason: Optional[str] = None
    available_quantity: Optional[int] = None


@dataclass(frozen=True)
class LedgerReplay:
    stock_quantity: int
    reserved_stock: int
    movement_count: int


@dataclass(frozen=True)
class OrderStockPosition:
    reserved: int
    sold: int


def get_product_for_update(db: Session, product_id: int) -> Product:
    product = lock_for_update(db.query(Product).filter(Product.id == product_id)).first()
    if not product:
        raise NotFoundError("Product", product_id)
    return product


def lock_products(db: Session, product_ids) -> dict[int, Product]:
    """Lock product rows in ascending id order so concurrent checkouts cannot deadlock."""
    ids = sorted(set(product_ids))
    if not ids:
        return {}
    rows = lock_for_update(db.query(Product).filter(Product.id.in_(ids)).order_by(Product.id.asc())).all()
    return {row.id: row for row in rows}


def check_availability(product: Product, quantity: int) -> AvailabilityCheck:
    if not product.enable_stock_management:
        return AvailabilityCheck(available=True)

    if quantity < (product.minimum_order_quantity or 1):
        return AvailabilityCheck(
            available=False,
            reason=f"Minimum order quantity is {product.minimum_order_quantity}",
            available_quantity=product.available_quantity,
        )

    available_qty = product.available_quantity
    logger.debug(
        "Stock availability lookup: product_id=%s stock=%s reserved=%s available=%s requested=%s",
        product.id,
        product.stock_quantity,
        product.reserved_stock,
        available_qty,
        quantity,
    )
    if available_qty < quantity:
        if product.allow_backorders:
            return AvailabilityCheck(available=True, is_backorder=True, available_quantity=available_qty)
        return AvailabilityCheck(
            available=False,
            reason=f"Only {max(available_qty, 0)} units available ({product.reserved_stock} reserved)",
            available_quantity=available_qty,
        )

    return AvailabilityCheck(available=True, available_quantity=available_qty)


def _require_positive(quantity: int) -> None:
    if quantity is None or quantity <= 0:
        raise InvalidQuantityError("Quantity must be greater than zero.")


def _record_movement(
    db: Session,
    *,
    product: Product,
    movement_type: MovementType,
    quantity: int,
    previous_quantity: int,
    reserved_delta: int = 0,
    reference_type: Optional[str] = None,
    reference_id: Optional[int] = None,
    notes: Optional[str] = None,
    performed_by: Optional[int] = None,
) -> StockMovement:
    new_quantity = previous_quantity + quantity if movement_type.value in QUANTITY_MOVEMENT_TYPES else previous_quantity
    movement = StockMovement(
        product_id=product.id,
        movement_type=movement_type.value,
        quantity=quantity,
        previous_quantity=previous_quantity,
        new_quantity=new_quantity,
        reserved_delta=reserved_delta,
        reference_type=reference_type,
        reference_id=reference_id,
        notes=notes,
        performed_by=performed_by,
    )
    db.add(movement)
    return movement


def recompute_availability(product: Product) -> str:
    if not product.enable_stock_management:
        return product.availability_status

    if product.available_quantity <= 0 and not product.allow_backorders:
        product.availability_status = AvailabilityStatus.SOLD.value
    elif product.availability_status == AvailabilityStatus.SOLD.value and product.available_quantity > 0:
        product.availability_status = AvailabilityStatus.AVAILABLE.value
    return product.availability_status


def reserve_stock(
    db: Session,
    *,
    product: Product,
    quantity: int,
    order_id: int,
    performed_by: Optional[int] = None,
) -> Optional[StockMovement]:
    """Hold stock for an unpaid order. stock_quantity itself is untouched.

    With backorders allowed only the units actually on hand are held; the
    shortfall is noted on the movement.
    """
    _require_positive(quantity)
    if not product.enable_stock_management:
        return None

    available_qty = max(product.available_quantity, 0)
    if quantity > available_qty and not product.allow_backorders:
        raise InsufficientStockError(
            [
                {
                    "product_id": product.id,
                    "product_name": product.name,
                    "requested_qty": quantity,
                    "available_qty": available_qty,
                }
            ]
        )

    held = min(quantity, available_qty)
    notes = f"Reserved {held} units for order"
    if held < quantity:
        notes = f"{notes}; {quantity - held} units backordered"

    product.reserved_stock = (product.reserved_stock or 0) + held
    movement = _record_movement(
        db,
        product=product,
        movement_type=MovementType.RESERVATION,
        quantity=held,
        previous_quantity=product.stock_quantity,
        reserved_delta=held,
        reference_type=REFERENCE_ORDER,
        reference_id=order_id,
        notes=notes,
        performed_by=performed_by,
    )
    recompute_availability(product)
    db.flush()
    logger.info("Reserved stock: product_id=%s order_id=%s held=%s requested=%s", product.id, order_id, held, quantity)
    return movement


def release_reserved_stock(
    db: Session,
    *,
    product: Product,
    quantity: int,
    order_id: int,
    performed_by: Optional[int] = None,
) -> Optional[StockMovement]:
    if not product.enable_stock_management or quantity <= 0:
        return None

    released = min(quantity, product.reserved_stock or 0)
    product.reserved_stock = (product.reserved_stock or 0) - released
    movement = _record_movement(
        db,
        product=product,
        movement_type=MovementType.RESERVATION_RELEASE,
        quantity=-released,
        previous_quantity=product.stock_quantity,
        reserved_delta=-released,
        reference_type=REFERENCE_ORDER,
        reference_id=order_id,
        notes=f"Released {released} reserved units",
        performed_by=performed_by,
    )
    recompute_availability(product)
    db.flush()
    logger.info("Released reserved stock: product_id=%s order_id=%s released=%s", product.id, order_id, released)
    return movement


def deduct_stock(
    db: Session,
    *,
    product: Product,
    quantity: int,
    order_id: int,
    reserved_quantity: Optional[int] = None,
    performed_by: Optional[int] = None,
) -> Optional[StockMovement]:
    """Convert an order's reservation into a sale.

    ``reserved_quantity`` is what the order currently holds (defaults to
    ``quantity``). Units held by other orders are never consumed.
    """
    _require_positive(quantity)
    if not product.enable_stock_management:
        return None

    held = quantity if reserved_quantity is None else reserved_quantity
    releasable = min(held, product.reserved_stock or 0)
    unreserved = max(product.available_quantity, 0)
    taken = min(quantity, releasable + unreserved)

    previous_quantity = product.stock_quantity
    product.stock_quantity = previous_quantity - taken
    product.reserved_stock = (product.reserved_stock or 0) - releasable

    notes = f"Sold {taken} units"
    if taken < quantity:
        notes = f"{notes}; {quantity - taken} units backordered"
        logger.warning(
            "Sale short of stock: product_id=%s order_id=%s requested=%s taken=%s",
            product.id,
            order_id,
            quantity,
            taken,
        )

    movement = _record_movement(
        db,
        product=product,
        movement_type=MovementType.SALE,
        quantity=-taken,
        previous_quantity=previous_quantity,
        reserved_delta=-releasable,
        reference_type=REFERENCE_ORDER,
        reference_id=order_id,
        notes=notes,
        performed_by=performed_by,
    )
    recompute_availability(product)
    db.flush()
    logger.info("Deducted stock: product_id=%s order_id=%s taken=%s", product.id, order_id, taken)
    return movement


def restock(
    db: Session,
    *,
    product: Product,
    quantity: int,
    reason: Optional[str] = None,
    performed_by: Optional[int] = None,
) -> StockMovement:
    _require_positive(quantity)
    previous_quantity = product.stock_quantity or 0
    product.stock_quantity = previous_quantity + quantity
    movement = _record_movement(
        db,
        product=product,
        movement_type=MovementType.RESTOCK,
        quantity=quantity,
        previous_quantity=previous_quantity,
        reference_type=REFERENCE_MANUAL,
        notes=reason or f"Added {quantity} units",
        performed_by=performed_by,
    )
    recompute_availability(product)
    db.flush()
    logger.info("Restocked: product_id=%s quantity=%s new_stock=%s", product.id, quantity, product.stock_quantity)
    return movement


def return_stock(
    db: Session,
    *,
    product: Product,
    quantity: int,
    order_id: int,
    reason: Optional[str] = None,
    performed_by: Optional[int] = None,
) -> StockMovement:
    _require_positive(quantity)
    previous_quantity = product.stock_quantity or 0
    product.stock_quantity = previous_quantity + quantity
    movement = _record_movement(
        db,
        product=product,
        movement_type=MovementType.RETURN,
        quantity=quantity,
        previous_quantity=previous_quantity,
        reference_type=REFERENCE_ORDER,
        reference_id=order_id,
        notes=reason or f"Order {order_id} returned to stock",
        performed_by=performed_by,
    )
    recompute_availability(product)
    db.flush()
    logger.info("Returned stock: product_id=%s order_id=%s quantity=%s", product.id, order_id, quantity)
    return movement


def adjust_stock(
    db: Session,
    *,
    product: Product,
    new_quantity: int,
    reason: Optional[str] = None,
    performed_by: Optional[int] = None,
) -> StockMovement:
    if new_quantity is None or new_quantity < 0:
        raise InvalidQuantityError("Stock quantity cannot be negative.")
    if new_quantity < (product.reserved_stock or 0):
        raise InsufficientStockError(
            [
                {
                    "product_id": product.id,
                    "product_name": product.name,
                    "requested_qty": new_quantity,
                    "available_qty": product.reserved_stock,
                    "reason": "Stock cannot drop below reserved quantity",
                }
            ]
        )

    previous_quantity = product.stock_quantity or 0
    delta = new_quantity - previous_quantity
    product.stock_quantity = new_quantity
    movement = _record_movement(
        db,
        product=product,
        movement_type=MovementType.ADJUSTMENT,
        quantity=delta,
        previous_quantity=previous_quantity,
        reference_type=REFERENCE_ADMIN_ADJUSTMENT,
        notes=reason or "Manual stock adjustment",
        performed_by=performed_by,
    )
    recompute_availability(product)
    db.flush()
    logger.info("Adjusted stock: product_id=%s %s->%s", product.id, previous_quantity, new_quantity)
    return movement


def get_order_stock_position(db: Session, order_id: int) -> dict[int, OrderStockPosition]:
    """Units each product currently holds for, and has sold to, an order, read from the ledger."""
    rows = (
        db.query(
            StockMovement.product_id,
            func.coalesce(func.sum(StockMovement.reserved_delta), 0),
            # Sales are negative, returns positive.
            func.coalesce(
                func.sum(
                    case(
                        (
                            StockMovement.movement_type.in_([MovementType.SALE.value, MovementType.RETURN.value]),
                            StockMovement.quantity,
                        ),
                        else_=0,
                    )
                ),
                0,
            ),
        )
        .filter(StockMovement.reference_type == REFERENCE_ORDER, StockMovement.reference_id == order_id)
        .group_by(StockMovement.product_id)
        .all()
    )
    return {product_id: OrderStockPosition(reserved=int(reserved), sold=-int(sold)) for product_id, reserved, sold in rows}


def replay_stock_ledger(db: Session, product_id: int) -> LedgerReplay:
    """Rebuild both counters from an initial zero state."""
    stock_quantity = 0
    reserved_stock = 0
    count = 0
    movements = (
        db.query(StockMovement)
        .filter(StockMovement.product_id == product_id)
        .order_by(StockMovement.id.asc())
        .all()
    )
    for movement in movements:
        if movement.movement_type in QUANTITY_MOVEMENT_TYPES:
            if movement.previous_quantity != stock_quantity:
                raise ValueError(
                    f"Ledger gap at movement {movement.id}: expected previous {stock_quantity}, "
                    f"found {movement.previous_quantity}."
                )
            stock_quantity += movement.quantity
            if movement.new_quantity != stock_quantity:
                raise ValueError(f"Ledger row {movement.id} does not balance.")
        reserved_stock += movement.reserved_delta or 0
        count += 1
    return LedgerReplay(stock_quantity=stock_quantity, reserved_stock=reserved_stock, movement_count=count)


def get_stock_history(
    db: Session,
    product_id: int,
    *,
    movement_type: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[StockMovement], int]:
    query = db.query(StockMovement).filter(StockMovement.product_id == product_id)
    if movement_type:
        query = query.filter(StockMovement.movement_type == movement_type)
    total = query.count()
    rows = query.order_by(StockMovement.id.desc()).offset(offset).limit(limit).all()
    return rows, total


def get_low_stock_products(db: Session, *, seller_id: Optional[int] = None) -> list[Product]:
    query = db.query(Product).filter(
        Product.enable_stock_management.is_(True),
        Product.stock_quantity <= Product.low_stock_threshold,
    )
    if seller_id is not None:
        query = query.filter(Product.seller_id == seller_id)
    return query.order_by(Product.stock_quantity.asc(), Product.id.asc()).all()
