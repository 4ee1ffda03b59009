from dataclasses import dataclass
from decimal import Decimal
import logging
from typing import Iterable, Optional

from sqlalchemy.orm import Session, selectinload

from fulfillment.audit import record_status_transition
from fulfillment.errors import (
    InsufficientStockError,
    InvalidQuantityError,
    InvalidTransitionError,
    NotFoundError,
)
from fulfillment.models import Delivery, Order, OrderItem
from fulfillment.notifications.service import EVENT_ORDER_APPROVED, record_event
from fulfillment.statuses import (
    DELIVERY_TERMINAL_STATUSES,
    ORDER_TERMINAL_STATUSES,
    DeliveryStatus,
    OrderStatus,
    PaymentStatus,
    ProductStatus,
)
from fulfillment.stock.service import (
    check_availability,
    deduct_stock,
    get_order_stock_position,
    lock_products,
    release_reserved_stock,
    reserve_stock,
    return_stock,
)
from fulfillment.transactions import lock_for_update
from fulfillment.utils import quantize_money, utcnow


logger = logging.getLogger(__name__)

ORDER_STATUS_FLOW = [
    OrderStatus.PLACED.value,
    OrderStatus.APPROVED.value,
    OrderStatus.ASSIGNED.value,
    OrderStatus.IN_TRANSIT.value,
    OrderStatus.DELIVERED.value,
]

ORDER_TRANSITIONS: dict[str, set[str]] = {
    OrderStatus.PLACED.value: {OrderStatus.APPROVED.value, OrderStatus.CANCELLED.value},
    OrderStatus.APPROVED.value: {OrderStatus.ASSIGNED.value, OrderStatus.CANCELLED.value},
    OrderStatus.ASSIGNED.value: {OrderStatus.IN_TRANSIT.value, OrderStatus.FAILED.value, OrderStatus.CANCELLED.value},
    OrderStatus.IN_TRANSIT.value: {OrderStatus.DELIVERED.value, OrderStatus.FAILED.value, OrderStatus.CANCELLED.value},
    OrderStatus.FAILED.value: {OrderStatus.CANCELLED.value},
    OrderStatus.DELIVERED.value: set(),
    OrderStatus.CANCELLED.value: set(),
}


@dataclass(frozen=True)
class OrderLineInput:
    product_id: int
    quantity: int


def is_order_terminal(order: Order) -> bool:
    return order.order_status in ORDER_TERMINAL_STATUSES or order.payment_status == PaymentStatus.REFUNDED.value


def get_allowed_order_transitions(order: Order) -> list[str]:
    if is_order_terminal(order):
        return []
    allowed = ORDER_TRANSITIONS.get(order.order_status, set())
    if order.order_status == OrderStatus.PLACED.value and order.payment_status != PaymentStatus.PAID.value:
        allowed = allowed - {OrderStatus.APPROVED.value}
    flow_rank = {status: idx for idx, status in enumerate(ORDER_STATUS_FLOW)}
    return sorted(allowed, key=lambda status: flow_rank.get(status, len(ORDER_STATUS_FLOW)))


def transition_order(db: Session, order: Order, to_status: OrderStatus, *, user_id: Optional[int] = None) -> Order:
    from_status = order.order_status
    if to_status.value not in get_allowed_order_transitions(order):
        raise InvalidTransitionError("Order", from_status, to_status.value)
    order.order_status = to_status.value
    record_status_transition(
        db,
        entity_type="order",
        entity_id=order.id,
        from_status=from_status,
        to_status=to_status.value,
        user_id=user_id,
    )
    logger.info("Order %s status %s -> %s", order.id, from_status, to_status.value)
    return order


def get_order(db: Session, order_id: int) -> Order:
    order = db.query(Order).options(selectinload(Order.items)).filter(Order.id == order_id).first()
    if not order:
        raise NotFoundError("Order", order_id)
    return order


def get_order_for_update(db: Session, order_id: int) -> Order:
    order = lock_for_update(db.query(Order).filter(Order.id == order_id)).first()
    if not order:
        raise NotFoundError("Order", order_id)
    return order


def _merge_lines(items: Iterable) -> dict[int, int]:
    merged: dict[int, int] = {}
    for line in items:
        if isinstance(line, dict):
            line = OrderLineInput(product_id=line["product_id"], quantity=line["quantity"])
        if line.quantity is None or line.quantity <= 0:
            raise InvalidQuantityError("Quantity must be greater than zero.")
        merged[line.product_id] = merged.get(line.product_id, 0) + int(line.quantity)
    return merged


def create_order(
    db: Session,
    *,
    buyer_id: int,
    items: Iterable,
    shipping: Optional[dict] = None,
) -> Order:
    """Validate every line, price the order and reserve stock for it.

    Any failing line aborts the whole checkout; nothing is reserved.
    """
    quantities = _merge_lines(items)
    if not quantities:
        raise InvalidQuantityError("Add at least one item.")

    products = lock_products(db, quantities.keys())
    violations = []
    backorders: set[int] = set()
    for product_id, quantity in quantities.items():
        product = products.get(product_id)
        if not product:
            raise NotFoundError("Product", product_id)
        if product.status != ProductStatus.LIVE.value:
            violations.append(
                {
                    "product_id": product.id,
                    "product_name": product.name,
                    "requested_qty": quantity,
                    "available_qty": 0,
                    "reason": "Product is not available for sale",
                }
            )
            continue
        availability = check_availability(product, quantity)
        if not availability.available:
            violations.append(
                {
                    "product_id": product.id,
                    "product_name": product.name,
                    "requested_qty": quantity,
                    "available_qty": max(availability.available_quantity or 0, 0),
                    "reason": availability.reason,
                }
            )
        elif availability.is_backorder:
            backorders.add(product.id)

    if violations:
        logger.info("Checkout rejected for buyer_id=%s: %s", buyer_id, violations)
        raise InsufficientStockError(violations)

    shipping = shipping or {}
    order = Order(
        buyer_id=buyer_id,
        payment_status=PaymentStatus.PENDING.value,
        order_status=OrderStatus.PLACED.value,
        shipping_name=shipping.get("name"),
        shipping_phone=shipping.get("phone"),
        shipping_address=shipping.get("address"),
        shipping_city=shipping.get("city"),
        dropoff_latitude=shipping.get("latitude"),
        dropoff_longitude=shipping.get("longitude"),
    )
    order.items = []
    total = Decimal("0")
    for product_id, quantity in quantities.items():
        product = products[product_id]
        unit_price = Decimal(product.price or 0)
        line_total = quantize_money(unit_price * quantity)
        total += line_total
        order.items.append(
            OrderItem(
                product_id=product.id,
                seller_id=product.seller_id,
                product_name=product.name,
                quantity=quantity,
                unit_price=unit_price,
                line_total=line_total,
                is_backorder=product.id in backorders,
            )
        )
        if order.pickup_latitude is None and product.latitude is not None:
            order.pickup_latitude = product.latitude
            order.pickup_longitude = product.longitude
    order.total_amount = quantize_money(total)

    db.add(order)
    db.flush()

    for product_id, quantity in quantities.items():
        reserve_stock(db, product=products[product_id], quantity=quantity, order_id=order.id, performed_by=buyer_id)

    record_status_transition(
        db,
        entity_type="order",
        entity_id=order.id,
        from_status=None,
        to_status=OrderStatus.PLACED.value,
        user_id=buyer_id,
    )
    db.flush()
    logger.info("Order %s placed by buyer_id=%s total=%s", order.id, buyer_id, order.total_amount)
    return order


def confirm_payment(
    db: Session,
    *,
    order_id: int,
    payment_reference: Optional[str] = None,
    performed_by: Optional[int] = None,
    now=None,
) -> Order:
    """Payment-success signal: the only path that permanently removes stock."""
    order = get_order_for_update(db, order_id)
    if is_order_terminal(order) or order.order_status != OrderStatus.PLACED.value:
        raise InvalidTransitionError("Payment", order.payment_status, PaymentStatus.PAID.value, f"Order is {order.order_status}.")
    if order.payment_status not in {PaymentStatus.PENDING.value, PaymentStatus.FAILED.value}:
        raise InvalidTransitionError("Payment", order.payment_status, PaymentStatus.PAID.value)

    positions = get_order_stock_position(db, order.id)
    products = lock_products(db, [item.product_id for item in order.items])
    for item in order.items:
        position = positions.get(item.product_id)
        deduct_stock(
            db,
            product=products[item.product_id],
            quantity=item.quantity,
            order_id=order.id,
            reserved_quantity=position.reserved if position else 0,
            performed_by=performed_by,
        )

    from_status = order.payment_status
    order.payment_status = PaymentStatus.PAID.value
    order.payment_reference = payment_reference
    order.paid_at = now or utcnow()
    record_status_transition(
        db,
        entity_type="order_payment",
        entity_id=order.id,
        from_status=from_status,
        to_status=PaymentStatus.PAID.value,
        user_id=performed_by,
    )
    db.flush()
    logger.info("Order %s paid (reference=%s)", order.id, payment_reference)
    return order


def record_payment_failure(
    db: Session,
    *,
    order_id: int,
    reason: Optional[str] = None,
    performed_by: Optional[int] = None,
) -> Order:
    order = get_order_for_update(db, order_id)
    if is_order_terminal(order) or order.payment_status != PaymentStatus.PENDING.value:
        raise InvalidTransitionError("Payment", order.payment_status, PaymentStatus.FAILED.value)
    order.payment_status = PaymentStatus.FAILED.value
    record_status_transition(
        db,
        entity_type="order_payment",
        entity_id=order.id,
        from_status=PaymentStatus.PENDING.value,
        to_status=PaymentStatus.FAILED.value,
        user_id=performed_by,
    )
    db.flush()
    logger.info("Order %s payment failed: %s", order.id, reason)
    return order


def approve_order(db: Session, *, order_id: int, admin_id: int, now=None) -> Order:
    order = get_order_for_update(db, order_id)
    if order.order_status == OrderStatus.PLACED.value and order.payment_status != PaymentStatus.PAID.value:
        raise InvalidTransitionError(
            "Order", order.order_status, OrderStatus.APPROVED.value, "Payment has not been confirmed."
        )
    transition_order(db, order, OrderStatus.APPROVED, user_id=admin_id)
    order.approved_by = admin_id
    order.approved_at = now or utcnow()
    seller_ids = [item.seller_id for item in order.items]
    record_event(
        db,
        event_type=EVENT_ORDER_APPROVED,
        entity_type="order",
        entity_id=order.id,
        recipient_ids=[order.buyer_id, *seller_ids],
        payload={"order_id": order.id, "total_amount": str(order.total_amount)},
    )
    db.flush()
    return order


def cancel_order(
    db: Session,
    *,
    order_id: int,
    reason: Optional[str] = None,
    performed_by: Optional[int] = None,
    now=None,
) -> Order:
    """Cancel a non-terminal order.

    Unpaid orders release their reservations. Paid orders return the sold
    units to stock and the payment is marked Refunded.
    """
    order = get_order_for_update(db, order_id)
    if OrderStatus.CANCELLED.value not in get_allowed_order_transitions(order):
        raise InvalidTransitionError("Order", order.order_status, OrderStatus.CANCELLED.value)

    positions = get_order_stock_position(db, order.id)
    products = lock_products(db, positions.keys())
    was_paid = order.payment_status == PaymentStatus.PAID.value
    for product_id, position in positions.items():
        product = products[product_id]
        if position.reserved > 0:
            release_reserved_stock(
                db,
                product=product,
                quantity=position.reserved,
                order_id=order.id,
                performed_by=performed_by,
            )
        if was_paid and position.sold > 0:
            return_stock(
                db,
                product=product,
                quantity=position.sold,
                order_id=order.id,
                reason=f"Order {order.id} cancelled - refund",
                performed_by=performed_by,
            )

    delivery = lock_for_update(db.query(Delivery).filter(Delivery.order_id == order.id)).first()
    if delivery and delivery.status not in DELIVERY_TERMINAL_STATUSES:
        from_delivery_status = delivery.status
        delivery.status = DeliveryStatus.CANCELLED.value
        delivery.otp_code_hash = None
        delivery.qr_code_hash = None
        delivery.codes_expires_at = None
        record_status_transition(
            db,
            entity_type="delivery",
            entity_id=delivery.id,
            from_status=from_delivery_status,
            to_status=DeliveryStatus.CANCELLED.value,
            user_id=performed_by,
        )

    transition_order(db, order, OrderStatus.CANCELLED, user_id=performed_by)
    order.cancelled_at = now or utcnow()
    order.cancellation_reason = reason
    if was_paid:
        order.payment_status = PaymentStatus.REFUNDED.value
        record_status_transition(
            db,
            entity_type="order_payment",
            entity_id=order.id,
            from_status=PaymentStatus.PAID.value,
            to_status=PaymentStatus.REFUNDED.value,
            user_id=performed_by,
        )
    db.flush()
    return order


def list_orders(
    db: Session,
    *,
    buyer_id: Optional[int] = None,
    order_status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Order]:
    query = db.query(Order).options(selectinload(Order.items)).order_by(Order.created_at.desc(), Order.id.desc())
    if buyer_id is not None:
        query = query.filter(Order.buyer_id == buyer_id)
    if order_status:
        query = query.filter(Order.order_status == order_status)
    return query.offset(offset).limit(limit).all()


def order_involves_seller(order: Order, seller_id: int) -> bool:
    return any(item.seller_id == seller_id for item in order.items)
