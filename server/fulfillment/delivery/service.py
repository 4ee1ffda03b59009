from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from fulfillment import config
from fulfillment.audit import record_status_transition
from fulfillment.delivery.codes import (
    METHOD_OTP,
    METHOD_QR,
    VERIFICATION_METHODS,
    IssuedCodes,
    extract_qr_token,
    issue_handover_codes,
    verify_otp,
    verify_qr_token,
)
from fulfillment.delivery.geo import distance_between, find_nearby_agents, is_within_delivery_radius
from fulfillment.delivery_settings.service import get_setting
from fulfillment.errors import (
    CodeExpiredError,
    ConcurrencyConflictError,
    InvalidCodeError,
    InvalidTransitionError,
    NoAgentAvailableError,
    NotFoundError,
    PermissionDeniedError,
)
from fulfillment.models import Delivery, Order, User
from fulfillment.notifications.service import EVENT_DELIVERY_ASSIGNED, EVENT_DELIVERY_COMPLETED, record_event
from fulfillment.orders.service import get_order_for_update, transition_order
from fulfillment.settlement.service import record_delivery_completion
from fulfillment.statuses import DELIVERY_TERMINAL_STATUSES, DeliveryStatus, OrderStatus, UserRole
from fulfillment.transactions import lock_for_update
from fulfillment.utils import utcnow


logger = logging.getLogger(__name__)

SettlementHandler = Callable[..., list]


@dataclass(frozen=True)
class AssignmentResult:
    delivery: Delivery
    codes: IssuedCodes
    distance_km: Optional[Decimal] = None


def get_delivery_for_order(db: Session, order_id: int, *, for_update: bool = False) -> Delivery:
    query = db.query(Delivery).filter(Delivery.order_id == order_id)
    if for_update:
        query = lock_for_update(query)
    delivery = query.first()
    if not delivery:
        raise NotFoundError("Delivery", order_id)
    return delivery


def _set_delivery_status(db: Session, delivery: Delivery, to_status: DeliveryStatus, *, user_id: Optional[int]) -> None:
    from_status = delivery.status
    delivery.status = to_status.value
    record_status_transition(
        db,
        entity_type="delivery",
        entity_id=delivery.id,
        from_status=from_status,
        to_status=to_status.value,
        user_id=user_id,
    )


def _store_codes(delivery: Delivery, codes: IssuedCodes) -> None:
    delivery.otp_code_hash = codes.otp_hash
    delivery.qr_code_hash = codes.qr_hash
    delivery.codes_issued_at = codes.issued_at
    delivery.codes_expires_at = codes.expires_at
    delivery.secret_version = (delivery.secret_version or 0) + 1


def _clear_codes(delivery: Delivery) -> None:
    delivery.otp_code_hash = None
    delivery.qr_code_hash = None
    delivery.codes_expires_at = None


def _require_agent(db: Session, agent_id: int) -> User:
    agent = db.query(User).filter(User.id == agent_id).first()
    if not agent or agent.role != UserRole.AGENT.value or not agent.is_active:
        raise NotFoundError("Agent", agent_id)
    return agent


def _pick_nearest_agent(db: Session, order: Order) -> tuple[User, Decimal]:
    if order.pickup_latitude is None or order.pickup_longitude is None:
        raise NoAgentAvailableError("Pickup location is unknown; assign an agent manually.")
    radius = get_setting(db, "agent_search_radius_km")
    for match in find_nearby_agents(db, latitude=order.pickup_latitude, longitude=order.pickup_longitude, radius_km=radius):
        if is_within_delivery_radius(match.agent, order.pickup_latitude, order.pickup_longitude):
            return match.agent, match.distance_km
    raise NoAgentAvailableError(f"No online agent within {radius} km of the pickup point.")


def assign_agent(
    db: Session,
    *,
    order_id: int,
    assigned_by: int,
    agent_id: Optional[int] = None,
    auto_assign: bool = False,
    now: Optional[datetime] = None,
) -> AssignmentResult:
    """Hand an approved order to an agent and issue fresh handover codes.

    An order that is already Assigned (not yet picked up) is re-assigned;
    the previous agent's codes stop working.
    """
    if agent_id is None and not auto_assign:
        raise NoAgentAvailableError("Choose an agent or request auto-assignment.")
    now = now or utcnow()
    order = get_order_for_update(db, order_id)
    if order.order_status not in {OrderStatus.APPROVED.value, OrderStatus.ASSIGNED.value}:
        raise InvalidTransitionError("Order", order.order_status, OrderStatus.ASSIGNED.value)

    distance = None
    if agent_id is None:
        agent, distance = _pick_nearest_agent(db, order)
    else:
        agent = _require_agent(db, agent_id)

    delivery = db.query(Delivery).filter(Delivery.order_id == order.id).with_for_update().first()
    if delivery is None:
        delivery = Delivery(order_id=order.id, status=DeliveryStatus.PENDING.value, secret_version=0)
        db.add(delivery)
        db.flush()
    elif delivery.status not in {DeliveryStatus.PENDING.value, DeliveryStatus.ASSIGNED.value}:
        raise InvalidTransitionError("Delivery", delivery.status, DeliveryStatus.ASSIGNED.value)

    previous_agent_id = delivery.agent_id
    delivery.agent_id = agent.id
    delivery.assigned_by = assigned_by
    delivery.assigned_at = now
    codes = issue_handover_codes(order.id, now)
    _store_codes(delivery, codes)
    if delivery.status != DeliveryStatus.ASSIGNED.value:
        _set_delivery_status(db, delivery, DeliveryStatus.ASSIGNED, user_id=assigned_by)

    if order.order_status == OrderStatus.APPROVED.value:
        transition_order(db, order, OrderStatus.ASSIGNED, user_id=assigned_by)
    order.assigned_agent_id = agent.id

    record_event(
        db,
        event_type=EVENT_DELIVERY_ASSIGNED,
        entity_type="delivery",
        entity_id=delivery.id,
        recipient_ids=[agent.id, order.buyer_id],
        payload={
            "order_id": order.id,
            "agent_id": agent.id,
            "codes_expire_at": codes.expires_at.isoformat(),
        },
    )
    db.flush()
    if previous_agent_id and previous_agent_id != agent.id:
        logger.info("Order %s re-assigned from agent %s to agent %s", order.id, previous_agent_id, agent.id)
    else:
        logger.info("Order %s assigned to agent %s", order.id, agent.id)
    return AssignmentResult(delivery=delivery, codes=codes, distance_km=distance)


def confirm_pickup(db: Session, *, order_id: int, agent_id: int, now: Optional[datetime] = None) -> Delivery:
    now = now or utcnow()
    order = get_order_for_update(db, order_id)
    delivery = get_delivery_for_order(db, order.id, for_update=True)
    if delivery.agent_id != agent_id:
        raise PermissionDeniedError("Only the assigned agent can confirm pickup.")
    if delivery.status != DeliveryStatus.ASSIGNED.value:
        raise InvalidTransitionError("Delivery", delivery.status, DeliveryStatus.IN_TRANSIT.value)

    _set_delivery_status(db, delivery, DeliveryStatus.IN_TRANSIT, user_id=agent_id)
    delivery.pickup_confirmed_at = now
    transition_order(db, order, OrderStatus.IN_TRANSIT, user_id=agent_id)
    order.picked_up_at = now
    db.flush()
    return delivery


def _check_code(delivery: Delivery, order_id: int, method: str, code: str) -> bool:
    if method == METHOD_OTP:
        return verify_otp(code, delivery.otp_code_hash)
    if method == METHOD_QR:
        token = extract_qr_token(code, order_id)
        return token is not None and verify_qr_token(token, delivery.qr_code_hash)
    return False


def verify_delivery(
    db: Session,
    *,
    order_id: int,
    agent_id: int,
    method: str,
    code: str,
    now: Optional[datetime] = None,
    settle: SettlementHandler = record_delivery_completion,
) -> Delivery:
    """Verify the handover code and complete the delivery exactly once.

    Settlement runs in the same transaction, so a settlement failure rolls the
    verification back.
    """
    now = now or utcnow()
    delivery = get_delivery_for_order(db, order_id)
    if delivery.agent_id != agent_id:
        raise PermissionDeniedError("Only the assigned agent can verify this delivery.")
    if delivery.status != DeliveryStatus.IN_TRANSIT.value:
        raise InvalidTransitionError("Delivery", delivery.status, DeliveryStatus.DELIVERED.value)

    if delivery.codes_expires_at is None or now > delivery.codes_expires_at:
        logger.warning("Expired handover code for order %s (method=%s)", order_id, method)
        raise CodeExpiredError("Handover code has expired.")
    if method not in VERIFICATION_METHODS or not _check_code(delivery, order_id, method, code):
        logger.warning("Invalid handover code for order %s (method=%s)", order_id, method)
        raise InvalidCodeError("Handover code does not match.")

    observed_version = delivery.secret_version
    updated = (
        db.query(Delivery)
        .filter(
            Delivery.id == delivery.id,
            Delivery.status == DeliveryStatus.IN_TRANSIT.value,
            Delivery.secret_version == observed_version,
        )
        .update(
            {
                Delivery.status: DeliveryStatus.DELIVERED.value,
                Delivery.otp_code_hash: None,
                Delivery.qr_code_hash: None,
                Delivery.codes_expires_at: None,
                Delivery.verification_method: method,
                Delivery.delivery_confirmed_at: now,
                Delivery.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    if updated != 1:
        raise ConcurrencyConflictError("Delivery was verified or re-issued concurrently.")
    db.expire(delivery)
    record_status_transition(
        db,
        entity_type="delivery",
        entity_id=delivery.id,
        from_status=DeliveryStatus.IN_TRANSIT.value,
        to_status=DeliveryStatus.DELIVERED.value,
        user_id=agent_id,
    )

    order = get_order_for_update(db, order_id)
    transition_order(db, order, OrderStatus.DELIVERED, user_id=agent_id)
    order.delivered_at = now

    distance = distance_between(
        (order.pickup_latitude, order.pickup_longitude),
        (order.dropoff_latitude, order.dropoff_longitude),
    )
    if distance is None:
        logger.debug("No coordinates for order %s; using fallback distance %skm", order.id, config.FALLBACK_DISTANCE_KM)
    earnings = settle(db, order=order, delivery=delivery, distance_km=distance, now=now)

    record_event(
        db,
        event_type=EVENT_DELIVERY_COMPLETED,
        entity_type="delivery",
        entity_id=delivery.id,
        recipient_ids=[order.buyer_id, agent_id, *[item.seller_id for item in order.items]],
        payload={"order_id": order.id, "method": method, "earning_ids": [earning.id for earning in earnings]},
    )
    db.flush()
    logger.info("Delivery for order %s verified by agent %s via %s", order.id, agent_id, method)
    return delivery


def resend_codes(db: Session, *, order_id: int, requested_by: int, now: Optional[datetime] = None) -> IssuedCodes:
    """Issue new codes. The previous ones stop working immediately."""
    now = now or utcnow()
    delivery = get_delivery_for_order(db, order_id, for_update=True)
    if delivery.status in DELIVERY_TERMINAL_STATUSES:
        raise InvalidTransitionError("Delivery", delivery.status, delivery.status, "Codes cannot be re-issued.")
    codes = issue_handover_codes(order_id, now)
    _store_codes(delivery, codes)
    db.flush()
    logger.info("Handover codes re-issued for order %s by user %s", order_id, requested_by)
    return codes


def mark_delivery_failed(
    db: Session,
    *,
    order_id: int,
    reason: str,
    performed_by: int,
    is_admin: bool = False,
) -> Delivery:
    order = get_order_for_update(db, order_id)
    delivery = get_delivery_for_order(db, order.id, for_update=True)
    if not is_admin and delivery.agent_id != performed_by:
        raise PermissionDeniedError("Only the assigned agent or an admin can fail this delivery.")
    if delivery.status not in {DeliveryStatus.ASSIGNED.value, DeliveryStatus.IN_TRANSIT.value}:
        raise InvalidTransitionError("Delivery", delivery.status, DeliveryStatus.FAILED.value)

    _set_delivery_status(db, delivery, DeliveryStatus.FAILED, user_id=performed_by)
    _clear_codes(delivery)
    delivery.failure_reason = reason
    transition_order(db, order, OrderStatus.FAILED, user_id=performed_by)
    db.flush()
    logger.info("Delivery for order %s failed: %s", order.id, reason)
    return delivery
