from datetime import datetime, timedelta
from decimal import Decimal
import logging
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from fulfillment import config
from fulfillment.delivery_settings.service import DeliverySettings, get_delivery_settings
from fulfillment.errors import InvalidTransitionError, NotFoundError
from fulfillment.models import Delivery, Earning, Order, SellerPlan, User
from fulfillment.settlement.calculations import (
    DeliveryFeeInput,
    calculate_delivery_bonus,
    calculate_delivery_fee,
    calculate_seller_commission,
)
from fulfillment.statuses import EarningStatus, OwnerType
from fulfillment.transactions import lock_for_update
from fulfillment.utils import quantize_money, to_decimal, utcnow


logger = logging.getLogger(__name__)

SELLER_MATURATION_DAYS = 7
AGENT_MATURATION_DAYS = 1


def get_active_commission_plan(db: Session, seller_id: int) -> Optional[SellerPlan]:
    return (
        db.query(SellerPlan)
        .filter(
            SellerPlan.seller_id == seller_id,
            SellerPlan.is_active.is_(True),
            SellerPlan.payment_status == "paid",
            SellerPlan.plan_type == "commission",
        )
        .order_by(SellerPlan.created_at.desc(), SellerPlan.id.desc())
        .first()
    )


def create_seller_earnings(
    db: Session,
    *,
    order: Order,
    now: datetime,
    settings: DeliverySettings,
) -> list[Earning]:
    """One earning per commission-plan seller on the order. Subscription sellers earn nothing per order."""
    amounts: dict[int, Decimal] = {}
    for item in order.items:
        amounts[item.seller_id] = amounts.get(item.seller_id, Decimal("0")) + Decimal(item.line_total or 0)

    earnings = []
    for seller_id, order_amount in sorted(amounts.items()):
        plan = get_active_commission_plan(db, seller_id)
        if not plan:
            logger.debug("Seller %s has no active commission plan; no earning for order %s", seller_id, order.id)
            continue
        rate = Decimal(plan.commission_rate) if plan.commission_rate is not None else settings.default_seller_commission_rate
        breakdown = calculate_seller_commission(order_amount, rate)
        earning = Earning(
            owner_type=OwnerType.SELLER.value,
            owner_id=seller_id,
            order_id=order.id,
            gross_amount=breakdown.gross_amount,
            rate=rate,
            commission_amount=breakdown.commission_amount,
            bonus_amount=Decimal("0.00"),
            net_amount=breakdown.net_amount,
            allocated_amount=Decimal("0.00"),
            status=EarningStatus.PENDING.value,
            available_date=now + timedelta(days=SELLER_MATURATION_DAYS),
        )
        db.add(earning)
        earnings.append(earning)
        logger.info(
            "Seller earning for order %s: seller_id=%s gross=%s commission=%s net=%s",
            order.id,
            seller_id,
            breakdown.gross_amount,
            breakdown.commission_amount,
            breakdown.net_amount,
        )
    return earnings


def create_agent_earning(
    db: Session,
    *,
    order: Order,
    delivery: Delivery,
    distance_km: Optional[Decimal],
    now: datetime,
    settings: DeliverySettings,
) -> Earning:
    agent = lock_for_update(db.query(User).filter(User.id == delivery.agent_id)).first()
    if not agent:
        raise NotFoundError("Agent", delivery.agent_id)

    distance = Decimal(distance_km) if distance_km is not None else config.FALLBACK_DISTANCE_KM
    breakdown = calculate_delivery_fee(
        DeliveryFeeInput(
            distance_km=distance,
            base_fee=settings.base_delivery_fee,
            per_km_rate=settings.per_km_rate,
            min_fee=settings.min_delivery_fee,
            platform_rate=settings.platform_commission_rate,
        )
    )

    agent.total_deliveries = (agent.total_deliveries or 0) + 1
    bonus = calculate_delivery_bonus(agent.total_deliveries, settings.agent_bonus_threshold, settings.agent_bonus_amount)
    notes = None
    if bonus > 0:
        notes = f"Bonus for completing {agent.total_deliveries} deliveries"

    earning = Earning(
        owner_type=OwnerType.AGENT.value,
        owner_id=agent.id,
        order_id=order.id,
        delivery_id=delivery.id,
        gross_amount=breakdown.delivery_fee,
        rate=settings.platform_commission_rate,
        commission_amount=breakdown.platform_commission,
        bonus_amount=bonus,
        net_amount=breakdown.net_amount + bonus,
        allocated_amount=Decimal("0.00"),
        status=EarningStatus.PENDING.value,
        available_date=now + timedelta(days=AGENT_MATURATION_DAYS),
        distance_km=quantize_money(distance),
        base_fee=settings.base_delivery_fee,
        per_km_rate=settings.per_km_rate,
        notes=notes,
    )
    db.add(earning)

    order.delivery_fee = breakdown.delivery_fee
    order.delivery_distance_km = quantize_money(distance)
    logger.info(
        "Agent earning for order %s: agent_id=%s fee=%s commission=%s bonus=%s deliveries=%s",
        order.id,
        agent.id,
        breakdown.delivery_fee,
        breakdown.platform_commission,
        bonus,
        agent.total_deliveries,
    )
    return earning


def record_delivery_completion(
    db: Session,
    *,
    order: Order,
    delivery: Delivery,
    distance_km: Optional[Decimal],
    now: Optional[datetime] = None,
) -> list[Earning]:
    """Settle a delivered order inside the caller's transaction."""
    now = now or utcnow()
    settings = get_delivery_settings(db)
    earnings = create_seller_earnings(db, order=order, now=now, settings=settings)
    earnings.append(
        create_agent_earning(db, order=order, delivery=delivery, distance_km=distance_km, now=now, settings=settings)
    )
    db.flush()
    return earnings


def mature_earnings(db: Session, *, now: Optional[datetime] = None) -> int:
    """Make every pending earning whose hold has elapsed available. Safe to re-run."""
    now = now or utcnow()
    count = (
        db.query(Earning)
        .filter(Earning.status == EarningStatus.PENDING.value, Earning.available_date <= now)
        .update({Earning.status: EarningStatus.AVAILABLE.value, Earning.updated_at: now}, synchronize_session="fetch")
    )
    if count:
        logger.info("Made %s earnings available", count)
    return count


def get_earning_for_update(db: Session, earning_id: int) -> Earning:
    earning = lock_for_update(db.query(Earning).filter(Earning.id == earning_id)).first()
    if not earning:
        raise NotFoundError("Earning", earning_id)
    return earning


def hold_earning(db: Session, *, earning_id: int, reason: Optional[str] = None) -> Earning:
    earning = get_earning_for_update(db, earning_id)
    if earning.status not in {EarningStatus.PENDING.value, EarningStatus.AVAILABLE.value}:
        raise InvalidTransitionError("Earning", earning.status, EarningStatus.ON_HOLD.value)
    if Decimal(earning.allocated_amount or 0) > 0:
        raise InvalidTransitionError(
            "Earning", earning.status, EarningStatus.ON_HOLD.value, "Earning is partly paid out."
        )
    earning.status = EarningStatus.ON_HOLD.value
    if reason:
        earning.notes = f"{earning.notes}; {reason}" if earning.notes else reason
    db.flush()
    logger.info("Earning %s placed on hold", earning.id)
    return earning


def release_earning_hold(db: Session, *, earning_id: int, now: Optional[datetime] = None) -> Earning:
    now = now or utcnow()
    earning = get_earning_for_update(db, earning_id)
    if earning.status != EarningStatus.ON_HOLD.value:
        raise InvalidTransitionError("Earning", earning.status, EarningStatus.AVAILABLE.value)
    earning.status = EarningStatus.AVAILABLE.value if earning.available_date <= now else EarningStatus.PENDING.value
    db.flush()
    logger.info("Earning %s released from hold to %s", earning.id, earning.status)
    return earning


def get_available_balance(db: Session, *, owner_type: str, owner_id: int) -> Decimal:
    balance = (
        db.query(func.coalesce(func.sum(Earning.net_amount - Earning.allocated_amount), 0))
        .filter(
            Earning.owner_type == owner_type,
            Earning.owner_id == owner_id,
            Earning.status == EarningStatus.AVAILABLE.value,
        )
        .scalar()
    )
    return quantize_money(balance or 0)


def get_earnings_summary(db: Session, *, owner_type: str, owner_id: int) -> dict:
    rows = (
        db.query(
            Earning.status,
            func.count(Earning.id),
            func.coalesce(func.sum(Earning.net_amount), 0),
            func.coalesce(func.sum(Earning.allocated_amount), 0),
            func.coalesce(func.sum(Earning.commission_amount), 0),
            func.coalesce(func.sum(Earning.bonus_amount), 0),
        )
        .filter(Earning.owner_type == owner_type, Earning.owner_id == owner_id)
        .group_by(Earning.status)
        .all()
    )
    summary = {
        "owner_type": owner_type,
        "owner_id": owner_id,
        "total_earnings": Decimal("0"),
        "pending": Decimal("0"),
        "available": Decimal("0"),
        "withdrawn": Decimal("0"),
        "on_hold": Decimal("0"),
        "total_commission": Decimal("0"),
        "total_bonus": Decimal("0"),
        "earning_count": 0,
    }
    for status, count, net, allocated, commission, bonus in rows:
        net = to_decimal(net)
        allocated = to_decimal(allocated)
        summary["total_earnings"] += net
        summary["total_commission"] += to_decimal(commission)
        summary["total_bonus"] += to_decimal(bonus)
        summary["earning_count"] += count
        # Partly allocated earnings count toward withdrawn for the allocated part.
        summary["withdrawn"] += allocated
        if status == EarningStatus.PENDING.value:
            summary["pending"] += net
        elif status == EarningStatus.AVAILABLE.value:
            summary["available"] += net - allocated
        elif status == EarningStatus.ON_HOLD.value:
            summary["on_hold"] += net
    for key in ("total_earnings", "pending", "available", "withdrawn", "on_hold", "total_commission", "total_bonus"):
        summary[key] = quantize_money(summary[key])
    return summary


def list_earnings(
    db: Session,
    *,
    owner_type: Optional[str] = None,
    owner_id: Optional[int] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Earning]:
    query = db.query(Earning)
    if owner_type:
        query = query.filter(Earning.owner_type == owner_type)
    if owner_id is not None:
        query = query.filter(Earning.owner_id == owner_id)
    if status:
        query = query.filter(Earning.status == status)
    return query.order_by(Earning.created_at.desc(), Earning.id.desc()).offset(offset).limit(limit).all()
