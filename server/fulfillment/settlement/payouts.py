from datetime import datetime
from decimal import Decimal
import logging
from typing import Optional

from sqlalchemy.orm import Session

from fulfillment.audit import record_status_transition
from fulfillment.delivery_settings.service import get_setting
from fulfillment.errors import (
    DuplicatePendingPayoutError,
    InsufficientBalanceError,
    InvalidInputError,
    InvalidTransitionError,
    MissingPayoutAccountError,
    NotFoundError,
    WithdrawalBelowMinimumError,
)
from fulfillment.models import Earning, Payout, PayoutAllocation, User
from fulfillment.notifications.service import EVENT_PAYOUT_COMPLETED, EVENT_PAYOUT_REJECTED, record_event
from fulfillment.settlement.calculations import AvailableEarning, allocate_payout
from fulfillment.settlement.service import get_available_balance
from fulfillment.statuses import PAYOUT_OPEN_STATUSES, EarningStatus, PayoutStatus
from fulfillment.transactions import lock_for_update
from fulfillment.utils import quantize_money, utcnow


logger = logging.getLogger(__name__)

PAYOUT_STATUS_FLOW = [
    PayoutStatus.PENDING.value,
    PayoutStatus.APPROVED.value,
    PayoutStatus.PROCESSING.value,
    PayoutStatus.COMPLETED.value,
]

PAYOUT_TRANSITIONS: dict[str, set[str]] = {
    PayoutStatus.PENDING.value: {PayoutStatus.APPROVED.value, PayoutStatus.REJECTED.value},
    PayoutStatus.APPROVED.value: {
        PayoutStatus.PROCESSING.value,
        PayoutStatus.COMPLETED.value,
        PayoutStatus.REJECTED.value,
    },
    PayoutStatus.PROCESSING.value: {PayoutStatus.COMPLETED.value},
    PayoutStatus.COMPLETED.value: set(),
    PayoutStatus.REJECTED.value: set(),
}


def get_allowed_payout_transitions(payout: Payout) -> list[str]:
    flow_rank = {status: idx for idx, status in enumerate(PAYOUT_STATUS_FLOW)}
    allowed = PAYOUT_TRANSITIONS.get(payout.status, set())
    return sorted(allowed, key=lambda status: flow_rank.get(status, len(PAYOUT_STATUS_FLOW)))


def _transition_payout(db: Session, payout: Payout, to_status: PayoutStatus, *, user_id: Optional[int]) -> None:
    from_status = payout.status
    if to_status.value not in PAYOUT_TRANSITIONS.get(from_status, set()):
        raise InvalidTransitionError("Payout", from_status, to_status.value)
    payout.status = to_status.value
    record_status_transition(
        db,
        entity_type="payout",
        entity_id=payout.id,
        from_status=from_status,
        to_status=to_status.value,
        user_id=user_id,
    )
    logger.info("Payout %s status %s -> %s", payout.id, from_status, to_status.value)


def get_payout_for_update(db: Session, payout_id: int) -> Payout:
    payout = lock_for_update(db.query(Payout).filter(Payout.id == payout_id)).first()
    if not payout:
        raise NotFoundError("Payout", payout_id)
    return payout


def get_open_payout(db: Session, *, owner_type: str, owner_id: int) -> Optional[Payout]:
    return (
        db.query(Payout)
        .filter(
            Payout.owner_type == owner_type,
            Payout.owner_id == owner_id,
            Payout.status.in_(sorted(PAYOUT_OPEN_STATUSES)),
        )
        .first()
    )


def request_withdrawal(
    db: Session,
    *,
    owner_type: str,
    owner_id: int,
    amount,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Payout:
    amount = quantize_money(amount)
    if amount is None or amount <= 0:
        raise InvalidInputError("Withdrawal amount must be greater than zero.")

    # Serialises concurrent requests from the same owner.
    owner = lock_for_update(db.query(User).filter(User.id == owner_id)).first()
    if not owner:
        raise NotFoundError("User", owner_id)

    if get_open_payout(db, owner_type=owner_type, owner_id=owner_id):
        raise DuplicatePendingPayoutError("You already have a pending withdrawal request.")

    minimum = get_setting(db, "min_withdrawal_amount")
    if amount < minimum:
        raise WithdrawalBelowMinimumError(f"Minimum withdrawal amount is {quantize_money(minimum)}.")

    available = get_available_balance(db, owner_type=owner_type, owner_id=owner_id)
    if amount > available:
        raise InsufficientBalanceError(amount, available)

    if not (owner.bank_name and owner.bank_account_name and owner.bank_account_number):
        raise MissingPayoutAccountError("Add bank details before requesting a withdrawal.")

    payout = Payout(
        owner_type=owner_type,
        owner_id=owner_id,
        amount=amount,
        status=PayoutStatus.PENDING.value,
        bank_name=owner.bank_name,
        account_name=owner.bank_account_name,
        account_number=owner.bank_account_number,
        notes=notes,
        requested_at=now or utcnow(),
    )
    db.add(payout)
    db.flush()
    record_status_transition(
        db,
        entity_type="payout",
        entity_id=payout.id,
        from_status=None,
        to_status=PayoutStatus.PENDING.value,
        user_id=owner_id,
    )
    db.flush()
    logger.info("Withdrawal requested: payout_id=%s %s_id=%s amount=%s", payout.id, owner_type, owner_id, amount)
    return payout


def approve_payout(db: Session, *, payout_id: int, admin_id: int, now: Optional[datetime] = None) -> Payout:
    payout = get_payout_for_update(db, payout_id)
    if payout.status == PayoutStatus.PENDING.value:
        available = get_available_balance(db, owner_type=payout.owner_type, owner_id=payout.owner_id)
        if Decimal(payout.amount) > available:
            raise InsufficientBalanceError(payout.amount, available)
    _transition_payout(db, payout, PayoutStatus.APPROVED, user_id=admin_id)
    payout.approved_by = admin_id
    payout.approved_at = now or utcnow()
    db.flush()
    return payout


def mark_payout_processing(db: Session, *, payout_id: int, admin_id: int) -> Payout:
    payout = get_payout_for_update(db, payout_id)
    _transition_payout(db, payout, PayoutStatus.PROCESSING, user_id=admin_id)
    db.flush()
    return payout


def _lock_available_earnings(db: Session, *, owner_type: str, owner_id: int) -> list[Earning]:
    return lock_for_update(
        db.query(Earning)
        .filter(
            Earning.owner_type == owner_type,
            Earning.owner_id == owner_id,
            Earning.status == EarningStatus.AVAILABLE.value,
        )
        .order_by(Earning.available_date.asc(), Earning.id.asc())
    ).all()


def complete_payout(
    db: Session,
    *,
    payout_id: int,
    transaction_reference: str,
    admin_id: int,
    payment_proof_url: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Payout:
    """Record the disbursement and consume available earnings oldest first."""
    if not transaction_reference or not transaction_reference.strip():
        raise InvalidInputError("Transaction reference is required.")
    now = now or utcnow()
    payout = get_payout_for_update(db, payout_id)
    if PayoutStatus.COMPLETED.value not in PAYOUT_TRANSITIONS.get(payout.status, set()):
        raise InvalidTransitionError("Payout", payout.status, PayoutStatus.COMPLETED.value)

    earnings = _lock_available_earnings(db, owner_type=payout.owner_type, owner_id=payout.owner_id)
    by_id = {earning.id: earning for earning in earnings}
    allocations = allocate_payout(
        Decimal(payout.amount),
        [AvailableEarning(earning_id=earning.id, remaining=earning.remaining_amount) for earning in earnings],
    )
    for allocation in allocations:
        earning = by_id[allocation.earning_id]
        covered_by_this_payout = allocation.amount == Decimal(earning.net_amount)
        earning.allocated_amount = Decimal(earning.allocated_amount or 0) + allocation.amount
        if allocation.exhausts_earning:
            earning.status = EarningStatus.WITHDRAWN.value
            # Earnings split across payouts are linked through their allocation rows only.
            if covered_by_this_payout:
                earning.payout_id = payout.id
        db.add(PayoutAllocation(payout_id=payout.id, earning_id=earning.id, amount=allocation.amount, created_at=now))

    _transition_payout(db, payout, PayoutStatus.COMPLETED, user_id=admin_id)
    payout.transaction_reference = transaction_reference.strip()
    payout.payment_proof_url = payment_proof_url
    payout.processed_by = admin_id
    payout.processed_at = now
    record_event(
        db,
        event_type=EVENT_PAYOUT_COMPLETED,
        entity_type="payout",
        entity_id=payout.id,
        recipient_ids=[payout.owner_id],
        payload={"payout_id": payout.id, "amount": str(payout.amount), "reference": payout.transaction_reference},
    )
    db.flush()
    logger.info(
        "Payout %s completed: amount=%s matched %s earnings (reference=%s)",
        payout.id,
        payout.amount,
        len(allocations),
        payout.transaction_reference,
    )
    return payout


def reject_payout(
    db: Session,
    *,
    payout_id: int,
    reason: str,
    admin_id: int,
    now: Optional[datetime] = None,
) -> Payout:
    if not reason or not reason.strip():
        raise InvalidInputError("Rejection reason is required.")
    now = now or utcnow()
    payout = get_payout_for_update(db, payout_id)
    _transition_payout(db, payout, PayoutStatus.REJECTED, user_id=admin_id)

    reverted = reverse_payout_allocations(db, payout=payout, now=now)
    payout.rejection_reason = reason.strip()
    payout.processed_by = admin_id
    payout.processed_at = now
    record_event(
        db,
        event_type=EVENT_PAYOUT_REJECTED,
        entity_type="payout",
        entity_id=payout.id,
        recipient_ids=[payout.owner_id],
        payload={"payout_id": payout.id, "reason": payout.rejection_reason},
    )
    db.flush()
    logger.info("Payout %s rejected; %s earnings returned to available", payout.id, reverted)
    return payout


def reverse_payout_allocations(db: Session, *, payout: Payout, now: datetime) -> int:
    """Undo every live allocation of a payout and return earnings to available."""
    allocations = lock_for_update(
        db.query(PayoutAllocation).filter(
            PayoutAllocation.payout_id == payout.id,
            PayoutAllocation.reversed_at.is_(None),
        )
    ).all()
    reverted = 0
    for allocation in allocations:
        earning = lock_for_update(db.query(Earning).filter(Earning.id == allocation.earning_id)).one()
        earning.allocated_amount = Decimal(earning.allocated_amount or 0) - Decimal(allocation.amount)
        if earning.status == EarningStatus.WITHDRAWN.value:
            earning.status = EarningStatus.AVAILABLE.value
        if earning.payout_id == payout.id:
            earning.payout_id = None
        allocation.reversed_at = now
        reverted += 1
    return reverted


def list_payouts(
    db: Session,
    *,
    owner_type: Optional[str] = None,
    owner_id: Optional[int] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Payout]:
    query = db.query(Payout)
    if owner_type:
        query = query.filter(Payout.owner_type == owner_type)
    if owner_id is not None:
        query = query.filter(Payout.owner_id == owner_id)
    if status:
        query = query.filter(Payout.status == status)
    return query.order_by(Payout.requested_at.desc(), Payout.id.desc()).offset(offset).limit(limit).all()
