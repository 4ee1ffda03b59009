from datetime import datetime, timedelta
from decimal import Decimal
import json

import pytest
from sqlalchemy import update

from fulfillment.delivery.codes import verify_otp
from fulfillment.delivery.service import (
    assign_agent,
    confirm_pickup,
    get_delivery_for_order,
    mark_delivery_failed,
    resend_codes,
    verify_delivery,
)
from fulfillment.errors import (
    CodeExpiredError,
    ConcurrencyConflictError,
    InvalidCodeError,
    InvalidTransitionError,
    NoAgentAvailableError,
    NotFoundError,
    PermissionDeniedError,
    VerificationFailedError,
)
from fulfillment.models import Delivery, Earning, NotificationEvent
from fulfillment.orders.service import OrderLineInput, cancel_order, create_order, get_allowed_order_transitions
from fulfillment.statuses import DeliveryStatus, OrderStatus, PaymentStatus, UserRole
from fulfillment.transactions import run_in_transaction
from fulfillment.tests.factories import create_session, make_approved_order, make_product, make_user


T0 = datetime(2026, 3, 2, 9, 0, 0)


def _setup(**product_fields):
    db = create_session()
    buyer = make_user(db, UserRole.BUYER)
    seller = make_user(db, UserRole.SELLER)
    admin = make_user(db, UserRole.ADMIN)
    agent = make_user(db, UserRole.AGENT)
    product = make_product(db, seller, stock=10, **product_fields)
    order = make_approved_order(db, buyer, product, admin, quantity=2)
    return db, buyer, admin, agent, order


def _in_transit(db, admin, agent, order, now=T0):
    result = assign_agent(db, order_id=order.id, agent_id=agent.id, assigned_by=admin.id, now=now)
    confirm_pickup(db, order_id=order.id, agent_id=agent.id, now=now + timedelta(minutes=5))
    return result.codes


def test_assignment_creates_delivery_and_issues_hashed_codes():
    db, buyer, admin, agent, order = _setup()

    result = assign_agent(db, order_id=order.id, agent_id=agent.id, assigned_by=admin.id, now=T0)
    delivery = result.delivery

    assert delivery.status == DeliveryStatus.ASSIGNED.value
    assert delivery.agent_id == agent.id
    assert order.order_status == OrderStatus.ASSIGNED.value
    assert order.assigned_agent_id == agent.id
    assert delivery.codes_expires_at == T0 + timedelta(minutes=30)
    assert len(result.codes.otp) == 6 and result.codes.otp.isdigit()
    assert delivery.otp_code_hash != result.codes.otp
    assert verify_otp(result.codes.otp, delivery.otp_code_hash)
    assert result.codes.qr_token not in (delivery.qr_code_hash or "")


def test_assignment_outbox_event_never_carries_secrets():
    db, buyer, admin, agent, order = _setup()
    result = assign_agent(db, order_id=order.id, agent_id=agent.id, assigned_by=admin.id, now=T0)

    events = db.query(NotificationEvent).filter_by(event_type="delivery_assigned").all()
    assert {event.recipient_id for event in events} == {agent.id, buyer.id}
    for event in events:
        assert result.codes.otp not in event.payload
        assert result.codes.qr_token not in event.payload
        assert json.loads(event.payload)["order_id"] == order.id


def test_unpaid_or_unapproved_orders_cannot_be_assigned():
    db = create_session()
    buyer = make_user(db, UserRole.BUYER)
    seller = make_user(db, UserRole.SELLER)
    admin = make_user(db, UserRole.ADMIN)
    agent = make_user(db, UserRole.AGENT)
    product = make_product(db, seller, stock=5)
    order = create_order(db, buyer_id=buyer.id, items=[OrderLineInput(product_id=product.id, quantity=1)])

    with pytest.raises(InvalidTransitionError):
        assign_agent(db, order_id=order.id, agent_id=agent.id, assigned_by=admin.id)


def test_only_active_agents_can_be_assigned():
    db, buyer, admin, agent, order = _setup()

    with pytest.raises(NotFoundError):
        assign_agent(db, order_id=order.id, agent_id=buyer.id, assigned_by=admin.id)

    agent.is_active = False
    with pytest.raises(NotFoundError):
        assign_agent(db, order_id=order.id, agent_id=agent.id, assigned_by=admin.id)


def test_auto_assignment_picks_nearest_online_agent():
    db, buyer, admin, agent, order = _setup(latitude=Decimal("6.5244"), longitude=Decimal("3.3792"))
    near = make_user(
        db,
        UserRole.AGENT,
        is_online=True,
        current_latitude=Decimal("6.5300"),
        current_longitude=Decimal("3.3800"),
    )
    make_user(
        db,
        UserRole.AGENT,
        is_online=True,
        current_latitude=Decimal("6.5600"),
        current_longitude=Decimal("3.4200"),
    )
    make_user(
        db,
        UserRole.AGENT,
        is_online=False,
        current_latitude=Decimal("6.5245"),
        current_longitude=Decimal("3.3793"),
    )

    result = assign_agent(db, order_id=order.id, auto_assign=True, assigned_by=admin.id, now=T0)

    assert result.delivery.agent_id == near.id
    assert result.distance_km < Decimal("1")


def test_auto_assignment_without_nearby_agent_fails():
    db, buyer, admin, agent, order = _setup(latitude=Decimal("6.5244"), longitude=Decimal("3.3792"))
    make_user(
        db,
        UserRole.AGENT,
        is_online=True,
        current_latitude=Decimal("9.0765"),
        current_longitude=Decimal("7.3986"),
    )

    with pytest.raises(NoAgentAvailableError):
        assign_agent(db, order_id=order.id, auto_assign=True, assigned_by=admin.id)


def test_pickup_is_restricted_to_the_assigned_agent():
    db, buyer, admin, agent, order = _setup()
    other_agent = make_user(db, UserRole.AGENT)
    assign_agent(db, order_id=order.id, agent_id=agent.id, assigned_by=admin.id, now=T0)

    with pytest.raises(PermissionDeniedError):
        confirm_pickup(db, order_id=order.id, agent_id=other_agent.id)

    delivery = confirm_pickup(db, order_id=order.id, agent_id=agent.id, now=T0 + timedelta(minutes=3))
    assert delivery.status == DeliveryStatus.IN_TRANSIT.value
    assert order.order_status == OrderStatus.IN_TRANSIT.value
    assert order.picked_up_at == T0 + timedelta(minutes=3)


def test_verify_with_otp_delivers_order():
    db, buyer, admin, agent, order = _setup()
    codes = _in_transit(db, admin, agent, order)

    delivery = verify_delivery(
        db,
        order_id=order.id,
        agent_id=agent.id,
        method="otp",
        code=codes.otp,
        now=T0 + timedelta(minutes=20),
    )

    assert delivery.status == DeliveryStatus.DELIVERED.value
    assert delivery.verification_method == "otp"
    assert delivery.otp_code_hash is None
    assert delivery.qr_code_hash is None
    assert order.order_status == OrderStatus.DELIVERED.value
    assert order.delivered_at == T0 + timedelta(minutes=20)
    assert db.query(NotificationEvent).filter_by(event_type="delivery_completed").count() >= 1


def test_verification_succeeds_exactly_once():
    db, buyer, admin, agent, order = _setup()
    codes = _in_transit(db, admin, agent, order)
    verify_delivery(db, order_id=order.id, agent_id=agent.id, method="otp", code=codes.otp, now=T0 + timedelta(minutes=10))

    with pytest.raises(InvalidTransitionError):
        verify_delivery(db, order_id=order.id, agent_id=agent.id, method="otp", code=codes.otp, now=T0 + timedelta(minutes=11))
    with pytest.raises(InvalidTransitionError):
        verify_delivery(
            db,
            order_id=order.id,
            agent_id=agent.id,
            method="qr",
            code=codes.qr_payload,
            now=T0 + timedelta(minutes=11),
        )
    assert db.query(Earning).filter_by(order_id=order.id, owner_type="agent").count() == 1


def test_expired_code_then_resend_then_success():
    db, buyer, admin, agent, order = _setup()
    codes = _in_transit(db, admin, agent, order)

    with pytest.raises(CodeExpiredError):
        verify_delivery(
            db,
            order_id=order.id,
            agent_id=agent.id,
            method="otp",
            code=codes.otp,
            now=T0 + timedelta(minutes=31),
        )

    fresh = resend_codes(db, order_id=order.id, requested_by=buyer.id, now=T0 + timedelta(minutes=31))
    assert fresh.expires_at == T0 + timedelta(minutes=61)

    delivery = verify_delivery(
        db,
        order_id=order.id,
        agent_id=agent.id,
        method="otp",
        code=fresh.otp,
        now=T0 + timedelta(minutes=40),
    )
    assert delivery.status == DeliveryStatus.DELIVERED.value


def test_resend_invalidates_previous_codes():
    db, buyer, admin, agent, order = _setup()
    codes = _in_transit(db, admin, agent, order)
    delivery = get_delivery_for_order(db, order.id)
    old_otp_hash = delivery.otp_code_hash

    resend_codes(db, order_id=order.id, requested_by=buyer.id, now=T0 + timedelta(minutes=6))

    assert delivery.otp_code_hash != old_otp_hash
    assert delivery.codes_expires_at == T0 + timedelta(minutes=36)
    with pytest.raises(InvalidCodeError):
        verify_delivery(
            db,
            order_id=order.id,
            agent_id=agent.id,
            method="qr",
            code=codes.qr_token,
            now=T0 + timedelta(minutes=7),
        )


def test_qr_accepts_raw_token_and_scanned_payload():
    db, buyer, admin, agent, order = _setup()
    codes = _in_transit(db, admin, agent, order)

    delivery = verify_delivery(
        db,
        order_id=order.id,
        agent_id=agent.id,
        method="qr",
        code=codes.qr_payload,
        now=T0 + timedelta(minutes=10),
    )
    assert delivery.verification_method == "qr"

    db2, buyer2, admin2, agent2, order2 = _setup()
    codes2 = _in_transit(db2, admin2, agent2, order2)
    delivery2 = verify_delivery(
        db2,
        order_id=order2.id,
        agent_id=agent2.id,
        method="qr",
        code=codes2.qr_token,
        now=T0 + timedelta(minutes=10),
    )
    assert delivery2.status == DeliveryStatus.DELIVERED.value


def test_qr_payload_for_another_order_is_rejected():
    db, buyer, admin, agent, order = _setup()
    codes = _in_transit(db, admin, agent, order)
    forged = json.loads(codes.qr_payload)
    forged["order_id"] = order.id + 1

    with pytest.raises(InvalidCodeError):
        verify_delivery(
            db,
            order_id=order.id,
            agent_id=agent.id,
            method="qr",
            code=json.dumps(forged),
            now=T0 + timedelta(minutes=10),
        )


def test_expired_and_invalid_codes_look_identical_to_callers():
    db, buyer, admin, agent, order = _setup()
    codes = _in_transit(db, admin, agent, order)

    with pytest.raises(VerificationFailedError) as invalid:
        verify_delivery(db, order_id=order.id, agent_id=agent.id, method="otp", code="000000", now=T0)
    with pytest.raises(VerificationFailedError) as expired:
        verify_delivery(
            db,
            order_id=order.id,
            agent_id=agent.id,
            method="otp",
            code=codes.otp,
            now=T0 + timedelta(hours=2),
        )

    assert invalid.value.to_detail() == expired.value.to_detail()
    assert invalid.value.to_detail() == {"code": "VERIFICATION_FAILED", "message": "Verification failed."}


def test_wrong_agent_and_wrong_state_are_rejected_before_code_checks():
    db, buyer, admin, agent, order = _setup()
    other_agent = make_user(db, UserRole.AGENT)
    result = assign_agent(db, order_id=order.id, agent_id=agent.id, assigned_by=admin.id, now=T0)

    with pytest.raises(InvalidTransitionError):
        verify_delivery(db, order_id=order.id, agent_id=agent.id, method="otp", code=result.codes.otp, now=T0)

    confirm_pickup(db, order_id=order.id, agent_id=agent.id, now=T0)
    with pytest.raises(PermissionDeniedError):
        verify_delivery(db, order_id=order.id, agent_id=other_agent.id, method="otp", code=result.codes.otp, now=T0)
    with pytest.raises(NotFoundError):
        verify_delivery(db, order_id=order.id + 100, agent_id=agent.id, method="otp", code=result.codes.otp, now=T0)


def test_verification_racing_a_resend_is_rejected():
    db, buyer, admin, agent, order = _setup()
    codes = _in_transit(db, admin, agent, order)
    delivery = get_delivery_for_order(db, order.id)
    # Another transaction re-issued codes after this session loaded the row.
    db.execute(
        update(Delivery)
        .where(Delivery.id == delivery.id)
        .values(secret_version=Delivery.secret_version + 1)
        .execution_options(synchronize_session=False)
    )

    with pytest.raises(ConcurrencyConflictError):
        verify_delivery(db, order_id=order.id, agent_id=agent.id, method="otp", code=codes.otp, now=T0 + timedelta(minutes=8))


def test_settlement_failure_rolls_back_verification():
    db, buyer, admin, agent, order = _setup()
    codes = _in_transit(db, admin, agent, order)
    db.commit()

    def failing_settlement(db, **kwargs):
        raise RuntimeError("ledger unavailable")

    with pytest.raises(RuntimeError):
        run_in_transaction(
            db,
            lambda: verify_delivery(
                db,
                order_id=order.id,
                agent_id=agent.id,
                method="otp",
                code=codes.otp,
                now=T0 + timedelta(minutes=9),
                settle=failing_settlement,
            ),
        )

    delivery = get_delivery_for_order(db, order.id)
    assert delivery.status == DeliveryStatus.IN_TRANSIT.value
    assert delivery.otp_code_hash is not None
    assert db.query(Earning).count() == 0

    run_in_transaction(
        db,
        lambda: verify_delivery(
            db,
            order_id=order.id,
            agent_id=agent.id,
            method="otp",
            code=codes.otp,
            now=T0 + timedelta(minutes=10),
        ),
    )
    assert get_delivery_for_order(db, order.id).status == DeliveryStatus.DELIVERED.value


def test_reassignment_swaps_agent_and_reissues_codes():
    db, buyer, admin, agent, order = _setup()
    replacement = make_user(db, UserRole.AGENT)
    first = assign_agent(db, order_id=order.id, agent_id=agent.id, assigned_by=admin.id, now=T0)
    first_version = first.delivery.secret_version

    second = assign_agent(db, order_id=order.id, agent_id=replacement.id, assigned_by=admin.id, now=T0 + timedelta(minutes=2))

    assert second.delivery.id == first.delivery.id
    assert second.delivery.agent_id == replacement.id
    assert second.delivery.secret_version == first_version + 1
    assert order.assigned_agent_id == replacement.id
    with pytest.raises(PermissionDeniedError):
        confirm_pickup(db, order_id=order.id, agent_id=agent.id)

    confirm_pickup(db, order_id=order.id, agent_id=replacement.id, now=T0 + timedelta(minutes=3))
    with pytest.raises(InvalidTransitionError):
        assign_agent(db, order_id=order.id, agent_id=agent.id, assigned_by=admin.id)


def test_failed_delivery_can_only_be_cancelled():
    db, buyer, admin, agent, order = _setup()
    _in_transit(db, admin, agent, order)

    delivery = mark_delivery_failed(db, order_id=order.id, reason="Recipient unreachable", performed_by=agent.id)

    assert delivery.status == DeliveryStatus.FAILED.value
    assert delivery.otp_code_hash is None
    assert order.order_status == OrderStatus.FAILED.value
    assert get_allowed_order_transitions(order) == [OrderStatus.CANCELLED.value]
    with pytest.raises(InvalidTransitionError):
        resend_codes(db, order_id=order.id, requested_by=admin.id)

    cancel_order(db, order_id=order.id, reason="Delivery failed", performed_by=admin.id)
    assert order.payment_status == PaymentStatus.REFUNDED.value
    assert delivery.status == DeliveryStatus.FAILED.value


def test_cancelling_an_assigned_order_cancels_its_delivery():
    db, buyer, admin, agent, order = _setup()
    result = assign_agent(db, order_id=order.id, agent_id=agent.id, assigned_by=admin.id, now=T0)

    cancel_order(db, order_id=order.id, reason="Buyer request", performed_by=admin.id)

    delivery = result.delivery
    assert delivery.status == DeliveryStatus.CANCELLED.value
    assert delivery.otp_code_hash is None
    with pytest.raises(InvalidTransitionError):
        confirm_pickup(db, order_id=order.id, agent_id=agent.id)
