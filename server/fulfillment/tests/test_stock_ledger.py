import pytest

from fulfillment.errors import InsufficientStockError, InvalidQuantityError
from fulfillment.models import StockMovement
from fulfillment.statuses import AvailabilityStatus, MovementType, UserRole
from fulfillment.stock.service import (
    adjust_stock,
    check_availability,
    deduct_stock,
    get_low_stock_products,
    get_order_stock_position,
    get_stock_history,
    release_reserved_stock,
    replay_stock_ledger,
    reserve_stock,
    restock,
    return_stock,
)
from fulfillment.tests.factories import create_session, make_product, make_user


def _assert_counters_sane(product):
    assert product.stock_quantity >= 0
    assert product.reserved_stock >= 0
    assert product.reserved_stock <= product.stock_quantity


def test_reserve_then_deduct_moves_stock_and_clears_reservation():
    db = create_session()
    seller = make_user(db, UserRole.SELLER)
    product = make_product(db, seller, stock=10)

    reserve_stock(db, product=product, quantity=3, order_id=1)
    assert product.stock_quantity == 10
    assert product.reserved_stock == 3

    deduct_stock(db, product=product, quantity=3, order_id=1)
    assert product.stock_quantity == 7
    assert product.reserved_stock == 0


def test_reserve_and_deduct_leave_other_reservations_untouched():
    db = create_session()
    seller = make_user(db, UserRole.SELLER)
    product = make_product(db, seller, stock=10)
    reserve_stock(db, product=product, quantity=2, order_id=1)

    reserve_stock(db, product=product, quantity=4, order_id=2)
    deduct_stock(db, product=product, quantity=4, order_id=2, reserved_quantity=4)

    assert product.reserved_stock == 2
    assert product.stock_quantity == 6


def test_ledger_replay_reproduces_counters_after_mixed_movements():
    db = create_session()
    seller = make_user(db, UserRole.SELLER)
    product = make_product(db, seller, stock=20)

    reserve_stock(db, product=product, quantity=5, order_id=1)
    deduct_stock(db, product=product, quantity=5, order_id=1)
    reserve_stock(db, product=product, quantity=2, order_id=2)
    release_reserved_stock(db, product=product, quantity=2, order_id=2)
    return_stock(db, product=product, quantity=1, order_id=1, reason="Damaged box came back")
    restock(db, product=product, quantity=4)
    adjust_stock(db, product=product, new_quantity=18, reason="Cycle count")
    _assert_counters_sane(product)

    replay = replay_stock_ledger(db, product.id)
    assert replay.stock_quantity == product.stock_quantity == 18
    assert replay.reserved_stock == product.reserved_stock == 0
    assert replay.movement_count == 8


def test_every_movement_records_before_and_after_quantities():
    db = create_session()
    seller = make_user(db, UserRole.SELLER)
    product = make_product(db, seller, stock=10)
    reserve_stock(db, product=product, quantity=3, order_id=9)
    deduct_stock(db, product=product, quantity=3, order_id=9)

    sale = (
        db.query(StockMovement)
        .filter(StockMovement.product_id == product.id, StockMovement.movement_type == MovementType.SALE.value)
        .one()
    )
    assert (sale.previous_quantity, sale.quantity, sale.new_quantity) == (10, -3, 7)
    assert sale.reserved_delta == -3
    assert sale.reference_type == "order"
    assert sale.reference_id == 9


def test_reserve_more_than_available_without_backorders_fails_and_writes_nothing():
    db = create_session()
    seller = make_user(db, UserRole.SELLER)
    product = make_product(db, seller, stock=5)
    before = db.query(StockMovement).count()

    with pytest.raises(InsufficientStockError) as exc:
        reserve_stock(db, product=product, quantity=6, order_id=1)

    assert exc.value.violations[0]["available_qty"] == 5
    assert product.reserved_stock == 0
    assert db.query(StockMovement).count() == before


def test_backorder_reservation_holds_only_units_on_hand():
    db = create_session()
    seller = make_user(db, UserRole.SELLER)
    product = make_product(db, seller, stock=2, allow_backorders=True)

    availability = check_availability(product, 5)
    assert availability.available is True
    assert availability.is_backorder is True

    reserve_stock(db, product=product, quantity=5, order_id=1)
    assert product.reserved_stock == 2
    _assert_counters_sane(product)

    deduct_stock(db, product=product, quantity=5, order_id=1, reserved_quantity=2)
    assert product.stock_quantity == 0
    assert product.reserved_stock == 0
    _assert_counters_sane(product)


def test_check_availability_reports_shortfall_and_minimum_quantity():
    db = create_session()
    seller = make_user(db, UserRole.SELLER)
    product = make_product(db, seller, stock=4, minimum_order_quantity=2)
    reserve_stock(db, product=product, quantity=3, order_id=1)

    too_small = check_availability(product, 1)
    assert too_small.available is False
    assert "Minimum order quantity" in too_small.reason

    short = check_availability(product, 2)
    assert short.available is False
    assert short.reason == "Only 1 units available (3 reserved)"


def test_unmanaged_products_skip_the_ledger():
    db = create_session()
    seller = make_user(db, UserRole.SELLER)
    product = make_product(db, seller, stock=0, enable_stock_management=False)

    assert check_availability(product, 1000).available is True
    assert reserve_stock(db, product=product, quantity=1000, order_id=1) is None
    assert deduct_stock(db, product=product, quantity=1000, order_id=1) is None
    assert db.query(StockMovement).filter(StockMovement.product_id == product.id).count() == 0


def test_non_positive_quantities_are_rejected():
    db = create_session()
    seller = make_user(db, UserRole.SELLER)
    product = make_product(db, seller, stock=5)

    with pytest.raises(InvalidQuantityError):
        reserve_stock(db, product=product, quantity=0, order_id=1)
    with pytest.raises(InvalidQuantityError):
        restock(db, product=product, quantity=-2)
    with pytest.raises(InvalidQuantityError):
        adjust_stock(db, product=product, new_quantity=-1)


def test_adjust_cannot_drop_below_reserved_stock():
    db = create_session()
    seller = make_user(db, UserRole.SELLER)
    product = make_product(db, seller, stock=10)
    reserve_stock(db, product=product, quantity=6, order_id=1)

    with pytest.raises(InsufficientStockError):
        adjust_stock(db, product=product, new_quantity=5)

    adjust_stock(db, product=product, new_quantity=6)
    assert product.stock_quantity == 6
    assert product.availability_status == AvailabilityStatus.SOLD.value


def test_sold_out_product_becomes_available_after_restock():
    db = create_session()
    seller = make_user(db, UserRole.SELLER)
    product = make_product(db, seller, stock=1)
    reserve_stock(db, product=product, quantity=1, order_id=1)
    deduct_stock(db, product=product, quantity=1, order_id=1)
    assert product.availability_status == AvailabilityStatus.SOLD.value

    restock(db, product=product, quantity=3)
    assert product.availability_status == AvailabilityStatus.AVAILABLE.value


def test_order_stock_position_is_derived_from_the_ledger():
    db = create_session()
    seller = make_user(db, UserRole.SELLER)
    product = make_product(db, seller, stock=10)
    reserve_stock(db, product=product, quantity=4, order_id=7)
    assert get_order_stock_position(db, 7)[product.id].reserved == 4

    deduct_stock(db, product=product, quantity=4, order_id=7)
    position = get_order_stock_position(db, 7)[product.id]
    assert position.reserved == 0
    assert position.sold == 4

    return_stock(db, product=product, quantity=4, order_id=7)
    assert get_order_stock_position(db, 7)[product.id].sold == 0


def test_stock_history_is_newest_first_and_filterable():
    db = create_session()
    seller = make_user(db, UserRole.SELLER)
    product = make_product(db, seller, stock=10)
    restock(db, product=product, quantity=5)
    reserve_stock(db, product=product, quantity=2, order_id=1)

    rows, total = get_stock_history(db, product.id)
    assert total == 3
    assert rows[0].movement_type == MovementType.RESERVATION.value

    restocks, restock_total = get_stock_history(db, product.id, movement_type=MovementType.RESTOCK.value)
    assert restock_total == 2
    assert {row.quantity for row in restocks} == {10, 5}


def test_low_stock_products_are_filtered_by_threshold_and_seller():
    db = create_session()
    seller = make_user(db, UserRole.SELLER)
    other = make_user(db, UserRole.SELLER)
    low = make_product(db, seller, stock=3, name="Low", low_stock_threshold=5)
    make_product(db, seller, stock=30, name="Plenty")
    other_low = make_product(db, other, stock=1, name="Other low")

    assert [p.id for p in get_low_stock_products(db)] == [other_low.id, low.id]
    assert [p.id for p in get_low_stock_products(db, seller_id=seller.id)] == [low.id]
