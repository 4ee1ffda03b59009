import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from fulfillment.errors import (
    ConcurrencyConflictError,
    DataIntegrityError,
    InsufficientStockError,
    InvalidQuantityError,
    StorageUnavailableError,
)
from fulfillment.db import Base
from fulfillment.models import Order, Payout, Product
from fulfillment.orders.service import OrderLineInput, create_order
from fulfillment.statuses import PayoutStatus, UserRole
from fulfillment.stock.service import get_product_for_update, restock
from fulfillment.transactions import run_in_transaction, translate_storage_errors
from fulfillment.tests.factories import make_product, make_user


@pytest.fixture()
def session_factory(tmp_path):
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'fulfillment.db'}")
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()


@pytest.fixture()
def product_id(session_factory):
    db = session_factory()
    seller = make_user(db, UserRole.SELLER)
    product = make_product(db, seller, stock=10)
    db.commit()
    product_id = product.id
    db.close()
    return product_id


def _lock_then_lose_race(session_factory, product_id):
    """Lock and read the product in one session, then let another session commit a restock first."""
    slow = session_factory()
    stale = get_product_for_update(slow, product_id)
    assert stale.stock_quantity == 10

    fast = session_factory()
    restock(fast, product=get_product_for_update(fast, product_id), quantity=5)
    fast.commit()
    fast.close()
    return slow, stale


def test_stale_product_write_is_retried(session_factory, product_id):
    slow, stale = _lock_then_lose_race(session_factory, product_id)
    calls = []

    def work():
        calls.append(1)
        # The first attempt writes through the copy read before the competing commit.
        product = stale if len(calls) == 1 else get_product_for_update(slow, product_id)
        return restock(slow, product=product, quantity=1)

    movement = run_in_transaction(slow, work, attempts=2, backoff_base=0)

    assert len(calls) == 2
    assert movement.previous_quantity == 15
    assert slow.get(Product, product_id).stock_quantity == 16
    slow.close()


def test_conflict_surfaces_once_attempts_run_out(session_factory, product_id):
    slow, stale = _lock_then_lose_race(session_factory, product_id)
    calls = []

    def work():
        calls.append(1)
        return restock(slow, product=stale, quantity=1)

    with pytest.raises(ConcurrencyConflictError):
        run_in_transaction(slow, work, attempts=1)

    assert len(calls) == 1
    assert slow.get(Product, product_id).stock_quantity == 15
    slow.close()


def test_second_concurrent_checkout_for_sold_out_stock_fails(session_factory):
    db = session_factory()
    seller = make_user(db, UserRole.SELLER)
    first_buyer = make_user(db, UserRole.BUYER)
    second_buyer = make_user(db, UserRole.BUYER)
    product = make_product(db, seller, stock=5)
    db.commit()
    product_id, first_buyer_id, second_buyer_id = product.id, first_buyer.id, second_buyer.id
    db.close()

    late = session_factory()
    assert late.get(Product, product_id).available_quantity == 5

    early = session_factory()
    create_order(early, buyer_id=first_buyer_id, items=[OrderLineInput(product_id=product_id, quantity=5)])
    early.commit()
    early.close()

    with pytest.raises(InsufficientStockError) as exc:
        run_in_transaction(
            late,
            lambda: create_order(late, buyer_id=second_buyer_id, items=[OrderLineInput(product_id=product_id, quantity=1)]),
        )

    assert exc.value.violations[0]["available_qty"] == 0
    product = late.get(Product, product_id)
    assert product.reserved_stock == 5
    assert product.stock_quantity == 5
    assert late.query(Order).count() == 1
    late.close()


def test_non_conflict_errors_roll_back_without_retry(session_factory, product_id):
    db = session_factory()
    calls = []

    def work():
        calls.append(1)
        product = get_product_for_update(db, product_id)
        restock(db, product=product, quantity=3)
        restock(db, product=product, quantity=0)

    with pytest.raises(InvalidQuantityError):
        run_in_transaction(db, work, attempts=3, backoff_base=0)

    assert len(calls) == 1
    assert db.get(Product, product_id).stock_quantity == 10
    db.close()


def test_retry_runs_the_whole_unit_again():
    calls = []

    class FakeSession:
        commits = 0
        rollbacks = 0

        def commit(self):
            self.commits += 1

        def rollback(self):
            self.rollbacks += 1

    def work():
        calls.append(1)
        if len(calls) < 3:
            raise ConcurrencyConflictError("Row changed underneath us.")
        return "done"

    session = FakeSession()
    assert run_in_transaction(session, work, attempts=3, backoff_base=0) == "done"
    assert (len(calls), session.rollbacks, session.commits) == (3, 2, 1)


def test_open_payout_unique_index_maps_to_integrity_error(session_factory):
    db = session_factory()
    seller = make_user(db, UserRole.SELLER, with_bank=True)
    for _ in range(2):
        db.add(
            Payout(
                owner_type="seller",
                owner_id=seller.id,
                amount=100,
                status=PayoutStatus.PENDING.value,
                bank_name=seller.bank_name,
                account_name=seller.bank_account_name,
                account_number=seller.bank_account_number,
            )
        )

    with pytest.raises(DataIntegrityError):
        with translate_storage_errors():
            db.flush()
    db.rollback()
    db.close()


@pytest.mark.parametrize(
    "message, expected",
    [("database is locked", ConcurrencyConflictError), ("unable to open database file", StorageUnavailableError)],
)
def test_operational_errors_are_classified(message, expected):
    with pytest.raises(expected):
        with translate_storage_errors():
            raise OperationalError("UPDATE products SET stock_quantity=?", {}, Exception(message))
