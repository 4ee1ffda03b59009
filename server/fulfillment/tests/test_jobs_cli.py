from datetime import timedelta

import pytest
from click.testing import CliRunner
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fulfillment.db import Base
from fulfillment.jobs import cli
from fulfillment.models import DeliverySetting, Earning, NotificationEvent
from fulfillment.notifications.service import record_event
from fulfillment.statuses import EarningStatus, UserRole
from fulfillment.tests.factories import make_available_earning, make_product, make_user
from fulfillment.utils import utcnow


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


def _invoke(session_factory, *args, **obj):
    return CliRunner().invoke(cli, list(args), obj={"session_factory": session_factory, **obj})


def test_mature_earnings_command(session_factory):
    db = session_factory()
    seller = make_user(db, UserRole.SELLER)
    due = make_available_earning(db, seller, net="20.00")
    due.status = EarningStatus.PENDING.value
    not_due = make_available_earning(db, seller, net="20.00")
    not_due.status = EarningStatus.PENDING.value
    not_due.available_date = utcnow() + timedelta(days=5)
    db.commit()
    db.close()

    result = _invoke(session_factory, "mature-earnings")
    assert result.exit_code == 0
    assert result.output.strip() == "Matured 1 earnings."

    db = session_factory()
    statuses = sorted(status for (status,) in db.query(Earning.status).all())
    assert statuses == [EarningStatus.AVAILABLE.value, EarningStatus.PENDING.value]
    db.close()

    assert _invoke(session_factory, "mature-earnings").output.strip() == "Matured 0 earnings."


def test_dispatch_notifications_command(session_factory):
    db = session_factory()
    buyer = make_user(db, UserRole.BUYER)
    record_event(db, event_type="order_approved", entity_type="order", entity_id=3, recipient_ids=[buyer.id])
    db.commit()
    db.close()

    sent = []

    class Sender:
        def send(self, event):
            sent.append(event.entity_id)

    result = _invoke(session_factory, "dispatch-notifications", "--limit", "10", notification_sender=Sender())

    assert result.exit_code == 0
    assert result.output.strip() == "Sent 1, retrying 0, failed 0."
    assert sent == [3]
    db = session_factory()
    assert db.query(NotificationEvent).one().status == "sent"
    db.close()


def test_seed_settings_command(session_factory):
    first = _invoke(session_factory, "seed-settings")
    second = _invoke(session_factory, "seed-settings")

    assert first.output.strip() == "Created 9 delivery settings."
    assert second.output.strip() == "Created 0 delivery settings."
    db = session_factory()
    assert db.query(DeliverySetting).count() == 9
    db.close()


def test_low_stock_command(session_factory):
    assert _invoke(session_factory, "low-stock").output.strip() == "No low-stock products."

    db = session_factory()
    seller = make_user(db, UserRole.SELLER)
    make_product(db, seller, stock=2, name="Shea butter", low_stock_threshold=5)
    make_product(db, seller, stock=40, name="Palm oil", low_stock_threshold=5)
    seller_id = seller.id
    db.commit()
    db.close()

    result = _invoke(session_factory, "low-stock", "--seller-id", str(seller_id))
    lines = result.output.strip().splitlines()
    assert len(lines) == 1
    assert "Shea butter" in lines[0]
    assert "stock=2" in lines[0]
