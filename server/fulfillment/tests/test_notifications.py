import json

from fulfillment.models import NotificationEvent
from fulfillment.notifications.service import (
    LoggingNotificationSender,
    dispatch_pending_notifications,
    record_event,
)
from fulfillment.statuses import UserRole
from fulfillment.tests.factories import create_session, make_user


class RecordingSender:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.sent = []

    def send(self, event):
        if event.recipient_id in self.fail_for:
            raise ConnectionError("SMTP relay refused connection")
        self.sent.append((event.event_type, event.recipient_id))


def test_record_event_queues_one_row_per_distinct_recipient():
    db = create_session()
    buyer = make_user(db, UserRole.BUYER)
    seller = make_user(db, UserRole.SELLER)

    events = record_event(
        db,
        event_type="order_approved",
        entity_type="order",
        entity_id=7,
        recipient_ids=[buyer.id, seller.id, buyer.id],
        payload={"order_id": 7},
    )
    db.flush()

    assert [event.recipient_id for event in events] == [buyer.id, seller.id]
    assert all(event.status == "pending" for event in events)
    assert json.loads(events[0].payload) == {"order_id": 7}


def test_dispatch_marks_sent_and_retries_failures():
    db = create_session()
    buyer = make_user(db, UserRole.BUYER)
    seller = make_user(db, UserRole.SELLER)
    record_event(db, event_type="order_approved", entity_type="order", entity_id=1, recipient_ids=[buyer.id, seller.id])
    db.flush()
    sender = RecordingSender(fail_for={seller.id})

    first = dispatch_pending_notifications(db, sender, max_attempts=2)
    assert (first.sent, first.retried, first.failed) == (1, 1, 0)
    assert sender.sent == [("order_approved", buyer.id)]

    second = dispatch_pending_notifications(db, sender, max_attempts=2)
    assert (second.sent, second.retried, second.failed) == (0, 0, 1)

    failed = db.query(NotificationEvent).filter_by(recipient_id=seller.id).one()
    assert failed.status == "failed"
    assert failed.attempts == 2
    assert "refused" in failed.last_error

    third = dispatch_pending_notifications(db, sender, max_attempts=2)
    assert (third.sent, third.retried, third.failed) == (0, 0, 0)


def test_dispatch_respects_limit():
    db = create_session()
    buyer = make_user(db, UserRole.BUYER)
    for entity_id in range(3):
        record_event(db, event_type="payout_completed", entity_type="payout", entity_id=entity_id, recipient_ids=[buyer.id])
    db.flush()

    result = dispatch_pending_notifications(db, LoggingNotificationSender(), limit=2)

    assert result.sent == 2
    assert db.query(NotificationEvent).filter_by(status="pending").count() == 1
