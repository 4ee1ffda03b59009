"""Transactional outbox for the notification collaborator.

Events are written in the same transaction as the state change that caused
them and delivered later by :func:`dispatch_pending_notifications`. Handover
secrets never enter the outbox.
"""

from dataclasses import dataclass
import json
import logging
from typing import Iterable, Optional, Protocol

from sqlalchemy.orm import Session

from fulfillment import config
from fulfillment.models import NotificationEvent
from fulfillment.utils import utcnow


logger = logging.getLogger(__name__)

EVENT_ORDER_APPROVED = "order_approved"
EVENT_DELIVERY_ASSIGNED = "delivery_assigned"
EVENT_DELIVERY_COMPLETED = "delivery_completed"
EVENT_PAYOUT_COMPLETED = "payout_completed"
EVENT_PAYOUT_REJECTED = "payout_rejected"


class NotificationSender(Protocol):
    def send(self, event: NotificationEvent) -> None:
        ...


class LoggingNotificationSender:
    def send(self, event: NotificationEvent) -> None:
        logger.info(
            "Notification %s for recipient=%s %s#%s payload=%s",
            event.event_type,
            event.recipient_id,
            event.entity_type,
            event.entity_id,
            event.payload,
        )


@dataclass(frozen=True)
class DispatchResult:
    sent: int
    retried: int
    failed: int


def record_event(
    db: Session,
    *,
    event_type: str,
    entity_type: str,
    entity_id: int,
    recipient_ids: Iterable[Optional[int]],
    payload: Optional[dict] = None,
) -> list[NotificationEvent]:
    body = json.dumps(payload or {}, default=str, sort_keys=True)
    events = []
    for recipient_id in dict.fromkeys(recipient_ids):
        event = NotificationEvent(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            recipient_id=recipient_id,
            payload=body,
        )
        db.add(event)
        events.append(event)
    logger.debug("Queued %s %s notification(s) for %s#%s", len(events), event_type, entity_type, entity_id)
    return events


def dispatch_pending_notifications(
    db: Session,
    sender: NotificationSender,
    *,
    limit: int = 100,
    max_attempts: Optional[int] = None,
) -> DispatchResult:
    """Deliver pending outbox rows. The caller commits."""
    max_attempts = max_attempts or config.NOTIFICATION_MAX_ATTEMPTS
    events = (
        db.query(NotificationEvent)
        .filter(NotificationEvent.status == "pending")
        .order_by(NotificationEvent.id.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
        .all()
    )

    sent = retried = failed = 0
    for event in events:
        event.attempts = (event.attempts or 0) + 1
        try:
            sender.send(event)
        except Exception as exc:
            event.last_error = str(exc)[:1000]
            if event.attempts >= max_attempts:
                event.status = "failed"
                failed += 1
                logger.error("Notification %s failed permanently after %s attempts: %s", event.id, event.attempts, exc)
            else:
                retried += 1
                logger.warning("Notification %s delivery attempt %s failed: %s", event.id, event.attempts, exc)
            continue
        event.status = "sent"
        event.dispatched_at = utcnow()
        event.last_error = None
        sent += 1

    db.flush()
    return DispatchResult(sent=sent, retried=retried, failed=failed)
