from typing import Optional

from sqlalchemy.orm import Session

from fulfillment.models import AuditEvent


STATUS_TRANSITION = "STATUS_TRANSITION"


def record_status_transition(
    db: Session,
    *,
    entity_type: str,
    entity_id: int,
    from_status: Optional[str],
    to_status: str,
    user_id: Optional[int] = None,
) -> AuditEvent:
    event = AuditEvent(
        user_id=user_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=STATUS_TRANSITION,
        event_metadata=f"{from_status or ''}->{to_status}",
    )
    db.add(event)
    return event


def load_status_timeline(db: Session, *, entity_type: str, entity_id: int) -> list[tuple[str, str, object]]:
    rows = (
        db.query(AuditEvent)
        .filter(
            AuditEvent.entity_type == entity_type,
            AuditEvent.entity_id == entity_id,
            AuditEvent.action == STATUS_TRANSITION,
        )
        .order_by(AuditEvent.id.asc())
        .all()
    )
    timeline = []
    for row in rows:
        if not row.event_metadata or "->" not in row.event_metadata:
            continue
        from_status, to_status = row.event_metadata.split("->", 1)
        timeline.append((from_status.strip(), to_status.strip(), row.created_at))
    return timeline
