from __future__ import annotations

import json
import logging
from datetime import datetime

from sqlalchemy.orm import Session

from app.events.outbox import OutboxEvent

logger = logging.getLogger(__name__)


def publish(db: Session, topic: str, payload: dict, *, available_at: datetime | None = None) -> OutboxEvent:
    """Publish an event by writing to the transactional outbox.

    The row commits (or rolls back) with the caller's unit of work.
    """
    evt = OutboxEvent(
        topic=topic,
        payload=json.loads(json.dumps(payload or {}, default=str)),
        available_at=available_at or datetime.utcnow(),
        delivered=False,
    )
    db.add(evt)
    logger.debug("outbox %s %s", topic, payload)
    return evt
