from __future__ import annotations

import json
from typing import Any

from sqlalchemy.orm import Session

from app.db.models.security_audit import AuditLog


def audit(
    db: Session,
    *,
    actor: str,
    action: str,
    entity_type: str,
    entity_id: str | None = None,
    payload: dict | None = None,
    actor_role: str | None = None,
    success: bool = True,
) -> None:
    """Write an append-only audit record inside the caller's unit of work.

    Keep payload JSON-serializable.
    """
    safe_payload: dict[str, Any] = payload or {}
    try:
        # Ensure it can roundtrip to JSON (avoids runtime errors on commit)
        json.dumps(safe_payload)
    except TypeError:
        safe_payload = json.loads(json.dumps(safe_payload, default=str))

    db.add(
        AuditLog(
            actor=actor,
            actor_role=actor_role,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            success=success,
            payload=safe_payload,
        )
    )
