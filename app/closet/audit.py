import json
from typing import Any

from flask import g, has_request_context
from sqlalchemy.orm import Session

from app.closet.models import AuditEvent


def record_event(
    s: Session,
    *,
    actor_id: int | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | int | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append-only audit event helper. Joins the caller's transaction.
    """
    rid = request_id or (getattr(g, "request_id", None) if has_request_context() else None)
    ev = AuditEvent(
        request_id=rid,
        actor_user_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
    )
    s.add(ev)
    return ev
