from __future__ import annotations

import json
from typing import Any, Optional

from sqlalchemy.orm import Session

from finledger.db.models import AuditLog


def _json_safe(payload: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    # Dates, Decimals and enums end up as strings.
    if payload is None:
        return None
    return json.loads(json.dumps(payload, default=str))


def log_change(
    session: Session,
    *,
    actor: str,
    action: str,
    target: Any,
    old: Optional[dict[str, Any]] = None,
    new: Optional[dict[str, Any]] = None,
    note: Optional[str] = None,
) -> AuditLog:
    """
    Record an audit row for `target`, a persisted ORM instance.

    Log before deleting `target`; its primary key is read here.
    """
    target_id = getattr(target, "id", None)
    row = AuditLog(
        actor=actor,
        action=action,
        entity=type(target).__name__,
        entity_id=None if target_id is None else str(target_id),
        old_json=_json_safe(old),
        new_json=_json_safe(new),
        note=note,
    )
    session.add(row)
    return row
