from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Optional

from sqlalchemy.orm import Session

from finledger.db.models import DataEnrichment
from finledger.utils.time import utcnow


class Authority(IntEnum):
    PROVIDER = 1
    CALCULATED = 2
    RULE = 3
    USER = 4


_SOURCE_AUTHORITY = {
    "user": Authority.USER,
    "manual": Authority.USER,
    "rule": Authority.RULE,
    "calculated": Authority.CALCULATED,
    "ai": Authority.CALCULATED,
}


def authority_for_source(source: Optional[str]) -> Authority:
    """Any source that is not a known local authority is a provider (plaid, simplefin, ...)."""
    return _SOURCE_AUTHORITY.get((source or "").strip().lower(), Authority.PROVIDER)


def lock_authority(lock: Any) -> Authority:
    # Bare timestamps are user locks.
    if isinstance(lock, dict):
        return authority_for_source(lock.get("authority") or lock.get("source") or "user")
    return Authority.USER


def lock_reason(lock: Any) -> str:
    a = lock_authority(lock)
    if a == Authority.USER:
        return "user_modified"
    if a == Authority.RULE:
        return "rule_locked"
    return "calculated_locked"


def lock_attribute(holder: Any, attr: str, *, source: str) -> None:
    locks = dict(holder.locked_attributes or {})
    locks[attr] = {"authority": authority_for_source(source).name.lower(), "source": source, "at": utcnow().isoformat()}
    holder.locked_attributes = locks


@dataclass
class EnrichmentOutcome:
    changed: list[str] = field(default_factory=list)
    blocked: dict[str, str] = field(default_factory=dict)  # attr -> reason

    @property
    def any_changed(self) -> bool:
        return bool(self.changed)


def enrich_attributes(
    session: Session,
    holder: Any,
    attrs: dict[str, Any],
    *,
    source: str,
    target: Any = None,
    override: bool = False,
) -> EnrichmentOutcome:
    """
    Apply `attrs` to `target` (default: `holder`) while respecting `holder.locked_attributes`.

    A write never replaces a field locked by an equal-or-higher authority unless
    `override` is set. Writes from calculated, rule and user authorities lock what they
    change; provider writes never lock. Each applied change on a persisted record is
    logged as a DataEnrichment row.
    """
    target = holder if target is None else target
    outcome = EnrichmentOutcome()
    incoming = authority_for_source(source)
    for attr, value in attrs.items():
        lock = (holder.locked_attributes or {}).get(attr)
        if lock is not None and not override and lock_authority(lock) >= incoming:
            if getattr(target, attr) != value:
                outcome.blocked[attr] = lock_reason(lock)
            continue
        if getattr(target, attr) == value:
            continue
        setattr(target, attr, value)
        outcome.changed.append(attr)
        if incoming > Authority.PROVIDER:
            lock_attribute(holder, attr, source=source)
        _log_enrichment(session, holder, attr, value, source=source)
    return outcome


def _log_enrichment(session: Session, holder: Any, attr: str, value: Any, *, source: str) -> None:
    entity_id = getattr(holder, "id", None)
    if entity_id is None:
        return
    entity = type(holder).__name__
    row = (
        session.query(DataEnrichment)
        .filter(
            DataEnrichment.entity == entity,
            DataEnrichment.entity_id == entity_id,
            DataEnrichment.attribute_name == attr,
            DataEnrichment.source == source,
        )
        .one_or_none()
    )
    stored = value if isinstance(value, (str, int, float, bool, list, dict)) or value is None else str(value)
    if row is None:
        session.add(DataEnrichment(entity=entity, entity_id=entity_id, attribute_name=attr, source=source, value_json=stored))
    else:
        row.value_json = stored
