from __future__ import annotations

import datetime as dt
import logging
from collections import Counter
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from finledger.db.models import Entry, ProviderAccount, SyncRun
from finledger.utils.time import utcnow


log = logging.getLogger(__name__)

DETAIL_LIMIT = 20


def merge_sync_stats(sync: SyncRun, new_stats: dict[str, Any]) -> None:
    """Merge keys into sync.sync_stats; never replaces the map. Failures are logged only."""
    try:
        merged = dict(sync.sync_stats or {})
        merged.update(new_stats)
        # Reassign so the JSON column is marked dirty.
        sync.sync_stats = merged
    except Exception:
        log.warning("Failed to merge sync stats for sync %s", getattr(sync, "id", None), exc_info=True)


def collect_setup_stats(sync: SyncRun, *, provider_accounts: Iterable[ProviderAccount]) -> dict[str, Any]:
    accounts = list(provider_accounts)
    linked = sum(1 for pa in accounts if pa.account_provider is not None)
    stats = {
        "total_accounts": len(accounts),
        "linked_accounts": linked,
        "unlinked_accounts": len(accounts) - linked,
    }
    merge_sync_stats(sync, stats)
    return stats


def _entry_window_counts(
    session: Session,
    *,
    entryable_type: str,
    account_ids: list[int],
    source: Optional[str],
    window_start: dt.datetime,
    window_end: dt.datetime,
) -> tuple[int, int, int]:
    if not account_ids:
        return 0, 0, 0
    base = session.query(Entry).filter(Entry.account_id.in_(account_ids), Entry.entryable_type == entryable_type)
    if source:
        base = base.filter(Entry.source == source)
    seen = base.count()
    imported = base.filter(Entry.created_at >= window_start, Entry.created_at <= window_end).count()
    updated = base.filter(
        Entry.created_at < window_start,
        Entry.updated_at >= window_start,
        Entry.updated_at <= window_end,
    ).count()
    return imported, updated, seen


def collect_transaction_stats(
    session: Session,
    sync: SyncRun,
    *,
    account_ids: list[int],
    source: Optional[str] = None,
    window_start: Optional[dt.datetime] = None,
    window_end: Optional[dt.datetime] = None,
) -> dict[str, Any]:
    start = window_start or sync.created_at
    end = window_end or utcnow()
    imported, updated, seen = _entry_window_counts(
        session,
        entryable_type="Transaction",
        account_ids=account_ids,
        source=source,
        window_start=start,
        window_end=end,
    )
    stats = {
        "tx_imported": imported,
        "tx_updated": updated,
        "tx_seen": seen,
        "window_start": start.isoformat(),
        "window_end": end.isoformat(),
    }
    merge_sync_stats(sync, stats)
    return stats


def collect_trades_stats(
    session: Session,
    sync: SyncRun,
    *,
    account_ids: list[int],
    source: Optional[str] = None,
    window_start: Optional[dt.datetime] = None,
    window_end: Optional[dt.datetime] = None,
) -> dict[str, Any]:
    start = window_start or sync.created_at
    end = window_end or utcnow()
    imported, updated, seen = _entry_window_counts(
        session,
        entryable_type="Trade",
        account_ids=account_ids,
        source=source,
        window_start=start,
        window_end=end,
    )
    stats = {"trades_imported": imported, "trades_updated": updated, "trades_seen": seen}
    merge_sync_stats(sync, stats)
    return stats


def collect_holdings_stats(sync: SyncRun, *, holdings_count: int, label: str = "found") -> dict[str, Any]:
    if label not in ("found", "processed"):
        raise ValueError("label must be 'found' or 'processed'")
    stats = {f"holdings_{label}": int(holdings_count)}
    merge_sync_stats(sync, stats)
    return stats


def collect_health_stats(
    sync: SyncRun,
    *,
    errors: Optional[list[dict[str, Any]]] = None,
    total_errors: Optional[int] = None,
    rate_limited: bool = False,
    rate_limited_at: Optional[dt.datetime] = None,
) -> dict[str, Any]:
    errs = [e if isinstance(e, dict) else {"message": str(e)} for e in (errors or [])]
    stats: dict[str, Any] = {
        "total_errors": max(len(errs), int(total_errors or 0)),
        "errors": errs[:DETAIL_LIMIT],
        "rate_limited": bool(rate_limited),
    }
    if errs:
        counts = Counter(str(e.get("category") or "unknown") for e in errs)
        stats["error_buckets"] = dict(counts)
    if rate_limited:
        stats["rate_limited_at"] = (rate_limited_at or utcnow()).isoformat()
    merge_sync_stats(sync, stats)
    return stats


def collect_data_quality_stats(
    sync: SyncRun,
    *,
    warnings: int = 0,
    notices: int = 0,
    details: Optional[list[dict[str, Any]]] = None,
) -> dict[str, Any]:
    stats: dict[str, Any] = {"data_warnings": int(warnings), "notices": int(notices)}
    if details:
        stats["data_quality_details"] = list(details)[:DETAIL_LIMIT]
    merge_sync_stats(sync, stats)
    return stats


def collect_skip_stats(sync: SyncRun, *, skipped_entries: Iterable[dict[str, Any]]) -> dict[str, Any]:
    skipped = list(skipped_entries)
    stats: dict[str, Any] = {"tx_skipped": len(skipped)}
    if skipped:
        stats["skip_summary"] = dict(Counter(str(s.get("reason") or "unknown") for s in skipped))
        stats["skip_details"] = [
            {
                "id": s.get("id"),
                "name": s.get("name"),
                "reason": s.get("reason"),
                "account_name": s.get("account_name"),
            }
            for s in skipped[:DETAIL_LIMIT]
        ]
    merge_sync_stats(sync, stats)
    return stats


def mark_import_started(sync: SyncRun) -> None:
    merge_sync_stats(sync, {"import_started": True})


def clear_sync_stats(sync: SyncRun) -> None:
    """Drop stats from an earlier attempt; the only operation that replaces the map."""
    sync.sync_stats = {"cleared_at": utcnow().isoformat()}
