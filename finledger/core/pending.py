from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from finledger.db.models import Account, Entry, Transaction
from finledger.importers.ledger_import import is_pending


log = logging.getLogger(__name__)


def _pending_entries(session: Session, *, account_id: Optional[int]) -> list[Entry]:
    q = (
        session.query(Entry)
        .join(Transaction, Transaction.entry_id == Entry.id)
        .filter(Entry.entryable_type == "Transaction", Entry.excluded.is_(False))
    )
    if account_id is not None:
        q = q.filter(Entry.account_id == account_id)
    # The pending flag lives in provider-namespaced JSON; filter in Python.
    return [e for e in q.order_by(Entry.date.asc(), Entry.id.asc()).all() if is_pending(e)]


def auto_exclude_stale_pending(
    session: Session,
    *,
    account: Account,
    days: int = 8,
    today: Optional[dt.date] = None,
) -> int:
    """Exclude pending entries that never posted within `days`."""
    cutoff = (today or dt.date.today()) - dt.timedelta(days=max(1, int(days)))
    n = 0
    for e in _pending_entries(session, account_id=account.id):
        if e.date < cutoff:
            e.excluded = True
            n += 1
    if n:
        log.info("Excluded %s stale pending entries in account %s", n, account.id)
        session.flush()
    return n


def reconcile_pending_duplicates(
    session: Session,
    *,
    account: Optional[Account] = None,
    dry_run: bool = False,
    date_window: int = 8,
) -> dict[str, Any]:
    """
    Exclude pending entries that already have a posted twin.

    A twin is a non-pending transaction in the same account with the same amount and
    currency, dated within `date_window` days on or after the pending date. Only
    unambiguous (single-candidate) matches are excluded.
    """
    stats: dict[str, Any] = {"checked": 0, "reconciled": 0, "ambiguous": 0, "details": []}
    for pending in _pending_entries(session, account_id=account.id if account is not None else None):
        stats["checked"] += 1
        candidates = (
            session.query(Entry)
            .filter(
                Entry.account_id == pending.account_id,
                Entry.entryable_type == "Transaction",
                Entry.id != pending.id,
                Entry.excluded.is_(False),
                Entry.amount == pending.amount,
                Entry.currency == pending.currency,
                Entry.date >= pending.date,
                Entry.date <= pending.date + dt.timedelta(days=max(0, int(date_window))),
            )
            .all()
        )
        posted = [c for c in candidates if not is_pending(c)]
        if len(posted) != 1:
            if len(posted) > 1:
                stats["ambiguous"] += 1
            continue
        stats["reconciled"] += 1
        if len(stats["details"]) < 20:
            stats["details"].append({"pending_id": pending.id, "posted_id": posted[0].id, "dry_run": dry_run})
        if not dry_run:
            pending.excluded = True
    if stats["reconciled"] and not dry_run:
        session.flush()
    return stats
