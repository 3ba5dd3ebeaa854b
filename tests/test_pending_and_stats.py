from __future__ import annotations

import datetime as dt

import pytest

from finledger.core.pending import auto_exclude_stale_pending, reconcile_pending_duplicates
from finledger.core.sync_stats import (
    DETAIL_LIMIT,
    clear_sync_stats,
    collect_health_stats,
    collect_holdings_stats,
    collect_skip_stats,
    collect_transaction_stats,
    merge_sync_stats,
)
from finledger.db.models import Account, SyncRun
from finledger.importers.ledger_import import LedgerImportAdapter

TODAY = dt.date(2024, 6, 10)


def _mk_account(session, family) -> Account:
    acct = Account(family_id=family.id, name="Checking", accountable_type="Depository", currency="USD")
    session.add(acct)
    session.flush()
    return acct


def _tx(importer, ext: str, *, date: dt.date, amount: str = "25.00", pending: bool = False):
    return importer.import_transaction(
        external_id=ext, amount=amount, currency="USD", date=date, name=ext, source="simplefin", pending=pending
    )


def test_stale_pending_entries_are_excluded(session, family):
    acct = _mk_account(session, family)
    importer = LedgerImportAdapter(session, acct)
    old = _tx(importer, "p-old", date=TODAY - dt.timedelta(days=12), pending=True)
    fresh = _tx(importer, "p-new", date=TODAY - dt.timedelta(days=2), pending=True)
    posted = _tx(importer, "posted", date=TODAY - dt.timedelta(days=30))

    assert auto_exclude_stale_pending(session, account=acct, days=8, today=TODAY) == 1
    assert old.excluded is True
    assert fresh.excluded is False
    assert posted.excluded is False


def test_reconcile_pending_duplicates(session, family):
    acct = _mk_account(session, family)
    importer = LedgerImportAdapter(session, acct)
    pending = _tx(importer, "p-1", date=TODAY - dt.timedelta(days=3), pending=True)
    _tx(importer, "posted-1", date=TODAY - dt.timedelta(days=1))

    dry = reconcile_pending_duplicates(session, account=acct, dry_run=True)
    assert dry["reconciled"] == 1
    assert dry["details"][0]["dry_run"] is True
    assert pending.excluded is False

    stats = reconcile_pending_duplicates(session, account=acct)
    assert stats == {
        "checked": 1,
        "reconciled": 1,
        "ambiguous": 0,
        "details": [{"pending_id": pending.id, "posted_id": stats["details"][0]["posted_id"], "dry_run": False}],
    }
    assert pending.excluded is True


def test_reconcile_pending_skips_ambiguous_matches(session, family):
    acct = _mk_account(session, family)
    importer = LedgerImportAdapter(session, acct)
    pending = _tx(importer, "p-1", date=TODAY - dt.timedelta(days=5), pending=True)
    _tx(importer, "posted-1", date=TODAY - dt.timedelta(days=4))
    _tx(importer, "posted-2", date=TODAY - dt.timedelta(days=3))
    # Outside the window and a different amount: never candidates.
    _tx(importer, "posted-3", date=TODAY + dt.timedelta(days=30))
    _tx(importer, "posted-4", date=TODAY - dt.timedelta(days=4), amount="26.00")

    stats = reconcile_pending_duplicates(session, account=acct)
    assert stats["ambiguous"] == 1
    assert stats["reconciled"] == 0
    assert pending.excluded is False


def test_merge_sync_stats_keeps_existing_keys():
    sync = SyncRun(sync_stats={"total_accounts": 3})
    merge_sync_stats(sync, {"tx_seen": 10})
    merge_sync_stats(sync, {"tx_seen": 12})
    assert sync.sync_stats == {"total_accounts": 3, "tx_seen": 12}


def test_clear_sync_stats_starts_a_fresh_map():
    sync = SyncRun(sync_stats={"total_accounts": 3, "tx_seen": 12})
    clear_sync_stats(sync)
    assert list(sync.sync_stats) == ["cleared_at"]
    merge_sync_stats(sync, {"tx_seen": 1})
    assert sync.sync_stats["tx_seen"] == 1


def test_health_stats_bucket_errors_and_cap_details():
    sync = SyncRun(sync_stats=None)
    errors = [{"message": f"e{i}", "category": "api_error"} for i in range(DETAIL_LIMIT + 5)]
    errors.append({"message": "boom"})
    stats = collect_health_stats(sync, errors=errors, rate_limited=True)
    assert stats["total_errors"] == DETAIL_LIMIT + 6
    assert len(stats["errors"]) == DETAIL_LIMIT
    assert stats["error_buckets"] == {"api_error": DETAIL_LIMIT + 5, "unknown": 1}
    assert "rate_limited_at" in sync.sync_stats


def test_skip_stats_summarize_reasons():
    sync = SyncRun(sync_stats={})
    stats = collect_skip_stats(
        sync,
        skipped_entries=[
            {"id": 1, "name": "a", "reason": "user_modified"},
            {"id": 2, "name": "b", "reason": "user_modified"},
            {"id": 3, "name": "c", "reason": "rule_locked"},
        ],
    )
    assert stats["tx_skipped"] == 3
    assert stats["skip_summary"] == {"user_modified": 2, "rule_locked": 1}
    assert collect_skip_stats(SyncRun(sync_stats={}), skipped_entries=[]) == {"tx_skipped": 0}


def test_holdings_stats_label_is_validated():
    sync = SyncRun(sync_stats={})
    assert collect_holdings_stats(sync, holdings_count=4, label="processed") == {"holdings_processed": 4}
    with pytest.raises(ValueError):
        collect_holdings_stats(sync, holdings_count=1, label="other")


def test_transaction_stats_count_entries_in_window(session, family):
    acct = _mk_account(session, family)
    _tx(LedgerImportAdapter(session, acct), "t-1", date=TODAY)
    start = dt.datetime(2000, 1, 1, tzinfo=dt.timezone.utc)
    sync = SyncRun(sync_stats={})
    stats = collect_transaction_stats(
        session, sync, account_ids=[acct.id], source="simplefin", window_start=start
    )
    assert stats["tx_imported"] == 1
    assert stats["tx_seen"] == 1
    assert collect_transaction_stats(session, sync, account_ids=[], window_start=start)["tx_seen"] == 0


def test_transaction_stats_count_detail_only_updates(session, family):
    acct = _mk_account(session, family)
    importer = LedgerImportAdapter(session, acct)
    entry = _tx(importer, "t-1", date=TODAY)
    earlier = dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc)
    entry.created_at = earlier
    entry.updated_at = earlier
    session.flush()

    # Only the transaction metadata (pending flag) changes on the second import.
    _tx(importer, "t-1", date=TODAY, pending=True)
    assert importer.stats == {"created": 1, "updated": 1, "unchanged": 0}

    stats = collect_transaction_stats(
        session, SyncRun(sync_stats={}), account_ids=[acct.id], source="simplefin",
        window_start=dt.datetime(2024, 6, 1, tzinfo=dt.timezone.utc),
    )
    assert stats["tx_imported"] == 0
    assert stats["tx_updated"] == 1
