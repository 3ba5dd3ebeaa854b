from __future__ import annotations

import datetime as dt
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from finledger.adapters.coinbase.adapter import CoinbaseAdapter
from finledger.adapters.plaid.adapter import PlaidAdapter
from finledger.adapters.plaid.client import plaid_client_factory
from finledger.adapters.simplefin.adapter import SimplefinAdapter
from finledger.adapters.simplefin.client import simplefin_client_factory
from finledger.adapters.snaptrade.adapter import SnapTradeAdapter
from finledger.config import AppSettings, load_settings
from finledger.core.kv_store import KeyValueStore
from finledger.core.provider_syncer import AccountSyncScheduler, ProviderSyncer, mark_failed
from finledger.core.sync_stats import collect_health_stats
from finledger.db.audit import log_change
from finledger.db.models import ExternalPayloadSnapshot, ProviderConnection, SyncRun
from finledger.importers.adapters import ProviderAdapter, ProviderClient, RateLimitedError, ReplayClient
from finledger.utils.time import utcnow


log = logging.getLogger(__name__)

IN_FLIGHT_STATUSES = ("pending", "syncing")

ADAPTERS: dict[str, type[ProviderAdapter]] = {
    "simplefin": SimplefinAdapter,
    "plaid": PlaidAdapter,
    "snaptrade": SnapTradeAdapter,
    "coinbase": CoinbaseAdapter,
}

_CLIENT_FACTORIES: dict[str, Callable[[ProviderConnection], ProviderClient]] = {
    "plaid": plaid_client_factory,
    "simplefin": simplefin_client_factory,
}


class SyncConfigError(Exception):
    pass


class SyncInProgressError(Exception):
    pass


def register_client_factory(provider: str, factory: Callable[[ProviderConnection], ProviderClient]) -> None:
    _CLIENT_FACTORIES[provider.strip().lower()] = factory


def _adapter_for(connection: ProviderConnection) -> ProviderAdapter:
    provider = (connection.provider or "").strip().lower()
    cls = ADAPTERS.get(provider)
    if cls is None:
        raise SyncConfigError(f"No adapter configured for provider={provider}.")
    return cls()


def _client_for(connection: ProviderConnection) -> ProviderClient:
    provider = (connection.provider or "").strip().lower()
    factory = _CLIENT_FACTORIES.get(provider)
    if factory is None:
        raise SyncConfigError(
            f"No API client registered for provider={provider}. Pass client= or use register_client_factory()."
        )
    return factory(connection)


def _compute_incremental_range(
    *,
    now: dt.date,
    last_synced_at: Optional[dt.datetime],
    overlap_days: int,
    lookback_days: int = 90,
) -> tuple[dt.date, dt.date]:
    overlap_days = max(0, min(30, int(overlap_days)))
    if last_synced_at is not None:
        start = last_synced_at.date() - dt.timedelta(days=overlap_days)
    else:
        start = now - dt.timedelta(days=lookback_days)
    return start, now


def latest_snapshot_client(session: Session, *, connection_id: int) -> ReplayClient:
    row = (
        session.query(ExternalPayloadSnapshot)
        .join(SyncRun, SyncRun.id == ExternalPayloadSnapshot.sync_run_id)
        .filter(SyncRun.connection_id == connection_id, ExternalPayloadSnapshot.kind == "snapshot")
        .order_by(ExternalPayloadSnapshot.id.desc())
        .first()
    )
    if row is None:
        raise SyncConfigError(f"No stored snapshot for connection {connection_id}.")
    return ReplayClient(row.payload_json)


def run_sync(
    session: Session,
    *,
    connection_id: int,
    window_start_date: Optional[dt.date] = None,
    window_end_date: Optional[dt.date] = None,
    client: Optional[ProviderClient] = None,
    scheduler: Optional[AccountSyncScheduler] = None,
    store: Optional[KeyValueStore] = None,
    settings: Optional[AppSettings] = None,
    actor: str = "sync",
    now: Optional[dt.datetime] = None,
) -> SyncRun:
    conn = session.query(ProviderConnection).filter(ProviderConnection.id == connection_id).one()
    if (conn.status or "").lower() == "disabled":
        raise SyncConfigError("Connection is disabled.")
    adapter = _adapter_for(conn)
    client = client or _client_for(conn)
    settings = settings or load_settings()

    in_flight = (
        session.query(SyncRun)
        .filter(SyncRun.connection_id == conn.id, SyncRun.status.in_(IN_FLIGHT_STATUSES))
        .first()
    )
    if in_flight is not None:
        raise SyncInProgressError(f"Sync {in_flight.id} is already running for connection {conn.id}.")

    today = (now or utcnow()).date()
    if window_start_date is None or window_end_date is None:
        start, end = _compute_incremental_range(
            now=today,
            last_synced_at=conn.last_synced_at,
            overlap_days=settings.sync.overlap_days,
            lookback_days=settings.sync.default_lookback_days,
        )
        window_start_date = window_start_date or start
        window_end_date = window_end_date or end

    run = SyncRun(
        connection_id=conn.id,
        status="pending",
        sync_stats={},
        window_start_date=window_start_date,
        window_end_date=window_end_date,
    )
    session.add(run)
    session.flush()
    log_change(
        session,
        actor=actor,
        action="SYNC_RUN_STARTED",
        target=run,
        new={"connection_id": conn.id, "window": [window_start_date, window_end_date]},
        note=f"Sync run started for connection={conn.id} provider={conn.provider}",
    )
    session.commit()
    run_id = run.id

    syncer = ProviderSyncer(
        session,
        conn,
        adapter=adapter,
        client=client,
        scheduler=scheduler,
        store=store,
        settings=settings,
        now=now,
    )
    try:
        syncer.perform_sync(run)
    except Exception as e:
        # Only uncommitted work is lost; completed phases stay.
        session.rollback()
        run = session.get(SyncRun, run_id)
        message = f"{type(e).__name__}: {e}"
        log.error("Sync %s for connection %s failed: %s", run_id, conn.id, message)
        collect_health_stats(
            run,
            errors=syncer.batch.errors + [{"message": message, "category": "sync_error"}],
            total_errors=syncer.batch.error_count + 1,
            rate_limited=isinstance(e, RateLimitedError),
        )
        mark_failed(session, run, message)

    log_change(
        session,
        actor=actor,
        action="SYNC_RUN_FINISHED",
        target=run,
        new={"status": run.status, "error": run.error, "stats": run.sync_stats},
        note=f"Sync run finished for connection={conn.id}",
    )
    session.commit()
    return run
