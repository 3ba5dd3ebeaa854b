from __future__ import annotations

import datetime as dt
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from finledger.config import AppSettings
from finledger.core.credential_store import load_credentials, missing_credentials
from finledger.core.currency import normalize_currency
from finledger.core.holdings import HoldingMaterializer
from finledger.core.kv_store import KeyValueStore
from finledger.core.pending import auto_exclude_stale_pending, reconcile_pending_duplicates
from finledger.core.results import BatchResult
from finledger.core.sync_stats import (
    clear_sync_stats,
    collect_data_quality_stats,
    collect_health_stats,
    collect_holdings_stats,
    collect_setup_stats,
    collect_skip_stats,
    collect_trades_stats,
    collect_transaction_stats,
    mark_import_started,
    merge_sync_stats,
)
from finledger.db.models import (
    INVESTMENT_TYPES,
    LIABILITY_TYPES,
    ExternalPayloadSnapshot,
    ProviderAccount,
    ProviderConnection,
    SyncRun,
)
from finledger.importers.adapters import AccountContext, ProviderAdapter, ProviderClient, RateLimitedError
from finledger.importers.ledger_import import LedgerImportAdapter
from finledger.utils.time import utcnow


log = logging.getLogger(__name__)


class AccountSyncScheduler(ABC):
    """Downstream balance recalculation; runs after import and never affects the sync outcome."""

    @abstractmethod
    def schedule_account_sync(
        self,
        account_id: int,
        *,
        parent_sync_id: Optional[int],
        window_start_date: Optional[dt.date],
        window_end_date: Optional[dt.date],
    ) -> None:
        raise NotImplementedError


class LoggingAccountSyncScheduler(AccountSyncScheduler):
    def schedule_account_sync(
        self,
        account_id: int,
        *,
        parent_sync_id: Optional[int],
        window_start_date: Optional[dt.date],
        window_end_date: Optional[dt.date],
    ) -> None:
        log.info(
            "Balance sync requested for account %s (sync %s, %s..%s)",
            account_id,
            parent_sync_id,
            window_start_date,
            window_end_date,
        )


def mark_failed(session: Session, sync: SyncRun, message: str) -> None:
    if sync.status == "completed":
        log.warning("Not marking completed sync %s as failed: %s", sync.id, message)
        return
    sync.status = "failed"
    sync.error = message
    sync.status_text = message[:300]
    sync.completed_at = utcnow()
    session.commit()


class ProviderSyncer:
    """
    Ordered import pipeline shared by every provider variant.

    Phases commit as they finish, so a later failure keeps earlier progress. Record
    and account failures are folded into the sync's health stats rather than raised.
    """

    def __init__(
        self,
        session: Session,
        connection: ProviderConnection,
        *,
        adapter: ProviderAdapter,
        client: ProviderClient,
        scheduler: Optional[AccountSyncScheduler] = None,
        store: Optional[KeyValueStore] = None,
        settings: Optional[AppSettings] = None,
        now: Optional[dt.datetime] = None,
    ):
        self.session = session
        self.connection = connection
        self.adapter = adapter
        self.client = client
        self.scheduler = scheduler or LoggingAccountSyncScheduler()
        self.store = store
        self.settings = settings or AppSettings()
        self.now = now
        self.batch = BatchResult()
        self.data_quality: list[dict[str, Any]] = []
        self.skipped_entries: list[dict[str, Any]] = []

    def perform_sync(self, sync: SyncRun) -> SyncRun:
        if sync.sync_stats:
            clear_sync_stats(sync)
        try:
            return self._perform(sync)
        except RateLimitedError as e:
            collect_health_stats(
                sync,
                errors=self.batch.errors + [{"message": str(e), "category": "rate_limited"}],
                rate_limited=True,
            )
            raise
        except Exception as e:
            collect_health_stats(
                sync,
                errors=self.batch.errors + [{"message": f"{type(e).__name__}: {e}", "category": "sync_error"}],
            )
            raise

    def _perform(self, sync: SyncRun) -> SyncRun:
        self._status(sync, "Checking credentials...")
        credentials = load_credentials(
            self.session, connection_id=self.connection.id, keys=self.adapter.required_credentials
        )
        if credentials is None:
            self.connection.status = "requires_update"
            missing = missing_credentials(
                self.session, connection_id=self.connection.id, keys=self.adapter.required_credentials
            )
            detail = f" (missing: {', '.join(missing)})" if missing else ""
            mark_failed(self.session, sync, f"{self.adapter.name} credentials are missing or invalid{detail}.")
            return sync

        self._status(sync, f"Importing accounts from {self.adapter.name}...")
        snapshot = self.client.fetch_snapshot(
            credentials, start_date=sync.window_start_date, end_date=sync.window_end_date
        )
        self._store_snapshot(sync, snapshot)
        provider_accounts = self._upsert_provider_accounts(snapshot)
        for w in self.adapter.data_warnings(snapshot):
            self.data_quality.append(w)
        self.session.commit()

        self._status(sync, "Checking account configuration...")
        collect_setup_stats(sync, provider_accounts=provider_accounts)
        unlinked = [pa for pa in provider_accounts if pa.account_provider is None]
        self.connection.pending_account_setup = bool(unlinked)
        self.session.commit()

        contexts = [self._context(pa) for pa in provider_accounts if pa.account_provider is not None]
        if contexts:
            self._status(sync, "Processing accounts...")
            mark_import_started(sync)
            self._run_phase(contexts, "balance", self._normalize_balance)
            self._run_phase(contexts, "transactions", self._import_transactions)
            self._run_phase(contexts, "investments", self._import_investments)
            self._run_phase(contexts, "liabilities", self._import_liabilities)

            self._status(sync, "Calculating balances...")
            for ctx in contexts:
                self._schedule(ctx, sync)

        self._collect_stats(sync, contexts, provider_accounts)
        sync.status = "completed"
        sync.status_text = None
        sync.completed_at = utcnow()
        self.connection.last_synced_at = sync.completed_at
        self.session.commit()
        return sync

    # --- phases ---

    def _run_phase(self, contexts: list[AccountContext], phase: str, fn: Callable[[AccountContext], None]) -> None:
        for ctx in contexts:
            try:
                with self.session.begin_nested():
                    fn(ctx)
            except Exception as e:
                log.exception("%s phase failed for account %s", phase, ctx.account.id)
                self.batch.add_error(
                    f"{type(e).__name__}: {e}",
                    category=f"{phase}_error",
                    record_id=ctx.provider_account.provider_account_id,
                )
        self.session.commit()

    def _normalize_balance(self, ctx: AccountContext) -> None:
        balance, cash_balance = self.adapter.normalize_balance(ctx)
        if balance is None:
            self.data_quality.append(
                {"type": "missing_balance", "account": ctx.provider_account.name, "message": "Provider sent no balance"}
            )
            return
        if ctx.account.accountable_type in LIABILITY_TYPES:
            cash_balance = None
        ctx.importer.update_balance(
            balance=balance,
            cash_balance=cash_balance,
            currency=ctx.provider_account.currency,
            source=self.adapter.provider,
        )

    def _import_transactions(self, ctx: AccountContext) -> None:
        self.batch.extend(self.adapter.import_transactions(ctx))
        auto_exclude_stale_pending(
            self.session, account=ctx.account, days=self.settings.sync.stale_pending_days, today=ctx.today
        )
        reconcile_pending_duplicates(self.session, account=ctx.account)

    def _import_investments(self, ctx: AccountContext) -> None:
        if ctx.account.accountable_type not in INVESTMENT_TYPES:
            return
        self.batch.extend(self.adapter.import_investments(ctx))
        HoldingMaterializer(
            self.session, ctx.account, strategy=self.adapter.holdings_strategy, today=ctx.today
        ).materialize_holdings()

    def _import_liabilities(self, ctx: AccountContext) -> None:
        if ctx.account.accountable_type not in LIABILITY_TYPES:
            return
        self.adapter.import_liabilities(ctx)

    def _schedule(self, ctx: AccountContext, sync: SyncRun) -> None:
        try:
            self.scheduler.schedule_account_sync(
                ctx.account.id,
                parent_sync_id=sync.id,
                window_start_date=sync.window_start_date,
                window_end_date=sync.window_end_date,
            )
        except Exception as e:
            log.warning("Failed to schedule balance sync for account %s: %s", ctx.account.id, e)
            self.data_quality.append(
                {"type": "balance_job", "account": ctx.account.name, "message": f"{type(e).__name__}: {e}"}
            )

    # --- snapshot / provider accounts ---

    def _store_snapshot(self, sync: SyncRun, snapshot: dict[str, Any]) -> None:
        self.session.add(ExternalPayloadSnapshot(sync_run_id=sync.id, kind="snapshot", payload_json=snapshot))
        self.connection.raw_payload = snapshot
        self.session.commit()

    def _upsert_provider_accounts(self, snapshot: dict[str, Any]) -> list[ProviderAccount]:
        existing = {
            pa.provider_account_id: pa
            for pa in self.session.query(ProviderAccount).filter(ProviderAccount.connection_id == self.connection.id).all()
        }
        out: list[ProviderAccount] = []
        for data in self.adapter.parse_accounts(snapshot):
            pid = (data.provider_account_id or "").strip()
            name = (data.name or "").strip()
            if not pid or not name:
                self.data_quality.append(
                    {"type": "account_skipped", "message": "Provider returned an account missing id or name; skipping."}
                )
                continue
            ccy = normalize_currency(data.currency)
            if data.currency and ccy is None:
                self.data_quality.append(
                    {"type": "invalid_currency", "account": name, "message": f"Unknown currency {data.currency!r}"}
                )
            pa = existing.get(pid)
            if pa is None:
                pa = ProviderAccount(connection_id=self.connection.id, provider_account_id=pid, name=name)
                self.session.add(pa)
                existing[pid] = pa
            pa.name = name
            pa.currency = ccy or pa.currency or "USD"
            pa.account_type = data.account_type
            pa.account_subtype = data.account_subtype
            pa.current_balance = data.current_balance
            pa.available_balance = data.available_balance
            pa.raw_payload = data.raw_payload
            pa.raw_transactions_payload = data.raw_transactions_payload
            pa.raw_holdings_payload = data.raw_holdings_payload
            pa.raw_liabilities_payload = data.raw_liabilities_payload
            out.append(pa)
        self.session.flush()
        return out

    def _context(self, pa: ProviderAccount) -> AccountContext:
        account = pa.account_provider.account
        now = self.now or utcnow()
        return AccountContext(
            session=self.session,
            provider_account=pa,
            account=account,
            importer=LedgerImportAdapter(self.session, account),
            settings=self.settings,
            store=self.store,
            today=now.date(),
            now=now,
        )

    # --- stats ---

    def _collect_stats(self, sync: SyncRun, contexts: list[AccountContext], provider_accounts: list[ProviderAccount]) -> None:
        account_ids = [ctx.account.id for ctx in contexts]
        source = self.adapter.provider
        collect_transaction_stats(self.session, sync, account_ids=account_ids, source=source)
        collect_trades_stats(self.session, sync, account_ids=account_ids, source=source)
        collect_holdings_stats(
            sync, holdings_count=sum(self.adapter.holdings_count(pa) for pa in provider_accounts), label="found"
        )
        for ctx in contexts:
            self.skipped_entries.extend(ctx.importer.skipped_entries)
        collect_skip_stats(sync, skipped_entries=self.skipped_entries)
        warnings = [d for d in self.data_quality if d.get("severity", "warning") == "warning"]
        collect_data_quality_stats(
            sync,
            warnings=len(warnings),
            notices=len(self.data_quality) - len(warnings),
            details=self.data_quality,
        )
        collect_health_stats(sync, errors=self.batch.errors, total_errors=self.batch.error_count)
        merge_sync_stats(sync, {"records_processed": self.batch.processed, "records_failed": self.batch.failed})

    def _status(self, sync: SyncRun, text: str) -> None:
        sync.status = "syncing"
        sync.status_text = text
        self.session.commit()
        log.debug("Sync %s: %s", sync.id, text)
