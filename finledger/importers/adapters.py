from __future__ import annotations

import datetime as dt
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from sqlalchemy.orm import Session

from finledger.config import AppSettings
from finledger.core.kv_store import KeyValueStore
from finledger.core.results import RecordResult
from finledger.db.models import Account, ProviderAccount
from finledger.importers.ledger_import import LedgerImportAdapter


class ProviderError(Exception):
    pass


class CredentialsError(ProviderError):
    pass


class RateLimitedError(ProviderError):
    pass


class ProviderDataError(ProviderError):
    pass


class ProviderClient(ABC):
    """Boundary to a provider's HTTP API; returns one nested snapshot per call."""

    @abstractmethod
    def fetch_snapshot(
        self,
        credentials: dict[str, str],
        *,
        start_date: Optional[dt.date],
        end_date: Optional[dt.date],
    ) -> dict[str, Any]:
        raise NotImplementedError


class ReplayClient(ProviderClient):
    """
    Serve a previously captured snapshot (from ExternalPayloadSnapshot or a JSON file).

    Used to re-run imports offline and in tests.
    """

    def __init__(self, payload: dict[str, Any]):
        self.payload = payload
        self.calls: list[tuple[Optional[dt.date], Optional[dt.date]]] = []

    @classmethod
    def from_file(cls, path: Path) -> "ReplayClient":
        return cls(json.loads(Path(path).read_text(encoding="utf-8")))

    def fetch_snapshot(
        self,
        credentials: dict[str, str],
        *,
        start_date: Optional[dt.date],
        end_date: Optional[dt.date],
    ) -> dict[str, Any]:
        self.calls.append((start_date, end_date))
        return self.payload


@dataclass(frozen=True)
class ProviderAccountData:
    provider_account_id: str
    name: str
    currency: Optional[str]
    current_balance: Optional[Decimal]
    available_balance: Optional[Decimal] = None
    account_type: Optional[str] = None
    account_subtype: Optional[str] = None
    raw_payload: Optional[dict[str, Any]] = None
    raw_transactions_payload: Any = None
    raw_holdings_payload: Any = None
    raw_liabilities_payload: Any = None


@dataclass
class AccountContext:
    session: Session
    provider_account: ProviderAccount
    account: Account
    importer: LedgerImportAdapter
    settings: AppSettings
    store: Optional[KeyValueStore] = None
    today: dt.date = field(default_factory=dt.date.today)
    now: Optional[dt.datetime] = None

    @property
    def account_provider_id(self) -> Optional[int]:
        ap = self.provider_account.account_provider
        return ap.id if ap is not None else None


class ProviderAdapter(ABC):
    """
    One provider variant: how its snapshot maps onto accounts, entries and holdings.

    The shared ordering (credentials, raw snapshot, balances, transactions, holdings,
    liabilities, balance jobs, stats) lives in ProviderSyncer.
    """

    provider: str = ""
    display_name: str = ""
    required_credentials: tuple[str, ...] = ()
    holdings_strategy: str = "reverse"
    can_delete_holdings: bool = False

    @abstractmethod
    def parse_accounts(self, snapshot: dict[str, Any]) -> list[ProviderAccountData]:
        raise NotImplementedError

    def normalize_balance(self, ctx: AccountContext) -> tuple[Optional[Decimal], Optional[Decimal]]:
        pa = ctx.provider_account
        balance = pa.current_balance if pa.current_balance is not None else pa.available_balance
        return balance, None

    @abstractmethod
    def import_transactions(self, ctx: AccountContext) -> list[RecordResult]:
        raise NotImplementedError

    def import_investments(self, ctx: AccountContext) -> list[RecordResult]:
        return []

    def import_liabilities(self, ctx: AccountContext) -> bool:
        return False

    def holdings_count(self, provider_account: ProviderAccount) -> int:
        raw = provider_account.raw_holdings_payload
        if isinstance(raw, list):
            return len(raw)
        if isinstance(raw, dict):
            return len(raw.get("holdings") or raw.get("positions") or [])
        return 0

    def data_warnings(self, snapshot: dict[str, Any]) -> list[dict[str, Any]]:
        return []

    @property
    def name(self) -> str:
        return self.display_name or self.provider
