from __future__ import annotations

import datetime as dt
import json
import os
from typing import Any, Optional

from plaid import ApiClient
from plaid.api import plaid_api
from plaid.configuration import Configuration
from plaid.exceptions import ApiException
from plaid.model.accounts_get_request import AccountsGetRequest
from plaid.model.investments_holdings_get_request import InvestmentsHoldingsGetRequest
from plaid.model.investments_transactions_get_request import InvestmentsTransactionsGetRequest
from plaid.model.investments_transactions_get_request_options import InvestmentsTransactionsGetRequestOptions
from plaid.model.liabilities_get_request import LiabilitiesGetRequest
from plaid.model.transactions_sync_request import TransactionsSyncRequest

from finledger.db.models import ProviderConnection
from finledger.importers.adapters import CredentialsError, ProviderClient, ProviderError, RateLimitedError

_HOSTS = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}

# Products an item may simply not have; their absence is not a sync failure.
_OPTIONAL_PRODUCT_ERRORS = frozenset({"PRODUCTS_NOT_SUPPORTED", "NO_INVESTMENT_ACCOUNTS", "NO_LIABILITY_ACCOUNTS"})


def _require_env(name: str) -> str:
    v = (os.environ.get(name) or "").strip()
    if not v:
        raise ProviderError(f"Missing required env var: {name}")
    return v


def _plain(resp: Any) -> Any:
    """Plaid models -> JSON-safe dicts (dates become ISO strings)."""
    data = resp.to_dict() if hasattr(resp, "to_dict") else resp
    return json.loads(json.dumps(data, default=str))


def _error_code(exc: ApiException) -> str:
    try:
        body = json.loads(exc.body or "{}")
    except (TypeError, ValueError):
        return ""
    return str(body.get("error_code") or "").strip().upper()


def _translate(exc: ApiException) -> ProviderError:
    code = _error_code(exc)
    if code in {"ITEM_LOGIN_REQUIRED", "INVALID_ACCESS_TOKEN"}:
        return CredentialsError(f"Plaid credentials rejected ({code}).")
    if exc.status == 429 or code == "RATE_LIMIT_EXCEEDED":
        return RateLimitedError(f"Plaid rate limit ({code or exc.status}).")
    return ProviderError(f"Plaid API error {exc.status}: {code or exc.reason}")


def make_plaid_api() -> plaid_api.PlaidApi:
    env = (os.environ.get("PLAID_ENV") or "production").strip().lower()
    if env not in _HOSTS:
        env = "production"
    configuration = Configuration(
        host=_HOSTS[env],
        api_key={
            "clientId": _require_env("PLAID_CLIENT_ID"),
            "secret": _require_env("PLAID_SECRET"),
        },
    )
    return plaid_api.PlaidApi(ApiClient(configuration))


class PlaidClient(ProviderClient):
    """
    Assemble one snapshot per item: accounts, the full /transactions/sync delta stream,
    investments (holdings + transactions in the window) and liabilities.
    """

    def __init__(self, api: Optional[plaid_api.PlaidApi] = None, *, page_size: int = 500):
        self._api = api
        self.page_size = page_size

    @property
    def api(self) -> plaid_api.PlaidApi:
        if self._api is None:
            self._api = make_plaid_api()
        return self._api

    def fetch_snapshot(
        self,
        credentials: dict[str, str],
        *,
        start_date: Optional[dt.date],
        end_date: Optional[dt.date],
    ) -> dict[str, Any]:
        token = credentials["access_token"]
        try:
            accounts = _plain(self.api.accounts_get(AccountsGetRequest(access_token=token)))
            snapshot: dict[str, Any] = {
                "accounts": accounts.get("accounts") or [],
                "transactions": self._transactions(token),
            }
        except ApiException as e:
            raise _translate(e) from e
        snapshot["investments"] = self._optional(lambda: self._investments(token, start_date, end_date))
        snapshot["liabilities"] = self._optional(
            lambda: _plain(self.api.liabilities_get(LiabilitiesGetRequest(access_token=token))).get("liabilities")
        )
        return snapshot

    def _optional(self, fn) -> Optional[dict[str, Any]]:
        try:
            return fn()
        except ApiException as e:
            if _error_code(e) in _OPTIONAL_PRODUCT_ERRORS:
                return None
            raise _translate(e) from e

    def _transactions(self, token: str) -> dict[str, Any]:
        out: dict[str, Any] = {"added": [], "modified": [], "removed": []}
        cursor = ""
        has_more = True
        while has_more:
            resp = _plain(
                self.api.transactions_sync(TransactionsSyncRequest(access_token=token, cursor=cursor, count=self.page_size))
            )
            for key in ("added", "modified", "removed"):
                out[key].extend(resp.get(key) or [])
            cursor = str(resp.get("next_cursor") or "")
            has_more = bool(resp.get("has_more")) and bool(cursor)
        out["next_cursor"] = cursor
        return out

    def _investments(self, token: str, start: Optional[dt.date], end: Optional[dt.date]) -> dict[str, Any]:
        holdings = _plain(self.api.investments_holdings_get(InvestmentsHoldingsGetRequest(access_token=token)))
        end = end or dt.date.today()
        start = start or (end - dt.timedelta(days=90))
        txns: list[dict[str, Any]] = []
        securities = {s.get("security_id"): s for s in holdings.get("securities") or []}
        offset = 0
        while True:
            resp = _plain(
                self.api.investments_transactions_get(
                    InvestmentsTransactionsGetRequest(
                        access_token=token,
                        start_date=start,
                        end_date=end,
                        options=InvestmentsTransactionsGetRequestOptions(count=self.page_size, offset=offset),
                    )
                )
            )
            page = resp.get("investment_transactions") or []
            txns.extend(page)
            for s in resp.get("securities") or []:
                securities.setdefault(s.get("security_id"), s)
            offset += len(page)
            if not page or offset >= int(resp.get("total_investment_transactions") or 0):
                break
        return {
            "holdings": holdings.get("holdings") or [],
            "securities": list(securities.values()),
            "transactions": txns,
        }


def plaid_client_factory(connection: ProviderConnection) -> PlaidClient:
    return PlaidClient()
