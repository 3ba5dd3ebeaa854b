from __future__ import annotations

from decimal import Decimal
from functools import partial
from typing import Any, Optional

from finledger.core.results import ImportValidationError, RecordResult, capture
from finledger.importers.adapters import AccountContext, ProviderAccountData, ProviderAdapter
from finledger.importers.ledger_import import resolve_security
from finledger.utils.money import finite_decimal

SOURCE = "snaptrade"

TRADE_TYPES = frozenset({"BUY", "SELL"})

_ACTIVITY = {
    "DIVIDEND": ("Dividend", None),
    "DIV": ("Dividend", None),
    "INTEREST": ("Interest", None),
    "CONTRIBUTION": ("Contribution", "investment_contribution"),
    "DEPOSIT": ("Contribution", "investment_contribution"),
    "WITHDRAWAL": ("Withdrawal", "funds_movement"),
    "FEE": ("Fee", None),
    "TRANSFER": ("Transfer", "funds_movement"),
}


def _symbol(raw: Any) -> tuple[Optional[str], Optional[str], Optional[str]]:
    """SnapTrade nests symbols (position.symbol.symbol.symbol); accept any depth."""
    node = raw
    description = None
    currency = None
    while isinstance(node, dict):
        description = node.get("description") or description
        cur = node.get("currency")
        if isinstance(cur, dict):
            currency = cur.get("code") or currency
        elif cur:
            currency = cur
        node = node.get("symbol")
    return (str(node).strip().upper() if node else None), description, currency


def _amount(raw: Any) -> tuple[Optional[Decimal], Optional[str]]:
    if isinstance(raw, dict):
        return finite_decimal(raw.get("amount")), raw.get("currency")
    return finite_decimal(raw), None


class SnapTradeAdapter(ProviderAdapter):
    """
    SnapTrade brokerage aggregation.

    Positions are authoritative for the whole holdings horizon, so later-dated holdings
    for a position are replaced when a fresh snapshot arrives. Activity amounts are
    positive when cash comes in and are flipped to the ledger convention.
    """

    provider = SOURCE
    display_name = "SnapTrade"
    required_credentials = ("user_id", "user_secret")
    holdings_strategy = "reverse"
    can_delete_holdings = True

    def parse_accounts(self, snapshot: dict[str, Any]) -> list[ProviderAccountData]:
        out: list[ProviderAccountData] = []
        for a in snapshot.get("accounts") or []:
            if not isinstance(a, dict):
                continue
            total, currency = _amount(((a.get("balance") or {}).get("total")))
            cash, _ = _amount(a.get("cash"))
            out.append(
                ProviderAccountData(
                    provider_account_id=str(a.get("id") or ""),
                    name=str(a.get("name") or a.get("number") or "").strip(),
                    currency=currency,
                    current_balance=total,
                    available_balance=cash,
                    account_type=a.get("raw_type") or "brokerage",
                    raw_payload={k: v for k, v in a.items() if k not in ("positions", "activities")},
                    raw_transactions_payload=list(a.get("activities") or []),
                    raw_holdings_payload=list(a.get("positions") or []),
                )
            )
        return out

    def normalize_balance(self, ctx: AccountContext) -> tuple[Optional[Decimal], Optional[Decimal]]:
        pa = ctx.provider_account
        if pa.current_balance is None:
            return None, None
        balance = Decimal(str(pa.current_balance))
        if pa.available_balance is not None:
            return balance, Decimal(str(pa.available_balance))
        positions_value = Decimal("0")
        for p in pa.raw_holdings_payload or []:
            units = finite_decimal(p.get("units")) or Decimal("0")
            price = finite_decimal(p.get("price")) or Decimal("0")
            positions_value += units * price
        return balance, balance - positions_value

    def import_transactions(self, ctx: AccountContext) -> list[RecordResult]:
        results: list[RecordResult] = []
        for act in ctx.provider_account.raw_transactions_payload or []:
            if not isinstance(act, dict) or str(act.get("type") or "").upper() in TRADE_TYPES:
                continue
            results.append(capture(ctx.session, act.get("id"), partial(self._import_activity, ctx, act)))
        return results

    def _import_activity(self, ctx: AccountContext, act: dict[str, Any]):
        kind = str(act.get("type") or "").upper()
        label, txn_kind = _ACTIVITY.get(kind, ("Other", None))
        amount, currency = _amount(act.get("amount"))
        if amount is None:
            raise ImportValidationError(f"Activity without amount: {act.get('amount')!r}", external_id=act.get("id"))
        ticker, _, _ = _symbol(act.get("symbol"))
        name = act.get("description") or (f"{label} {ticker}" if ticker else label)
        return ctx.importer.import_transaction(
            external_id=act.get("id"),
            amount=-amount,
            currency=currency or act.get("currency"),
            date=act.get("trade_date") or act.get("settlement_date"),
            name=name,
            source=SOURCE,
            kind=txn_kind,
            investment_activity_label=label,
            extra={"type": kind, "symbol": ticker},
        )

    def import_investments(self, ctx: AccountContext) -> list[RecordResult]:
        results: list[RecordResult] = []
        for act in ctx.provider_account.raw_transactions_payload or []:
            if isinstance(act, dict) and str(act.get("type") or "").upper() in TRADE_TYPES:
                results.append(capture(ctx.session, act.get("id"), partial(self._import_trade, ctx, act)))
        for p in ctx.provider_account.raw_holdings_payload or []:
            if not isinstance(p, dict):
                continue
            ticker, _, _ = _symbol(p.get("symbol"))
            results.append(capture(ctx.session, ticker, partial(self._import_position, ctx, p)))
        return results

    def _import_trade(self, ctx: AccountContext, act: dict[str, Any]):
        ticker, description, sym_currency = _symbol(act.get("symbol"))
        if not ticker:
            raise ImportValidationError("Trade without symbol", external_id=act.get("id"))
        units = finite_decimal(act.get("units"))
        price = finite_decimal(act.get("price"))
        if units is None or price is None:
            raise ImportValidationError("Trade without units or price", external_id=act.get("id"))
        qty = abs(units) if str(act.get("type")).upper() == "BUY" else -abs(units)
        security = resolve_security(ctx.session, ticker=ticker, name=description, currency=sym_currency)
        _, currency = _amount(act.get("amount"))
        return ctx.importer.import_trade(
            security=security,
            quantity=qty,
            price=price,
            amount=qty * price,
            currency=currency or act.get("currency") or sym_currency,
            date=act.get("trade_date") or act.get("settlement_date"),
            external_id=act.get("id"),
            source=SOURCE,
        )

    def _import_position(self, ctx: AccountContext, p: dict[str, Any]):
        ticker, description, currency = _symbol(p.get("symbol"))
        if not ticker:
            raise ImportValidationError("Position without symbol")
        units = finite_decimal(p.get("units"))
        price = finite_decimal(p.get("price"))
        if units is None or price is None:
            raise ImportValidationError(f"Position {ticker} without units or price")
        security = resolve_security(ctx.session, ticker=ticker, name=description, currency=currency)
        return ctx.importer.import_holding(
            security=security,
            quantity=units,
            amount=units * price,
            currency=currency or ctx.provider_account.currency,
            date=ctx.today,
            price=price,
            cost_basis=finite_decimal(p.get("average_purchase_price")),
            external_id=f"snaptrade_{ctx.provider_account.provider_account_id}_{ticker}_{ctx.today.isoformat()}",
            account_provider_id=ctx.account_provider_id,
            source=SOURCE,
            delete_future_holdings=self.can_delete_holdings,
        )
