from __future__ import annotations

import hashlib
import logging
from decimal import Decimal
from functools import partial
from typing import Any, Optional

from finledger.core.overpayment import OverpaymentAnalyzer, normalize_liability_balance
from finledger.core.results import ImportValidationError, RecordResult, capture
from finledger.db.models import LIABILITY_TYPES
from finledger.importers.adapters import AccountContext, ProviderAccountData, ProviderAdapter
from finledger.importers.ledger_import import resolve_security
from finledger.utils.money import finite_decimal
from finledger.utils.time import parse_date


log = logging.getLogger(__name__)

SOURCE = "simplefin"

_TYPE_HINTS = (
    ("credit card", "CreditCard"),
    ("visa", "CreditCard"),
    ("mastercard", "CreditCard"),
    ("amex", "CreditCard"),
    ("mortgage", "Loan"),
    ("loan", "Loan"),
    ("brokerage", "Investment"),
    ("401k", "Investment"),
    ("ira", "Investment"),
    ("checking", "Depository"),
    ("savings", "Depository"),
)


def infer_account_type(name: str, has_holdings: bool = False) -> Optional[str]:
    n = f" {name.lower()} "
    for hint, kind in _TYPE_HINTS:
        if f" {hint} " in n or (len(hint) > 4 and hint in n):
            return kind
    return "Investment" if has_holdings else None


def _merchant_id(payee: str) -> str:
    norm = " ".join(payee.lower().split())
    return "simplefin_" + hashlib.md5(norm.encode("utf-8")).hexdigest()


class SimplefinAdapter(ProviderAdapter):
    """
    SimpleFIN Bridge: bank aggregation over a single access URL.

    Amounts arrive in banking convention (outflow negative) and are flipped. Liability
    balances carry no reliable sign, so the overpayment analyzer decides.
    """

    provider = SOURCE
    display_name = "SimpleFIN"
    required_credentials = ("access_url",)
    holdings_strategy = "reverse"
    can_delete_holdings = False

    def parse_accounts(self, snapshot: dict[str, Any]) -> list[ProviderAccountData]:
        out: list[ProviderAccountData] = []
        for a in snapshot.get("accounts") or []:
            if not isinstance(a, dict):
                continue
            holdings = a.get("holdings") or []
            name = str(a.get("name") or "").strip()
            out.append(
                ProviderAccountData(
                    provider_account_id=str(a.get("id") or ""),
                    name=name,
                    currency=a.get("currency"),
                    current_balance=finite_decimal(a.get("balance")),
                    available_balance=finite_decimal(a.get("available-balance")),
                    account_type=infer_account_type(name, bool(holdings)),
                    raw_payload={k: v for k, v in a.items() if k not in ("transactions", "holdings")},
                    raw_transactions_payload=list(a.get("transactions") or []),
                    raw_holdings_payload=list(holdings),
                )
            )
        return out

    def data_warnings(self, snapshot: dict[str, Any]) -> list[dict[str, Any]]:
        return [{"type": "provider_error", "message": str(e)} for e in (snapshot.get("errors") or [])]

    def normalize_balance(self, ctx: AccountContext) -> tuple[Optional[Decimal], Optional[Decimal]]:
        pa = ctx.provider_account
        observed = pa.current_balance if pa.current_balance is not None else pa.available_balance
        if observed is None:
            return None, None
        observed = Decimal(str(observed))
        if ctx.account.accountable_type in LIABILITY_TYPES:
            result = OverpaymentAnalyzer(
                ctx.session,
                pa,
                observed_balance=observed,
                now=ctx.now,
                settings=ctx.settings.overpayment,
                store=ctx.store,
            ).call()
            balance = normalize_liability_balance(observed, pa.available_balance, result.classification)
            log.debug("SimpleFIN liability %s: %s -> %s (%s)", pa.id, observed, balance, result.reason)
            return balance, None
        holdings_value = sum(
            (finite_decimal(h.get("market_value")) or Decimal("0"))
            for h in (pa.raw_holdings_payload or [])
            if isinstance(h, dict)
        )
        cash = observed - holdings_value if holdings_value else observed
        return observed, cash

    def import_transactions(self, ctx: AccountContext) -> list[RecordResult]:
        results: list[RecordResult] = []
        for tx in ctx.provider_account.raw_transactions_payload or []:
            if not isinstance(tx, dict):
                continue
            pending = bool(tx.get("pending"))
            if pending and not ctx.settings.sync.include_pending:
                continue
            results.append(capture(ctx.session, str(tx.get("id") or ""), partial(self._import_transaction, ctx, tx)))
        return results

    def _import_transaction(self, ctx: AccountContext, tx: dict[str, Any]):
        tx_id = str(tx.get("id") or "").strip()
        if not tx_id:
            raise ImportValidationError("SimpleFIN transaction without id")
        amount = finite_decimal(tx.get("amount"))
        if amount is None:
            raise ImportValidationError(f"Invalid amount {tx.get('amount')!r}", external_id=tx_id)
        date = parse_date(tx.get("posted")) or parse_date(tx.get("transacted_at"))
        payee = str(tx.get("payee") or "").strip()
        description = str(tx.get("description") or "").strip()
        merchant = None
        if payee:
            merchant = ctx.importer.find_or_create_merchant(
                provider_merchant_id=_merchant_id(payee), name=payee, source=SOURCE
            )
        return ctx.importer.import_transaction(
            external_id=f"simplefin_{tx_id}",
            amount=-amount,
            currency=ctx.provider_account.currency,
            date=date,
            name=payee or description,
            source=SOURCE,
            merchant=merchant,
            notes=(str(tx.get("memo")).strip() or None) if tx.get("memo") else None,
            pending=bool(tx.get("pending")),
            extra={
                "payee": payee or None,
                "description": description or None,
                "memo": tx.get("memo"),
                "posted": tx.get("posted"),
                "transacted_at": tx.get("transacted_at"),
            },
        )

    def import_investments(self, ctx: AccountContext) -> list[RecordResult]:
        results: list[RecordResult] = []
        for h in ctx.provider_account.raw_holdings_payload or []:
            if not isinstance(h, dict):
                continue
            results.append(capture(ctx.session, str(h.get("id") or ""), partial(self._import_holding, ctx, h)))
        return results

    def _import_holding(self, ctx: AccountContext, h: dict[str, Any]):
        hid = str(h.get("id") or "").strip()
        symbol = str(h.get("symbol") or "").strip()
        if not symbol:
            raise ImportValidationError("SimpleFIN holding without symbol", external_id=hid or None)
        qty = finite_decimal(h.get("shares"))
        market_value = finite_decimal(h.get("market_value"))
        if qty is None or market_value is None:
            raise ImportValidationError(f"Holding {symbol} is missing shares or market value", external_id=hid or None)
        total_cost = finite_decimal(h.get("cost_basis"))
        per_unit = (total_cost / qty) if (total_cost is not None and qty) else None
        price = (market_value / qty) if qty else finite_decimal(h.get("purchase_price"))
        security = resolve_security(
            ctx.session, ticker=symbol, name=h.get("description"), currency=h.get("currency")
        )
        date = parse_date(ctx.provider_account.raw_payload.get("balance-date") if ctx.provider_account.raw_payload else None)
        return ctx.importer.import_holding(
            security=security,
            quantity=qty,
            amount=market_value,
            currency=h.get("currency") or ctx.provider_account.currency,
            date=date or ctx.today,
            price=price,
            cost_basis=per_unit,
            external_id=f"simplefin_{hid}" if hid else None,
            account_provider_id=ctx.account_provider_id,
            source=SOURCE,
        )
