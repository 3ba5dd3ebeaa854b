from __future__ import annotations

import logging
import re
from collections import defaultdict
from decimal import Decimal
from functools import partial
from typing import Any, Optional

from finledger.core.results import ImportValidationError, RecordResult, capture
from finledger.db.models import Category, Entry
from finledger.importers.adapters import AccountContext, ProviderAccountData, ProviderAdapter
from finledger.importers.ledger_import import resolve_security
from finledger.utils.money import finite_decimal


log = logging.getLogger(__name__)

SOURCE = "plaid"

# investment transaction type/subtype -> ledger activity label
_ACTIVITY_LABELS = {
    "dividend": "Dividend",
    "interest": "Interest",
    "contribution": "Contribution",
    "deposit": "Contribution",
    "withdrawal": "Withdrawal",
    "fee": "Fee",
    "transfer": "Transfer",
}

_LOAN_TERM = re.compile(r"(\d+)\s*(year|yr|month|mo)", re.IGNORECASE)


def _term_months(value: Any) -> Optional[int]:
    if value is None:
        return None
    m = _LOAN_TERM.search(str(value))
    if not m:
        return None
    n = int(m.group(1))
    return n * 12 if m.group(2).lower().startswith("y") else n


def _purchase_apr(aprs: list[dict[str, Any]]) -> Optional[Decimal]:
    for apr in aprs or []:
        if (apr or {}).get("apr_type") == "purchase_apr":
            return finite_decimal(apr.get("apr_percentage"))
    return finite_decimal((aprs or [{}])[0].get("apr_percentage")) if aprs else None


class PlaidAdapter(ProviderAdapter):
    """
    Plaid: bank transactions (added/modified/removed), investments and liabilities.

    Plaid amounts already use the ledger convention (positive = money out).
    """

    provider = SOURCE
    display_name = "Plaid"
    required_credentials = ("access_token",)
    holdings_strategy = "reverse"
    can_delete_holdings = False

    def parse_accounts(self, snapshot: dict[str, Any]) -> list[ProviderAccountData]:
        txns = snapshot.get("transactions") or {}
        by_account: dict[str, dict[str, list]] = defaultdict(lambda: {"added": [], "modified": [], "removed": []})
        for key in ("added", "modified", "removed"):
            for t in txns.get(key) or []:
                if isinstance(t, dict) and t.get("account_id"):
                    by_account[str(t["account_id"])][key].append(t)

        inv = snapshot.get("investments") or {}
        securities = {str(s.get("security_id")): s for s in inv.get("securities") or [] if isinstance(s, dict)}
        holdings_by_account: dict[str, list] = defaultdict(list)
        for h in inv.get("holdings") or []:
            if isinstance(h, dict) and h.get("account_id"):
                holdings_by_account[str(h["account_id"])].append(h)
        inv_txns_by_account: dict[str, list] = defaultdict(list)
        for t in inv.get("transactions") or []:
            if isinstance(t, dict) and t.get("account_id"):
                inv_txns_by_account[str(t["account_id"])].append(t)

        liabilities: dict[str, dict[str, Any]] = {}
        for kind, rows in (snapshot.get("liabilities") or {}).items():
            for row in rows or []:
                if isinstance(row, dict) and row.get("account_id"):
                    liabilities[str(row["account_id"])] = {kind: row}

        out: list[ProviderAccountData] = []
        for a in snapshot.get("accounts") or []:
            if not isinstance(a, dict):
                continue
            aid = str(a.get("account_id") or "")
            balances = a.get("balances") or {}
            holdings = holdings_by_account.get(aid) or []
            inv_txns = inv_txns_by_account.get(aid) or []
            sec_ids = {str(h.get("security_id")) for h in holdings} | {str(t.get("security_id")) for t in inv_txns}
            out.append(
                ProviderAccountData(
                    provider_account_id=aid,
                    name=str(a.get("name") or a.get("official_name") or "").strip(),
                    currency=balances.get("iso_currency_code") or balances.get("unofficial_currency_code"),
                    current_balance=finite_decimal(balances.get("current")),
                    available_balance=finite_decimal(balances.get("available")),
                    account_type=a.get("type"),
                    account_subtype=a.get("subtype"),
                    raw_payload=a,
                    raw_transactions_payload=dict(by_account.get(aid) or {"added": [], "modified": [], "removed": []}),
                    raw_holdings_payload=(
                        {
                            "holdings": holdings,
                            "transactions": inv_txns,
                            "securities": [securities[s] for s in sorted(sec_ids) if s in securities],
                        }
                        if (holdings or inv_txns)
                        else None
                    ),
                    raw_liabilities_payload=liabilities.get(aid),
                )
            )
        return out

    def normalize_balance(self, ctx: AccountContext) -> tuple[Optional[Decimal], Optional[Decimal]]:
        pa = ctx.provider_account
        balance = pa.current_balance if pa.current_balance is not None else pa.available_balance
        if balance is None:
            return None, None
        cash = None
        if ctx.account.accountable_type == "Depository":
            cash = pa.available_balance if pa.available_balance is not None else balance
        elif ctx.account.accountable_type == "Investment":
            raw = pa.raw_holdings_payload or {}
            securities = {str(s.get("security_id")): s for s in raw.get("securities") or []}
            cash = sum(
                (
                    finite_decimal(h.get("institution_value")) or Decimal("0")
                    for h in raw.get("holdings") or []
                    if (securities.get(str(h.get("security_id"))) or {}).get("is_cash_equivalent")
                ),
                Decimal("0"),
            )
        return Decimal(str(balance)), cash

    # --- transactions ---

    def import_transactions(self, ctx: AccountContext) -> list[RecordResult]:
        raw = ctx.provider_account.raw_transactions_payload or {}
        results: list[RecordResult] = []
        for tx in list(raw.get("added") or []) + list(raw.get("modified") or []):
            if tx.get("pending") and not ctx.settings.sync.include_pending:
                continue
            results.append(
                capture(ctx.session, tx.get("transaction_id"), partial(self._import_transaction, ctx, tx))
            )
        for tx in raw.get("removed") or []:
            results.append(capture(ctx.session, tx.get("transaction_id"), partial(self._remove_transaction, ctx, tx)))
        return results

    def _import_transaction(self, ctx: AccountContext, tx: dict[str, Any]):
        merchant = None
        if tx.get("merchant_entity_id") and (tx.get("merchant_name") or tx.get("name")):
            merchant = ctx.importer.find_or_create_merchant(
                provider_merchant_id=tx["merchant_entity_id"],
                name=tx.get("merchant_name") or tx.get("name"),
                source=SOURCE,
                website_url=tx.get("website"),
                logo_url=tx.get("logo_url"),
            )
        pfc = tx.get("personal_finance_category") or {}
        return ctx.importer.import_transaction(
            external_id=tx.get("transaction_id"),
            amount=tx.get("amount"),
            currency=tx.get("iso_currency_code") or tx.get("unofficial_currency_code"),
            date=tx.get("date"),
            name=tx.get("merchant_name") or tx.get("name"),
            source=SOURCE,
            merchant=merchant,
            category_id=self._category_id(ctx, pfc.get("primary")),
            pending_transaction_id=tx.get("pending_transaction_id"),
            pending=bool(tx.get("pending")),
            extra={
                "payment_channel": tx.get("payment_channel"),
                "personal_finance_category": pfc or None,
                "authorized_date": tx.get("authorized_date"),
            },
        )

    def _remove_transaction(self, ctx: AccountContext, tx: dict[str, Any]) -> Optional[int]:
        tid = str(tx.get("transaction_id") or "").strip()
        if not tid:
            raise ImportValidationError("Removed transaction without transaction_id")
        entry = (
            ctx.session.query(Entry)
            .filter(Entry.account_id == ctx.account.id, Entry.external_id == tid, Entry.source == SOURCE)
            .one_or_none()
        )
        if entry is None:
            return None
        if entry.locked_attributes:
            # The user touched it; keep it but hide it.
            entry.excluded = True
            log.info("Plaid removed transaction %s; keeping user-edited entry %s as excluded", tid, entry.id)
            return entry.id
        ctx.session.delete(entry)
        ctx.session.flush()
        return entry.id

    @staticmethod
    def _category_id(ctx: AccountContext, primary: Optional[str]) -> Optional[int]:
        if not primary:
            return None
        name = str(primary).replace("_", " ").title()
        row = (
            ctx.session.query(Category.id)
            .filter(Category.family_id == ctx.account.family_id, Category.name == name)
            .one_or_none()
        )
        return row[0] if row is not None else None

    # --- investments ---

    def import_investments(self, ctx: AccountContext) -> list[RecordResult]:
        raw = ctx.provider_account.raw_holdings_payload or {}
        securities = {str(s.get("security_id")): s for s in raw.get("securities") or [] if isinstance(s, dict)}
        results: list[RecordResult] = []
        for h in raw.get("holdings") or []:
            results.append(
                capture(ctx.session, h.get("security_id"), partial(self._import_holding, ctx, h, securities))
            )
        for t in raw.get("transactions") or []:
            results.append(
                capture(
                    ctx.session,
                    t.get("investment_transaction_id"),
                    partial(self._import_investment_transaction, ctx, t, securities),
                )
            )
        return results

    def _security(self, ctx: AccountContext, security_id: Any, securities: dict[str, dict[str, Any]]):
        sec = securities.get(str(security_id))
        if sec is None:
            raise ImportValidationError(f"Unknown Plaid security {security_id!r}")
        ticker = sec.get("ticker_symbol")
        if not ticker:
            raise ImportValidationError(f"Plaid security {security_id} has no ticker")
        kind = "cash" if sec.get("is_cash_equivalent") else ("crypto" if sec.get("type") == "cryptocurrency" else "equity")
        return resolve_security(ctx.session, ticker=ticker, name=sec.get("name"), currency=sec.get("iso_currency_code"), kind=kind)

    def _import_holding(self, ctx: AccountContext, h: dict[str, Any], securities: dict[str, dict[str, Any]]):
        security = self._security(ctx, h.get("security_id"), securities)
        qty = finite_decimal(h.get("quantity"))
        price = finite_decimal(h.get("institution_price"))
        amount = finite_decimal(h.get("institution_value"))
        if amount is None and qty is not None and price is not None:
            amount = qty * price
        total_cost = finite_decimal(h.get("cost_basis"))
        return ctx.importer.import_holding(
            security=security,
            quantity=qty,
            amount=amount,
            currency=h.get("iso_currency_code"),
            date=h.get("institution_price_as_of") or ctx.today,
            price=price,
            cost_basis=(total_cost / qty) if (total_cost is not None and qty) else None,
            account_provider_id=ctx.account_provider_id,
            source=SOURCE,
        )

    def _import_investment_transaction(
        self, ctx: AccountContext, t: dict[str, Any], securities: dict[str, dict[str, Any]]
    ):
        kind = str(t.get("type") or "").lower()
        if kind in ("buy", "sell"):
            security = self._security(ctx, t.get("security_id"), securities)
            qty = finite_decimal(t.get("quantity"))
            if qty is None:
                raise ImportValidationError("Trade without quantity", external_id=t.get("investment_transaction_id"))
            qty = abs(qty) if kind == "buy" else -abs(qty)
            return ctx.importer.import_trade(
                security=security,
                quantity=qty,
                price=t.get("price"),
                amount=t.get("amount"),
                currency=t.get("iso_currency_code"),
                date=t.get("date"),
                name=t.get("name"),
                external_id=t.get("investment_transaction_id"),
                source=SOURCE,
            )
        subtype = str(t.get("subtype") or "").lower()
        label = _ACTIVITY_LABELS.get(subtype) or _ACTIVITY_LABELS.get(kind) or "Other"
        return ctx.importer.import_transaction(
            external_id=t.get("investment_transaction_id"),
            amount=t.get("amount"),
            currency=t.get("iso_currency_code"),
            date=t.get("date"),
            name=t.get("name"),
            source=SOURCE,
            kind="investment_contribution" if label == "Contribution" else None,
            investment_activity_label=label,
            extra={"type": kind, "subtype": subtype or None},
        )

    # --- liabilities ---

    def import_liabilities(self, ctx: AccountContext) -> bool:
        raw = ctx.provider_account.raw_liabilities_payload or {}
        attrs: dict[str, Any] = {}
        if "credit" in raw:
            c = raw["credit"] or {}
            attrs = {
                "minimum_payment": finite_decimal(c.get("minimum_payment_amount")),
                "apr": _purchase_apr(c.get("aprs") or []),
                "available_credit": ctx.provider_account.available_balance,
            }
        elif "mortgage" in raw:
            m = raw["mortgage"] or {}
            rate = m.get("interest_rate") or {}
            attrs = {
                "interest_rate": finite_decimal(rate.get("percentage")),
                "rate_type": rate.get("type"),
                "term_months": _term_months(m.get("loan_term")),
                "initial_balance": finite_decimal(m.get("origination_principal_amount")),
                "minimum_payment": finite_decimal(m.get("next_monthly_payment")),
            }
        elif "student" in raw:
            s = raw["student"] or {}
            attrs = {
                "interest_rate": finite_decimal(s.get("interest_rate_percentage")),
                "rate_type": "fixed",
                "initial_balance": finite_decimal(s.get("origination_principal_amount")),
                "minimum_payment": finite_decimal(s.get("minimum_payment_amount")),
            }
        if not attrs:
            return False
        return ctx.importer.update_accountable_attributes(attributes=attrs, source=SOURCE)
