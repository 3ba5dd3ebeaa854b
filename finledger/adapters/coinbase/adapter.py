from __future__ import annotations

from decimal import Decimal
from functools import partial
from typing import Any, Optional

from finledger.core.currency import normalize_currency
from finledger.core.results import ImportValidationError, RecordResult, capture
from finledger.importers.adapters import AccountContext, ProviderAccountData, ProviderAdapter
from finledger.importers.ledger_import import resolve_security
from finledger.utils.money import finite_decimal

SOURCE = "coinbase"

TRADE_TYPES = frozenset({"buy", "sell"})
TRANSFER_TYPES = frozenset({"send", "receive", "fiat_deposit", "fiat_withdrawal"})


def _money(raw: Any) -> tuple[Optional[Decimal], Optional[str]]:
    if not isinstance(raw, dict):
        return None, None
    return finite_decimal(raw.get("amount")), raw.get("currency")


def _code(raw: Any) -> Optional[str]:
    if isinstance(raw, dict):
        raw = raw.get("code")
    s = str(raw or "").strip().upper()
    return s or None


def crypto_ticker(code: str) -> str:
    return f"CRYPTO:{code.upper()}"


class CoinbaseAdapter(ProviderAdapter):
    """
    Coinbase wallets. Each wallet is one provider account; a crypto wallet's balance is
    a single holding valued in the native (fiat) currency.
    """

    provider = SOURCE
    display_name = "Coinbase"
    required_credentials = ("api_key", "api_secret")
    holdings_strategy = "reverse"
    can_delete_holdings = True

    def parse_accounts(self, snapshot: dict[str, Any]) -> list[ProviderAccountData]:
        out: list[ProviderAccountData] = []
        for w in snapshot.get("accounts") or []:
            if not isinstance(w, dict):
                continue
            code = _code(w.get("currency"))
            qty, _ = _money(w.get("balance"))
            native, native_ccy = _money(w.get("native_balance"))
            is_fiat = normalize_currency(code) is not None
            out.append(
                ProviderAccountData(
                    provider_account_id=str(w.get("id") or ""),
                    name=str(w.get("name") or (f"{code} Wallet" if code else "")).strip(),
                    currency=native_ccy or (code if is_fiat else None),
                    current_balance=native if native is not None else (qty if is_fiat else None),
                    available_balance=None,
                    account_type="fiat" if is_fiat else "crypto",
                    raw_payload={k: v for k, v in w.items() if k != "transactions"},
                    raw_transactions_payload=list(w.get("transactions") or []),
                    raw_holdings_payload=(
                        None
                        if is_fiat or qty is None
                        else [{"code": code, "quantity": str(qty), "native_amount": str(native) if native is not None else None, "native_currency": native_ccy}]
                    ),
                )
            )
        return out

    def normalize_balance(self, ctx: AccountContext) -> tuple[Optional[Decimal], Optional[Decimal]]:
        pa = ctx.provider_account
        if pa.current_balance is None:
            return None, None
        balance = Decimal(str(pa.current_balance))
        cash = balance if pa.account_type == "fiat" else Decimal("0")
        return balance, cash

    def import_transactions(self, ctx: AccountContext) -> list[RecordResult]:
        results: list[RecordResult] = []
        for tx in ctx.provider_account.raw_transactions_payload or []:
            if isinstance(tx, dict) and str(tx.get("type") or "").lower() not in TRADE_TYPES:
                results.append(capture(ctx.session, tx.get("id"), partial(self._import_transfer, ctx, tx)))
        return results

    def _import_transfer(self, ctx: AccountContext, tx: dict[str, Any]):
        kind = str(tx.get("type") or "").lower()
        native, native_ccy = _money(tx.get("native_amount"))
        if native is None:
            raise ImportValidationError("Transaction without native amount", external_id=tx.get("id"))
        details = tx.get("details") or {}
        name = tx.get("description") or details.get("title") or kind.replace("_", " ").title()
        return ctx.importer.import_transaction(
            external_id=tx.get("id"),
            amount=-native,
            currency=native_ccy,
            date=tx.get("created_at"),
            name=name,
            source=SOURCE,
            kind="funds_movement" if kind in TRANSFER_TYPES else None,
            investment_activity_label="Transfer" if kind in TRANSFER_TYPES else "Other",
            extra={"type": kind, "status": tx.get("status")},
        )

    def import_investments(self, ctx: AccountContext) -> list[RecordResult]:
        results: list[RecordResult] = []
        for tx in ctx.provider_account.raw_transactions_payload or []:
            if isinstance(tx, dict) and str(tx.get("type") or "").lower() in TRADE_TYPES:
                results.append(capture(ctx.session, tx.get("id"), partial(self._import_trade, ctx, tx)))
        for h in ctx.provider_account.raw_holdings_payload or []:
            results.append(capture(ctx.session, h.get("code"), partial(self._import_wallet_holding, ctx, h)))
        return results

    def _import_trade(self, ctx: AccountContext, tx: dict[str, Any]):
        qty, code = _money(tx.get("amount"))
        native, native_ccy = _money(tx.get("native_amount"))
        if qty is None or native is None or not code:
            raise ImportValidationError("Trade without amount or native amount", external_id=tx.get("id"))
        qty = abs(qty) if str(tx.get("type")).lower() == "buy" else -abs(qty)
        if qty == 0:
            raise ImportValidationError("Zero-quantity trade", external_id=tx.get("id"))
        security = resolve_security(ctx.session, ticker=crypto_ticker(code), name=code.upper(), kind="crypto")
        return ctx.importer.import_trade(
            security=security,
            quantity=qty,
            price=abs(native) / abs(qty),
            amount=abs(native) if qty > 0 else -abs(native),
            currency=native_ccy,
            date=tx.get("created_at"),
            external_id=tx.get("id"),
            source=SOURCE,
        )

    def _import_wallet_holding(self, ctx: AccountContext, h: dict[str, Any]):
        code = str(h.get("code") or "")
        qty = finite_decimal(h.get("quantity"))
        native = finite_decimal(h.get("native_amount"))
        if not code or qty is None:
            raise ImportValidationError("Wallet holding without currency or quantity")
        if native is None:
            raise ImportValidationError(f"No native valuation for {code} wallet")
        security = resolve_security(ctx.session, ticker=crypto_ticker(code), name=code.upper(), kind="crypto")
        return ctx.importer.import_holding(
            security=security,
            quantity=qty,
            amount=native,
            currency=h.get("native_currency") or ctx.provider_account.currency,
            date=ctx.today,
            price=(native / qty) if qty else Decimal("0"),
            external_id=f"coinbase_{ctx.provider_account.provider_account_id}_{ctx.today.isoformat()}",
            account_provider_id=ctx.account_provider_id,
            source=SOURCE,
            delete_future_holdings=self.can_delete_holdings,
        )
