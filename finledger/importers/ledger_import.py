from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from finledger.core.authority import EnrichmentOutcome, authority_for_source, Authority, enrich_attributes
from finledger.core.cost_basis import reconcile
from finledger.core.currency import normalize_currency
from finledger.core.results import ImportValidationError
from finledger.db.models import (
    Account,
    AccountableDetail,
    AccountProvider,
    Entry,
    Holding,
    Merchant,
    ProviderAccount,
    ProviderConnection,
    Security,
    SecurityPrice,
    Trade,
    Transaction,
)
from finledger.utils.money import finite_decimal
from finledger.utils.time import parse_date, utcnow


log = logging.getLogger(__name__)

ENTRY_FIELDS = frozenset({"name", "date", "amount", "currency", "notes", "excluded"})
TRANSACTION_FIELDS = frozenset({"category_id", "merchant_id", "kind", "tags_json", "investment_activity_label"})
TRADE_FIELDS = frozenset({"qty", "price", "security_id"})
ACCOUNTABLE_FIELDS = frozenset(
    {
        "available_credit",
        "minimum_payment",
        "apr",
        "annual_fee",
        "expiration_date",
        "interest_rate",
        "rate_type",
        "term_months",
        "initial_balance",
    }
)


def _require_text(value: Any, what: str, *, external_id: Optional[str] = None) -> str:
    s = str(value).strip() if value is not None else ""
    if not s:
        raise ImportValidationError(f"{what} is required", external_id=external_id)
    return s


def _require_number(value: Any, what: str, *, external_id: Optional[str]) -> Decimal:
    d = finite_decimal(value)
    if d is None:
        raise ImportValidationError(f"{what} is missing or not a finite number: {value!r}", external_id=external_id)
    return d


def _require_date(value: Any, *, external_id: Optional[str]) -> dt.date:
    d = parse_date(value)
    if d is None:
        raise ImportValidationError(f"date is missing or unparseable: {value!r}", external_id=external_id)
    return d


def deep_merge(base: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    out = dict(base or {})
    for k, v in (incoming or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def is_pending(entry: Entry) -> bool:
    txn = entry.transaction
    if txn is None:
        return False
    return any(isinstance(meta, dict) and bool(meta.get("pending")) for meta in (txn.extra or {}).values())


def _format_qty(qty: Decimal) -> str:
    s = format(abs(qty).normalize(), "f")
    return s


def resolve_security(
    session: Session,
    *,
    ticker: str,
    name: Optional[str] = None,
    currency: Optional[str] = None,
    kind: str = "equity",
) -> Security:
    t = _require_text(ticker, "ticker").upper()
    existing = session.query(Security).filter(Security.ticker == t).one_or_none()
    if existing is not None:
        if name and not existing.name:
            existing.name = name
        return existing
    sec = Security(ticker=t, name=name or t, currency=normalize_currency(currency), kind=kind)
    try:
        with session.begin_nested():
            session.add(sec)
            session.flush()
    except IntegrityError:
        return session.query(Security).filter(Security.ticker == t).one()
    return sec


def record_security_price(
    session: Session,
    *,
    security: Security,
    date: dt.date,
    price: Decimal,
    currency: str,
    source: str,
) -> None:
    if price is None or price <= 0:
        return
    row = (
        session.query(SecurityPrice)
        .filter(SecurityPrice.security_id == security.id, SecurityPrice.date == date, SecurityPrice.currency == currency)
        .one_or_none()
    )
    if row is None:
        try:
            with session.begin_nested():
                session.add(SecurityPrice(security_id=security.id, date=date, price=price, currency=currency, source=source))
                session.flush()
        except IntegrityError:
            log.debug("Price for %s on %s recorded concurrently", security.ticker, date)
        return
    row.price = price
    row.source = source


class LedgerImportAdapter:
    """
    The only path by which provider data enters the ledger for one account.

    Every import is idempotent on (account, external_id, source) and respects attribute
    locks owned by higher authorities. Writes are confined to `account`.
    """

    def __init__(self, session: Session, account: Account):
        self.session = session
        self.account = account
        self.skipped_entries: list[dict[str, Any]] = []
        self.stats: dict[str, int] = {"created": 0, "updated": 0, "unchanged": 0}

    # --- entries ---

    def import_transaction(
        self,
        *,
        external_id: Any,
        amount: Any,
        currency: Any,
        date: Any,
        name: Optional[str],
        source: str,
        merchant: Optional[Merchant] = None,
        category_id: Optional[int] = None,
        notes: Optional[str] = None,
        extra: Optional[dict[str, Any]] = None,
        pending_transaction_id: Optional[str] = None,
        pending: Optional[bool] = None,
        kind: Optional[str] = None,
        investment_activity_label: Optional[str] = None,
    ) -> Entry:
        external_id = _require_text(external_id, "external_id")
        source = _require_text(source, "source", external_id=external_id)
        amount_d = _require_number(amount, "amount", external_id=external_id)
        date_d = _require_date(date, external_id=external_id)
        ccy = normalize_currency(currency) or self.account.currency
        name_s = (str(name).strip() if name else "") or "Unknown transaction"

        entry = self._find_entry(external_id, source)
        if entry is None and pending_transaction_id:
            entry = self._claim_pending(str(pending_transaction_id), external_id=external_id, source=source)
        if entry is None:
            entry = self.find_duplicate_transaction(date=date_d, amount=amount_d, currency=ccy, name=name_s)
            if entry is not None:
                log.info("Claiming manual entry %s for %s/%s", entry.id, source, external_id)
                entry.external_id = external_id
                entry.source = source

        created = False
        if entry is None:
            entry, created = self._insert_entry(
                Entry(
                    account_id=self.account.id,
                    entryable_type="Transaction",
                    name=name_s,
                    date=date_d,
                    amount=amount_d,
                    currency=ccy,
                    notes=notes,
                    external_id=external_id,
                    source=source,
                    locked_attributes={},
                    transaction=Transaction(
                        kind=kind or "standard",
                        category_id=category_id,
                        merchant_id=merchant.id if merchant is not None else None,
                        investment_activity_label=investment_activity_label,
                        tags_json=[],
                        extra={},
                    ),
                )
            )

        if entry.entryable_type != "Transaction" or entry.transaction is None:
            raise ImportValidationError(
                f"Entry {entry.id} for {source}/{external_id} is a {entry.entryable_type}, not a Transaction",
                external_id=external_id,
            )

        changed = False
        if not created:
            entry_attrs: dict[str, Any] = {"name": name_s, "date": date_d, "amount": amount_d, "currency": ccy}
            if notes is not None:
                entry_attrs["notes"] = notes
            txn_attrs: dict[str, Any] = {}
            if category_id is not None:
                txn_attrs["category_id"] = category_id
            if merchant is not None:
                txn_attrs["merchant_id"] = merchant.id
            if kind:
                txn_attrs["kind"] = kind
            if investment_activity_label:
                txn_attrs["investment_activity_label"] = investment_activity_label
            changed = self._enrich(entry, entry_attrs, txn_attrs, target=entry.transaction, source=source)

        meta = dict(extra or {})
        if pending is not None:
            meta["pending"] = bool(pending)
        if meta:
            merged = deep_merge(entry.transaction.extra or {}, {source: meta})
            if merged != (entry.transaction.extra or {}):
                entry.transaction.extra = merged
                changed = changed or not created

        if pending_transaction_id:
            self._retire_pending(str(pending_transaction_id), source=source, keep=entry)

        self._count(entry, created, changed)
        self.session.flush()
        return entry

    def import_trade(
        self,
        *,
        security: Security,
        quantity: Any,
        price: Any,
        amount: Any,
        currency: Any,
        date: Any,
        source: str,
        external_id: Any,
        name: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Entry:
        external_id = _require_text(external_id, "external_id")
        source = _require_text(source, "source", external_id=external_id)
        qty = _require_number(quantity, "quantity", external_id=external_id)
        price_d = _require_number(price, "price", external_id=external_id)
        amount_d = _require_number(amount, "amount", external_id=external_id)
        date_d = _require_date(date, external_id=external_id)
        ccy = normalize_currency(currency) or self.account.currency
        if not name:
            name = f"{'Buy' if qty > 0 else 'Sell'} {_format_qty(qty)} {security.ticker}"

        entry = self._find_entry(external_id, source)
        created = False
        if entry is None:
            entry, created = self._insert_entry(
                Entry(
                    account_id=self.account.id,
                    entryable_type="Trade",
                    name=name,
                    date=date_d,
                    amount=amount_d,
                    currency=ccy,
                    notes=notes,
                    external_id=external_id,
                    source=source,
                    locked_attributes={},
                    trade=Trade(security_id=security.id, qty=qty, price=price_d, currency=ccy),
                )
            )

        if entry.entryable_type != "Trade" or entry.trade is None:
            raise ImportValidationError(
                f"Entry {entry.id} for {source}/{external_id} is a {entry.entryable_type}, not a Trade",
                external_id=external_id,
            )

        changed = False
        if not created:
            entry_attrs: dict[str, Any] = {"name": name, "date": date_d, "amount": amount_d, "currency": ccy}
            if notes is not None:
                entry_attrs["notes"] = notes
            trade_attrs = {"security_id": security.id, "qty": qty, "price": price_d}
            changed = self._enrich(entry, entry_attrs, trade_attrs, target=entry.trade, source=source)
            if entry.trade.currency != entry.currency:
                entry.trade.currency = entry.currency

        record_security_price(self.session, security=security, date=date_d, price=price_d, currency=ccy, source=source)
        self._count(entry, created, changed)
        self.session.flush()
        return entry

    # --- holdings ---

    def import_holding(
        self,
        *,
        security: Security,
        quantity: Any,
        amount: Any,
        currency: Any,
        date: Any,
        source: str,
        price: Any = None,
        cost_basis: Any = None,
        external_id: Optional[str] = None,
        account_provider_id: Optional[int] = None,
        delete_future_holdings: bool = False,
    ) -> Holding:
        external_id = str(external_id).strip() if external_id else None
        qty = _require_number(quantity, "quantity", external_id=external_id)
        amount_d = _require_number(amount, "amount", external_id=external_id)
        date_d = _require_date(date, external_id=external_id)
        ccy = normalize_currency(currency) or self.account.currency
        price_d = finite_decimal(price)
        if price_d is None:
            price_d = (amount_d / qty) if qty else Decimal("0")

        holding = None
        if external_id:
            holding = (
                self.session.query(Holding)
                .filter(Holding.account_id == self.account.id, Holding.external_id == external_id)
                .one_or_none()
            )
        if holding is None:
            holding = self._find_holding(security.id, date_d, ccy, account_provider_id)

        if holding is None:
            holding = Holding(
                account_id=self.account.id,
                security_id=security.id,
                date=date_d,
                currency=ccy,
                qty=qty,
                price=price_d,
                amount=amount_d,
                external_id=external_id,
                account_provider_id=account_provider_id,
                cost_basis_locked=False,
            )
            try:
                with self.session.begin_nested():
                    self.session.add(holding)
                    self.session.flush()
            except IntegrityError:
                # Lost a race on (account, security, date, currency): use the winner.
                holding = self._find_holding(security.id, date_d, ccy, None)
                if holding is None:
                    raise

        if self._owned_by_other_provider(holding, account_provider_id):
            log.warning(
                "Holding %s (%s on %s) belongs to account provider %s; not claiming for %s",
                holding.id,
                security.ticker,
                date_d,
                holding.account_provider_id,
                account_provider_id,
            )
            return holding

        holding.qty = qty
        holding.price = price_d
        holding.amount = amount_d
        if external_id:
            holding.external_id = external_id
        if account_provider_id is not None:
            holding.account_provider_id = account_provider_id

        decision = reconcile(holding, cost_basis, "provider")
        if decision.should_update:
            holding.cost_basis = decision.cost_basis
            holding.cost_basis_source = decision.cost_basis_source

        record_security_price(self.session, security=security, date=date_d, price=price_d, currency=ccy, source=source)

        if delete_future_holdings:
            if self.can_delete_holdings():
                self._delete_future_holdings(security.id, date_d, account_provider_id)
            else:
                log.info("Account %s does not allow holdings deletion; keeping future holdings", self.account.id)

        self.session.flush()
        return holding

    def can_delete_holdings(self) -> bool:
        flags = (
            self.session.query(ProviderConnection.allows_holdings_deletion)
            .join(ProviderAccount, ProviderAccount.connection_id == ProviderConnection.id)
            .join(AccountProvider, AccountProvider.provider_account_id == ProviderAccount.id)
            .filter(AccountProvider.account_id == self.account.id)
            .all()
        )
        return all(bool(f[0]) for f in flags)

    # --- merchants / balances / accountable attributes ---

    def find_or_create_merchant(
        self,
        *,
        provider_merchant_id: Any,
        name: Any,
        source: str,
        website_url: Optional[str] = None,
        logo_url: Optional[str] = None,
    ) -> Optional[Merchant]:
        pid = str(provider_merchant_id).strip() if provider_merchant_id is not None else ""
        nm = str(name).strip() if name is not None else ""
        if not pid or not nm:
            return None

        existing = self._find_merchant(source, pid)
        if existing is not None:
            if website_url and not existing.website_url:
                existing.website_url = website_url
            if logo_url and not existing.logo_url:
                existing.logo_url = logo_url
            return existing

        merchant = Merchant(source=source, provider_merchant_id=pid, name=nm, website_url=website_url, logo_url=logo_url)
        try:
            with self.session.begin_nested():
                self.session.add(merchant)
                self.session.flush()
        except IntegrityError:
            merchant = self._find_merchant(source, pid)
            if merchant is None:
                raise
        return merchant

    def update_balance(
        self,
        *,
        balance: Any,
        cash_balance: Any = None,
        currency: Any = None,
        source: Optional[str] = None,
    ) -> bool:
        bal = finite_decimal(balance)
        if bal is None:
            raise ImportValidationError(f"balance is not a finite number: {balance!r}")
        changed = False
        if self.account.balance != bal:
            self.account.balance = bal
            changed = True
        cash = finite_decimal(cash_balance)
        if cash is None:
            cash = bal
        if self.account.cash_balance != cash:
            self.account.cash_balance = cash
            changed = True
        ccy = normalize_currency(currency)
        if ccy and self.account.currency != ccy:
            self.account.currency = ccy
            changed = True
        if changed:
            log.debug("Account %s balance updated from %s: %s", self.account.id, source or "unknown", bal)
        self.session.flush()
        return changed

    def update_accountable_attributes(self, *, attributes: dict[str, Any], source: str) -> bool:
        attrs = {k: v for k, v in (attributes or {}).items() if v is not None and k in ACCOUNTABLE_FIELDS}
        if not attrs:
            return False
        try:
            with self.session.begin_nested():
                detail = self.account.detail
                if detail is None:
                    detail = AccountableDetail(account_id=self.account.id, locked_attributes={})
                    self.session.add(detail)
                    self.session.flush()
                    self.account.detail = detail
                outcome = enrich_attributes(self.session, detail, attrs, source=source)
                self.session.flush()
        except Exception:
            log.exception("Failed to update accountable attributes for account %s", self.account.id)
            return False
        if outcome.blocked:
            log.debug("Locked accountable attributes kept for account %s: %s", self.account.id, sorted(outcome.blocked))
        return outcome.any_changed

    def find_duplicate_transaction(
        self,
        *,
        date: dt.date,
        amount: Decimal,
        currency: str,
        name: Optional[str] = None,
        exclude_entry_ids: Optional[Iterable[int]] = None,
    ) -> Optional[Entry]:
        """Find a manually entered transaction (no external id) this provider record duplicates."""
        q = self.session.query(Entry).filter(
            Entry.account_id == self.account.id,
            Entry.entryable_type == "Transaction",
            Entry.external_id.is_(None),
            Entry.date == date,
            Entry.amount == amount,
            Entry.currency == currency,
        )
        excluded_ids = list(exclude_entry_ids or [])
        if excluded_ids:
            q = q.filter(Entry.id.notin_(excluded_ids))
        candidates = q.order_by(Entry.id.asc()).all()
        if not candidates:
            return None
        if name:
            for c in candidates:
                if (c.name or "").strip().lower() == name.strip().lower():
                    return c
        return candidates[0]

    # --- internals ---

    def _find_entry(self, external_id: str, source: str) -> Optional[Entry]:
        return (
            self.session.query(Entry)
            .filter(Entry.account_id == self.account.id, Entry.external_id == external_id, Entry.source == source)
            .one_or_none()
        )

    def _find_holding(
        self, security_id: int, date: dt.date, currency: str, account_provider_id: Optional[int]
    ) -> Optional[Holding]:
        q = self.session.query(Holding).filter(
            Holding.account_id == self.account.id,
            Holding.security_id == security_id,
            Holding.date == date,
            Holding.currency == currency,
        )
        if account_provider_id is not None:
            q = q.filter(or_(Holding.account_provider_id == account_provider_id, Holding.account_provider_id.is_(None)))
        return q.first()

    def _find_merchant(self, source: str, provider_merchant_id: str) -> Optional[Merchant]:
        return (
            self.session.query(Merchant)
            .filter(Merchant.source == source, Merchant.provider_merchant_id == provider_merchant_id)
            .one_or_none()
        )

    @staticmethod
    def _owned_by_other_provider(holding: Holding, account_provider_id: Optional[int]) -> bool:
        return (
            account_provider_id is not None
            and holding.account_provider_id is not None
            and holding.account_provider_id != account_provider_id
        )

    def _insert_entry(self, entry: Entry) -> tuple[Entry, bool]:
        try:
            with self.session.begin_nested():
                self.session.add(entry)
                self.session.flush()
        except IntegrityError:
            existing = self._find_entry(entry.external_id, entry.source)
            if existing is None:
                raise
            log.info("Entry %s/%s was created concurrently; updating it instead", entry.source, entry.external_id)
            return existing, False
        return entry, True

    def _claim_pending(self, pending_id: str, *, external_id: str, source: str) -> Optional[Entry]:
        pending = self._find_entry(pending_id, source)
        if pending is None or pending.entryable_type != "Transaction":
            return None
        log.info("Posting pending entry %s: %s -> %s", pending.id, pending_id, external_id)
        pending.external_id = external_id
        return pending

    def _retire_pending(self, pending_id: str, *, source: str, keep: Entry) -> None:
        pending = self._find_entry(pending_id, source)
        if pending is None or pending.id == keep.id or pending.excluded:
            return
        log.info("Excluding pending entry %s superseded by posted entry %s", pending.id, keep.id)
        pending.excluded = True

    def _enrich(
        self,
        entry: Entry,
        entry_attrs: dict[str, Any],
        entryable_attrs: dict[str, Any],
        *,
        target: Any,
        source: str,
    ) -> bool:
        first = enrich_attributes(self.session, entry, entry_attrs, source=source)
        second = enrich_attributes(self.session, entry, entryable_attrs, source=source, target=target)
        blocked = {**first.blocked, **second.blocked}
        if blocked:
            reason = sorted(set(blocked.values()))[0]
            self.skipped_entries.append(
                {
                    "id": entry.id,
                    "external_id": entry.external_id,
                    "name": entry.name,
                    "reason": reason,
                    "fields": sorted(blocked),
                    "account_name": self.account.name,
                }
            )
        return first.any_changed or second.any_changed

    def _count(self, entry: Entry, created: bool, changed: bool) -> None:
        # Entry.updated_at only moves with its own columns; detail-row changes bump it here.
        if changed and not created:
            entry.updated_at = utcnow()
        key = "created" if created else ("updated" if changed else "unchanged")
        self.stats[key] += 1

    def _delete_future_holdings(self, security_id: int, date: dt.date, account_provider_id: Optional[int]) -> int:
        q = self.session.query(Holding).filter(
            Holding.account_id == self.account.id,
            Holding.security_id == security_id,
            Holding.date > date,
        )
        if account_provider_id is not None:
            q = q.filter(Holding.account_provider_id == account_provider_id)
        n = q.delete(synchronize_session="fetch")
        if n:
            log.info("Deleted %s future holdings for account %s security %s after %s", n, self.account.id, security_id, date)
        return int(n)


def apply_local_edit(session: Session, entry: Entry, changes: dict[str, Any], *, source: str = "user") -> EnrichmentOutcome:
    """
    Apply an edit from a local authority (user or rule) to an entry and lock what it changes.

    Users may always revise their own edits; rules cannot replace a user's value.
    """
    if authority_for_source(source) == Authority.PROVIDER:
        raise ValueError("Provider data must go through LedgerImportAdapter")
    override = authority_for_source(source) == Authority.USER
    out = EnrichmentOutcome()
    groups: list[tuple[Any, frozenset[str]]] = [(entry, ENTRY_FIELDS)]
    if entry.transaction is not None:
        groups.append((entry.transaction, TRANSACTION_FIELDS))
    if entry.trade is not None:
        groups.append((entry.trade, TRADE_FIELDS))
    known = set().union(*(fields for _, fields in groups))
    unknown = sorted(set(changes) - known)
    if unknown:
        raise ValueError(f"Unknown entry fields: {', '.join(unknown)}")
    for target, fields in groups:
        part = {k: v for k, v in changes.items() if k in fields}
        if not part:
            continue
        res = enrich_attributes(session, entry, part, source=source, target=target, override=override)
        out.changed.extend(res.changed)
        out.blocked.update(res.blocked)
    session.flush()
    return out
