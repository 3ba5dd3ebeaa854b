from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.orm import Session

from finledger.config import OverpaymentSettings
from finledger.core.kv_store import KeyValueStore
from finledger.db.models import Account, Entry, ProviderAccount
from finledger.utils.money import finite_decimal
from finledger.utils.time import parse_date, parse_datetime, utcnow


log = logging.getLogger(__name__)

CREDIT = "credit"
DEBT = "debt"
UNKNOWN = "unknown"

ANALYZED_TYPES = frozenset({"CreditCard", "Loan"})


@dataclass(frozen=True)
class OverpaymentResult:
    classification: str
    reason: str
    metrics: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class _Txn:
    amount: Decimal  # ledger convention: positive = charge, negative = payment
    date: dt.date


class OverpaymentAnalyzer:
    """
    Decide whether a liability balance the provider reports means money owed (debt) or a
    credit in the user's favour.

    Providers such as SimpleFIN report liability balances sign-ambiguously; the only
    signal is the recent transaction history. Everything inconclusive is UNKNOWN and the
    caller falls back to a sign rule. Conclusive results are memoized for a few days so
    a borderline account does not flip between syncs.
    """

    def __init__(
        self,
        session: Session,
        provider_account: ProviderAccount,
        *,
        observed_balance: Any,
        now: Optional[dt.datetime] = None,
        settings: Optional[OverpaymentSettings] = None,
        store: Optional[KeyValueStore] = None,
    ):
        self.session = session
        self.provider_account = provider_account
        self.observed = finite_decimal(observed_balance) or Decimal("0")
        self.now = now or utcnow()
        self.settings = settings or OverpaymentSettings()
        self.store = store

    def call(self) -> OverpaymentResult:
        s = self.settings
        if not s.enabled:
            return OverpaymentResult(UNKNOWN, "disabled")
        account = self._account()
        if account is None:
            return OverpaymentResult(UNKNOWN, "no-account")
        if account.accountable_type not in ANALYZED_TYPES:
            return OverpaymentResult(UNKNOWN, "not-liability")

        observed_abs = abs(self.observed)
        eps = max(s.epsilon_base, observed_abs * Decimal("0.005"))
        if observed_abs <= eps:
            return OverpaymentResult(UNKNOWN, "near-zero", {"observed": str(self.observed), "epsilon": str(eps)})

        sticky = self._read_sticky()
        if sticky is not None:
            return OverpaymentResult(sticky, "sticky_hint")

        txns = self._gather_transactions(account)
        if len(txns) < s.min_txns:
            return OverpaymentResult(UNKNOWN, "insufficient-transactions", {"tx_count": len(txns)})

        metrics = self._compute_metrics(txns)
        classification, reason = self._classify(metrics, observed_abs=observed_abs, eps=eps)
        metrics["epsilon"] = str(eps)
        metrics["observed"] = str(self.observed)

        if classification in (CREDIT, DEBT):
            self._write_sticky(classification)
        log.debug(
            "Liability sign for provider account %s: %s (%s) %s",
            self.provider_account.id,
            classification,
            reason,
            metrics,
        )
        return OverpaymentResult(classification, reason, metrics)

    # --- classification ---

    def _classify(self, metrics: dict[str, Any], *, observed_abs: Decimal, eps: Decimal) -> tuple[str, str]:
        s = self.settings
        charges = Decimal(metrics["charges_total"])
        payments = Decimal(metrics["payments_total"])
        payments_count = int(metrics["payments_count"])

        if metrics["recent_payment"] and payments_count <= s.statement_guard_max_payments:
            return UNKNOWN, "statement-guard"

        net = charges - payments
        tolerance = max(s.sanity_tolerance_base, observed_abs * s.sanity_tolerance_pct)
        if abs(abs(net) - observed_abs) > tolerance:
            return UNKNOWN, "sanity-mismatch"

        if payments - charges >= observed_abs - eps:
            return CREDIT, "payments-exceed-charges"
        if charges - payments > eps and payments_count >= s.min_payments:
            return DEBT, "charges-exceed-payments"
        return UNKNOWN, "ambiguous"

    def _compute_metrics(self, txns: list[_Txn]) -> dict[str, Any]:
        charges = Decimal("0")
        payments = Decimal("0")
        payments_count = 0
        recent_payment = False
        guard_start = (self.now - dt.timedelta(days=self.settings.statement_guard_days)).date()
        for t in txns:
            if t.amount > 0:
                charges += t.amount
            elif t.amount < 0:
                payments += -t.amount
                payments_count += 1
                if t.date >= guard_start:
                    recent_payment = True
        return {
            "charges_total": str(charges),
            "payments_total": str(payments),
            "payments_count": payments_count,
            "recent_payment": recent_payment,
            "tx_count": len(txns),
        }

    # --- inputs ---

    def _account(self) -> Optional[Account]:
        return self.provider_account.linked_account

    def _gather_transactions(self, account: Account) -> list[_Txn]:
        start = (self.now - dt.timedelta(days=self.settings.window_days)).date()
        rows = (
            self.session.query(Entry.amount, Entry.date)
            .filter(
                Entry.account_id == account.id,
                Entry.entryable_type == "Transaction",
                Entry.excluded.is_(False),
                Entry.date >= start,
            )
            .all()
        )
        txns = [_Txn(amount=Decimal(str(a)), date=d) for a, d in rows if a is not None]
        if len(txns) >= self.settings.min_txns:
            return txns
        return self._raw_transactions(start)

    def _raw_transactions(self, start: dt.date) -> list[_Txn]:
        """Provider payload fallback; amounts are flipped from banking to ledger convention."""
        raw = self.provider_account.raw_transactions_payload or []
        if isinstance(raw, dict):
            raw = raw.get("transactions") or []
        out: list[_Txn] = []
        for tx in raw:
            if not isinstance(tx, dict):
                continue
            amount = finite_decimal(tx.get("amount"))
            date = parse_date(tx.get("posted")) or parse_date(tx.get("transacted_at")) or parse_date(tx.get("date"))
            if amount is None or date is None or date < start:
                continue
            out.append(_Txn(amount=-amount, date=date))
        return out

    # --- sticky memo ---

    def _sticky_key(self) -> str:
        return f"provider_account:{self.provider_account.id}:liability_sign_hint"

    def _read_sticky(self) -> Optional[str]:
        if self.store is None:
            return None
        doc = self.store.get(self._sticky_key())
        if not isinstance(doc, dict):
            return None
        expires_at = parse_datetime(doc.get("expires_at"))
        if expires_at is None or expires_at <= self.now:
            return None
        value = doc.get("value")
        return value if value in (CREDIT, DEBT) else None

    def _write_sticky(self, value: str) -> None:
        if self.store is None:
            return
        ttl = dt.timedelta(days=self.settings.sticky_days)
        self.store.set(self._sticky_key(), {"value": value, "expires_at": (self.now + ttl).isoformat()}, ttl=ttl)


def normalize_liability_balance(observed: Any, available: Any, classification: str) -> Decimal:
    """
    Map a provider-reported liability balance onto the ledger convention (positive = owed).

    When the analyzer is inconclusive, the sign rule applies: if the available balance
    agrees in sign with the current balance (or is absent) the provider is reporting in
    banking convention and the sign is flipped; otherwise the value is taken as-is.
    """
    obs = finite_decimal(observed) or Decimal("0")
    if classification == CREDIT:
        return -abs(obs)
    if classification == DEBT:
        return abs(obs)
    avail = finite_decimal(available)
    if avail is None or avail == 0 or (avail > 0) == (obs > 0):
        return -obs
    return obs
