from __future__ import annotations

import bisect
import datetime as dt
import logging
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from finledger.core.cost_basis import reconcile
from finledger.db.models import Account, Entry, ExchangeRate, Holding, SecurityPrice, Trade

log = logging.getLogger(__name__)

STRATEGIES = ("forward", "reverse")


@dataclass(frozen=True)
class CalculatedHolding:
    security_id: int
    date: dt.date
    qty: Decimal
    price: Decimal
    amount: Decimal
    currency: str
    cost_basis: Optional[Decimal]


@dataclass(frozen=True)
class _TradeRow:
    security_id: int
    date: dt.date
    qty: Decimal
    price: Decimal
    currency: str


def _load_trades(session: Session, account: Account) -> list[_TradeRow]:
    rows = (
        session.query(Trade.security_id, Entry.date, Trade.qty, Trade.price, Trade.currency)
        .join(Entry, Entry.id == Trade.entry_id)
        .filter(Entry.account_id == account.id, Entry.excluded.is_(False))
        .order_by(Entry.date.asc(), Entry.id.asc())
        .all()
    )
    return [
        _TradeRow(security_id=s, date=d, qty=Decimal(str(q)), price=Decimal(str(p)), currency=c)
        for s, d, q, p, c in rows
    ]


class ExchangeRates:
    """Pre-resolved rates; a missing rate converts 1:1."""

    def __init__(self, session: Session):
        self.session = session
        self._cache: dict[tuple[str, str, dt.date], Decimal] = {}

    def rate(self, from_currency: str, to_currency: str, date: dt.date) -> Decimal:
        if from_currency == to_currency:
            return Decimal("1")
        key = (from_currency, to_currency, date)
        if key in self._cache:
            return self._cache[key]
        row = (
            self.session.query(ExchangeRate.rate)
            .filter(
                ExchangeRate.from_currency == from_currency,
                ExchangeRate.to_currency == to_currency,
                ExchangeRate.date <= date,
            )
            .order_by(ExchangeRate.date.desc())
            .first()
        )
        if row is None:
            log.debug("No %s->%s rate on or before %s; using 1", from_currency, to_currency, date)
            value = Decimal("1")
        else:
            value = Decimal(str(row[0]))
        self._cache[key] = value
        return value


class PriceBook:
    """Latest known price on or before a date, per security, in the account currency."""

    def __init__(self, session: Session, *, security_ids: set[int], currency: str, rates: ExchangeRates):
        self.currency = currency
        self.rates = rates
        self._dates: dict[int, list[dt.date]] = defaultdict(list)
        self._prices: dict[int, list[tuple[Decimal, str]]] = defaultdict(list)
        if security_ids:
            rows = (
                session.query(SecurityPrice.security_id, SecurityPrice.date, SecurityPrice.price, SecurityPrice.currency)
                .filter(SecurityPrice.security_id.in_(sorted(security_ids)))
                .order_by(SecurityPrice.security_id.asc(), SecurityPrice.date.asc())
                .all()
            )
            for sid, d, p, c in rows:
                self._add(sid, d, Decimal(str(p)), c)

    def _add(self, security_id: int, date: dt.date, price: Decimal, currency: str) -> None:
        dates = self._dates[security_id]
        i = bisect.bisect_right(dates, date)
        if i and dates[i - 1] == date:
            return
        dates.insert(i, date)
        self._prices[security_id].insert(i, (price, currency))

    def add_fallback(self, security_id: int, date: dt.date, price: Decimal, currency: str) -> None:
        self._add(security_id, date, price, currency)

    def price_on(self, security_id: int, date: dt.date) -> Optional[Decimal]:
        dates = self._dates.get(security_id) or []
        i = bisect.bisect_right(dates, date)
        if i == 0:
            return None
        price, currency = self._prices[security_id][i - 1]
        return price * self.rates.rate(currency, self.currency, date)


class _CostTracker:
    """Weighted-average cost per unit over buys; sells leave the average unchanged."""

    def __init__(self) -> None:
        self._cost: dict[int, Decimal] = defaultdict(lambda: Decimal("0"))
        self._qty: dict[int, Decimal] = defaultdict(lambda: Decimal("0"))

    def apply(self, security_id: int, qty: Decimal, price: Decimal) -> None:
        if qty <= 0:
            return
        self._cost[security_id] += qty * price
        self._qty[security_id] += qty

    def average(self, security_id: int) -> Optional[Decimal]:
        q = self._qty.get(security_id)
        if not q:
            return None
        return self._cost[security_id] / q


def _today() -> dt.date:
    return dt.date.today()


class ForwardCalculator:
    def __init__(self, session: Session, account: Account, *, today: Optional[dt.date] = None):
        self.session = session
        self.account = account
        self.today = today or _today()
        self.trades = _load_trades(session, account)

    @property
    def start_date(self) -> Optional[dt.date]:
        return self.trades[0].date if self.trades else None

    def calculate(self) -> list[CalculatedHolding]:
        if not self.trades:
            return []
        ccy = self.account.currency
        rates = ExchangeRates(self.session)
        prices = PriceBook(self.session, security_ids={t.security_id for t in self.trades}, currency=ccy, rates=rates)
        by_date: dict[dt.date, list[_TradeRow]] = defaultdict(list)
        for t in self.trades:
            by_date[t.date].append(t)
            prices.add_fallback(t.security_id, t.date, t.price, t.currency)

        qty: dict[int, Decimal] = {}
        costs = _CostTracker()
        out: list[CalculatedHolding] = []
        d = self.trades[0].date
        while d <= self.today:
            for t in by_date.get(d, []):
                qty[t.security_id] = qty.get(t.security_id, Decimal("0")) + t.qty
                costs.apply(t.security_id, t.qty, t.price * rates.rate(t.currency, ccy, d))
            for sid, q in qty.items():
                price = prices.price_on(sid, d)
                if price is None:
                    continue
                out.append(
                    CalculatedHolding(
                        security_id=sid,
                        date=d,
                        qty=q,
                        price=price,
                        amount=q * price,
                        currency=ccy,
                        cost_basis=costs.average(sid),
                    )
                )
            d += dt.timedelta(days=1)
        return out


class ReverseCalculator:
    """Walk trades backwards from the latest holdings snapshot."""

    def __init__(self, session: Session, account: Account, *, today: Optional[dt.date] = None):
        self.session = session
        self.account = account
        self.today = today or _today()
        self.trades = _load_trades(session, account)

    def _snapshot(self) -> dict[int, Holding]:
        latest: dict[int, Holding] = {}
        rows = (
            self.session.query(Holding)
            .filter(Holding.account_id == self.account.id, Holding.date <= self.today)
            .order_by(Holding.date.asc(), Holding.id.asc())
            .all()
        )
        for h in rows:
            cur = latest.get(h.security_id)
            if cur is None or h.date > cur.date or (h.date == cur.date and h.account_provider_id is not None):
                latest[h.security_id] = h
        return latest

    def calculate(self) -> list[CalculatedHolding]:
        snapshot = self._snapshot()
        if not snapshot and not self.trades:
            return []
        ccy = self.account.currency
        rates = ExchangeRates(self.session)
        security_ids = set(snapshot) | {t.security_id for t in self.trades}
        prices = PriceBook(self.session, security_ids=security_ids, currency=ccy, rates=rates)

        by_date: dict[dt.date, list[_TradeRow]] = defaultdict(list)
        cost_points: dict[int, list[tuple[dt.date, Optional[Decimal]]]] = defaultdict(list)
        costs = _CostTracker()
        for t in self.trades:
            by_date[t.date].append(t)
            prices.add_fallback(t.security_id, t.date, t.price, t.currency)
            costs.apply(t.security_id, t.qty, t.price * rates.rate(t.currency, ccy, t.date))
            cost_points[t.security_id].append((t.date, costs.average(t.security_id)))

        def cost_as_of(sid: int, d: dt.date) -> Optional[Decimal]:
            points = cost_points.get(sid) or []
            i = bisect.bisect_right([p[0] for p in points], d)
            return points[i - 1][1] if i else None

        snapshot_price = {sid: Decimal(str(h.price)) for sid, h in snapshot.items()}
        portfolio: dict[int, Decimal] = defaultdict(lambda: Decimal("0"))
        for sid, h in snapshot.items():
            portfolio[sid] = Decimal(str(h.qty))

        start = min([self.trades[0].date] if self.trades else [self.today])
        out: list[CalculatedHolding] = []
        d = self.today
        while d >= start:
            for sid in sorted(portfolio):
                q = portfolio[sid]
                if q < 0:
                    continue
                price = prices.price_on(sid, d)
                if price is None:
                    price = snapshot_price.get(sid)
                if price is None:
                    continue
                out.append(
                    CalculatedHolding(
                        security_id=sid,
                        date=d,
                        qty=q,
                        price=price,
                        amount=q * price,
                        currency=ccy,
                        cost_basis=cost_as_of(sid, d),
                    )
                )
            for t in by_date.get(d, []):
                portfolio[t.security_id] -= t.qty
            d -= dt.timedelta(days=1)
        return out


class HoldingMaterializer:
    """
    Rebuild the derived daily holdings of one account from its trades.

    Holdings are a cache: rows a provider reported (account_provider_id set) are never
    rewritten here, and cost basis only moves up the manual > calculated > provider
    order.
    """

    def __init__(self, session: Session, account: Account, *, strategy: str = "forward", today: Optional[dt.date] = None):
        if strategy not in STRATEGIES:
            raise ValueError(f"strategy must be one of {STRATEGIES}")
        self.session = session
        self.account = account
        self.strategy = strategy
        self.today = today or _today()

    def materialize_holdings(self) -> list[CalculatedHolding]:
        if self.strategy == "forward":
            calc = ForwardCalculator(self.session, self.account, today=self.today)
            calculated = calc.calculate()
            self._persist(calculated)
            self._purge_stale_holdings(calc)
        else:
            calculated = ReverseCalculator(self.session, self.account, today=self.today).calculate()
            self._persist(calculated)
        self._cleanup_calculated_holdings_for_provider_securities()
        self.session.flush()
        log.info(
            "Materialized %s holdings for account %s (%s)", len(calculated), self.account.id, self.strategy
        )
        return calculated

    def _provider_security_ids(self) -> set[int]:
        rows = (
            self.session.query(Holding.security_id)
            .filter(Holding.account_id == self.account.id, Holding.account_provider_id.isnot(None))
            .distinct()
            .all()
        )
        return {r[0] for r in rows}

    def _persist(self, calculated: list[CalculatedHolding]) -> None:
        if not calculated:
            return
        provider_secs = self._provider_security_ids()
        existing = {
            (h.security_id, h.date, h.currency): h
            for h in self.session.query(Holding).filter(Holding.account_id == self.account.id).all()
        }
        for c in calculated:
            if c.security_id in provider_secs:
                continue
            h = existing.get((c.security_id, c.date, c.currency))
            if h is not None and h.account_provider_id is not None:
                continue
            if h is None:
                h = Holding(
                    account_id=self.account.id,
                    security_id=c.security_id,
                    date=c.date,
                    currency=c.currency,
                    qty=c.qty,
                    price=c.price,
                    amount=c.amount,
                    cost_basis_locked=False,
                )
                self.session.add(h)
                existing[(c.security_id, c.date, c.currency)] = h
            else:
                h.qty = c.qty
                h.price = c.price
                h.amount = c.amount
            decision = reconcile(h, c.cost_basis, "calculated")
            if decision.should_update:
                h.cost_basis = decision.cost_basis
                h.cost_basis_source = decision.cost_basis_source
        self.session.flush()

    def _purge_stale_holdings(self, calc: ForwardCalculator) -> int:
        q = self.session.query(Holding).filter(
            Holding.account_id == self.account.id, Holding.account_provider_id.is_(None)
        )
        trade_secs = sorted({t.security_id for t in calc.trades})
        if trade_secs:
            q = q.filter(
                (Holding.date < calc.start_date)
                | (Holding.date > calc.today)
                | (Holding.security_id.notin_(trade_secs))
            )
        n = q.delete(synchronize_session="fetch")
        if n:
            log.info("Purged %s stale holdings for account %s", n, self.account.id)
        return int(n)

    def _cleanup_calculated_holdings_for_provider_securities(self) -> int:
        provider_secs = sorted(self._provider_security_ids())
        if not provider_secs:
            return 0
        n = (
            self.session.query(Holding)
            .filter(
                Holding.account_id == self.account.id,
                Holding.account_provider_id.is_(None),
                Holding.security_id.in_(provider_secs),
            )
            .delete(synchronize_session="fetch")
        )
        if n:
            log.info("Removed %s calculated holdings shadowed by provider data in account %s", n, self.account.id)
        return int(n)
