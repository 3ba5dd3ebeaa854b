from __future__ import annotations

import datetime as dt
from decimal import Decimal

from finledger.config import AppSettings
from finledger.core.credential_store import upsert_credential
from finledger.core.linking import link_provider_account
from finledger.core.sync_runner import run_sync
from finledger.db.models import Account, Category, Entry, Holding, ProviderAccount, ProviderConnection, Security
from finledger.importers.adapters import ReplayClient
from finledger.importers.ledger_import import LedgerImportAdapter, apply_local_edit, is_pending, resolve_security

NOW = dt.datetime(2024, 6, 10, 12, 0, tzinfo=dt.timezone.utc)
TODAY = NOW.date()


def _mk_connection(session, family, provider: str, credentials: dict[str, str]) -> ProviderConnection:
    conn = ProviderConnection(family_id=family.id, provider=provider, name=provider)
    session.add(conn)
    session.flush()
    for key, value in credentials.items():
        upsert_credential(session, connection_id=conn.id, key=key, plaintext=value)
    return conn


def _linked(session, family, conn, pid: str, kind: str) -> Account:
    pa = ProviderAccount(connection_id=conn.id, provider_account_id=pid, name=pid)
    acct = Account(family_id=family.id, name=f"{conn.provider} {pid}", accountable_type=kind, currency="USD")
    session.add_all([pa, acct])
    session.flush()
    link_provider_account(session, provider_account=pa, account=acct)
    return acct


def _run(session, conn, snapshot):
    return run_sync(
        session,
        connection_id=conn.id,
        client=ReplayClient(snapshot),
        settings=AppSettings(),
        window_start_date=dt.date(2024, 5, 1),
        window_end_date=TODAY,
        now=NOW,
    )


def _entries(session, acct) -> dict[str, Entry]:
    return {e.external_id: e for e in session.query(Entry).filter(Entry.account_id == acct.id).all()}


PLAID_SNAPSHOT = {
    "accounts": [
        {
            "account_id": "chk",
            "name": "Plaid Checking",
            "type": "depository",
            "subtype": "checking",
            "balances": {"current": 110.5, "available": 100.25, "iso_currency_code": "USD"},
        },
        {
            "account_id": "cc",
            "name": "Plaid Credit Card",
            "type": "credit",
            "subtype": "credit card",
            "balances": {"current": 320.15, "available": 1679.85, "iso_currency_code": "USD"},
        },
        {
            "account_id": "inv",
            "name": "Plaid Brokerage",
            "type": "investment",
            "subtype": "brokerage",
            "balances": {"current": 2512.5, "iso_currency_code": "USD"},
        },
    ],
    "transactions": {
        "added": [
            {
                "transaction_id": "p1",
                "account_id": "chk",
                "amount": 12.5,
                "iso_currency_code": "USD",
                "date": "2024-06-08",
                "name": "BLUE BOTTLE",
                "merchant_name": "Blue Bottle",
                "merchant_entity_id": "m-bb",
                "pending": True,
            },
            {
                "transaction_id": "tx1",
                "account_id": "chk",
                "amount": 12.75,
                "iso_currency_code": "USD",
                "date": "2024-06-09",
                "name": "BLUE BOTTLE",
                "merchant_name": "Blue Bottle",
                "merchant_entity_id": "m-bb",
                "pending": False,
                "pending_transaction_id": "p1",
                "personal_finance_category": {"primary": "FOOD_AND_DRINK", "detailed": "FOOD_AND_DRINK_COFFEE"},
            },
            {
                "transaction_id": "cc1",
                "account_id": "cc",
                "amount": 45.0,
                "iso_currency_code": "USD",
                "date": "2024-06-05",
                "name": "Bookshop",
            },
        ],
        "modified": [],
        "removed": [
            {"transaction_id": "gone", "account_id": "chk"},
            {"transaction_id": "kept", "account_id": "chk"},
        ],
        "next_cursor": "cursor-1",
    },
    "investments": {
        "holdings": [
            {
                "account_id": "inv",
                "security_id": "s-vti",
                "quantity": 10,
                "institution_price": 250.0,
                "institution_value": 2500.0,
                "cost_basis": 2000.0,
                "iso_currency_code": "USD",
                "institution_price_as_of": "2024-06-07",
            },
            {
                "account_id": "inv",
                "security_id": "s-cash",
                "quantity": 12.5,
                "institution_price": 1.0,
                "institution_value": 12.5,
                "iso_currency_code": "USD",
            },
        ],
        "securities": [
            {"security_id": "s-vti", "ticker_symbol": "VTI", "name": "Vanguard Total Stock Market ETF", "type": "etf"},
            {"security_id": "s-cash", "ticker_symbol": "CUR:USD", "name": "US Dollar", "type": "cash", "is_cash_equivalent": True},
        ],
        "transactions": [
            {
                "investment_transaction_id": "it1",
                "account_id": "inv",
                "security_id": "s-vti",
                "type": "buy",
                "subtype": "buy",
                "quantity": 2,
                "price": 240.0,
                "amount": 480.0,
                "iso_currency_code": "USD",
                "date": "2024-06-03",
                "name": "BUY VTI",
            },
            {
                "investment_transaction_id": "it2",
                "account_id": "inv",
                "security_id": "s-vti",
                "type": "cash",
                "subtype": "dividend",
                "amount": -12.5,
                "iso_currency_code": "USD",
                "date": "2024-06-04",
                "name": "VTI DIVIDEND",
            },
        ],
    },
    "liabilities": {
        "credit": [
            {
                "account_id": "cc",
                "aprs": [
                    {"apr_type": "balance_transfer_apr", "apr_percentage": 15.0},
                    {"apr_type": "purchase_apr", "apr_percentage": 22.99},
                ],
                "minimum_payment_amount": 35.0,
            }
        ],
        "mortgage": None,
        "student": None,
    },
}


def test_plaid_sync(session, family, secret_key):
    conn = _mk_connection(session, family, "plaid", {"access_token": "access-sandbox-1"})
    chk = _linked(session, family, conn, "chk", "Depository")
    cc = _linked(session, family, conn, "cc", "CreditCard")
    inv = _linked(session, family, conn, "inv", "Investment")
    food = Category(family_id=family.id, name="Food And Drink")
    session.add(food)

    importer = LedgerImportAdapter(session, chk)
    for ext, amount in (("gone", "5.00"), ("kept", "6.00")):
        importer.import_transaction(
            external_id=ext, amount=amount, currency="USD", date="2024-06-01", name=ext, source="plaid"
        )
    apply_local_edit(session, _entries(session, chk)["kept"], {"notes": "reimbursable"})
    session.commit()

    run = _run(session, conn, PLAID_SNAPSHOT)
    assert run.status == "completed"
    assert run.sync_stats["total_errors"] == 0
    assert run.sync_stats["holdings_found"] == 2

    # Pending p1 was claimed by its posted version; removed rows are deleted unless user-edited.
    chk_entries = _entries(session, chk)
    assert set(chk_entries) == {"tx1", "kept"}
    posted = chk_entries["tx1"]
    assert posted.amount == Decimal("12.75")
    assert not is_pending(posted)
    assert posted.transaction.category_id == food.id
    assert posted.transaction.merchant.name == "Blue Bottle"
    assert chk_entries["kept"].excluded is True
    assert chk.balance == Decimal("110.5")
    assert chk.cash_balance == Decimal("100.25")

    assert set(_entries(session, cc)) == {"cc1"}
    assert cc.balance == Decimal("320.15")
    assert cc.detail.apr == Decimal("22.99")
    assert cc.detail.minimum_payment == Decimal("35")
    assert cc.detail.available_credit == Decimal("1679.85")

    inv_entries = _entries(session, inv)
    assert inv_entries["it1"].trade.qty == Decimal("2")
    assert inv_entries["it2"].transaction.investment_activity_label == "Dividend"
    assert inv_entries["it2"].amount == Decimal("-12.5")
    assert inv.cash_balance == Decimal("12.5")

    vti = session.query(Security).filter(Security.ticker == "VTI").one()
    rows = session.query(Holding).filter(Holding.account_id == inv.id, Holding.security_id == vti.id).all()
    assert len(rows) == 1
    assert rows[0].date == dt.date(2024, 6, 7)
    assert rows[0].cost_basis == Decimal("200")
    assert rows[0].cost_basis_source == "provider"


SNAPTRADE_SNAPSHOT = {
    "accounts": [
        {
            "id": "st-1",
            "name": "Individual Brokerage",
            "number": "X123",
            "balance": {"total": {"amount": 5150.0, "currency": "USD"}},
            "cash": 150.0,
            "positions": [
                {
                    "symbol": {"symbol": {"symbol": "AAPL", "description": "Apple Inc.", "currency": {"code": "USD"}}},
                    "units": 25,
                    "price": 200.0,
                    "average_purchase_price": 150.0,
                }
            ],
            "activities": [
                {
                    "id": "a-buy",
                    "type": "BUY",
                    "symbol": {"symbol": "AAPL", "description": "Apple Inc.", "currency": {"code": "USD"}},
                    "units": 5,
                    "price": 190.0,
                    "amount": -950.0,
                    "currency": "USD",
                    "trade_date": "2024-06-03T00:00:00Z",
                },
                {
                    "id": "a-div",
                    "type": "DIVIDEND",
                    "symbol": {"symbol": "AAPL"},
                    "amount": 6.25,
                    "currency": "USD",
                    "trade_date": "2024-06-05",
                    "description": "AAPL dividend",
                },
            ],
        }
    ]
}


def test_snaptrade_sync_replaces_future_holdings(session, family, secret_key):
    conn = _mk_connection(session, family, "snaptrade", {"user_id": "u-1", "user_secret": "s-1"})
    acct = _linked(session, family, conn, "st-1", "Investment")
    link_id = acct.account_providers[0].id
    aapl = resolve_security(session, ticker="AAPL")
    LedgerImportAdapter(session, acct).import_holding(
        security=aapl, quantity="30", amount="6000", currency="USD", date=TODAY + dt.timedelta(days=3),
        source="snaptrade", account_provider_id=link_id,
    )
    session.commit()

    run = _run(session, conn, SNAPTRADE_SNAPSHOT)
    assert run.status == "completed"
    assert run.sync_stats["trades_imported"] == 1

    holdings = session.query(Holding).filter(Holding.account_id == acct.id).all()
    assert [(h.date, h.qty) for h in holdings] == [(TODAY, Decimal("25"))]
    assert holdings[0].cost_basis == Decimal("150")
    assert holdings[0].account_provider_id == link_id

    entries = _entries(session, acct)
    assert entries["a-buy"].trade.qty == Decimal("5")
    assert entries["a-div"].amount == Decimal("-6.25")
    assert entries["a-div"].transaction.investment_activity_label == "Dividend"
    assert acct.balance == Decimal("5150")
    assert acct.cash_balance == Decimal("150")


COINBASE_SNAPSHOT = {
    "accounts": [
        {
            "id": "w-btc",
            "name": "BTC Wallet",
            "currency": {"code": "BTC"},
            "balance": {"amount": "0.5", "currency": "BTC"},
            "native_balance": {"amount": "35000.00", "currency": "USD"},
            "transactions": [
                {
                    "id": "cb-buy",
                    "type": "buy",
                    "amount": {"amount": "0.1", "currency": "BTC"},
                    "native_amount": {"amount": "6500.00", "currency": "USD"},
                    "created_at": "2024-06-02T10:00:00Z",
                },
                {
                    "id": "cb-send",
                    "type": "send",
                    "amount": {"amount": "-0.05", "currency": "BTC"},
                    "native_amount": {"amount": "-3400.00", "currency": "USD"},
                    "created_at": "2024-06-04T10:00:00Z",
                    "description": "Sent to cold storage",
                },
            ],
        },
        {
            "id": "w-usd",
            "name": "USD Wallet",
            "currency": {"code": "USD"},
            "balance": {"amount": "250.00", "currency": "USD"},
            "native_balance": {"amount": "250.00", "currency": "USD"},
            "transactions": [],
        },
    ]
}


def test_coinbase_sync(session, family, secret_key):
    conn = _mk_connection(session, family, "coinbase", {"api_key": "k", "api_secret": "s"})
    btc = _linked(session, family, conn, "w-btc", "Crypto")
    usd = _linked(session, family, conn, "w-usd", "Depository")
    session.commit()

    run = _run(session, conn, COINBASE_SNAPSHOT)
    assert run.status == "completed"

    entries = _entries(session, btc)
    trade = entries["cb-buy"].trade
    assert trade.qty == Decimal("0.1")
    assert trade.price == Decimal("65000")
    assert trade.security.ticker == "CRYPTO:BTC"
    send = entries["cb-send"]
    assert send.amount == Decimal("3400.00")
    assert send.transaction.kind == "funds_movement"

    holding = session.query(Holding).filter(Holding.account_id == btc.id).one()
    assert holding.qty == Decimal("0.5")
    assert holding.amount == Decimal("35000")
    assert holding.price == Decimal("70000")
    assert holding.date == TODAY

    assert btc.balance == Decimal("35000")
    assert btc.cash_balance == Decimal("0")
    assert usd.balance == Decimal("250")
    assert usd.cash_balance == Decimal("250")
