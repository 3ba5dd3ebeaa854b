from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

from finledger.core.authority import lock_attribute
from finledger.core.results import ImportValidationError
from finledger.db.models import Account, DataEnrichment, Entry, Merchant, SecurityPrice, Transaction
from finledger.importers.ledger_import import LedgerImportAdapter, apply_local_edit, is_pending, resolve_security


def _mk_account(session, family, *, kind: str = "Depository") -> Account:
    acct = Account(family_id=family.id, name="Checking", accountable_type=kind, currency="USD")
    session.add(acct)
    session.flush()
    return acct


def _import(importer: LedgerImportAdapter, **overrides) -> Entry:
    kw = dict(
        external_id="tx-1",
        amount="12.50",
        currency="USD",
        date="2024-05-01",
        name="Coffee Shop",
        source="plaid",
    )
    kw.update(overrides)
    return importer.import_transaction(**kw)


def test_import_transaction_is_idempotent(session, family):
    acct = _mk_account(session, family)
    importer = LedgerImportAdapter(session, acct)

    first = _import(importer)
    second = _import(importer)

    assert first.id == second.id
    assert session.query(Entry).count() == 1
    assert importer.stats == {"created": 1, "updated": 0, "unchanged": 1}
    assert first.amount == Decimal("12.50")
    assert first.transaction is not None


def test_same_external_id_from_different_sources_are_distinct(session, family):
    acct = _mk_account(session, family)
    importer = LedgerImportAdapter(session, acct)
    _import(importer, source="plaid")
    _import(importer, source="simplefin", amount="3.00")
    assert session.query(Entry).count() == 2


def test_provider_update_changes_unlocked_fields(session, family):
    acct = _mk_account(session, family)
    importer = LedgerImportAdapter(session, acct)
    entry = _import(importer)
    _import(importer, name="Coffee Shop #12", amount="13.00")
    session.refresh(entry)
    assert entry.name == "Coffee Shop #12"
    assert entry.amount == Decimal("13.00")
    assert entry.locked_attributes == {}
    assert importer.stats["updated"] == 1


def test_user_edit_locks_field_and_provider_cannot_overwrite(session, family):
    acct = _mk_account(session, family)
    importer = LedgerImportAdapter(session, acct)
    entry = _import(importer)

    outcome = apply_local_edit(session, entry, {"name": "Morning coffee"})
    assert outcome.changed == ["name"]
    assert "name" in entry.locked_attributes

    _import(importer, name="COFFEE SHOP 0042")
    assert entry.name == "Morning coffee"
    assert importer.skipped_entries
    skipped = importer.skipped_entries[-1]
    assert skipped["reason"] == "user_modified"
    assert skipped["fields"] == ["name"]


def test_rule_cannot_overwrite_user_but_user_can_overwrite_rule(session, family):
    acct = _mk_account(session, family)
    entry = _import(LedgerImportAdapter(session, acct))

    apply_local_edit(session, entry, {"notes": "from rule"}, source="rule")
    assert entry.notes == "from rule"

    apply_local_edit(session, entry, {"notes": "mine"}, source="user")
    assert entry.notes == "mine"

    blocked = apply_local_edit(session, entry, {"notes": "rule again"}, source="rule")
    assert entry.notes == "mine"
    assert blocked.blocked == {"notes": "user_modified"}


def test_calculated_lock_blocks_provider_but_not_rule(session, family):
    acct = _mk_account(session, family)
    importer = LedgerImportAdapter(session, acct)
    entry = _import(importer)
    apply_local_edit(session, entry, {"name": "Cafe"}, source="calculated")

    _import(importer, name="Provider name")
    assert entry.name == "Cafe"
    assert importer.skipped_entries[-1]["reason"] == "calculated_locked"

    apply_local_edit(session, entry, {"name": "Rule name"}, source="rule")
    assert entry.name == "Rule name"


def test_bare_timestamp_lock_counts_as_user(session, family):
    acct = _mk_account(session, family)
    importer = LedgerImportAdapter(session, acct)
    entry = _import(importer)
    entry.locked_attributes = {"amount": "2024-05-02T00:00:00Z"}
    session.flush()

    _import(importer, amount="99.00")
    assert entry.amount == Decimal("12.50")


def test_apply_local_edit_rejects_provider_source_and_unknown_fields(session, family):
    acct = _mk_account(session, family)
    entry = _import(LedgerImportAdapter(session, acct))
    with pytest.raises(ValueError):
        apply_local_edit(session, entry, {"name": "x"}, source="plaid")
    with pytest.raises(ValueError):
        apply_local_edit(session, entry, {"bogus": 1})


def test_enrichment_is_recorded_for_changed_fields(session, family):
    acct = _mk_account(session, family)
    importer = LedgerImportAdapter(session, acct)
    entry = _import(importer)
    _import(importer, name="Renamed")
    rows = session.query(DataEnrichment).filter(DataEnrichment.entity_id == entry.id).all()
    assert [(r.attribute_name, r.source, r.value_json) for r in rows] == [("name", "plaid", "Renamed")]


@pytest.mark.parametrize(
    "overrides",
    [
        {"external_id": ""},
        {"external_id": None},
        {"amount": "NaN"},
        {"amount": None},
        {"amount": "Infinity"},
        {"date": "not-a-date"},
        {"source": " "},
    ],
)
def test_invalid_transactions_raise_validation_error(session, family, overrides):
    acct = _mk_account(session, family)
    with pytest.raises(ImportValidationError):
        _import(LedgerImportAdapter(session, acct), **overrides)
    assert session.query(Entry).count() == 0


def test_invalid_currency_falls_back_to_account_currency(session, family):
    acct = _mk_account(session, family)
    entry = _import(LedgerImportAdapter(session, acct), currency="XXX")
    assert entry.currency == "USD"


def test_type_mismatch_raises(session, family):
    acct = _mk_account(session, family, kind="Investment")
    importer = LedgerImportAdapter(session, acct)
    sec = resolve_security(session, ticker="vti")
    importer.import_trade(
        security=sec, quantity="2", price="200", amount="400", currency="USD", date="2024-05-01",
        source="snaptrade", external_id="t-1",
    )
    with pytest.raises(ImportValidationError):
        importer.import_transaction(
            external_id="t-1", amount="1", currency="USD", date="2024-05-01", name="x", source="snaptrade"
        )


def test_import_trade_defaults_name_and_records_price(session, family):
    acct = _mk_account(session, family, kind="Investment")
    importer = LedgerImportAdapter(session, acct)
    sec = resolve_security(session, ticker="aapl", name="Apple")
    entry = importer.import_trade(
        security=sec, quantity="-3", price="180", amount="-540", currency="USD", date="2024-05-01",
        source="plaid", external_id="trade-1",
    )
    assert entry.name == "Sell 3 AAPL"
    assert entry.trade.qty == Decimal("-3")
    assert sec.ticker == "AAPL"
    assert session.query(SecurityPrice).filter(SecurityPrice.security_id == sec.id).count() == 1

    again = importer.import_trade(
        security=sec, quantity="-3", price="180", amount="-540", currency="USD", date="2024-05-01",
        source="plaid", external_id="trade-1",
    )
    assert again.id == entry.id


def test_import_trade_requires_external_id(session, family):
    acct = _mk_account(session, family, kind="Investment")
    sec = resolve_security(session, ticker="AAPL")
    with pytest.raises(ImportValidationError):
        LedgerImportAdapter(session, acct).import_trade(
            security=sec, quantity="1", price="1", amount="1", currency="USD", date="2024-05-01",
            source="plaid", external_id=None,
        )


def test_merchant_dedup_by_source_and_provider_id(session, family):
    acct = _mk_account(session, family)
    importer = LedgerImportAdapter(session, acct)
    m1 = importer.find_or_create_merchant(provider_merchant_id="m-1", name="Blue Bottle", source="plaid")
    m2 = importer.find_or_create_merchant(
        provider_merchant_id="m-1", name="Blue Bottle Coffee", source="plaid", website_url="https://bb.example"
    )
    m3 = importer.find_or_create_merchant(provider_merchant_id="m-1", name="Blue Bottle", source="simplefin")
    assert m1.id == m2.id
    assert m2.website_url == "https://bb.example"
    assert m3.id != m1.id
    assert importer.find_or_create_merchant(provider_merchant_id="", name="x", source="plaid") is None
    assert session.query(Merchant).count() == 2


def test_pending_transaction_is_claimed_by_posted_version(session, family):
    acct = _mk_account(session, family)
    importer = LedgerImportAdapter(session, acct)
    pending = _import(importer, external_id="pend-1", pending=True, date="2024-05-01")
    assert is_pending(pending)

    posted = _import(
        importer,
        external_id="post-1",
        pending_transaction_id="pend-1",
        pending=False,
        date="2024-05-03",
        amount="12.75",
    )
    assert posted.id == pending.id
    assert posted.external_id == "post-1"
    assert posted.date == dt.date(2024, 5, 3)
    assert not is_pending(posted)
    assert session.query(Entry).count() == 1


def test_posted_version_retires_leftover_pending_entry(session, family):
    acct = _mk_account(session, family)
    importer = LedgerImportAdapter(session, acct)
    pending = _import(importer, external_id="pend-1", pending=True)
    posted = _import(importer, external_id="post-1")
    assert posted.id != pending.id

    _import(importer, external_id="post-1", pending_transaction_id="pend-1")
    assert pending.excluded is True
    assert posted.excluded is False


def test_manual_duplicate_is_claimed_instead_of_duplicated(session, family):
    acct = _mk_account(session, family)
    manual = Entry(
        account_id=acct.id,
        entryable_type="Transaction",
        name="Coffee Shop",
        date=dt.date(2024, 5, 1),
        amount=Decimal("12.50"),
        currency="USD",
        locked_attributes={},
    )
    manual.transaction = Transaction(kind="standard", tags_json=[], extra={})
    session.add(manual)
    session.flush()

    entry = _import(LedgerImportAdapter(session, acct))
    assert entry.id == manual.id
    assert entry.external_id == "tx-1"
    assert entry.source == "plaid"
    assert session.query(Entry).count() == 1


def test_extra_metadata_is_namespaced_and_deep_merged(session, family):
    acct = _mk_account(session, family)
    importer = LedgerImportAdapter(session, acct)
    entry = _import(importer, extra={"raw": {"a": 1}})
    _import(importer, extra={"raw": {"b": 2}})
    assert entry.transaction.extra == {"plaid": {"raw": {"a": 1, "b": 2}}}


def test_update_balance_defaults_cash_and_rejects_non_finite(session, family):
    acct = _mk_account(session, family)
    importer = LedgerImportAdapter(session, acct)
    assert importer.update_balance(balance="100.25", cash_balance="50", currency="usd") is True
    assert acct.balance == Decimal("100.25")
    assert acct.cash_balance == Decimal("50")
    assert importer.update_balance(balance="100.25", cash_balance="50") is False
    # Without a cash figure the whole balance counts as cash.
    assert importer.update_balance(balance="100.25") is True
    assert acct.cash_balance == Decimal("100.25")
    with pytest.raises(ImportValidationError):
        importer.update_balance(balance="NaN")


def test_accountable_attributes_respect_locks(session, family):
    acct = _mk_account(session, family, kind="CreditCard")
    importer = LedgerImportAdapter(session, acct)
    assert importer.update_accountable_attributes(
        attributes={"apr": Decimal("19.99"), "minimum_payment": Decimal("35"), "not_a_field": 1},
        source="plaid",
    )
    detail = acct.detail
    assert detail.apr == Decimal("19.99")
    lock_attribute(detail, "apr", source="user")
    detail.apr = Decimal("12.00")
    session.flush()

    importer.update_accountable_attributes(attributes={"apr": Decimal("24.99")}, source="plaid")
    assert detail.apr == Decimal("12.00")
