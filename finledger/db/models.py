from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from finledger.db.types import (
    MONEY,
    QTY,
    AccountableType,
    CostBasisSource,
    EntryableType,
    SyncStatus,
    TransactionKind,
    UTCDateTime,
)
from finledger.utils.time import utcnow


class Base(DeclarativeBase):
    pass


LIABILITY_TYPES = frozenset({"CreditCard", "Loan", "OtherLiability"})
INVESTMENT_TYPES = frozenset({"Investment", "Crypto"})


class Family(Base):
    __tablename__ = "families"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    accounts: Mapped[list["Account"]] = relationship(back_populates="family")


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(ForeignKey("families.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    accountable_type: Mapped[str] = mapped_column(AccountableType, nullable=False)
    balance: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    cash_balance: Mapped[Optional[Decimal]] = mapped_column(MONEY)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    family: Mapped["Family"] = relationship(back_populates="accounts")
    detail: Mapped[Optional["AccountableDetail"]] = relationship(back_populates="account", uselist=False)
    entries: Mapped[list["Entry"]] = relationship(back_populates="account")
    holdings: Mapped[list["Holding"]] = relationship(back_populates="account")
    account_providers: Mapped[list["AccountProvider"]] = relationship(back_populates="account")

    @property
    def classification(self) -> str:
        return "liability" if self.accountable_type in LIABILITY_TYPES else "asset"


class AccountableDetail(Base):
    __tablename__ = "accountable_details"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), unique=True, nullable=False)

    # CreditCard
    available_credit: Mapped[Optional[Decimal]] = mapped_column(MONEY)
    minimum_payment: Mapped[Optional[Decimal]] = mapped_column(MONEY)
    apr: Mapped[Optional[Decimal]] = mapped_column(Numeric(9, 4))
    annual_fee: Mapped[Optional[Decimal]] = mapped_column(MONEY)
    expiration_date: Mapped[Optional[dt.date]] = mapped_column(Date)

    # Loan
    interest_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(9, 4))
    rate_type: Mapped[Optional[str]] = mapped_column(String(20))
    term_months: Mapped[Optional[int]] = mapped_column(Integer)
    initial_balance: Mapped[Optional[Decimal]] = mapped_column(MONEY)

    locked_attributes: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    account: Mapped["Account"] = relationship(back_populates="detail")


class Category(Base):
    __tablename__ = "categories"
    __table_args__ = (UniqueConstraint("family_id", "name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(ForeignKey("families.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)


class Merchant(Base):
    __tablename__ = "merchants"
    __table_args__ = (UniqueConstraint("source", "provider_merchant_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_merchant_id: Mapped[str] = mapped_column(String(200), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    website_url: Mapped[Optional[str]] = mapped_column(String(500))
    logo_url: Mapped[Optional[str]] = mapped_column(String(500))
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class Security(Base):
    __tablename__ = "securities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticker: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(200))
    kind: Mapped[str] = mapped_column(String(20), default="equity", nullable=False)  # equity|fund|crypto|cash|other
    currency: Mapped[Optional[str]] = mapped_column(String(3))


class SecurityPrice(Base):
    __tablename__ = "security_prices"
    __table_args__ = (UniqueConstraint("security_id", "date", "currency"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    security_id: Mapped[int] = mapped_column(ForeignKey("securities.id"), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(19, 8), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    source: Mapped[Optional[str]] = mapped_column(String(50))


class ExchangeRate(Base):
    __tablename__ = "exchange_rates"
    __table_args__ = (UniqueConstraint("from_currency", "to_currency", "date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    from_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    to_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(19, 10), nullable=False)


class Entry(Base):
    __tablename__ = "entries"
    __table_args__ = (
        UniqueConstraint("account_id", "external_id", "source", name="uq_entries_account_external_source"),
        Index("ix_entries_account_date", "account_id", "date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    entryable_type: Mapped[str] = mapped_column(EntryableType, nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)  # positive = outflow
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    excluded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    external_id: Mapped[Optional[str]] = mapped_column(String(255))
    source: Mapped[Optional[str]] = mapped_column(String(50))
    # field name -> {"authority": ..., "source": ..., "at": iso timestamp}
    locked_attributes: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    account: Mapped["Account"] = relationship(back_populates="entries")
    transaction: Mapped[Optional["Transaction"]] = relationship(
        back_populates="entry", uselist=False, cascade="all, delete-orphan"
    )
    trade: Mapped[Optional["Trade"]] = relationship(back_populates="entry", uselist=False, cascade="all, delete-orphan")

    @property
    def entryable(self) -> "Transaction | Trade | None":
        return self.transaction if self.entryable_type == "Transaction" else self.trade


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    entry_id: Mapped[int] = mapped_column(ForeignKey("entries.id"), unique=True, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    merchant_id: Mapped[Optional[int]] = mapped_column(ForeignKey("merchants.id"))
    kind: Mapped[str] = mapped_column(TransactionKind, default="standard", nullable=False)
    tags_json: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    investment_activity_label: Mapped[Optional[str]] = mapped_column(String(50))
    # Provider metadata namespaced by source, e.g. {"plaid": {"pending": true}}.
    extra: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    entry: Mapped["Entry"] = relationship(back_populates="transaction")
    category: Mapped[Optional["Category"]] = relationship()
    merchant: Mapped[Optional["Merchant"]] = relationship()


class Trade(Base):
    __tablename__ = "trades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    entry_id: Mapped[int] = mapped_column(ForeignKey("entries.id"), unique=True, nullable=False)
    security_id: Mapped[int] = mapped_column(ForeignKey("securities.id"), nullable=False)
    qty: Mapped[Decimal] = mapped_column(QTY, nullable=False)  # positive buy, negative sell
    price: Mapped[Decimal] = mapped_column(Numeric(19, 8), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    entry: Mapped["Entry"] = relationship(back_populates="trade")
    security: Mapped["Security"] = relationship()


class ProviderConnection(Base):
    __tablename__ = "provider_connections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(ForeignKey("families.id"), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)  # simplefin|plaid|snaptrade|coinbase
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(30), default="active", nullable=False)  # active|requires_update|disabled
    pending_account_setup: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    allows_holdings_deletion: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    raw_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    last_synced_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    family: Mapped["Family"] = relationship()
    provider_accounts: Mapped[list["ProviderAccount"]] = relationship(back_populates="connection")
    sync_runs: Mapped[list["SyncRun"]] = relationship(back_populates="connection")


class ExternalCredential(Base):
    __tablename__ = "external_credentials"
    __table_args__ = (UniqueConstraint("connection_id", "key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    connection_id: Mapped[int] = mapped_column(ForeignKey("provider_connections.id"), nullable=False)
    key: Mapped[str] = mapped_column(String(100), nullable=False)
    value_encrypted: Mapped[str] = mapped_column(Text, nullable=False)  # fernet token (base64 text)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class ProviderAccount(Base):
    __tablename__ = "provider_accounts"
    __table_args__ = (UniqueConstraint("connection_id", "provider_account_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    connection_id: Mapped[int] = mapped_column(ForeignKey("provider_connections.id"), nullable=False)
    provider_account_id: Mapped[str] = mapped_column(String(200), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    account_type: Mapped[Optional[str]] = mapped_column(String(50))
    account_subtype: Mapped[Optional[str]] = mapped_column(String(50))
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    current_balance: Mapped[Optional[Decimal]] = mapped_column(MONEY)
    available_balance: Mapped[Optional[Decimal]] = mapped_column(MONEY)

    raw_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    raw_transactions_payload: Mapped[Optional[Any]] = mapped_column(JSON)
    raw_holdings_payload: Mapped[Optional[Any]] = mapped_column(JSON)
    raw_liabilities_payload: Mapped[Optional[Any]] = mapped_column(JSON)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    connection: Mapped["ProviderConnection"] = relationship(back_populates="provider_accounts")
    account_provider: Mapped[Optional["AccountProvider"]] = relationship(back_populates="provider_account", uselist=False)

    @property
    def linked_account(self) -> Optional["Account"]:
        return self.account_provider.account if self.account_provider is not None else None


class AccountProvider(Base):
    __tablename__ = "account_providers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    provider_account_id: Mapped[int] = mapped_column(ForeignKey("provider_accounts.id"), unique=True, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    account: Mapped["Account"] = relationship(back_populates="account_providers")
    provider_account: Mapped["ProviderAccount"] = relationship(back_populates="account_provider")


class Holding(Base):
    __tablename__ = "holdings"
    __table_args__ = (
        UniqueConstraint("account_id", "security_id", "date", "currency", name="uq_holdings_account_security_date"),
        UniqueConstraint("account_id", "external_id", name="uq_holdings_account_external"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    security_id: Mapped[int] = mapped_column(ForeignKey("securities.id"), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    qty: Mapped[Decimal] = mapped_column(QTY, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(19, 8), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    cost_basis: Mapped[Optional[Decimal]] = mapped_column(Numeric(19, 8))  # per unit
    cost_basis_source: Mapped[Optional[str]] = mapped_column(CostBasisSource)
    cost_basis_locked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    external_id: Mapped[Optional[str]] = mapped_column(String(255))
    account_provider_id: Mapped[Optional[int]] = mapped_column(ForeignKey("account_providers.id", ondelete="SET NULL"))
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    account: Mapped["Account"] = relationship(back_populates="holdings")
    security: Mapped["Security"] = relationship()


class SyncRun(Base):
    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    connection_id: Mapped[int] = mapped_column(ForeignKey("provider_connections.id"), nullable=False)
    status: Mapped[str] = mapped_column(SyncStatus, default="pending", nullable=False)
    status_text: Mapped[Optional[str]] = mapped_column(String(300))
    sync_stats: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text)
    window_start_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    window_end_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    completed_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())

    connection: Mapped["ProviderConnection"] = relationship(back_populates="sync_runs")


class ExternalPayloadSnapshot(Base):
    __tablename__ = "external_payload_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    sync_run_id: Mapped[int] = mapped_column(ForeignKey("sync_runs.id"), nullable=False)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)  # snapshot
    payload_json: Mapped[Any] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class DataEnrichment(Base):
    __tablename__ = "data_enrichments"
    __table_args__ = (UniqueConstraint("entity", "entity_id", "attribute_name", "source"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    entity: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    attribute_name: Mapped[str] = mapped_column(String(100), nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    value_json: Mapped[Any] = mapped_column(JSON)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    actor: Mapped[str] = mapped_column(String(200), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    entity: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100))
    old_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    new_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    note: Mapped[Optional[str]] = mapped_column(Text)
