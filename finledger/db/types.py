from __future__ import annotations

import datetime as dt
from typing import Optional

from sqlalchemy import Enum, Numeric
from sqlalchemy.types import DateTime, TypeDecorator

from finledger.utils.time import ensure_utc

# Ledger amounts and balances.
MONEY = Numeric(19, 4)
# Security quantities and per-unit prices (crypto needs the extra scale).
QTY = Numeric(24, 8)

AccountableType = Enum(
    "Depository",
    "CreditCard",
    "Loan",
    "Investment",
    "Crypto",
    "Property",
    "Vehicle",
    "OtherAsset",
    "OtherLiability",
    name="accountable_type",
)
EntryableType = Enum("Transaction", "Trade", name="entryable_type")
TransactionKind = Enum(
    "standard",
    "funds_movement",
    "cc_payment",
    "loan_payment",
    "one_time",
    "investment_contribution",
    name="transaction_kind",
)
CostBasisSource = Enum("provider", "calculated", "manual", name="cost_basis_source")
SyncStatus = Enum("pending", "syncing", "completed", "failed", name="sync_status")


class UTCDateTime(TypeDecorator):
    """
    Timestamp column that round-trips aware UTC datetimes.

    Values are written as naive UTC (SQLite has no zone-aware type); naive inputs are
    taken to be UTC already. Reads always come back with `tzinfo=UTC`.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[dt.datetime], dialect) -> Optional[dt.datetime]:
        if value is None:
            return None
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value: Optional[dt.datetime], dialect) -> Optional[dt.datetime]:
        if value is None:
            return None
        return ensure_utc(value)
