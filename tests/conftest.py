from __future__ import annotations

import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from finledger.db.models import Base, Family
from finledger.db.session import enable_sqlite_savepoints


@pytest.fixture()
def session() -> Session:
    engine = enable_sqlite_savepoints(create_engine("sqlite:///:memory:", future=True))
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False)
    with SessionLocal() as s:
        yield s


@pytest.fixture()
def family(session) -> Family:
    fam = Family(name="Household", currency="USD")
    session.add(fam)
    session.flush()
    return fam


@pytest.fixture()
def secret_key(monkeypatch) -> str:
    monkeypatch.setenv("APP_SECRET_KEY", "test-secret-key")
    return "test-secret-key"
