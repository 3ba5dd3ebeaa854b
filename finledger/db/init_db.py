from __future__ import annotations

from pathlib import Path

from finledger.db.models import Base
from finledger.db.session import get_database_url, get_engine


def init_db() -> None:
    url = get_database_url()
    if url.startswith("sqlite:///") and not url.startswith("sqlite:///:memory:"):
        Path(url[len("sqlite:///") :]).parent.mkdir(parents=True, exist_ok=True)
    engine = get_engine()
    Base.metadata.create_all(bind=engine)
