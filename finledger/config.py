from __future__ import annotations

import logging
import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, field_validator


log = logging.getLogger(__name__)

ENV_PREFIX = "FINLEDGER_"


class OverpaymentSettings(BaseModel):
    enabled: bool = True
    window_days: int = 120
    min_txns: int = 10
    min_payments: int = 2
    epsilon_base: Decimal = Decimal("0.50")
    statement_guard_days: int = 5
    sticky_days: int = 7
    sanity_tolerance_base: Decimal = Decimal("5")
    sanity_tolerance_pct: Decimal = Decimal("0.10")
    statement_guard_max_payments: int = 2

    @field_validator("window_days", "min_txns", "min_payments", "sticky_days", "statement_guard_max_payments", mode="before")
    @classmethod
    def _positive_int(cls, v: Any, info) -> Any:
        default = cls.model_fields[info.field_name].default
        try:
            n = int(v)
        except (TypeError, ValueError):
            return default
        return n if n > 0 else default

    @field_validator("statement_guard_days", mode="before")
    @classmethod
    def _non_negative_int(cls, v: Any) -> Any:
        try:
            n = int(v)
        except (TypeError, ValueError):
            return 5
        return n if n >= 0 else 5

    @field_validator("epsilon_base", "sanity_tolerance_base", "sanity_tolerance_pct", mode="before")
    @classmethod
    def _positive_decimal(cls, v: Any, info) -> Any:
        default = cls.model_fields[info.field_name].default
        try:
            d = Decimal(str(v))
        except ArithmeticError:
            return default
        return d if d.is_finite() and d > 0 else default


class SyncSettings(BaseModel):
    include_pending: bool = True
    stale_pending_days: int = Field(default=8, ge=1)
    overlap_days: int = Field(default=7, ge=0, le=30)
    default_lookback_days: int = Field(default=90, ge=1)


class AppSettings(BaseModel):
    overpayment: OverpaymentSettings = Field(default_factory=OverpaymentSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)


def _candidate_paths() -> list[Path]:
    paths = []
    if os.environ.get(f"{ENV_PREFIX}CONFIG"):
        paths.append(Path(os.environ[f"{ENV_PREFIX}CONFIG"]))
    paths.append(Path("finledger.yaml"))
    home = Path(os.path.expanduser("~"))
    paths.append(home / ".finledger" / "settings.yaml")
    return paths


def _env_section(env: Mapping[str, str], section: str, model: type[BaseModel]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in model.model_fields:
        key = f"{ENV_PREFIX}{section.upper()}_{name.upper()}"
        raw = env.get(key)
        if raw is None or not raw.strip():
            continue
        out[name] = raw.strip()
    return out


def load_settings(*, path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> AppSettings:
    """
    YAML file (first existing candidate) overlaid by FINLEDGER_<SECTION>_<FIELD> env vars.

    e.g. FINLEDGER_OVERPAYMENT_MIN_TXNS=5, FINLEDGER_SYNC_INCLUDE_PENDING=false
    """
    env = os.environ if env is None else env
    data: dict[str, Any] = {}
    for p in [path] if path is not None else _candidate_paths():
        if p.exists():
            data = yaml.safe_load(p.read_text()) or {}
            log.debug("Loaded settings from %s", p)
            break
    if not isinstance(data, dict):
        data = {}

    merged: dict[str, Any] = {}
    for section, model in (("overpayment", OverpaymentSettings), ("sync", SyncSettings)):
        raw = data.get(section) or {}
        if not isinstance(raw, dict):
            raw = {}
        merged[section] = {**raw, **_env_section(env, section, model)}
    return AppSettings.model_validate(merged)
