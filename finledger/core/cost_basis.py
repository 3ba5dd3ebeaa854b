from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from finledger.utils.money import finite_decimal

# manual > calculated > provider
SOURCE_PRIORITY = {None: 0, "provider": 1, "calculated": 2, "manual": 3}


@dataclass(frozen=True)
class CostBasisDecision:
    should_update: bool
    cost_basis: Optional[Decimal]
    cost_basis_source: Optional[str]


def _known(value: Any) -> Optional[Decimal]:
    d = finite_decimal(value)
    if d is None or d == 0:
        return None
    return d


def reconcile(existing_holding: Any, incoming_cost_basis: Any, incoming_source: str) -> CostBasisDecision:
    """
    Decide whether an incoming cost basis may replace what a holding has.

    - locked holdings never change;
    - nil or zero incoming values are "unknown" and never overwrite;
    - otherwise the incoming source must be at least as authoritative as the existing one.
    """
    if incoming_source not in SOURCE_PRIORITY or incoming_source is None:
        raise ValueError(f"Unknown cost basis source: {incoming_source!r}")

    incoming = _known(incoming_cost_basis)

    if existing_holding is None:
        if incoming is None:
            return CostBasisDecision(should_update=False, cost_basis=None, cost_basis_source=None)
        return CostBasisDecision(should_update=True, cost_basis=incoming, cost_basis_source=incoming_source)

    existing_value = existing_holding.cost_basis
    existing_source = existing_holding.cost_basis_source
    keep = CostBasisDecision(should_update=False, cost_basis=existing_value, cost_basis_source=existing_source)

    if existing_holding.cost_basis_locked or incoming is None:
        return keep

    if SOURCE_PRIORITY[incoming_source] < SOURCE_PRIORITY.get(existing_source, 0):
        return keep

    if existing_source == incoming_source and finite_decimal(existing_value) == incoming:
        return keep

    return CostBasisDecision(should_update=True, cost_basis=incoming, cost_basis_source=incoming_source)
