from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import reduce
from typing import Any, Callable, Iterable, Optional

from sqlalchemy.orm import Session


log = logging.getLogger(__name__)

ERROR_SAMPLE_LIMIT = 20


class ImportValidationError(ValueError):
    """A single provider record is unusable (missing id, non-finite amount, bad date...)."""

    def __init__(self, message: str, *, external_id: Optional[str] = None):
        super().__init__(message)
        self.external_id = external_id


@dataclass(frozen=True)
class RecordResult:
    record_id: Optional[str]
    ok: bool
    value: Any = None
    error: Optional[str] = None
    category: Optional[str] = None

    @classmethod
    def success(cls, record_id: Optional[str], value: Any = None) -> "RecordResult":
        return cls(record_id=record_id, ok=True, value=value)

    @classmethod
    def failure(cls, record_id: Optional[str], error: str, *, category: str = "record_error") -> "RecordResult":
        return cls(record_id=record_id, ok=False, error=error, category=category)


@dataclass
class BatchResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    error_count: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def add(self, result: RecordResult) -> "BatchResult":
        self.processed += 1
        if result.ok:
            self.succeeded += 1
        else:
            self.failed += 1
            self.add_error(result.error or "unknown error", category=result.category, record_id=result.record_id)
        return self

    def add_error(self, message: str, *, category: Optional[str] = None, record_id: Optional[str] = None) -> None:
        self.error_count += 1
        if len(self.errors) < ERROR_SAMPLE_LIMIT:
            self.errors.append({"message": message, "category": category or "record_error", "record_id": record_id})

    def extend(self, results: Iterable[RecordResult]) -> "BatchResult":
        return reduce(lambda acc, r: acc.add(r), results, self)


def capture(session: Session, record_id: Optional[str], fn: Callable[[], Any]) -> RecordResult:
    """
    Run one record import inside a savepoint and turn its outcome into a RecordResult.

    A failing record rolls back only its own savepoint, so the batch keeps going.
    """
    try:
        with session.begin_nested():
            value = fn()
        return RecordResult.success(record_id, value)
    except ImportValidationError as e:
        log.warning("Skipping invalid record %s: %s", e.external_id or record_id, e)
        return RecordResult.failure(record_id, str(e), category="validation")
    except Exception as e:
        log.exception("Failed to import record %s", record_id)
        return RecordResult.failure(record_id, f"{type(e).__name__}: {e}")
