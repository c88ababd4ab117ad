from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Sequence

from clinic_recon.services.reconcile.identity_index import IdentityIndex
from clinic_recon.services.reconcile.status import is_logically_deleted
from clinic_recon.services.reconcile.types import SourceRecord


@dataclass
class ValueMismatch:
    key: str
    field: str
    a: object
    b: object

    def as_dict(self) -> dict[str, object]:
        return {"key": self.key, "field": self.field, "a": _jsonable(self.a), "b": _jsonable(self.b)}


@dataclass
class DiffResult:
    key_space: str
    only_in_a: dict[str, SourceRecord] = field(default_factory=dict)
    only_in_b: dict[str, SourceRecord] = field(default_factory=dict)
    both: dict[str, tuple[SourceRecord, SourceRecord]] = field(default_factory=dict)
    value_mismatch: list[ValueMismatch] = field(default_factory=list)
    filtered_a: int = 0
    filtered_b: int = 0

    @property
    def is_clean(self) -> bool:
        return not self.only_in_a and not self.only_in_b and not self.value_mismatch

    def mismatched_keys(self) -> list[str]:
        seen: dict[str, None] = {}
        for item in self.value_mismatch:
            seen.setdefault(item.key, None)
        return list(seen)

    def as_dict(self, sample: int = 20) -> dict[str, object]:
        return {
            "key_space": self.key_space,
            "only_in_a": len(self.only_in_a),
            "only_in_b": len(self.only_in_b),
            "both": len(self.both),
            "value_mismatch": len(self.value_mismatch),
            "filtered_logically_deleted": {"a": self.filtered_a, "b": self.filtered_b},
            "only_in_a_keys": sorted(self.only_in_a)[:sample],
            "only_in_b_keys": sorted(self.only_in_b)[:sample],
            "mismatches": [item.as_dict() for item in self.value_mismatch[:sample]],
        }


def _jsonable(value: object) -> object:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def _latest_key(record: SourceRecord) -> tuple[int, datetime, int]:
    if record.timestamp is None:
        return (0, datetime.min, record.position)
    return (1, record.timestamp, record.position)


def latest(records: Sequence[SourceRecord]) -> SourceRecord:
    """Pick the row that represents a key.

    Most recent explicit timestamp wins; rows without one rank below any
    timestamped row, and ties fall back to insertion order (the later row).
    """
    if not records:
        raise ValueError("latest() needs at least one record")
    return max(records, key=_latest_key)


def _live_rows(
    rows_by_key: dict[str, list[SourceRecord]],
) -> tuple[dict[str, SourceRecord], int]:
    live: dict[str, SourceRecord] = {}
    filtered = 0
    for key, rows in rows_by_key.items():
        kept = [row for row in rows if not is_logically_deleted(row.status)]
        filtered += len(rows) - len(kept)
        if kept:
            live[key] = latest(kept)
    return live, filtered


def diff(
    key_space: str,
    index_a: IdentityIndex,
    index_b: IdentityIndex,
    compare_fields: Iterable[str] = (),
) -> DiffResult:
    compare_fields = tuple(compare_fields)
    side_a, filtered_a = _live_rows(index_a.key_space(key_space))
    side_b, filtered_b = _live_rows(index_b.key_space(key_space))
    result = DiffResult(key_space=key_space, filtered_a=filtered_a, filtered_b=filtered_b)

    for key in sorted(side_a.keys() | side_b.keys()):
        record_a = side_a.get(key)
        record_b = side_b.get(key)
        if record_b is None:
            result.only_in_a[key] = record_a
        elif record_a is None:
            result.only_in_b[key] = record_b
        else:
            result.both[key] = (record_a, record_b)
            for name in compare_fields:
                value_a = record_a.value(name)
                value_b = record_b.value(name)
                if value_a != value_b:
                    result.value_mismatch.append(ValueMismatch(key, name, value_a, value_b))
    return result
