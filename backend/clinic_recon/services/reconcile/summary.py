from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from typing import Iterable

from clinic_recon.services.reconcile.store import StoreClient


@dataclass
class RunSummary:
    mode: str = "dry_run"
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errored: int = 0
    escalated: int = 0
    counts_before: dict[str, int] = field(default_factory=dict)
    counts_after: dict[str, int] = field(default_factory=dict)
    errors: list[dict[str, object]] = field(default_factory=list)

    @property
    def changed(self) -> int:
        return self.created + self.updated

    def record_error(self, item: dict[str, object], *, escalated: bool = False) -> None:
        if escalated:
            self.escalated += 1
        else:
            self.errored += 1
        self.errors.append(item)

    def snapshot_before(self, store: StoreClient, tables: Iterable[str]) -> None:
        self.counts_before = table_counts(store, tables)

    def snapshot_after(self, store: StoreClient, tables: Iterable[str]) -> None:
        self.counts_after = table_counts(store, tables)

    def as_dict(self) -> dict[str, object]:
        data = asdict(self)
        if not self.counts_after:
            data.pop("counts_after", None)
        return data


def table_counts(store: StoreClient, tables: Iterable[str]) -> dict[str, int]:
    return {name: store.count(name) for name in tables}


def emit_checkpoint(event: str, **fields: object) -> None:
    payload = {"event": event, "timestamp": round(time.time(), 3), **fields}
    print(json.dumps(payload, sort_keys=True, default=str))
