from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Mapping

from clinic_recon.services.reconcile.phone import normalize_jp_phone
from clinic_recon.services.reconcile.source import normalize_row
from clinic_recon.services.reconcile.types import SourceRecord

KEY_SPACES = ("patient_id", "reserve_id", "platform_uid", "phone")


def placeholder_patient_id(platform_uid: str) -> str:
    """Stand-in id for a messaging user who never completed intake."""
    return f"LINE_{platform_uid[-8:]}"


@dataclass(frozen=True)
class IdentityClaim:
    origin: str
    position: int
    patient_id: str
    platform_uid: str | None


def record_from_store_row(row: Mapping[str, Any], table: str, position: int) -> SourceRecord:
    return normalize_row(row, origin=f"store:{table}", position=position)


def records_from_store_rows(rows: Iterable[Mapping[str, Any]], table: str) -> list[SourceRecord]:
    return [record_from_store_row(row, table, position) for position, row in enumerate(rows)]


@dataclass
class IdentityIndex:
    by_patient_id: dict[str, list[SourceRecord]] = field(default_factory=lambda: defaultdict(list))
    by_reserve_id: dict[str, list[SourceRecord]] = field(default_factory=lambda: defaultdict(list))
    by_platform_uid: dict[str, list[SourceRecord]] = field(default_factory=lambda: defaultdict(list))
    by_phone: dict[str, list[SourceRecord]] = field(default_factory=lambda: defaultdict(list))
    size: int = 0

    @classmethod
    def build(cls, *sources: Iterable[SourceRecord]) -> IdentityIndex:
        index = cls()
        for records in sources:
            for record in records:
                index.add(record)
        return index

    def add(self, record: SourceRecord) -> None:
        self.size += 1
        if record.patient_id:
            self.by_patient_id[record.patient_id].append(record)
        if record.reserve_id:
            self.by_reserve_id[record.reserve_id].append(record)
        if record.platform_uid:
            # Platform uids are opaque: no case folding or trimming beyond the adapter.
            self.by_platform_uid[record.platform_uid].append(record)
        phone = normalize_jp_phone(record.phone)
        if phone:
            self.by_phone[phone].append(record)

    def key_space(self, name: str) -> dict[str, list[SourceRecord]]:
        if name not in KEY_SPACES:
            raise ValueError(f"Unknown key space: {name}")
        return getattr(self, f"by_{name}")

    def keys(self, name: str) -> set[str]:
        return set(self.key_space(name))

    def lookup(self, name: str, key: str) -> list[SourceRecord]:
        if name == "phone":
            key = normalize_jp_phone(key) or key
        return list(self.key_space(name).get(key, ()))

    def collisions(self, name: str) -> dict[str, list[SourceRecord]]:
        return {key: rows for key, rows in self.key_space(name).items() if len(rows) > 1}

    def claims(self) -> Iterator[IdentityClaim]:
        for patient_id, rows in self.by_patient_id.items():
            for row in rows:
                yield IdentityClaim(
                    origin=row.origin,
                    position=row.position,
                    patient_id=patient_id,
                    platform_uid=row.platform_uid,
                )

    def platform_uid_conflicts(self) -> dict[str, set[str]]:
        """patient_ids claimed by more than one distinct platform uid."""
        conflicts: dict[str, set[str]] = {}
        for patient_id, rows in self.by_patient_id.items():
            uids = {row.platform_uid for row in rows if row.platform_uid}
            if len(uids) > 1:
                conflicts[patient_id] = uids
        return conflicts

    def patient_ids_for_uid(self, platform_uid: str) -> set[str]:
        return {row.patient_id for row in self.by_platform_uid.get(platform_uid, ()) if row.patient_id}

    def summary(self) -> dict[str, object]:
        return {
            "records": self.size,
            "patient_ids": len(self.by_patient_id),
            "reserve_ids": len(self.by_reserve_id),
            "platform_uids": len(self.by_platform_uid),
            "phones": len(self.by_phone),
            "collisions": {name: len(self.collisions(name)) for name in KEY_SPACES},
            "patient_ids_with_multiple_uids": len(self.platform_uid_conflicts()),
        }
