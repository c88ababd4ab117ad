from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from clinic_recon.services.reconcile.tables import DEPENDENT_TABLE_NAMES
from clinic_recon.services.reconcile.types import IDENTITY_FIELDS


class MergeOverride(BaseModel):
    target: str
    source: str
    fields: dict[str, str | None] = Field(default_factory=dict)
    note: str | None = None

    @field_validator("fields")
    @classmethod
    def _known_fields(cls, value: dict[str, str | None]) -> dict[str, str | None]:
        unknown = sorted(set(value) - set(IDENTITY_FIELDS))
        if unknown:
            raise ValueError(f"unknown identity fields: {', '.join(unknown)}")
        return value


class RowOverride(BaseModel):
    table: str
    row_id: int
    platform_uid: str

    @field_validator("table")
    @classmethod
    def _known_table(cls, value: str) -> str:
        if value not in DEPENDENT_TABLE_NAMES:
            raise ValueError(f"{value} is not a patient-dependent table")
        return value


class SplitOverride(BaseModel):
    patient_id: str
    rows: list[RowOverride] = Field(default_factory=list)
    note: str | None = None


class IdentityOverrides(BaseModel):
    """Operator decisions for cases evidence alone cannot settle."""

    merges: list[MergeOverride] = Field(default_factory=list)
    splits: list[SplitOverride] = Field(default_factory=list)

    @classmethod
    def load(cls, path: Path | str | None) -> IdentityOverrides:
        if path is None:
            return cls()
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls.model_validate(data)

    def merge_fields(self, target_id: str, source_id: str) -> dict[str, str | None]:
        pinned: dict[str, str | None] = {}
        for item in self.merges:
            if item.target == target_id and item.source == source_id:
                pinned.update(item.fields)
        return pinned

    def row_assignments(self, patient_id: str) -> dict[tuple[str, int], str]:
        assigned: dict[tuple[str, int], str] = {}
        for split in self.splits:
            if split.patient_id != patient_id:
                continue
            for row in split.rows:
                assigned[(row.table, row.row_id)] = row.platform_uid
        return assigned
