from __future__ import annotations

import enum
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field


IDENTITY_FIELDS = ("name", "name_kana", "sex", "birthday", "phone", "platform_uid")


class SourceRecord(BaseModel):
    origin: str
    position: int = Field(..., ge=0)
    patient_id: str | None = None
    reserve_id: str | None = None
    platform_uid: str | None = None
    phone: str | None = None
    name: str | None = None
    name_kana: str | None = None
    sex: str | None = None
    birthday: str | None = None
    status: str | None = None
    timestamp: datetime | None = None
    reserved_date: date | None = None
    reserved_time: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)

    def value(self, field: str) -> Any:
        return getattr(self, field)


class PatientSnapshot(BaseModel):
    patient_id: str
    name: str | None = None
    name_kana: str | None = None
    sex: str | None = None
    birthday: str | None = None
    phone: str | None = None
    platform_uid: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> PatientSnapshot:
        return cls.model_validate({key: row.get(key) for key in cls.model_fields})

    def identity_values(self) -> dict[str, str | None]:
        return {field: getattr(self, field) for field in IDENTITY_FIELDS}


class MergeReason(str, enum.Enum):
    platform_uid = "platform_uid"
    phone_name = "phone_name"
    operator = "operator"


class MovedTable(BaseModel):
    table: str
    count: int = 0
    dropped: int = 0


class FieldConflict(BaseModel):
    field: str
    target: str | None
    source: str | None


class MergeOperation(BaseModel):
    source_patient_id: str
    target_patient_id: str
    reason: MergeReason
    moved_tables: list[MovedTable] = Field(default_factory=list)
    field_merge: dict[str, str | None] = Field(default_factory=dict)
    conflicts: list[FieldConflict] = Field(default_factory=list)
    retired_platform_uid: str | None = None
    already_applied: bool = False
    dry_run: bool = True

    @property
    def total_rows(self) -> int:
        return sum(item.count for item in self.moved_tables)


class SplitIdentity(BaseModel):
    platform_uid: str
    patient_id: str
    is_primary: bool = False
    is_new: bool = False
    profile: dict[str, str | None] = Field(default_factory=dict)


class RowAssignment(BaseModel):
    table: str
    row_id: int
    platform_uid: str
    patient_id: str
    evidence: str


class RowRef(BaseModel):
    table: str
    row_id: int


class CollisionSplit(BaseModel):
    patient_id: str
    identities: list[SplitIdentity] = Field(default_factory=list)
    assignments: list[RowAssignment] = Field(default_factory=list)
    unassigned: list[RowRef] = Field(default_factory=list)
    already_applied: bool = False
    dry_run: bool = True

    @property
    def primary(self) -> SplitIdentity:
        for identity in self.identities:
            if identity.is_primary:
                return identity
        raise LookupError(f"split for {self.patient_id} has no primary identity")

    def new_identities(self) -> list[SplitIdentity]:
        return [identity for identity in self.identities if identity.is_new]

    def moving_assignments(self) -> list[RowAssignment]:
        return [item for item in self.assignments if item.patient_id != self.patient_id]
