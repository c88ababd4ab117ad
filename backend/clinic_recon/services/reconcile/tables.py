from __future__ import annotations

from dataclasses import dataclass

PATIENTS_TABLE = "patients"
EVENTS_TABLE = "reconcile_events"


@dataclass(frozen=True)
class DependentTable:
    name: str
    # Columns that, together with patient_id, must stay unique per patient.
    # None means the table has no per-patient natural key.
    natural_key: tuple[str, ...] | None = None
    uid_column: str | None = None
    time_column: str | None = None
    content_column: str | None = None

    @property
    def unique_per_patient(self) -> bool:
        return self.natural_key is not None


# Fixed migration order. Billing and booking tables go first, message and
# tagging tables next, intake last so a halted merge never leaves the source
# patient without the rows that prove its identity.
DEPENDENT_TABLES: tuple[DependentTable, ...] = (
    DependentTable("reservations", time_column="created_at"),
    DependentTable("orders", time_column="created_at"),
    DependentTable("reorders", time_column="created_at"),
    DependentTable(
        "message_log",
        uid_column="line_uid",
        time_column="sent_at",
        content_column="content",
    ),
    DependentTable("patient_tags", natural_key=("tag_id",)),
    DependentTable("patient_marks", natural_key=()),
    DependentTable("friend_field_values", natural_key=("field_id",)),
    DependentTable("verify_codes", time_column="created_at"),
    DependentTable("intake", uid_column="line_id", time_column="created_at"),
)

DEPENDENT_TABLE_NAMES: tuple[str, ...] = tuple(table.name for table in DEPENDENT_TABLES)


def dependent_table(name: str) -> DependentTable:
    for table in DEPENDENT_TABLES:
        if table.name == name:
            return table
    raise ValueError(f"{name} is not a patient-dependent table")


def evidence_tables() -> tuple[DependentTable, ...]:
    return tuple(table for table in DEPENDENT_TABLES if table.uid_column)
