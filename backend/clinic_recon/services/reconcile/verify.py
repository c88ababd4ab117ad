from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from clinic_recon.services.reconcile.store import StoreClient
from clinic_recon.services.reconcile.tables import DEPENDENT_TABLE_NAMES, PATIENTS_TABLE

logger = logging.getLogger(__name__)


@dataclass
class OrphanReport:
    orphans: dict[str, int] = field(default_factory=dict)
    samples: dict[str, list[str]] = field(default_factory=dict)
    checked_patient_ids: list[str] | None = None

    @property
    def total(self) -> int:
        return sum(self.orphans.values())

    @property
    def ok(self) -> bool:
        return self.total == 0

    def as_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "total_orphans": self.total,
            "orphans": dict(self.orphans),
            "samples": {table: values for table, values in self.samples.items() if values},
            "checked_patient_ids": self.checked_patient_ids,
        }


def existing_patient_ids(store: StoreClient, patient_ids: Iterable[str] | None = None) -> set[str]:
    filters = {"patient_id": sorted(set(patient_ids))} if patient_ids is not None else None
    return {
        str(row["patient_id"])
        for page in store.iter_pages(PATIENTS_TABLE, filters)
        for row in page
    }


def count_references(store: StoreClient, patient_id: str) -> dict[str, int]:
    return {table: store.count(table, {"patient_id": patient_id}) for table in DEPENDENT_TABLE_NAMES}


def verify_references(
    store: StoreClient,
    patient_ids: Iterable[str] | None = None,
    redirected_to: str | None = None,
    sample: int = 10,
) -> OrphanReport:
    """Count dependent rows whose patient_id resolves to no Patient.

    With ``patient_ids`` only those ids are checked (the ids a merge or split
    touched); otherwise every dependent row is scanned. A row pointing at
    ``redirected_to`` is never an orphan.
    """
    scoped = sorted(set(patient_ids)) if patient_ids is not None else None
    known = existing_patient_ids(store, scoped)
    if redirected_to:
        known.add(redirected_to)

    report = OrphanReport(checked_patient_ids=scoped)
    for table in DEPENDENT_TABLE_NAMES:
        filters = {"patient_id": scoped} if scoped is not None else None
        missing = 0
        examples: list[str] = []
        for page in store.iter_pages(table, filters):
            for row in page:
                value = row.get("patient_id")
                if value is None or str(value) not in known:
                    missing += 1
                    if len(examples) < sample and str(value) not in examples:
                        examples.append(str(value))
        report.orphans[table] = missing
        report.samples[table] = examples
        if missing:
            logger.warning(
                "Orphaned rows after reconciliation",
                extra={"table": table, "orphans": missing, "sample_patient_ids": examples},
            )
    return report
