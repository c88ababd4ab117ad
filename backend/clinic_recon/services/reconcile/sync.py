from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Sequence

from clinic_recon.services.reconcile.diff import DiffResult, diff, latest
from clinic_recon.services.reconcile.identity_index import (
    IdentityIndex,
    placeholder_patient_id,
    record_from_store_row,
    records_from_store_rows,
)
from clinic_recon.services.reconcile.status import is_logically_deleted
from clinic_recon.services.reconcile.store import StoreClient
from clinic_recon.services.reconcile.summary import RunSummary
from clinic_recon.services.reconcile.tables import PATIENTS_TABLE
from clinic_recon.services.reconcile.types import SourceRecord
from clinic_recon.services.reconcile.verify import OrphanReport, existing_patient_ids, verify_references

logger = logging.getLogger(__name__)

RESERVATIONS_TABLE = "reservations"
RESERVATION_FIELDS = ("status", "reserved_date", "reserved_time", "patient_id")
# patient_id on an existing row only changes through a merge or split.
UPDATABLE_FIELDS = ("status", "reserved_date", "reserved_time")
DEFAULT_STATUS = "pending"


def diff_reservations(
    source_records: Iterable[SourceRecord],
    store_rows: Iterable[dict[str, Any]],
) -> DiffResult:
    source_index = IdentityIndex.build(source_records)
    store_index = IdentityIndex.build(records_from_store_rows(store_rows, RESERVATIONS_TABLE))
    return diff("reserve_id", source_index, store_index, RESERVATION_FIELDS)


def _column_value(record: SourceRecord, name: str) -> Any:
    value = record.value(name)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def _insert_row(record: SourceRecord, patient_id: str) -> dict[str, Any]:
    return {
        "reserve_id": record.reserve_id,
        "patient_id": patient_id,
        "patient_name": record.name,
        "reserved_date": _column_value(record, "reserved_date"),
        "reserved_time": record.reserved_time,
        "status": record.status or DEFAULT_STATUS,
    }


@dataclass
class _PatientResolver:
    """Maps new reservations onto patients that exist, or will exist after the batch."""

    known: set[str]
    uid_owners: dict[str, str]
    placeholders: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def load(cls, store: StoreClient, records: Iterable[SourceRecord]) -> _PatientResolver:
        records = list(records)
        uids = sorted({record.platform_uid for record in records if record.platform_uid and not record.patient_id})
        candidates = {record.patient_id for record in records if record.patient_id}
        candidates.update(placeholder_patient_id(uid) for uid in uids)
        owners: dict[str, str] = {}
        if uids:
            for row in store.fetch_all(PATIENTS_TABLE, {"platform_uid": uids}, order_by=["id"]):
                owners.setdefault(row["platform_uid"], str(row["patient_id"]))
        known = existing_patient_ids(store, candidates) if candidates else set()
        return cls(known=known, uid_owners=owners)

    def resolve(self, record: SourceRecord) -> str | None:
        if record.patient_id:
            return record.patient_id if record.patient_id in self.known else None
        uid = record.platform_uid
        if not uid:
            return None
        if uid in self.uid_owners:
            return self.uid_owners[uid]
        patient_id = placeholder_patient_id(uid)
        if patient_id not in self.known and patient_id not in self.placeholders:
            self.placeholders[patient_id] = {"patient_id": patient_id, "platform_uid": uid, "name": record.name}
        return patient_id


@dataclass
class SyncResult:
    summary: RunSummary
    diff: DiffResult
    inserts: list[dict[str, Any]] = field(default_factory=list)
    updates: list[dict[str, Any]] = field(default_factory=list)
    cancels: list[str] = field(default_factory=list)
    placeholder_patients: list[dict[str, Any]] = field(default_factory=list)
    verification: OrphanReport | None = None

    @property
    def changes(self) -> int:
        return self.summary.changed

    def as_dict(self) -> dict[str, object]:
        return {
            "summary": self.summary.as_dict(),
            "diff": self.diff.as_dict(),
            "inserts": [row["reserve_id"] for row in self.inserts],
            "updates": self.updates,
            "cancels": self.cancels,
            "placeholder_patients": [row["patient_id"] for row in self.placeholder_patients],
            "verification": self.verification.as_dict() if self.verification else None,
        }


def _field_updates(
    key: str,
    record: SourceRecord,
    store_row: dict[str, Any],
    summary: RunSummary,
) -> dict[str, Any]:
    """Fields the source claims differently from an existing store row."""
    values: dict[str, Any] = {}
    current = record_from_store_row(store_row, RESERVATIONS_TABLE, 0)
    for name in RESERVATION_FIELDS:
        claimed = record.value(name)
        if name == "status":
            claimed = claimed or DEFAULT_STATUS
        if claimed is None or claimed == current.value(name):
            continue
        if name not in UPDATABLE_FIELDS:
            _escalate_patient_change(key, claimed, current.value(name), summary)
            continue
        values[name] = _iso(claimed)
    return values


def _escalate_patient_change(key: str, source_value: Any, store_value: Any, summary: RunSummary) -> None:
    summary.record_error(
        {"reserve_id": key, "field": "patient_id", "source": source_value, "store": store_value},
        escalated=True,
    )
    logger.warning(
        "Reservation claims a different patient; needs a merge or split",
        extra={"reserve_id": key, "source_patient_id": source_value, "store_patient_id": store_value},
    )


def _plan_updates(result: DiffResult, summary: RunSummary, canceled: set[str]) -> list[dict[str, Any]]:
    updates: dict[str, dict[str, Any]] = {}
    for mismatch in result.value_mismatch:
        if mismatch.key in canceled:
            continue
        if mismatch.a is None:
            # The source makes no claim about this field.
            continue
        if mismatch.field not in UPDATABLE_FIELDS:
            _escalate_patient_change(mismatch.key, mismatch.a, mismatch.b, summary)
            continue
        source_record, _ = result.both[mismatch.key]
        updates.setdefault(mismatch.key, {})[mismatch.field] = _column_value(source_record, mismatch.field)
    return [{"reserve_id": key, "values": values} for key, values in sorted(updates.items())]


def canceled_in_source(source_records: Sequence[SourceRecord]) -> set[str]:
    """reserve_ids whose latest source row is logically deleted."""
    by_key = IdentityIndex.build(source_records).key_space("reserve_id")
    return {key for key, rows in by_key.items() if is_logically_deleted(latest(rows).status)}


def _plan_cancels(result: DiffResult, canceled: set[str]) -> list[str]:
    """Store-live reservations the source has since canceled."""
    return sorted((result.only_in_b.keys() | result.both.keys()) & canceled)


def sync_reservations(
    store: StoreClient,
    source_records: Iterable[SourceRecord],
    confirm: bool = False,
) -> SyncResult:
    source_records = list(source_records)
    summary = RunSummary(mode="apply" if confirm else "dry_run")
    summary.snapshot_before(store, [PATIENTS_TABLE, RESERVATIONS_TABLE])

    store_rows = store.fetch_all(RESERVATIONS_TABLE)
    # Rows the store has logically deleted drop out of the diff but still own their reserve_id.
    existing = {str(row["reserve_id"]): row for row in store_rows}
    result = SyncResult(summary=summary, diff=diff_reservations(source_records, store_rows))

    canceled = canceled_in_source(source_records)
    new_records = [
        (key, record)
        for key, record in sorted(result.diff.only_in_a.items())
        if key not in canceled and key not in existing
    ]
    resolver = _PatientResolver.load(store, (record for _, record in new_records))
    for key, record in new_records:
        patient_id = resolver.resolve(record)
        if patient_id is None:
            summary.skipped += 1
            error = "patient not found" if record.patient_id else "no patient_id or platform uid"
            summary.record_error({"reserve_id": key, "patient_id": record.patient_id, "error": error})
            continue
        result.inserts.append(_insert_row(record, patient_id))
    result.placeholder_patients = list(resolver.placeholders.values())

    reinstated = []
    for key, record in sorted(result.diff.only_in_a.items()):
        if key in canceled or key not in existing:
            continue
        values = _field_updates(key, record, existing[key], summary)
        if values:
            reinstated.append({"reserve_id": key, "values": values})
    result.updates = sorted(
        _plan_updates(result.diff, summary, canceled) + reinstated,
        key=lambda item: item["reserve_id"],
    )
    result.cancels = _plan_cancels(result.diff, canceled)

    summary.created = len(result.inserts) + len(result.placeholder_patients)
    summary.updated = len(result.updates) + len(result.cancels)

    if confirm and summary.changed:
        if result.placeholder_patients:
            store.insert(PATIENTS_TABLE, result.placeholder_patients)
        if result.inserts:
            store.upsert(RESERVATIONS_TABLE, result.inserts, conflict_key="reserve_id")
        for item in result.updates:
            store.update(RESERVATIONS_TABLE, item["values"], {"reserve_id": item["reserve_id"]})
        if result.cancels:
            store.update(RESERVATIONS_TABLE, {"status": "canceled"}, {"reserve_id": result.cancels})
        store.commit()
        logger.info(
            "Reservation sync applied",
            extra={"created": summary.created, "updated": summary.updated},
        )
    if confirm:
        if result.inserts:
            result.verification = verify_references(
                store,
                patient_ids={row["patient_id"] for row in result.inserts},
            )
        summary.snapshot_after(store, [PATIENTS_TABLE, RESERVATIONS_TABLE])
    return result


@dataclass
class SyncIssue:
    type: str
    count: int
    details: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return asdict(self)


def _iso(value: Any) -> Any:
    return value.isoformat() if hasattr(value, "isoformat") else value


def audit_sync(
    source_intake: Sequence[SourceRecord],
    source_reservations: Sequence[SourceRecord],
    store_intake: Sequence[SourceRecord],
    store_reservations: Sequence[SourceRecord],
    sample: int = 5,
) -> list[SyncIssue]:
    issues: list[SyncIssue] = []

    store_intake_patients = {record.patient_id for record in store_intake if record.patient_id}
    missing_intake = [
        record for record in source_intake if record.patient_id and record.patient_id not in store_intake_patients
    ]
    if missing_intake:
        issues.append(
            SyncIssue(
                "missing_intake",
                len(missing_intake),
                [
                    {"patient_id": record.patient_id, "name": record.name, "submitted_at": _iso(record.timestamp)}
                    for record in missing_intake[:sample]
                ],
            )
        )

    reservation_diff = diff(
        "reserve_id",
        IdentityIndex.build(source_reservations),
        IdentityIndex.build(store_reservations),
    )
    if reservation_diff.only_in_a:
        missing = [reservation_diff.only_in_a[key] for key in sorted(reservation_diff.only_in_a)]
        issues.append(
            SyncIssue(
                "missing_reservations",
                len(missing),
                [
                    {
                        "reserve_id": record.reserve_id,
                        "patient_id": record.patient_id,
                        "date": _iso(record.reserved_date),
                        "time": record.reserved_time,
                    }
                    for record in missing[:sample]
                ],
            )
        )

    canceled = _plan_cancels(reservation_diff, canceled_in_source(source_reservations))
    if canceled:
        issues.append(
            SyncIssue(
                "reservation_status_mismatch",
                len(canceled),
                [{"reserve_id": key, "source": "canceled", "store": "live"} for key in canceled[:sample]],
            )
        )

    booked_patients = {
        record.patient_id
        for record in source_reservations
        if record.patient_id and not is_logically_deleted(record.status)
    }
    without_reserve_id = [
        record for record in store_intake if record.patient_id in booked_patients and not record.reserve_id
    ]
    if without_reserve_id:
        issues.append(
            SyncIssue(
                "intake_missing_reserve_id",
                len(without_reserve_id),
                [{"patient_id": record.patient_id, "patient_name": record.name} for record in without_reserve_id[:sample]],
            )
        )

    for issue in issues:
        logger.warning("Sync audit issue", extra={"issue": issue.type, "count": issue.count})
    return issues
