from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Iterable

from clinic_recon.services.reconcile.errors import ConflictError, ValidationError
from clinic_recon.services.reconcile.overrides import IdentityOverrides
from clinic_recon.services.reconcile.phone import normalize_jp_phone
from clinic_recon.services.reconcile.store import StoreClient
from clinic_recon.services.reconcile.tables import (
    DEPENDENT_TABLES,
    DEPENDENT_TABLE_NAMES,
    EVENTS_TABLE,
    PATIENTS_TABLE,
    DependentTable,
)
from clinic_recon.services.reconcile.types import (
    IDENTITY_FIELDS,
    FieldConflict,
    MergeOperation,
    MergeReason,
    MovedTable,
    PatientSnapshot,
)

logger = logging.getLogger(__name__)

# Fields where two different non-null values mean two different people.
CONFLICT_FIELDS = ("name", "name_kana", "sex", "birthday", "phone")

_SPACE_RE = re.compile(r"\s+")


def _comparable(field_name: str, value: str | None) -> str | None:
    if value is None:
        return None
    if field_name == "phone":
        return normalize_jp_phone(value) or value.strip()
    text = unicodedata.normalize("NFKC", value)
    if field_name in ("name", "name_kana"):
        return _SPACE_RE.sub("", text)
    return text.strip().lower()


def merge_fields(
    target: PatientSnapshot,
    source: PatientSnapshot,
    pinned: dict[str, str | None] | None = None,
) -> tuple[dict[str, str | None], list[FieldConflict], str | None]:
    """Coalesce identity fields: the target's non-null value wins.

    Returns the chosen values, the unresolved conflicts and the source
    platform uid that the merge retires (if it differs from the target's).
    """
    pinned = pinned or {}
    chosen: dict[str, str | None] = {}
    conflicts: list[FieldConflict] = []
    for name in IDENTITY_FIELDS:
        target_value = getattr(target, name)
        source_value = getattr(source, name)
        chosen[name] = target_value if target_value is not None else source_value
        if name in pinned:
            chosen[name] = pinned[name]
            continue
        if (
            name in CONFLICT_FIELDS
            and target_value is not None
            and source_value is not None
            and _comparable(name, target_value) != _comparable(name, source_value)
        ):
            conflicts.append(FieldConflict(field=name, target=target_value, source=source_value))

    retired_uid = None
    if source.platform_uid and source.platform_uid != chosen.get("platform_uid"):
        retired_uid = source.platform_uid
    return chosen, conflicts, retired_uid


def load_patient(store: StoreClient, patient_id: str) -> PatientSnapshot | None:
    row = store.select_one(PATIENTS_TABLE, {"patient_id": patient_id})
    if row is None:
        return None
    return PatientSnapshot.from_row(row)


def _natural_key(row: dict, table: DependentTable) -> tuple:
    return tuple(row.get(column) for column in table.natural_key or ())


def natural_key_duplicates(
    store: StoreClient,
    table: DependentTable,
    source_id: str,
    target_id: str,
) -> list[int]:
    """Row ids on the source that the target already holds by natural key."""
    if not table.unique_per_patient:
        return []
    target_keys = {
        _natural_key(row, table)
        for page in store.iter_pages(table.name, {"patient_id": target_id})
        for row in page
    }
    if not target_keys:
        return []
    return [
        int(row["id"])
        for page in store.iter_pages(table.name, {"patient_id": source_id})
        for row in page
        if _natural_key(row, table) in target_keys
    ]


def count_moves(store: StoreClient, source_id: str, target_id: str) -> list[MovedTable]:
    moved: list[MovedTable] = []
    for table in DEPENDENT_TABLES:
        total = store.count(table.name, {"patient_id": source_id})
        dropped = len(natural_key_duplicates(store, table, source_id, target_id)) if total else 0
        moved.append(MovedTable(table=table.name, count=total - dropped, dropped=dropped))
    return moved


def merge_already_applied(store: StoreClient, target_id: str, source_id: str) -> bool:
    """True when a committed merge of source into target left nothing behind."""
    recorded = store.count(
        EVENTS_TABLE,
        {"action": "merge", "from_patient_id": source_id, "to_patient_id": target_id},
    )
    if not recorded:
        return False
    return not any(store.count(table, {"patient_id": source_id}) for table in DEPENDENT_TABLE_NAMES)


def plan_merge(
    store: StoreClient,
    target_id: str,
    source_id: str,
    reason: MergeReason = MergeReason.operator,
    overrides: IdentityOverrides | None = None,
) -> MergeOperation:
    target_id = str(target_id).strip()
    source_id = str(source_id).strip()
    if not target_id or not source_id:
        raise ValidationError("merge needs both a target and a source patient_id")
    if target_id == source_id:
        raise ValidationError(f"cannot merge {target_id} into itself")

    target = load_patient(store, target_id)
    source = load_patient(store, source_id)
    if target is not None and source is None and merge_already_applied(store, target_id, source_id):
        logger.info(
            "Merge already applied",
            extra={"source_patient_id": source_id, "target_patient_id": target_id},
        )
        return MergeOperation(
            source_patient_id=source_id,
            target_patient_id=target_id,
            reason=reason,
            moved_tables=count_moves(store, source_id, target_id),
            field_merge=target.identity_values(),
            already_applied=True,
        )
    missing = tuple(pid for pid, row in ((target_id, target), (source_id, source)) if row is None)
    if missing:
        raise ValidationError(f"patient not found: {', '.join(missing)}", missing=missing)

    pinned = (overrides or IdentityOverrides()).merge_fields(target_id, source_id)
    chosen, conflicts, retired_uid = merge_fields(target, source, pinned)
    if conflicts:
        raise ConflictError(
            f"identity fields disagree for {source_id} -> {target_id}",
            conflicts=[item.model_dump() for item in conflicts],
        )

    plan = MergeOperation(
        source_patient_id=source_id,
        target_patient_id=target_id,
        reason=reason,
        moved_tables=count_moves(store, source_id, target_id),
        field_merge=chosen,
        retired_platform_uid=retired_uid,
        dry_run=True,
    )
    logger.info(
        "Planned merge",
        extra={
            "source_patient_id": source_id,
            "target_patient_id": target_id,
            "reason": reason.value,
            "rows": plan.total_rows,
        },
    )
    return plan


@dataclass
class MergeBatchPlan:
    plans: list[MergeOperation] = field(default_factory=list)
    escalations: list[dict[str, object]] = field(default_factory=list)
    skipped: list[dict[str, object]] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "planned": len(self.plans),
            "escalated": len(self.escalations),
            "skipped": len(self.skipped),
            "plans": [plan.model_dump(mode="json") for plan in self.plans],
            "escalations": self.escalations,
            "skipped_pairs": self.skipped,
        }


def plan_merges_for_candidates(
    store: StoreClient,
    pairs: Iterable[tuple[str, str, MergeReason]],
    overrides: IdentityOverrides | None = None,
) -> MergeBatchPlan:
    batch = MergeBatchPlan()
    for target_id, source_id, reason in pairs:
        try:
            batch.plans.append(plan_merge(store, target_id, source_id, reason, overrides))
        except ConflictError as exc:
            item = {
                "target_patient_id": target_id,
                "source_patient_id": source_id,
                "error": str(exc),
                "conflicts": exc.conflicts,
            }
            batch.escalations.append(item)
            logger.warning("Merge escalated for manual review", extra=item)
        except ValidationError as exc:
            item = {
                "target_patient_id": target_id,
                "source_patient_id": source_id,
                "error": str(exc),
            }
            batch.skipped.append(item)
            logger.warning("Merge pair skipped", extra=item)
    return batch
