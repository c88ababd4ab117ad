from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from clinic_recon.services.reconcile.errors import NetworkError, PartialFailure
from clinic_recon.services.reconcile.merge_planner import (
    count_moves,
    load_patient,
    natural_key_duplicates,
)
from clinic_recon.services.reconcile.store import StoreClient
from clinic_recon.services.reconcile.tables import DEPENDENT_TABLES, EVENTS_TABLE, PATIENTS_TABLE
from clinic_recon.services.reconcile.types import MergeOperation, MovedTable
from clinic_recon.services.reconcile.verify import (
    OrphanReport,
    count_references,
    verify_references,
)

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    source_patient_id: str
    target_patient_id: str
    dry_run: bool
    state: str = "planned"
    moved_tables: list[MovedTable] = field(default_factory=list)
    fields_updated: dict[str, str | None] = field(default_factory=dict)
    already_applied: bool = False
    source_deleted: bool = False
    completed: list[dict[str, object]] = field(default_factory=list)
    verification: OrphanReport | None = None

    @property
    def changes(self) -> int:
        if self.dry_run:
            return 0
        rows = sum(item.count + item.dropped for item in self.moved_tables)
        return rows + len(self.fields_updated) + int(self.source_deleted)

    def as_dict(self) -> dict[str, object]:
        return {
            "source_patient_id": self.source_patient_id,
            "target_patient_id": self.target_patient_id,
            "mode": "dry_run" if self.dry_run else "apply",
            "state": self.state,
            "moved_tables": [item.model_dump() for item in self.moved_tables],
            "fields_updated": self.fields_updated,
            "source_deleted": self.source_deleted,
            "already_applied": self.already_applied,
            "changes": self.changes,
            "verification": self.verification.as_dict() if self.verification else None,
        }


class MergeExecutor:
    """Apply a planned merge one dependent table at a time.

    Each table is committed on its own so a failure leaves a resumable state:
    rows already moved stay moved and a re-run picks up the rest. Deleting
    the source Patient is the only irreversible step and runs last, after a
    zero-reference check.
    """

    def __init__(self, store: StoreClient) -> None:
        self.store = store

    def execute(self, plan: MergeOperation, confirm: bool = False) -> MergeResult:
        source_id = plan.source_patient_id
        target_id = plan.target_patient_id
        result = MergeResult(source_patient_id=source_id, target_patient_id=target_id, dry_run=not confirm)

        if plan.already_applied:
            result.already_applied = True
            result.state = "verified"
            result.verification = verify_references(self.store, patient_ids=[source_id, target_id])
            return result

        if not confirm:
            result.moved_tables = count_moves(self.store, source_id, target_id)
            logger.info(
                "Merge dry run",
                extra={"source_patient_id": source_id, "target_patient_id": target_id},
            )
            return result

        result.state = "tables_migrating"
        for table in DEPENDENT_TABLES:
            try:
                duplicate_ids = natural_key_duplicates(self.store, table, source_id, target_id)
                dropped = self.store.delete(table.name, {"id": duplicate_ids}) if duplicate_ids else 0
                moved = self.store.update(
                    table.name,
                    {"patient_id": target_id},
                    {"patient_id": source_id},
                )
                self.store.commit()
            except (SQLAlchemyError, NetworkError) as exc:
                self.store.rollback()
                raise PartialFailure(
                    f"merge {source_id} -> {target_id} halted on {table.name}: {exc}",
                    state=result.state,
                    completed=list(result.completed),
                    failed_table=table.name,
                ) from exc
            result.moved_tables.append(MovedTable(table=table.name, count=moved, dropped=dropped))
            result.completed.append({"step": "move", "table": table.name, "moved": moved, "dropped": dropped})
            if moved or dropped:
                logger.info(
                    "Moved dependent rows",
                    extra={
                        "table": table.name,
                        "moved": moved,
                        "dropped": dropped,
                        "source_patient_id": source_id,
                        "target_patient_id": target_id,
                    },
                )

        self._merge_patient_fields(plan, result)
        self._delete_source(plan, result)

        report = verify_references(self.store, patient_ids=[source_id, target_id])
        result.verification = report
        if not report.ok:
            raise PartialFailure(
                f"merge {source_id} -> {target_id} left {report.total} orphaned rows",
                state=result.state,
                completed=list(result.completed),
            )
        result.state = "verified"

        if result.changes:
            self._record_event(plan, result)
        return result

    def _merge_patient_fields(self, plan: MergeOperation, result: MergeResult) -> None:
        target = load_patient(self.store, plan.target_patient_id)
        if target is None:
            raise PartialFailure(
                f"target patient {plan.target_patient_id} disappeared mid-merge",
                state=result.state,
                completed=list(result.completed),
            )
        current = target.identity_values()
        updates = {
            name: value
            for name, value in plan.field_merge.items()
            if name in current and current[name] != value
        }
        try:
            if updates:
                self.store.update(PATIENTS_TABLE, updates, {"patient_id": plan.target_patient_id})
            self.store.commit()
        except (SQLAlchemyError, NetworkError) as exc:
            self.store.rollback()
            raise PartialFailure(
                f"could not write merged fields to {plan.target_patient_id}: {exc}",
                state=result.state,
                completed=list(result.completed),
                failed_table=PATIENTS_TABLE,
            ) from exc
        result.fields_updated = updates
        result.state = "patient_merged"
        result.completed.append({"step": "merge_fields", "fields": sorted(updates)})

    def _delete_source(self, plan: MergeOperation, result: MergeResult) -> None:
        remaining = count_references(self.store, plan.source_patient_id)
        if any(remaining.values()):
            raise PartialFailure(
                f"refusing to delete {plan.source_patient_id}: rows still reference it",
                state=result.state,
                completed=list(result.completed) + [{"step": "reference_check", "remaining": remaining}],
            )
        try:
            deleted = self.store.delete(PATIENTS_TABLE, {"patient_id": plan.source_patient_id})
            self.store.commit()
        except (SQLAlchemyError, NetworkError) as exc:
            self.store.rollback()
            raise PartialFailure(
                f"could not delete source patient {plan.source_patient_id}: {exc}",
                state=result.state,
                completed=list(result.completed),
                failed_table=PATIENTS_TABLE,
            ) from exc
        result.source_deleted = deleted > 0
        result.state = "source_deleted"
        result.completed.append({"step": "delete_source", "deleted": deleted})
        if deleted:
            logger.info("Deleted merged patient", extra={"patient_id": plan.source_patient_id})

    def _record_event(self, plan: MergeOperation, result: MergeResult) -> None:
        event = {
            "action": "merge",
            "from_patient_id": plan.source_patient_id,
            "to_patient_id": plan.target_patient_id,
            "details_json": {
                "reason": plan.reason.value,
                "moved_tables": [item.model_dump() for item in result.moved_tables],
                "fields_updated": result.fields_updated,
                "retired_platform_uid": plan.retired_platform_uid,
            },
        }
        try:
            self.store.insert(EVENTS_TABLE, [event])
            self.store.commit()
        except (SQLAlchemyError, NetworkError) as exc:
            self.store.rollback()
            raise PartialFailure(
                f"merge {plan.source_patient_id} -> {plan.target_patient_id} applied but its event was not recorded: {exc}",
                state=result.state,
                completed=list(result.completed),
                failed_table=EVENTS_TABLE,
            ) from exc
