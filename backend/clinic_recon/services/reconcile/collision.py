from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy.exc import SQLAlchemyError

from clinic_recon.services.reconcile.errors import (
    ConflictError,
    NetworkError,
    PartialFailure,
    ValidationError,
)
from clinic_recon.services.reconcile.identity_index import IdentityIndex, records_from_store_rows
from clinic_recon.services.reconcile.merge_planner import load_patient
from clinic_recon.services.reconcile.overrides import IdentityOverrides
from clinic_recon.services.reconcile.source import normalize_row, parse_timestamp
from clinic_recon.services.reconcile.store import StoreClient
from clinic_recon.services.reconcile.tables import (
    DEPENDENT_TABLES,
    EVENTS_TABLE,
    PATIENTS_TABLE,
    DependentTable,
    evidence_tables,
)
from clinic_recon.services.reconcile.types import (
    CollisionSplit,
    RowAssignment,
    RowRef,
    SplitIdentity,
)
from clinic_recon.services.reconcile.verify import OrphanReport, verify_references

logger = logging.getLogger(__name__)

DEFAULT_NUMERIC_FLOOR = 10000
DEFAULT_PROXIMITY_WINDOW = timedelta(minutes=30)
RESERVED_PREFIXES = ("LINE_", "TEST_")
PROFILE_FIELDS = ("name", "name_kana", "sex", "birthday", "phone")

_NON_DIGIT_RE = re.compile(r"\D+")
_SPACE_RE = re.compile(r"\s+")


def detect_collisions(store: StoreClient) -> dict[str, set[str]]:
    """patient_ids whose Patient row or evidence rows carry several platform uids."""
    sources = [records_from_store_rows(store.fetch_all(PATIENTS_TABLE), PATIENTS_TABLE)]
    for table in evidence_tables():
        sources.append(records_from_store_rows(store.fetch_all(table.name), table.name))
    conflicts = IdentityIndex.build(*sources).platform_uid_conflicts()
    if conflicts:
        logger.warning("Detected patient_id collisions", extra={"count": len(conflicts)})
    return conflicts


def mint_patient_ids(store: StoreClient, count: int, floor: int = DEFAULT_NUMERIC_FLOOR) -> list[str]:
    """Next ``count`` numeric patient_ids above every existing numeric id."""
    highest = floor
    for page in store.iter_pages(PATIENTS_TABLE):
        for row in page:
            value = str(row["patient_id"])
            if value.startswith(RESERVED_PREFIXES) or not value.isdigit():
                continue
            highest = max(highest, int(value))
    return [str(highest + offset) for offset in range(1, count + 1)]


@dataclass
class _Row:
    table: DependentTable
    row_id: int
    uid: str | None
    at: datetime | None
    content: str | None


def _load_rows(store: StoreClient, patient_id: str) -> list[_Row]:
    rows: list[_Row] = []
    for table in DEPENDENT_TABLES:
        for page in store.iter_pages(table.name, {"patient_id": patient_id}):
            for row in page:
                uid = row.get(table.uid_column) if table.uid_column else None
                uid = str(uid).strip() if uid is not None else None
                rows.append(
                    _Row(
                        table=table,
                        row_id=int(row["id"]),
                        uid=uid or None,
                        at=parse_timestamp(row.get(table.time_column)) if table.time_column else None,
                        content=row.get(table.content_column) if table.content_column else None,
                    )
                )
    return rows


def _profile_from_intake(rows: list[dict[str, Any]]) -> dict[str, str | None]:
    """Identity fields from the latest intake answers of one uid."""
    if not rows:
        return {}
    latest = max(rows, key=lambda row: (parse_timestamp(row.get("created_at")) or datetime.min, row["id"]))
    answers = latest.get("answers") or {}
    record = normalize_row(answers, origin="intake:answers", position=0)
    profile = {name: record.value(name) for name in PROFILE_FIELDS}
    if profile["name"] is None and latest.get("patient_name"):
        profile["name"] = str(latest["patient_name"]).strip() or None
    return profile


def _first_seen(rows: Iterable[_Row]) -> dict[str, tuple[int, datetime, int]]:
    seen: dict[str, tuple[int, datetime, int]] = {}
    for row in rows:
        if not row.uid:
            continue
        # Intake rows rank ahead of messages; within a table, earliest wins.
        rank = (0 if row.table.name == "intake" else 1, row.at or datetime.max, row.row_id)
        if row.uid not in seen or rank < seen[row.uid]:
            seen[row.uid] = rank
    return seen


def _digits(text: str) -> str:
    return _NON_DIGIT_RE.sub("", unicodedata.normalize("NFKC", text))


def _squash(text: str) -> str:
    return _SPACE_RE.sub("", unicodedata.normalize("NFKC", text))


def _content_match(content: str | None, identities: list[SplitIdentity]) -> str | None:
    if not content:
        return None
    digits = _digits(content)
    squashed = _squash(content)
    matched: set[str] = set()
    for identity in identities:
        phone = identity.profile.get("phone")
        name = identity.profile.get("name")
        if phone and phone in digits:
            matched.add(identity.platform_uid)
        elif name and len(_squash(name)) >= 2 and _squash(name) in squashed:
            matched.add(identity.platform_uid)
    return matched.pop() if len(matched) == 1 else None


def _proximity_match(
    at: datetime | None,
    anchors: dict[str, list[datetime]],
    window: timedelta,
) -> str | None:
    if at is None:
        return None
    near = {uid for uid, times in anchors.items() if any(abs(at - moment) <= window for moment in times)}
    return near.pop() if len(near) == 1 else None


def _uid_owners(store: StoreClient, uids: Iterable[str], exclude: str) -> dict[str, str]:
    """Existing patients, other than ``exclude``, that already carry each uid."""
    uids = sorted(set(uids))
    owners: dict[str, set[str]] = {}
    if not uids:
        return {}
    for row in store.fetch_all(PATIENTS_TABLE, {"platform_uid": uids}):
        if str(row["patient_id"]) != exclude:
            owners.setdefault(row["platform_uid"], set()).add(str(row["patient_id"]))
    shared = {uid: sorted(ids) for uid, ids in owners.items() if len(ids) > 1}
    if shared:
        raise ConflictError(
            f"platform uids already belong to several patients: {', '.join(sorted(shared))}",
            conflicts=[{"platform_uid": uid, "patient_ids": ids} for uid, ids in sorted(shared.items())],
        )
    return {uid: ids.pop() for uid, ids in owners.items()}


def _split_already_applied(store: StoreClient, patient_id: str) -> bool:
    return store.count(EVENTS_TABLE, {"action": "split", "from_patient_id": patient_id}) > 0


def plan_split(
    store: StoreClient,
    patient_id: str,
    overrides: IdentityOverrides | None = None,
    proximity_window: timedelta = DEFAULT_PROXIMITY_WINDOW,
    numeric_floor: int = DEFAULT_NUMERIC_FLOOR,
) -> CollisionSplit:
    patient = load_patient(store, patient_id)
    if patient is None:
        raise ValidationError(f"patient not found: {patient_id}", missing=(patient_id,))

    rows = _load_rows(store, patient_id)
    first_seen = _first_seen(rows)
    if len(first_seen) < 2:
        remaining_uid = patient.platform_uid or next(iter(first_seen), None)
        if remaining_uid and _split_already_applied(store, patient_id):
            logger.info("Split already applied", extra={"patient_id": patient_id})
            return CollisionSplit(
                patient_id=patient_id,
                identities=[SplitIdentity(platform_uid=remaining_uid, patient_id=patient_id, is_primary=True)],
                already_applied=True,
            )
        raise ValidationError(f"{patient_id} carries {len(first_seen)} platform uid(s); nothing to split")

    if patient.platform_uid and patient.platform_uid in first_seen:
        primary_uid = patient.platform_uid
    else:
        primary_uid = min(first_seen, key=first_seen.__getitem__)
    others = sorted((uid for uid in first_seen if uid != primary_uid), key=first_seen.__getitem__)
    # A uid that already has its own patient (registered elsewhere, or created
    # by an interrupted run of this split) moves there instead of a new id.
    owners = _uid_owners(store, others, exclude=patient_id)
    minted = iter(mint_patient_ids(store, sum(uid not in owners for uid in others), numeric_floor))

    intake_rows = store.fetch_all("intake", {"patient_id": patient_id})
    identities = [SplitIdentity(platform_uid=primary_uid, patient_id=patient_id, is_primary=True)]
    for uid in others:
        if uid in owners:
            identities.append(SplitIdentity(platform_uid=uid, patient_id=owners[uid]))
        else:
            identities.append(SplitIdentity(platform_uid=uid, patient_id=next(minted), is_new=True))
    for identity in identities:
        identity.profile = _profile_from_intake(
            [row for row in intake_rows if row.get("line_id") == identity.platform_uid]
        )
    by_uid = {identity.platform_uid: identity for identity in identities}

    pinned = (overrides or IdentityOverrides()).row_assignments(patient_id)
    unknown = sorted({uid for uid in pinned.values() if uid not in by_uid})
    if unknown:
        raise ValidationError(f"override names uids not seen on {patient_id}: {', '.join(unknown)}")

    anchors: dict[str, list[datetime]] = {}
    for row in rows:
        if row.uid in by_uid and row.at is not None:
            anchors.setdefault(row.uid, []).append(row.at)

    split = CollisionSplit(patient_id=patient_id, identities=identities)
    for row in rows:
        uid, evidence = pinned.get((row.table.name, row.row_id)), "override"
        if uid is None and row.uid in by_uid:
            uid, evidence = row.uid, "platform_uid"
        if uid is None:
            uid, evidence = _content_match(row.content, identities), "content"
        if uid is None:
            uid, evidence = _proximity_match(row.at, anchors, proximity_window), "proximity"
        if uid is None:
            split.unassigned.append(RowRef(table=row.table.name, row_id=row.row_id))
            continue
        split.assignments.append(
            RowAssignment(
                table=row.table.name,
                row_id=row.row_id,
                platform_uid=uid,
                patient_id=by_uid[uid].patient_id,
                evidence=evidence,
            )
        )

    logger.info(
        "Planned collision split",
        extra={
            "patient_id": patient_id,
            "identities": len(identities),
            "moving": len(split.moving_assignments()),
            "unassigned": len(split.unassigned),
        },
    )
    return split


@dataclass
class SplitResult:
    patient_id: str
    dry_run: bool
    created_patients: list[str] = field(default_factory=list)
    moved: dict[str, int] = field(default_factory=dict)
    unassigned: int = 0
    already_applied: bool = False
    uid_consistency: dict[str, list[str]] = field(default_factory=dict)
    verification: OrphanReport | None = None

    @property
    def consistent(self) -> bool:
        return all(len(uids) <= 1 for uids in self.uid_consistency.values())

    @property
    def changes(self) -> int:
        if self.dry_run:
            return 0
        return len(self.created_patients) + sum(self.moved.values())

    def as_dict(self) -> dict[str, object]:
        return {
            "patient_id": self.patient_id,
            "mode": "dry_run" if self.dry_run else "apply",
            "created_patients": self.created_patients,
            "moved": self.moved,
            "unassigned": self.unassigned,
            "already_applied": self.already_applied,
            "uid_consistency": self.uid_consistency,
            "consistent": self.consistent,
            "changes": self.changes,
            "verification": self.verification.as_dict() if self.verification else None,
        }


def _uids_for(store: StoreClient, patient_id: str) -> list[str]:
    uids: set[str] = set()
    patient = load_patient(store, patient_id)
    if patient and patient.platform_uid:
        uids.add(patient.platform_uid)
    for table in evidence_tables():
        for page in store.iter_pages(table.name, {"patient_id": patient_id}):
            uids.update(str(row[table.uid_column]) for row in page if row.get(table.uid_column))
    return sorted(uids)


def _moves_by_table(split: CollisionSplit) -> dict[str, dict[str, list[int]]]:
    grouped: dict[str, dict[str, list[int]]] = {}
    for item in split.moving_assignments():
        grouped.setdefault(item.table, {}).setdefault(item.patient_id, []).append(item.row_id)
    return grouped


def execute_split(store: StoreClient, split: CollisionSplit, confirm: bool = False) -> SplitResult:
    result = SplitResult(patient_id=split.patient_id, dry_run=not confirm, unassigned=len(split.unassigned))
    grouped = _moves_by_table(split)

    if split.already_applied:
        result.already_applied = True
        _verify_split(store, split, result, [])
        return result

    if not confirm:
        result.created_patients = [identity.patient_id for identity in split.new_identities()]
        result.moved = {table: sum(len(ids) for ids in targets.values()) for table, targets in grouped.items()}
        return result

    completed: list[dict[str, object]] = []
    try:
        new_rows = [
            {
                "patient_id": identity.patient_id,
                "platform_uid": identity.platform_uid,
                **{name: identity.profile.get(name) for name in PROFILE_FIELDS},
            }
            for identity in split.new_identities()
            if load_patient(store, identity.patient_id) is None
        ]
        if new_rows:
            store.insert(PATIENTS_TABLE, new_rows)
        store.commit()
    except (SQLAlchemyError, NetworkError) as exc:
        store.rollback()
        raise PartialFailure(
            f"could not create split patients for {split.patient_id}: {exc}",
            state="planned",
            failed_table=PATIENTS_TABLE,
        ) from exc
    result.created_patients = [row["patient_id"] for row in new_rows]
    completed.append({"step": "create_patients", "patient_ids": result.created_patients})

    for table in DEPENDENT_TABLES:
        targets = grouped.get(table.name)
        if not targets:
            continue
        moved = 0
        try:
            for new_id, row_ids in targets.items():
                moved += store.update(
                    table.name,
                    {"patient_id": new_id},
                    {"id": row_ids, "patient_id": split.patient_id},
                )
            store.commit()
        except (SQLAlchemyError, NetworkError) as exc:
            store.rollback()
            raise PartialFailure(
                f"split of {split.patient_id} halted on {table.name}: {exc}",
                state="tables_migrating",
                completed=completed,
                failed_table=table.name,
            ) from exc
        result.moved[table.name] = moved
        completed.append({"step": "move", "table": table.name, "moved": moved})

    primary = split.primary
    fixes = {"platform_uid": primary.platform_uid}
    fixes.update({name: value for name, value in primary.profile.items() if value is not None})
    try:
        store.update(PATIENTS_TABLE, fixes, {"patient_id": split.patient_id})
        store.commit()
    except (SQLAlchemyError, NetworkError) as exc:
        store.rollback()
        raise PartialFailure(
            f"could not update {split.patient_id} after moving its rows: {exc}",
            state="tables_migrated",
            completed=completed,
            failed_table=PATIENTS_TABLE,
        ) from exc

    _verify_split(store, split, result, completed)

    if result.changes:
        event = {
            "action": "split",
            "from_patient_id": split.patient_id,
            "to_patient_id": None,
            "details_json": {
                "identities": [identity.model_dump() for identity in split.identities],
                "moved": result.moved,
                "unassigned": [ref.model_dump() for ref in split.unassigned],
            },
        }
        try:
            store.insert(EVENTS_TABLE, [event])
            store.commit()
        except (SQLAlchemyError, NetworkError) as exc:
            store.rollback()
            raise PartialFailure(
                f"split of {split.patient_id} applied but its event was not recorded: {exc}",
                state="verified",
                completed=completed,
                failed_table=EVENTS_TABLE,
            ) from exc
    logger.info("Split applied", extra={"patient_id": split.patient_id, "moved": result.moved})
    return result


def _verify_split(
    store: StoreClient,
    split: CollisionSplit,
    result: SplitResult,
    completed: list[dict[str, object]],
) -> None:
    resulting = [identity.patient_id for identity in split.identities]
    result.uid_consistency = {patient_id: _uids_for(store, patient_id) for patient_id in resulting}
    result.verification = verify_references(store, patient_ids=resulting)
    if not result.consistent or not result.verification.ok:
        raise PartialFailure(
            f"split of {split.patient_id} did not settle to one uid per patient",
            state="verification",
            completed=completed + [{"step": "verify", "uids": result.uid_consistency}],
        )
