from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import SQLAlchemyError

from clinic_recon.services.reconcile.collision import (
    detect_collisions,
    execute_split,
    mint_patient_ids,
    plan_split,
)
from clinic_recon.services.reconcile.errors import ConflictError, PartialFailure, ValidationError
from clinic_recon.services.reconcile.overrides import IdentityOverrides
from clinic_recon.services.reconcile.summary import table_counts


def _seed_collision(seed):
    seed.patient("P0", platform_uid="U_X")
    seed.intake(
        "P0",
        line_id="U_X",
        created_at=datetime(2026, 1, 1, 9, 0),
        answers={"name": "山田 太郎", "phone": "090-1111-2222"},
    )
    seed.intake(
        "P0",
        line_id="U_Y",
        created_at=datetime(2026, 1, 2, 10, 0),
        answers={"name": "鈴木 花子", "phone": "080-3333-4444", "sex": "female"},
    )
    seed.message("P0", line_uid="U_Y", content="はじめまして", sent_at=datetime(2026, 1, 2, 10, 5))
    seed.message("P0", content="鈴木花子です、予約の確認です", sent_at=datetime(2026, 1, 5, 12, 0))
    seed.message("P0", content="hello", sent_at=datetime(2026, 1, 2, 10, 20))
    seed.message("P0", content="ok", sent_at=datetime(2026, 1, 10, 8, 0))
    seed.rows(
        "reservations",
        {"reserve_id": "R1", "patient_id": "P0", "status": "pending", "created_at": datetime(2026, 3, 1, 9, 0)},
    )


def test_detect_collisions_finds_multi_uid_patients(seed, store):
    _seed_collision(seed)
    seed.patient("P5", platform_uid="U_Z")
    seed.intake("P5", line_id="U_Z")

    assert detect_collisions(store) == {"P0": {"U_X", "U_Y"}}


def test_mint_patient_ids_skips_reserved_prefixes(seed, store):
    assert mint_patient_ids(store, 2) == ["10001", "10002"]

    seed.patient("10007")
    seed.patient("LINE_99999999")
    seed.patient("TEST_50000")
    assert mint_patient_ids(store, 1) == ["10008"]
    assert mint_patient_ids(store, 1, floor=20000) == ["20001"]


def test_plan_split_assigns_rows_by_evidence(seed, store):
    _seed_collision(seed)

    split = plan_split(store, "P0")

    assert split.primary.platform_uid == "U_X"
    assert split.primary.patient_id == "P0"
    [new] = split.new_identities()
    assert (new.platform_uid, new.patient_id) == ("U_Y", "10001")
    assert new.profile["name"] == "鈴木 花子"
    assert new.profile["phone"] == "08033334444"

    evidence = {(item.table, item.row_id): (item.platform_uid, item.evidence) for item in split.assignments}
    assert evidence[("intake", 1)] == ("U_X", "platform_uid")
    assert evidence[("intake", 2)] == ("U_Y", "platform_uid")
    assert evidence[("message_log", 1)] == ("U_Y", "platform_uid")
    assert evidence[("message_log", 2)] == ("U_Y", "content")
    assert evidence[("message_log", 3)] == ("U_Y", "proximity")
    assert {(ref.table, ref.row_id) for ref in split.unassigned} == {("message_log", 4), ("reservations", 1)}


def test_plan_split_rejects_single_uid_and_unknown_patient(seed, store):
    seed.patient("P1", platform_uid="U_A")
    seed.intake("P1", line_id="U_A")

    with pytest.raises(ValidationError):
        plan_split(store, "P1")
    with pytest.raises(ValidationError):
        plan_split(store, "P404")


def test_override_pins_rows_and_must_name_known_uids(seed, store):
    _seed_collision(seed)
    overrides = IdentityOverrides.model_validate(
        {"splits": [{"patient_id": "P0", "rows": [{"table": "reservations", "row_id": 1, "platform_uid": "U_Y"}]}]}
    )

    split = plan_split(store, "P0", overrides=overrides)
    pinned = [item for item in split.assignments if item.table == "reservations"]
    assert [(item.patient_id, item.evidence) for item in pinned] == [("10001", "override")]

    bad = IdentityOverrides.model_validate(
        {"splits": [{"patient_id": "P0", "rows": [{"table": "reservations", "row_id": 1, "platform_uid": "U_Q"}]}]}
    )
    with pytest.raises(ValidationError):
        plan_split(store, "P0", overrides=bad)


def test_narrow_proximity_window_leaves_row_unassigned(seed, store):
    _seed_collision(seed)

    split = plan_split(store, "P0", proximity_window=timedelta(minutes=5))

    assert ("message_log", 3) in {(ref.table, ref.row_id) for ref in split.unassigned}


def test_dry_run_split_writes_nothing(seed, store):
    _seed_collision(seed)
    tables = ["patients", "intake", "message_log", "reservations", "reconcile_events"]
    before = table_counts(store, tables)

    result = execute_split(store, plan_split(store, "P0"), confirm=False)

    assert table_counts(store, tables) == before
    assert result.created_patients == ["10001"]
    assert result.moved == {"message_log": 3, "intake": 1}
    assert result.changes == 0


def test_apply_split_leaves_one_uid_per_patient(seed, store):
    _seed_collision(seed)

    result = execute_split(store, plan_split(store, "P0"), confirm=True)

    assert result.consistent
    assert result.uid_consistency == {"P0": ["U_X"], "10001": ["U_Y"]}
    assert result.verification.ok
    assert result.unassigned == 2

    created = store.select_one("patients", {"patient_id": "10001"})
    assert created["platform_uid"] == "U_Y"
    assert created["name"] == "鈴木 花子"
    assert created["sex"] == "female"
    original = store.select_one("patients", {"patient_id": "P0"})
    assert original["name"] == "山田 太郎"
    assert original["phone"] == "09011112222"

    assert store.count("message_log", {"patient_id": "10001"}) == 3
    assert store.count("message_log", {"patient_id": "P0"}) == 1
    assert store.count("reservations", {"patient_id": "P0"}) == 1
    assert store.select_one("reconcile_events", {"from_patient_id": "P0"})["action"] == "split"
    assert detect_collisions(store) == {}


def test_rerun_of_finished_split_is_a_noop(seed, store):
    _seed_collision(seed)
    execute_split(store, plan_split(store, "P0"), confirm=True)
    tables = ["patients", "intake", "message_log", "reservations", "reconcile_events"]
    before = table_counts(store, tables)

    split = plan_split(store, "P0")
    result = execute_split(store, split, confirm=True)

    assert split.already_applied
    assert split.new_identities() == []
    assert result.already_applied
    assert result.changes == 0
    assert result.consistent
    assert table_counts(store, tables) == before


def test_interrupted_split_resumes_without_minting_again(seed, store, monkeypatch):
    _seed_collision(seed)
    real_update = store.update

    def failing_update(table_name, values, filters):
        if table_name == "intake":
            raise SQLAlchemyError("connection reset")
        return real_update(table_name, values, filters)

    monkeypatch.setattr(store, "update", failing_update)
    with pytest.raises(PartialFailure) as excinfo:
        execute_split(store, plan_split(store, "P0"), confirm=True)
    assert excinfo.value.failed_table == "intake"
    assert store.select_one("patients", {"patient_id": "10001"})["platform_uid"] == "U_Y"

    monkeypatch.setattr(store, "update", real_update)
    split = plan_split(store, "P0")
    [resumed] = [identity for identity in split.identities if identity.platform_uid == "U_Y"]
    assert (resumed.patient_id, resumed.is_new) == ("10001", False)

    result = execute_split(store, split, confirm=True)

    assert result.created_patients == []
    assert result.consistent
    assert store.count("patients", {"platform_uid": "U_Y"}) == 1
    assert store.count("patients") == 2
    assert store.count("intake", {"patient_id": "10001"}) == 1


def test_split_moves_rows_to_existing_owner_of_the_uid(seed, store):
    _seed_collision(seed)
    seed.patient("P5", platform_uid="U_Y", name="鈴木 花子")

    split = plan_split(store, "P0")
    [other] = [identity for identity in split.identities if not identity.is_primary]
    assert (other.platform_uid, other.patient_id, other.is_new) == ("U_Y", "P5", False)

    result = execute_split(store, split, confirm=True)

    assert result.created_patients == []
    assert result.uid_consistency == {"P0": ["U_X"], "P5": ["U_Y"]}
    assert store.count("patients", {"platform_uid": "U_Y"}) == 1
    assert store.select_one("intake", {"id": 2})["patient_id"] == "P5"
    assert store.select_one("patients", {"patient_id": "10001"}) is None


def test_uid_held_by_two_patients_is_a_conflict(seed, store):
    _seed_collision(seed)
    seed.patient("P5", platform_uid="U_Y")
    seed.patient("P6", platform_uid="U_Y")

    with pytest.raises(ConflictError) as excinfo:
        plan_split(store, "P0")
    assert excinfo.value.conflicts == [{"platform_uid": "U_Y", "patient_ids": ["P5", "P6"]}]
