from datetime import date, datetime

from clinic_recon.services.reconcile.fixture_source import FixtureSource
from clinic_recon.services.reconcile.identity_index import records_from_store_rows
from clinic_recon.services.reconcile.source import normalize_rows
from clinic_recon.services.reconcile.sync import audit_sync, sync_reservations
from clinic_recon.services.reconcile.types import SourceRecord
from clinic_recon.services.reconcile.verify import verify_references


def _reservation(position, reserve_id, **fields):
    return SourceRecord(origin="source:reservations", position=position, reserve_id=reserve_id, **fields)


def test_missing_reservation_is_inserted_once(seed, store):
    seed.patient("P1", name="山田 太郎")
    records = [
        _reservation(0, "R1", patient_id="P1", name="山田 太郎", reserved_date=date(2026, 1, 30), reserved_time="10:00")
    ]

    dry = sync_reservations(store, records, confirm=False)
    assert dry.summary.created == 1
    assert store.count("reservations") == 0

    applied = sync_reservations(store, records, confirm=True)
    assert applied.changes == 1
    row = store.select_one("reservations", {"reserve_id": "R1"})
    assert row["patient_id"] == "P1"
    assert row["reserved_date"] == "2026-01-30"
    assert row["reserved_time"] == "10:00"
    assert row["status"] == "pending"
    assert applied.summary.counts_before == {"patients": 1, "reservations": 0}
    assert applied.summary.counts_after == {"patients": 1, "reservations": 1}
    assert applied.verification.ok

    rerun = sync_reservations(store, records, confirm=True)
    assert rerun.changes == 0
    assert rerun.diff.only_in_a == {}


def test_uid_only_reservation_gets_placeholder_patient(store):
    records = [
        _reservation(0, "R1", platform_uid="U1234567890abcdef", name="山田 太郎"),
        _reservation(1, "R2", platform_uid="U1234567890abcdef"),
        _reservation(2, "R3"),
    ]

    result = sync_reservations(store, records, confirm=True)

    assert store.select_one("reservations", {"reserve_id": "R1"})["patient_id"] == "LINE_90abcdef"
    patient = store.select_one("patients", {"patient_id": "LINE_90abcdef"})
    assert patient["platform_uid"] == "U1234567890abcdef"
    assert patient["name"] == "山田 太郎"
    assert store.count("patients") == 1
    assert result.summary.skipped == 1
    assert result.summary.errors[0]["reserve_id"] == "R3"
    assert result.verification.ok

    assert sync_reservations(store, records, confirm=True).changes == 0


def test_uid_only_reservation_joins_the_patient_holding_that_uid(seed, store):
    seed.patient("10001", platform_uid="U_A")

    sync_reservations(store, [_reservation(0, "R1", platform_uid="U_A")], confirm=True)

    assert store.select_one("reservations", {"reserve_id": "R1"})["patient_id"] == "10001"
    assert store.count("patients") == 1


def test_reservation_for_unknown_patient_is_skipped_not_orphaned(seed, store):
    seed.patient("P1")
    records = [_reservation(0, "R1", patient_id="P404"), _reservation(1, "R2", patient_id="P1")]

    result = sync_reservations(store, records, confirm=True)

    assert [row["reserve_id"] for row in result.inserts] == ["R2"]
    assert store.select_one("reservations", {"reserve_id": "R1"}) is None
    assert result.summary.errors[0] == {"reserve_id": "R1", "patient_id": "P404", "error": "patient not found"}
    assert result.verification.ok
    assert verify_references(store).ok


def test_store_canceled_reservation_is_reinstated_without_moving_patient(seed, store):
    seed.patient("P1")
    seed.patient("P2")
    seed.rows("reservations", {"reserve_id": "R1", "patient_id": "P1", "reserved_time": "10:00", "status": "canceled"})
    records = [_reservation(0, "R1", patient_id="P2", reserved_time="11:00", status="pending")]

    result = sync_reservations(store, records, confirm=True)

    row = store.select_one("reservations", {"reserve_id": "R1"})
    assert row["patient_id"] == "P1"
    assert row["status"] == "pending"
    assert row["reserved_time"] == "11:00"
    assert result.inserts == []
    assert result.summary.escalated == 1

    rerun = sync_reservations(store, records, confirm=True)
    assert rerun.changes == 0
    assert store.select_one("reservations", {"reserve_id": "R1"})["patient_id"] == "P1"


def test_store_canceled_reservation_with_blank_source_status_comes_back_pending(seed, store):
    seed.patient("P1")
    seed.rows("reservations", {"reserve_id": "R1", "patient_id": "P1", "status": "canceled"})

    result = sync_reservations(store, [_reservation(0, "R1", patient_id="P1", status=None)], confirm=True)

    assert result.updates == [{"reserve_id": "R1", "values": {"status": "pending"}}]
    assert store.count("reservations") == 1
    assert store.select_one("reservations", {"reserve_id": "R1"})["status"] == "pending"


def test_source_cancel_is_applied_once(seed, store):
    seed.rows("reservations", {"reserve_id": "R1", "patient_id": "P1", "status": "pending"})
    records = [
        _reservation(0, "R1", patient_id="P1", status="pending", timestamp=datetime(2026, 1, 1)),
        _reservation(1, "R1", patient_id="P1", status="canceled", timestamp=datetime(2026, 1, 2)),
    ]

    first = sync_reservations(store, records, confirm=True)
    assert first.cancels == ["R1"]
    assert store.select_one("reservations", {"reserve_id": "R1"})["status"] == "canceled"

    second = sync_reservations(store, records, confirm=True)
    assert second.changes == 0
    assert store.select_one("reservations", {"reserve_id": "R1"})["status"] == "canceled"


def test_field_updates_skip_unclaimed_values_and_escalate_patient_changes(seed, store):
    seed.rows(
        "reservations",
        {"reserve_id": "R1", "patient_id": "P1", "reserved_time": "10:00", "status": "pending"},
    )
    records = [_reservation(0, "R1", patient_id="P2", reserved_time="11:30", status=None)]

    result = sync_reservations(store, records, confirm=True)

    assert result.updates == [{"reserve_id": "R1", "values": {"reserved_time": "11:30"}}]
    assert result.summary.escalated == 1
    row = store.select_one("reservations", {"reserve_id": "R1"})
    assert row["reserved_time"] == "11:30"
    assert row["patient_id"] == "P1"
    assert row["status"] == "pending"


def test_audit_reports_each_issue_type(seed, store):
    source_intake, _ = normalize_rows(FixtureSource().list_intake(), origin="source:intake", required=("patient_id",))
    source_reservations, _ = normalize_rows(
        FixtureSource().list_reservations(), origin="source:reservations", required=("reserve_id",)
    )
    seed.intake("10002", line_id="U_B", patient_name="佐藤 太郎")
    seed.intake("10001", line_id="U_A")
    seed.rows("reservations", {"reserve_id": "R2", "patient_id": "10002", "status": "pending"})

    issues = audit_sync(
        source_intake,
        source_reservations,
        records_from_store_rows(store.fetch_all("intake"), "intake"),
        records_from_store_rows(store.fetch_all("reservations"), "reservations"),
    )

    by_type = {issue.type: issue for issue in issues}
    assert "missing_intake" not in by_type
    assert by_type["missing_reservations"].details[0]["reserve_id"] == "R1"
    assert by_type["reservation_status_mismatch"].details == [
        {"reserve_id": "R2", "source": "canceled", "store": "live"}
    ]
    assert by_type["intake_missing_reserve_id"].count == 1
    assert by_type["intake_missing_reserve_id"].details[0]["patient_id"] == "10001"
