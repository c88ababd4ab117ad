from datetime import datetime

from clinic_recon.services.reconcile.diff import diff, latest
from clinic_recon.services.reconcile.identity_index import (
    IdentityIndex,
    placeholder_patient_id,
    records_from_store_rows,
)
from clinic_recon.services.reconcile.types import SourceRecord


def _rec(position, **fields):
    return SourceRecord(origin="test", position=position, **fields)


def test_index_builds_all_key_spaces():
    index = IdentityIndex.build(
        [
            _rec(0, patient_id="10001", platform_uid="U_A", phone="09012345678", reserve_id="R1"),
            _rec(1, patient_id="10001", platform_uid="U_A"),
            _rec(2, patient_id="10002", platform_uid="U_B", phone="09012345678"),
        ]
    )
    assert index.size == 3
    assert len(index.lookup("patient_id", "10001")) == 2
    assert len(index.lookup("phone", "+81 90-1234-5678")) == 2
    assert index.keys("reserve_id") == {"R1"}
    assert set(index.collisions("phone")) == {"09012345678"}
    assert index.platform_uid_conflicts() == {}
    assert index.patient_ids_for_uid("U_B") == {"10002"}
    assert index.summary()["collisions"]["patient_id"] == 1


def test_platform_uids_compare_byte_exact():
    index = IdentityIndex.build([_rec(0, patient_id="P0", platform_uid="U_x"), _rec(1, patient_id="P0", platform_uid="U_X")])
    assert index.platform_uid_conflicts() == {"P0": {"U_x", "U_X"}}
    claims = list(index.claims())
    assert [claim.platform_uid for claim in claims] == ["U_x", "U_X"]


def test_store_rows_are_indexed_through_the_adapter():
    rows = [{"id": 1, "patient_id": "10001", "line_id": "U_A", "patient_name": "山田", "created_at": datetime(2026, 1, 1)}]
    records = records_from_store_rows(rows, "intake")
    assert records[0].origin == "store:intake"
    assert records[0].platform_uid == "U_A"
    assert records[0].timestamp == datetime(2026, 1, 1)


def test_placeholder_patient_id_uses_uid_tail():
    assert placeholder_patient_id("U1234567890abcdef") == "LINE_90abcdef"


def test_latest_prefers_timestamp_then_position():
    untimed_late = _rec(5, status="a")
    old = _rec(1, status="b", timestamp=datetime(2026, 1, 1))
    new = _rec(0, status="c", timestamp=datetime(2026, 1, 2))
    assert latest([untimed_late, old, new]) is new
    tie_a = _rec(1, status="d", timestamp=datetime(2026, 1, 2))
    assert latest([new, tie_a]) is tie_a
    assert latest([_rec(0), untimed_late]) is untimed_late


def test_diff_partitions_union_exactly():
    side_a = IdentityIndex.build([_rec(i, reserve_id=key) for i, key in enumerate(["R1", "R2", "R3", "R3"])])
    side_b = IdentityIndex.build([_rec(i, reserve_id=key) for i, key in enumerate(["R3", "R4"])])
    result = diff("reserve_id", side_a, side_b)

    only_a, both, only_b = set(result.only_in_a), set(result.both), set(result.only_in_b)
    assert only_a == {"R1", "R2"}
    assert both == {"R3"}
    assert only_b == {"R4"}
    assert only_a | both | only_b == {"R1", "R2", "R3", "R4"}
    assert not (only_a & both or only_a & only_b or both & only_b)


def test_diff_drops_logically_deleted_rows_first():
    side_a = IdentityIndex.build(
        [
            _rec(0, reserve_id="R1", status="pending", timestamp=datetime(2026, 1, 1)),
            _rec(1, reserve_id="R1", status="キャンセル", timestamp=datetime(2026, 1, 2)),
            _rec(2, reserve_id="R2", status="void"),
        ]
    )
    side_b = IdentityIndex.build([_rec(0, reserve_id="R1", status="pending")])
    result = diff("reserve_id", side_a, side_b, compare_fields=("status",))

    assert set(result.both) == {"R1"}
    assert result.value_mismatch == []
    assert result.filtered_a == 2
    assert "R2" not in result.only_in_a


def test_diff_reports_value_mismatches():
    side_a = IdentityIndex.build([_rec(0, reserve_id="R1", status="pending", reserved_time="10:00")])
    side_b = IdentityIndex.build([_rec(0, reserve_id="R1", status="completed", reserved_time="10:00")])
    result = diff("reserve_id", side_a, side_b, compare_fields=("status", "reserved_time"))

    assert not result.is_clean
    assert [(item.key, item.field, item.a, item.b) for item in result.value_mismatch] == [
        ("R1", "status", "pending", "completed")
    ]
    assert result.as_dict()["value_mismatch"] == 1
