import json
import sys
from datetime import datetime

import pytest

from clinic_recon.core.settings import Settings
from clinic_recon.scripts import (
    _cli,
    recon_audit_sync,
    recon_find_duplicates,
    recon_merge_patients,
    recon_split_collision,
    recon_sync_reservations,
    recon_verify,
)


@pytest.fixture
def run(monkeypatch, capsys, store):
    def _run(module, *argv):
        monkeypatch.setattr(module, "load_settings", lambda: Settings(_env_file=None))
        monkeypatch.setattr(_cli, "open_store", lambda settings: store)
        monkeypatch.setattr(sys, "argv", [module.__name__, *argv])
        code = module.main()
        out = capsys.readouterr().out
        payload = json.loads(out[out.index("{\n") :]) if "{\n" in out else None
        return code, payload, out

    return _run


def test_apply_without_confirm_is_refused(run):
    code, payload, out = run(recon_sync_reservations, "--source", "fixtures", "--apply")
    assert code == 2
    assert payload is None
    assert "Refusing to apply without --confirm APPLY." in out

    code, _, out = run(recon_sync_reservations, "--apply", "--dry-run", "--confirm", "APPLY")
    assert code == 2
    assert "Choose either --apply or --dry-run" in out


def test_sync_dry_run_then_apply_then_noop(run, store, seed):
    seed.patient("10001")

    code, payload, out = run(recon_sync_reservations, "--source", "fixtures")
    assert code == 0
    assert '"event": "source_fetched"' in out
    assert payload["inserts"] == ["R1"]
    assert payload["summary"]["mode"] == "dry_run"
    assert store.count("reservations") == 0

    code, payload, _ = run(recon_sync_reservations, "--source", "fixtures", "--apply", "--confirm", "APPLY")
    assert code == 1
    assert payload["summary"]["counts_after"] == {"patients": 1, "reservations": 1}
    assert payload["verification"]["ok"] is True
    assert store.select_one("reservations", {"reserve_id": "R1"})["status"] == "pending"

    code, payload, _ = run(recon_sync_reservations, "--source", "fixtures", "--apply", "--confirm", "APPLY")
    assert code == 0
    assert payload["summary"]["created"] == 0


def test_unconfigured_sheet_source_is_a_usage_error(run):
    code, _, out = run(recon_sync_reservations)
    assert code == 2
    assert "SOURCE_INTAKE_URL" in out


def test_audit_reports_missing_reservations(run):
    code, payload, _ = run(recon_audit_sync, "--source", "fixtures", "--from", "2026-01-01")
    assert code == 0
    assert payload["ok"] is False
    assert "missing_reservations" in {issue["type"] for issue in payload["issues"]}
    assert payload["repair"] is None


def test_find_duplicates_and_ignore(run, seed):
    seed.patient("P1", phone="09012345678", platform_uid="U_A")
    seed.patient("P2", phone="090-1234-5678")

    code, payload, _ = run(recon_find_duplicates, "--plan")
    assert code == 0
    assert payload["count"] == 1
    assert payload["merge_plans"]["planned"] == 1

    code, _, _ = run(recon_find_duplicates, "--ignore", "P1", "P2")
    assert code == 2

    code, payload, _ = run(recon_find_duplicates, "--ignore", "P1", "P2", "--apply", "--confirm", "APPLY")
    assert code == 0
    assert payload == {"ignored": ["P1", "P2"]}

    _, payload, _ = run(recon_find_duplicates)
    assert payload["count"] == 0


def test_merge_cli_applies_and_escalates_conflicts(run, store, seed):
    seed.patient("P1", name="山田 太郎")
    seed.patient("P2")
    seed.patient("P3", name="佐藤 花子")
    seed.rows("orders", {"patient_id": "P2"})

    code, payload, _ = run(recon_merge_patients, "--pair", "P1", "P2", "--apply", "--confirm", "APPLY")
    assert code == 1
    assert payload["merges"][0]["result"]["state"] == "verified"
    assert payload["summary"]["counts_before"]["patients"] == 3
    assert payload["summary"]["counts_after"]["patients"] == 2

    code, payload, _ = run(recon_merge_patients, "--pair", "P1", "P3")
    assert code == 3
    assert payload["summary"]["escalated"] == 1
    assert store.select_one("patients", {"patient_id": "P3"}) is not None


def test_merge_cli_rerun_reports_no_changes(run, store, seed):
    seed.patient("P1")
    seed.patient("P2")
    seed.rows("orders", {"patient_id": "P2"})

    code, _, _ = run(recon_merge_patients, "--pair", "P1", "P2", "--apply", "--confirm", "APPLY")
    assert code == 1

    code, payload, _ = run(recon_merge_patients, "--pair", "P1", "P2", "--apply", "--confirm", "APPLY")
    assert code == 0
    assert payload["merges"][0]["result"]["already_applied"] is True
    assert payload["summary"]["updated"] == 0
    assert store.count("reconcile_events") == 1


def test_split_cli_lists_then_splits(run, store, seed):
    seed.patient("P0", platform_uid="U_X")
    seed.intake("P0", line_id="U_X", created_at=datetime(2026, 1, 1, 9, 0))
    seed.intake("P0", line_id="U_Y", created_at=datetime(2026, 1, 2, 9, 0))

    code, payload, _ = run(recon_split_collision)
    assert code == 0
    assert payload["collisions"] == {"P0": ["U_X", "U_Y"]}

    code, _, _ = run(recon_split_collision, "--apply", "--confirm", "APPLY")
    assert code == 2

    code, payload, _ = run(recon_split_collision, "--patient-id", "P0", "--apply", "--confirm", "APPLY")
    assert code == 1
    assert payload["result"]["created_patients"] == ["10001"]
    assert payload["result"]["consistent"] is True
    assert store.count("intake", {"patient_id": "10001"}) == 1

    code, payload, _ = run(recon_split_collision, "--patient-id", "P0", "--apply", "--confirm", "APPLY")
    assert code == 0
    assert payload["result"]["already_applied"] is True
    assert payload["result"]["changes"] == 0
    assert store.count("patients") == 2


def test_split_cli_halts_when_a_uid_has_two_owners(run, store, seed):
    seed.patient("P0", platform_uid="U_X")
    seed.intake("P0", line_id="U_X")
    seed.intake("P0", line_id="U_Y")
    seed.patient("P5", platform_uid="U_Y")
    seed.patient("P6", platform_uid="U_Y")

    code, payload, _ = run(recon_split_collision, "--patient-id", "P0", "--apply", "--confirm", "APPLY")
    assert code == 3
    assert payload["summary"]["escalated"] == 1
    assert store.count("intake", {"patient_id": "P0"}) == 2


def test_split_cli_profiles_need_a_token(run, seed):
    seed.patient("P0", platform_uid="U_X")
    seed.intake("P0", line_id="U_X")
    seed.intake("P0", line_id="U_Y")

    code, _, out = run(recon_split_collision, "--patient-id", "P0", "--profiles")
    assert code == 2
    assert "PLATFORM_ACCESS_TOKEN" in out


def test_verify_cli_reports_orphans(run, seed):
    seed.patient("P1")
    seed.rows("orders", {"patient_id": "P1"}, {"patient_id": "GONE"})

    code, payload, _ = run(recon_verify, "--patient-id", "P1")
    assert code == 0
    assert payload["ok"] is True
    assert payload["references"]["P1"]["orders"] == 1

    _, payload, _ = run(recon_verify)
    assert payload["orphans"]["orders"] == 1
