from __future__ import annotations

import argparse
import logging
from datetime import timedelta
from pathlib import Path

from clinic_recon.core.settings import load_settings
from clinic_recon.scripts import _cli
from clinic_recon.services.reconcile.collision import detect_collisions, execute_split, plan_split
from clinic_recon.services.reconcile.errors import (
    ConflictError,
    NetworkError,
    PartialFailure,
    ValidationError,
)
from clinic_recon.services.reconcile.overrides import IdentityOverrides
from clinic_recon.services.reconcile.platform_profiles import PlatformProfileClient, fetch_profiles
from clinic_recon.services.reconcile.summary import RunSummary
from clinic_recon.services.reconcile.tables import DEPENDENT_TABLE_NAMES, PATIENTS_TABLE

logger = logging.getLogger(__name__)


def build_profile_client(settings) -> PlatformProfileClient:
    return PlatformProfileClient.from_settings(settings)


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Detect patient_ids shared by several people and split them by evidence."
    )
    parser.add_argument(
        "--patient-id",
        help="Collided patient_id to split. Without it, collisions are only listed.",
    )
    parser.add_argument("--overrides", type=Path, default=None, help="Operator override JSON file.")
    parser.add_argument(
        "--profiles",
        action="store_true",
        help="Look up platform display names for each identity (read-only).",
    )
    _cli.add_mode_arguments(parser)
    args = parser.parse_args()
    _cli.configure_logging(args.verbose)

    refusal = _cli.apply_refusal(args)
    if refusal:
        print(refusal)
        return _cli.EXIT_USAGE
    if args.apply and not args.patient_id:
        print("--apply needs --patient-id.")
        return _cli.EXIT_USAGE
    try:
        settings = load_settings()
        overrides = IdentityOverrides.load(args.overrides)
    except (ValueError, RuntimeError, OSError) as exc:
        print(str(exc))
        return _cli.EXIT_USAGE

    store = _cli.open_store(settings)
    try:
        if not args.patient_id:
            collisions = detect_collisions(store)
            _cli.emit(
                {
                    "collisions": {patient_id: sorted(uids) for patient_id, uids in sorted(collisions.items())},
                    "count": len(collisions),
                }
            )
            return _cli.EXIT_OK

        tables = [PATIENTS_TABLE, *DEPENDENT_TABLE_NAMES]
        summary = RunSummary(mode="apply" if args.apply else "dry_run")
        summary.snapshot_before(store, tables)
        try:
            split = plan_split(
                store,
                args.patient_id,
                overrides,
                proximity_window=timedelta(minutes=settings.proximity_window_minutes),
                numeric_floor=settings.numeric_pid_floor,
            )
        except ValidationError as exc:
            print(str(exc))
            return _cli.EXIT_USAGE
        except ConflictError as exc:
            summary.record_error({"error": str(exc), "conflicts": exc.conflicts}, escalated=True)
            _cli.emit({"summary": summary.as_dict()})
            return _cli.EXIT_HALTED

        payload: dict[str, object] = {"split": split.model_dump(mode="json")}
        if args.profiles:
            try:
                client = build_profile_client(settings)
            except RuntimeError as exc:
                print(str(exc))
                return _cli.EXIT_USAGE
            with client:
                lookup = fetch_profiles(
                    client,
                    [identity.platform_uid for identity in split.identities],
                    max_workers=settings.lookup_concurrency,
                )
            payload["profiles"] = lookup.as_dict()

        try:
            result = execute_split(store, split, confirm=args.apply)
        except PartialFailure as exc:
            logger.error("Split halted", extra={"state": exc.state, "failed_table": exc.failed_table})
            summary.record_error(exc.as_dict(), escalated=True)
            _cli.emit({**payload, "summary": summary.as_dict()})
            return _cli.EXIT_HALTED
        summary.created = len(result.created_patients)
        summary.updated = sum(result.moved.values())
        summary.skipped = result.unassigned
        if args.apply:
            summary.snapshot_after(store, tables)
        payload["result"] = result.as_dict()
        payload["summary"] = summary.as_dict()
        exit_code = _cli.EXIT_REPAIRED if result.changes else _cli.EXIT_OK
    except NetworkError as exc:
        _cli.emit({"error": str(exc), "halted": True})
        return _cli.EXIT_HALTED
    finally:
        store.session.close()

    _cli.emit(payload)
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
