from __future__ import annotations

import argparse
import logging
from pathlib import Path

from clinic_recon.core.settings import load_settings
from clinic_recon.scripts import _cli
from clinic_recon.services.reconcile.errors import (
    ConflictError,
    NetworkError,
    PartialFailure,
    ValidationError,
)
from clinic_recon.services.reconcile.merge_executor import MergeExecutor
from clinic_recon.services.reconcile.merge_planner import plan_merge
from clinic_recon.services.reconcile.overrides import IdentityOverrides
from clinic_recon.services.reconcile.summary import RunSummary
from clinic_recon.services.reconcile.tables import DEPENDENT_TABLE_NAMES, PATIENTS_TABLE
from clinic_recon.services.reconcile.types import MergeReason

logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Merge duplicate patients: move every dependent row from SOURCE to TARGET."
    )
    parser.add_argument(
        "--pair",
        nargs=2,
        action="append",
        metavar=("TARGET", "SOURCE"),
        required=True,
        help="Patient kept (TARGET) and patient folded into it (SOURCE). Repeatable.",
    )
    parser.add_argument(
        "--reason",
        default=MergeReason.operator.value,
        choices=[reason.value for reason in MergeReason],
        help="Evidence behind the merge (default: operator).",
    )
    parser.add_argument("--overrides", type=Path, default=None, help="Operator override JSON file.")
    _cli.add_mode_arguments(parser)
    args = parser.parse_args()
    _cli.configure_logging(args.verbose)

    refusal = _cli.apply_refusal(args)
    if refusal:
        print(refusal)
        return _cli.EXIT_USAGE
    try:
        settings = load_settings()
        overrides = IdentityOverrides.load(args.overrides)
    except (ValueError, RuntimeError, OSError) as exc:
        print(str(exc))
        return _cli.EXIT_USAGE

    tables = [PATIENTS_TABLE, *DEPENDENT_TABLE_NAMES]
    summary = RunSummary(mode="apply" if args.apply else "dry_run")
    results: list[dict[str, object]] = []
    exit_code = _cli.EXIT_OK
    store = _cli.open_store(settings)
    try:
        summary.snapshot_before(store, tables)
        executor = MergeExecutor(store)
        for target_id, source_id in args.pair:
            try:
                plan = plan_merge(store, target_id, source_id, MergeReason(args.reason), overrides)
            except ConflictError as exc:
                summary.record_error(
                    {"target": target_id, "source": source_id, "error": str(exc), "conflicts": exc.conflicts},
                    escalated=True,
                )
                exit_code = _cli.EXIT_HALTED
                continue
            except ValidationError as exc:
                summary.skipped += 1
                summary.record_error({"target": target_id, "source": source_id, "error": str(exc)})
                continue
            try:
                result = executor.execute(plan, confirm=args.apply)
            except PartialFailure as exc:
                logger.error("Merge halted", extra={"state": exc.state, "failed_table": exc.failed_table})
                summary.record_error({"target": target_id, "source": source_id, **exc.as_dict()}, escalated=True)
                exit_code = _cli.EXIT_HALTED
                break
            summary.updated += result.changes
            results.append({"plan": plan.model_dump(mode="json"), "result": result.as_dict()})
        if args.apply:
            summary.snapshot_after(store, tables)
    except NetworkError as exc:
        _cli.emit({"error": str(exc), "halted": True, "summary": summary.as_dict()})
        return _cli.EXIT_HALTED
    finally:
        store.session.close()

    _cli.emit({"merges": results, "summary": summary.as_dict()})
    if exit_code == _cli.EXIT_OK and summary.errored and not results:
        return _cli.EXIT_USAGE
    if exit_code == _cli.EXIT_OK and args.apply and summary.updated:
        return _cli.EXIT_REPAIRED
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
