from __future__ import annotations

import argparse
import logging
from pathlib import Path

from clinic_recon.core.settings import load_settings
from clinic_recon.scripts import _cli
from clinic_recon.services.reconcile.dedup import find_duplicate_candidates, ignore_pair
from clinic_recon.services.reconcile.errors import NetworkError
from clinic_recon.services.reconcile.merge_planner import plan_merges_for_candidates
from clinic_recon.services.reconcile.overrides import IdentityOverrides

logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="List likely duplicate patients (read-only by default).")
    parser.add_argument("--min-score", type=int, default=70, help="Lowest similarity reported (default: 70).")
    parser.add_argument("--limit", type=int, default=None, help="Cap the number of candidates listed.")
    parser.add_argument(
        "--plan",
        action="store_true",
        help="Also plan a merge for every candidate (keep the suggested id).",
    )
    parser.add_argument("--overrides", type=Path, default=None, help="Operator override JSON file.")
    parser.add_argument(
        "--ignore",
        nargs=2,
        metavar=("PATIENT_A", "PATIENT_B"),
        help="Dismiss a candidate pair so later scans skip it (requires --apply --confirm APPLY).",
    )
    _cli.add_mode_arguments(parser)
    args = parser.parse_args()
    _cli.configure_logging(args.verbose)

    refusal = _cli.apply_refusal(args)
    if refusal:
        print(refusal)
        return _cli.EXIT_USAGE
    if args.ignore and not args.apply:
        print("Refusing to ignore a pair without --apply --confirm APPLY.")
        return _cli.EXIT_USAGE
    if not 0 <= args.min_score <= 100:
        print("--min-score must be between 0 and 100.")
        return _cli.EXIT_USAGE
    try:
        settings = load_settings()
        overrides = IdentityOverrides.load(args.overrides)
    except (ValueError, RuntimeError, OSError) as exc:
        print(str(exc))
        return _cli.EXIT_USAGE

    store = _cli.open_store(settings)
    try:
        if args.ignore:
            pair = ignore_pair(store, args.ignore[0], args.ignore[1])
            _cli.emit({"ignored": list(pair)})
            return _cli.EXIT_OK
        candidates = find_duplicate_candidates(store, min_score=args.min_score)
        if args.limit is not None:
            candidates = candidates[: args.limit]
        payload: dict[str, object] = {
            "candidates": [candidate.as_dict() for candidate in candidates],
            "count": len(candidates),
            "min_score": args.min_score,
        }
        if args.plan:
            batch = plan_merges_for_candidates(
                store,
                (
                    (candidate.suggested_keep_id, candidate.suggested_remove_id, candidate.merge_reason)
                    for candidate in candidates
                ),
                overrides,
            )
            payload["merge_plans"] = batch.as_dict()
    except NetworkError as exc:
        logger.error("Duplicate scan aborted", extra={"status_code": exc.status_code})
        _cli.emit({"error": str(exc), "halted": True})
        return _cli.EXIT_HALTED
    finally:
        store.session.close()

    _cli.emit(payload)
    return _cli.EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
