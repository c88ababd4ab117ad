from __future__ import annotations

import argparse

from clinic_recon.core.settings import load_settings
from clinic_recon.scripts import _cli
from clinic_recon.services.reconcile.errors import NetworkError
from clinic_recon.services.reconcile.verify import count_references, verify_references


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Report dependent rows whose patient_id matches no patient (read-only)."
    )
    parser.add_argument(
        "--patient-id",
        action="append",
        dest="patient_ids",
        help="Only check these patient_ids (repeatable). Default: every dependent row.",
    )
    parser.add_argument("--redirected-to", help="patient_id that absorbed a merge; rows there are not orphans.")
    parser.add_argument("--sample", type=int, default=10, help="Orphan patient_ids listed per table (default: 10).")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging on stderr.")
    args = parser.parse_args()
    _cli.configure_logging(args.verbose)

    try:
        settings = load_settings()
    except (ValueError, RuntimeError) as exc:
        print(str(exc))
        return _cli.EXIT_USAGE

    store = _cli.open_store(settings)
    try:
        report = verify_references(
            store,
            patient_ids=args.patient_ids,
            redirected_to=args.redirected_to,
            sample=args.sample,
        )
        payload = report.as_dict()
        if args.patient_ids:
            payload["references"] = {pid: count_references(store, pid) for pid in args.patient_ids}
    except NetworkError as exc:
        _cli.emit({"error": str(exc), "halted": True})
        return _cli.EXIT_HALTED
    finally:
        store.session.close()

    _cli.emit(payload)
    return _cli.EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
