from __future__ import annotations

import argparse
import logging
from datetime import date, datetime, timedelta

from clinic_recon.core.settings import load_settings
from clinic_recon.scripts import _cli
from clinic_recon.services.reconcile.errors import NetworkError
from clinic_recon.services.reconcile.identity_index import records_from_store_rows
from clinic_recon.services.reconcile.source import normalize_rows
from clinic_recon.services.reconcile.store import Range
from clinic_recon.services.reconcile.sync import audit_sync, sync_reservations

logger = logging.getLogger(__name__)


def _window(args: argparse.Namespace) -> tuple[date, date | None]:
    date_from = _cli.parse_date(args.date_from)
    date_to = _cli.parse_date(args.date_to)
    if date_from is None:
        date_from = date.today() - timedelta(days=args.days)
    return date_from, date_to


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Audit source vs store for missing intake and reservations."
    )
    _cli.add_source_arguments(parser)
    parser.add_argument("--days", type=int, default=7, help="Look-back window when --from is absent (default: 7).")
    parser.add_argument("--sample", type=int, default=5, help="Examples listed per issue (default: 5).")
    _cli.add_mode_arguments(parser)
    args = parser.parse_args()
    _cli.configure_logging(args.verbose)

    refusal = _cli.apply_refusal(args)
    if refusal:
        print(refusal)
        return _cli.EXIT_USAGE
    if args.days <= 0:
        print("--days must be a positive integer.")
        return _cli.EXIT_USAGE
    try:
        date_from, date_to = _window(args)
        settings = load_settings()
        source = _cli.build_source(args.source, settings)
    except (ValueError, RuntimeError) as exc:
        print(str(exc))
        return _cli.EXIT_USAGE

    since = datetime.combine(date_from, datetime.min.time())
    store = _cli.open_store(settings)
    try:
        intake_rows = source.list_intake(date_from, date_to)
        reservation_rows = source.list_reservations()
        source_intake, intake_errors = normalize_rows(intake_rows, origin="source:intake", required=("patient_id",))
        source_reservations, reservation_errors = normalize_rows(
            reservation_rows, origin="source:reservations", required=("reserve_id",)
        )
        recent_reservations = [
            record for record in source_reservations if record.timestamp is None or record.timestamp >= since
        ]
        store_intake = records_from_store_rows(
            store.fetch_all("intake", {"created_at": Range(gte=since)}), "intake"
        )
        store_reservations = records_from_store_rows(store.fetch_all("reservations"), "reservations")
        issues = audit_sync(
            source_intake,
            recent_reservations,
            store_intake,
            store_reservations,
            sample=args.sample,
        )
        repair = None
        if args.apply and any(issue.type in {"missing_reservations", "reservation_status_mismatch"} for issue in issues):
            repair = sync_reservations(store, recent_reservations, confirm=True)
    except NetworkError as exc:
        logger.error("Sync audit aborted", extra={"endpoint": exc.endpoint, "status_code": exc.status_code})
        _cli.emit({"error": str(exc), "halted": True})
        return _cli.EXIT_HALTED
    finally:
        source.close()
        store.session.close()

    payload = {
        "window": {"from": date_from.isoformat(), "to": date_to.isoformat() if date_to else None},
        "mode": "apply" if args.apply else "dry_run",
        "ok": not issues,
        "issues": [issue.as_dict() for issue in issues],
        "skipped_source_rows": intake_errors.skipped + reservation_errors.skipped,
        "repair": repair.as_dict() if repair else None,
    }
    _cli.emit(payload)
    if repair and repair.changes:
        return _cli.EXIT_REPAIRED
    return _cli.EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
