from __future__ import annotations

import argparse
import logging

from clinic_recon.core.settings import load_settings
from clinic_recon.scripts import _cli
from clinic_recon.services.reconcile.errors import NetworkError
from clinic_recon.services.reconcile.source import normalize_rows
from clinic_recon.services.reconcile.summary import emit_checkpoint
from clinic_recon.services.reconcile.sync import sync_reservations

logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Copy reservations missing from the store and fix drifted status/date/time."
    )
    _cli.add_source_arguments(parser)
    parser.add_argument("--date", dest="reserved_date", help="Only reservations on YYYY-MM-DD.")
    _cli.add_mode_arguments(parser)
    args = parser.parse_args()
    _cli.configure_logging(args.verbose)

    refusal = _cli.apply_refusal(args)
    if refusal:
        print(refusal)
        return _cli.EXIT_USAGE
    try:
        reserved_date = _cli.parse_date(args.reserved_date)
        settings = load_settings()
        source = _cli.build_source(args.source, settings)
    except (ValueError, RuntimeError) as exc:
        print(str(exc))
        return _cli.EXIT_USAGE

    store = _cli.open_store(settings)
    try:
        raw_rows = source.list_reservations(reserved_date)
        emit_checkpoint("source_fetched", rows=len(raw_rows))
        records, errors = normalize_rows(raw_rows, origin="source:reservations", required=("reserve_id",))
        result = sync_reservations(store, records, confirm=args.apply)
    except NetworkError as exc:
        logger.error("Reservation sync aborted", extra={"endpoint": exc.endpoint, "status_code": exc.status_code})
        _cli.emit({"error": str(exc), "halted": True})
        return _cli.EXIT_HALTED
    finally:
        source.close()
        store.session.close()

    result.summary.skipped += errors.skipped
    result.summary.errors.extend(errors.items)
    _cli.emit(result.as_dict())
    if result.verification and not result.verification.ok:
        return _cli.EXIT_HALTED
    if args.apply and result.changes:
        return _cli.EXIT_REPAIRED
    return _cli.EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
