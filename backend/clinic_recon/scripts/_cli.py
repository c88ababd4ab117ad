from __future__ import annotations

import argparse
import json
import logging
from datetime import date

from clinic_recon.core.settings import Settings
from clinic_recon.db.session import open_session
from clinic_recon.services.reconcile.fixture_source import FixtureSource
from clinic_recon.services.reconcile.sheet_source import SheetSource, SheetSourceConfig
from clinic_recon.services.reconcile.store import StoreClient

EXIT_OK = 0
EXIT_REPAIRED = 1
EXIT_USAGE = 2
EXIT_HALTED = 3


def add_mode_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--dry-run", action="store_true", help="Report only (default).")
    parser.add_argument("--apply", action="store_true", help="Write changes to the store.")
    parser.add_argument("--confirm", default="", help="Safety latch for apply mode (must be 'APPLY').")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging on stderr.")


def add_source_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--source",
        default="sheet",
        choices=("sheet", "fixtures"),
        help="Where source rows come from (default: sheet).",
    )
    parser.add_argument("--from", dest="date_from", help="Filter from YYYY-MM-DD.")
    parser.add_argument("--to", dest="date_to", help="Filter to YYYY-MM-DD.")


def apply_refusal(args: argparse.Namespace) -> str | None:
    if args.apply and args.dry_run:
        return "Choose either --apply or --dry-run (default is dry-run)."
    if args.apply and args.confirm != "APPLY":
        return "Refusing to apply without --confirm APPLY."
    return None


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def parse_date(value: str | None) -> date | None:
    if not value:
        return None
    return date.fromisoformat(value)


def open_store(settings: Settings) -> StoreClient:
    return StoreClient(
        open_session(settings),
        page_size=settings.store_page_size,
        batch_size=settings.batch_size,
    )


def build_source(kind: str, settings: Settings):
    if kind == "fixtures":
        return FixtureSource()
    config = SheetSourceConfig.from_settings(settings)
    config.require_configured()
    return SheetSource(config)


def emit(payload: dict[str, object]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))
