"""Bulk-import bottles from a cellar CSV export.

Usage:
    uv run python scripts/import_cellar_csv.py PATH [--owner USER] [--dry-run]

Reads every row of PATH (comma- or semicolon-separated, e.g. a Vivino export),
validates it and creates one bottle per valid row.  Rows that fail validation
or the insert are reported and skipped; the import carries on.

Exits with status 1 when no bottle was imported.

Requires DATABASE_URL unless --dry-run is given.
"""

import argparse
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

# Allow running from backend/ directory without installing the package.
_BACKEND_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_BACKEND_DIR))

# Load .env from project root (parent of backend/).
load_dotenv(_BACKEND_DIR.parent / ".env")

# Parse --db-url early so we can set DATABASE_URL before the db module
# initialises its lazy engine singleton.
_pre = argparse.ArgumentParser(add_help=False)
_pre.add_argument("--db-url", default=None)
_pre_args, _ = _pre.parse_known_args()
if _pre_args.db_url:
    os.environ["DATABASE_URL"] = _pre_args.db_url

from cellar.db import session_factory  # noqa: E402
from cellar.services.csv_import import (  # noqa: E402
    CsvImportService,
    EmptyImportError,
    read_csv_rows,
    validate_all,
)


def _dry_run(path: Path) -> None:
    rows = read_csv_rows(path)
    valid, failures = validate_all(rows)
    print(f"DRY RUN: {len(rows)} row(s) read, {len(valid)} valid, {len(failures)} invalid.\n")
    for bottle in valid:
        vintage = bottle.vintage or "NV"
        print(f"  WOULD IMPORT  {bottle.wine_name[:60]}  {vintage}  ({bottle.style}) x{bottle.quantity}")
    for failure in failures:
        print(f"  INVALID       row {failure.row_number}  ({failure.reason})", file=sys.stderr)
    if not valid:
        sys.exit(1)


def main() -> None:
    parser = argparse.ArgumentParser(description="Import a cellar CSV export.")
    parser.add_argument("path", type=Path, help="CSV file to import")
    parser.add_argument(
        "--owner",
        default=os.environ.get("CELLAR_USER", "default"),
        help="Owner of the imported bottles (default: $CELLAR_USER or 'default')",
    )
    parser.add_argument(
        "--db-url",
        default=None,
        help="PostgreSQL connection URL (default: $DATABASE_URL)",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=50,
        help="Rows per progress report (default: 50)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate and print what would be imported without writing to the DB.",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S")

    path: Path = args.path
    if not path.is_file():
        print(f"ERROR: CSV file not found: {path}", file=sys.stderr)
        sys.exit(1)

    if args.dry_run:
        _dry_run(path)
        return

    db = session_factory()()
    try:
        result = CsvImportService().import_file(path, args.owner, db, chunk_size=args.chunk_size)
    except EmptyImportError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)
    finally:
        db.close()

    for failure in result.failures:
        print(f"  FAILED        row {failure.row_number}  ({failure.reason})", file=sys.stderr)
    print(f"\nDone: {result.success_count} imported, {result.failure_count} failed.")
    if not result.ok:
        sys.exit(1)


if __name__ == "__main__":
    main()
