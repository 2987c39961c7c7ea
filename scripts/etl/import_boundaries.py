"""
import_boundaries.py — Load Philippines administrative boundaries into PostGIS.

Reads maps/<year>/geojson/<level>[/<resolution>]/*.json for 2011, 2019 and
2023 and loads it under one schema strategy:

    unified                regions, provinces, municipalities, barangays
                           list-partitioned by year (default)
    separated              regions_2011 … barangays_2023
    universal              every file under maps/<year>/, with admin_level
                           and source_path columns
    resolution             geojson_lowres / geojson_medres / geojson_hires
    barangays-partitioned  barangays_partitioned, one partition per name_3
    barangays-indexed      all_barangays, indexed on name_3 and data_year

Every full run drops and recreates the tables it writes to.

Usage:
    # Full unified import from ./maps
    python import_boundaries.py

    # Year-separated tables, 2019 only
    python import_boundaries.py --strategy separated --years 2019

    # Use GDAL's ogr2ogr instead of the in-process loader
    python import_boundaries.py --loader ogr2ogr

    # Append one file to its table (creates the table only if missing)
    python import_boundaries.py --file maps/2023/geojson/regions/medres/regions.json

Options:
    --strategy NAME       Schema strategy (default: unified)
    --maps-root PATH      Root of the maps tree (default: ./maps)
    --years YEAR [...]    Only these years (default: 2011 2019 2023)
    --loader NAME         geopandas (default) or ogr2ogr
    --file PATH           Import a single file, non-destructively
    --summary-log PATH    Per-batch CSV summary (default: ./import_summary.log)
    --log-file PATH       Log file path (default: ./import_boundaries.log)
    --no-views            Skip creating the analysis views

Environment:
    DB_HOST (localhost)  DB_PORT (5432)  DB_NAME (gis)
    DB_USER (postgres)   DB_PASSWORD (password)
"""

import argparse
import logging
import signal
import sys
import time
from datetime import datetime, timezone
from pathlib import Path

import psycopg2

from classify import KNOWN_YEARS
from db import CONNECTION_ERRORS, DbConfig, ensure_database, get_connection
from loader import GeoPandasLoader, GeometryLoader, Ogr2OgrLoader
from pipeline import (
    DEFAULT_SUMMARY_LOG,
    ImportSummary,
    RunContext,
    import_single_file,
    print_summary,
    run_import,
)
from schema import ensure_postgis
from strategies import DEFAULT_STRATEGY, STRATEGIES, get_strategy

# ─── Paths ───────────────────────────────────────────────────────────────────

DEFAULT_MAPS_ROOT = Path("maps")
DEFAULT_LOG       = Path("import_boundaries.log")
LOADERS           = ("geopandas", "ogr2ogr")


# ─── Logging setup ────────────────────────────────────────────────────────────

def setup_logging(log_file: Path | None, name: str = "import_boundaries") -> logging.Logger:
    """
    Configure root logger to write to both stdout and a log file.

    Format: 2026-02-22 14:23:01 [INFO ] import_boundaries: Strategy unified: 16 batches
    """
    log_format = "%(asctime)s [%(levelname)-5s] %(name)s: %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Console handler (INFO and above)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(logging.Formatter(log_format, date_format))
    root_logger.addHandler(console_handler)

    # File handler (DEBUG and above, full detail for troubleshooting)
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(log_format, date_format))
            root_logger.addHandler(file_handler)
        except OSError as exc:
            logging.warning("Could not open log file %s: %s", log_file, exc)

    return logging.getLogger(name)


# ─── DB connection check ──────────────────────────────────────────────────────

def verify_database_connection(
    config: DbConfig,
    log: logging.Logger,
    retries: int = 5,
    delay: int = 5,
) -> bool:
    """
    Attempt to reach the server (via the 'postgres' maintenance database, the
    target may not exist yet), retrying with a growing delay.
    Returns True on success, False after all retries are exhausted.
    """
    for attempt in range(1, retries + 1):
        try:
            conn = get_connection(config, dbname="postgres")
            conn.close()
            log.info("Database server reachable at %s:%s (attempt %d/%d)",
                     config.host, config.port, attempt, retries)
            return True
        except psycopg2.OperationalError as exc:
            log.warning(
                "DB connection attempt %d/%d failed: %s",
                attempt, retries, str(exc).strip()
            )
            if attempt < retries:
                wait = delay * attempt
                log.info("Retrying in %ds…", wait)
                time.sleep(wait)

    return False


def prepare_database(config: DbConfig, log: logging.Logger) -> psycopg2.extensions.connection | None:
    """
    Create the target database if needed, connect, enable PostGIS.
    Returns the run's connection, or None if any step failed.
    """
    try:
        if ensure_database(config, log):
            log.info("Database %s created", config.dbname)
        conn = get_connection(config)
    except psycopg2.Error as exc:
        log.error("Cannot prepare database %s: %s", config.dbname, str(exc).strip())
        return None
    try:
        ensure_postgis(conn)
    except psycopg2.Error as exc:
        log.error("Cannot enable PostGIS in %s: %s", config.dbname, str(exc).strip())
        conn.close()
        return None
    return conn


def make_loader(name: str, conn, config: DbConfig, log: logging.Logger) -> GeometryLoader:
    if name == "ogr2ogr":
        return Ogr2OgrLoader(config, log=log.getChild("ogr2ogr"))
    return GeoPandasLoader(conn, log=log.getChild("loader"))


# ─── Signal handler (graceful Ctrl-C) ────────────────────────────────────────

_summary_ref: ImportSummary | None = None
_strategy_ref: str = DEFAULT_STRATEGY

def _handle_sigint(signum, frame):
    log = logging.getLogger("import_boundaries")
    log.warning("Interrupted — summary so far:")
    if _summary_ref is not None:
        print_summary(_summary_ref, _strategy_ref, log)
    sys.exit(130)


# ─── Main ─────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Philippines administrative boundaries — PostGIS import",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--strategy", choices=sorted(STRATEGIES), default=DEFAULT_STRATEGY,
        help=f"Schema strategy (default: {DEFAULT_STRATEGY})"
    )
    parser.add_argument(
        "--maps-root", default=str(DEFAULT_MAPS_ROOT),
        help=f"Root of the maps/<year>/geojson tree (default: {DEFAULT_MAPS_ROOT})"
    )
    parser.add_argument(
        "--years", nargs="+", type=int, metavar="YEAR", default=list(KNOWN_YEARS),
        help="Years to import (default: %(default)s)"
    )
    parser.add_argument(
        "--loader", choices=LOADERS, default="geopandas",
        help="Loader implementation (default: geopandas)"
    )
    parser.add_argument(
        "--file", metavar="PATH",
        help="Append a single GeoJSON file to its table without dropping anything"
    )
    parser.add_argument(
        "--summary-log", default=str(DEFAULT_SUMMARY_LOG),
        help=f"Per-batch summary CSV (default: {DEFAULT_SUMMARY_LOG})"
    )
    parser.add_argument(
        "--log-file", default=str(DEFAULT_LOG),
        help=f"Log file path (default: {DEFAULT_LOG})"
    )
    parser.add_argument(
        "--no-views", action="store_true",
        help="Do not create the analysis views after a full run"
    )
    return parser


def run(args: argparse.Namespace, config: DbConfig, log: logging.Logger) -> int:
    """Execute one import described by parsed `args`. Returns the exit code."""
    global _summary_ref, _strategy_ref

    strategy  = get_strategy(args.strategy)
    maps_root = Path(args.maps_root)
    single    = Path(args.file) if args.file else None

    log.info("Strategy: %s (%s)", strategy.name, strategy.description)
    log.info("Database: %s on %s:%s", config.dbname, config.host, config.port)

    # ── Input preconditions ──
    if single is not None and not single.is_file():
        log.error("File not found: %s", single)
        return 1
    if single is None and not maps_root.is_dir():
        log.error("maps directory not found: %s (run from the repository root "
                  "or pass --maps-root)", maps_root)
        return 1

    # ── Verify DB ──
    if not verify_database_connection(config, log):
        log.error("Cannot connect to %s:%s after 5 retries. Is PostgreSQL up?",
                  config.host, config.port)
        return 1
    conn = prepare_database(config, log)
    if conn is None:
        return 1

    summary = ImportSummary(path=Path(args.summary_log))
    _summary_ref, _strategy_ref = summary, strategy.name
    signal.signal(signal.SIGINT, _handle_sigint)
    signal.signal(signal.SIGTERM, _handle_sigint)

    ctx = RunContext(
        conn     = conn,
        loader   = make_loader(args.loader, conn, config, log),
        strategy = strategy,
        years    = tuple(args.years),
        log      = log.getChild(strategy.name),
    )
    try:
        if single is not None:
            summary.start()
            try:
                result = import_single_file(ctx, single, summary)
            except ValueError as exc:
                log.error("%s", exc)
                return 1
            if not result.ok:
                log.error("Import of %s failed: %s", single, result.error)
        else:
            run_import(ctx, maps_root, summary, create_views=not args.no_views)
    except CONNECTION_ERRORS as exc:
        log.error("Database connection lost, aborting: %s", str(exc).strip())
        print_summary(summary, strategy.name, log)
        return 1
    finally:
        conn.close()

    print_summary(summary, strategy.name, log)
    return 0


def main(argv=None):
    args = build_parser().parse_args(argv)
    log  = setup_logging(Path(args.log_file) if args.log_file else None)

    log.info("╔══════════════════════════════════════════════╗")
    log.info("║   Philippines Boundaries — PostGIS Import     ║")
    log.info("╚══════════════════════════════════════════════╝")
    log.info("Started at %s", datetime.now(timezone.utc).isoformat())

    sys.exit(run(args, DbConfig.from_env(), log))


if __name__ == "__main__":
    main()
