"""
compare_approaches.py — Load both layouts and compare them.

Runs the year-separated and the unified import against the same database,
then writes a Markdown comparison report and a file of sample queries.

Actions:
    separated   year-separated import only
    unified     unified (year-partitioned) import only
    both        both imports, then report + sample queries (default)
    report      report + sample queries from data already loaded
    queries     sample queries only (no database needed)

Usage:
    python compare_approaches.py
    python compare_approaches.py --action report --out-dir reports/

Generated files:
    comparison_report_YYYYMMDD_HHMMSS.md   detailed comparison report
    sample_queries_YYYYMMDD_HHMMSS.sql     test queries for both approaches
"""

import argparse
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from db import DbConfig, get_connection
from import_boundaries import (
    DEFAULT_LOG,
    DEFAULT_MAPS_ROOT,
    build_parser as build_import_parser,
    run as run_import_cli,
    setup_logging,
    verify_database_connection,
)
from report import generate_comparison_report, write_sample_queries

ACTIONS = ("separated", "unified", "both", "report", "queries")


def _import(strategy: str, args, config: DbConfig, log: logging.Logger) -> int:
    log.info("Running %s import…", strategy)
    import_args = build_import_parser().parse_args([
        "--strategy",    strategy,
        "--maps-root",   args.maps_root,
        "--summary-log", str(Path(args.out_dir) / f"import_summary_{strategy}.log"),
        "--log-file",    args.log_file,
    ])
    return run_import_cli(import_args, config, log.getChild(strategy))


def _report(args, config: DbConfig, log: logging.Logger) -> int:
    if not verify_database_connection(config, log, retries=1):
        log.error("Cannot connect to %s:%s", config.host, config.port)
        return 1
    now  = datetime.now()
    conn = get_connection(config)
    try:
        generate_comparison_report(conn, config.dbname, Path(args.out_dir), now, log=log)
    finally:
        conn.close()
    write_sample_queries(Path(args.out_dir), now, log=log)
    return 0


def run(args, config: DbConfig, log: logging.Logger) -> int:
    Path(args.out_dir).mkdir(parents=True, exist_ok=True)
    if args.action == "queries":
        write_sample_queries(Path(args.out_dir), log=log)
        return 0

    if args.action in ("separated", "both"):
        code = _import("separated", args, config, log)
        if code:
            return code
    if args.action in ("unified", "both"):
        code = _import("unified", args, config, log)
        if code:
            return code
    if args.action in ("both", "report"):
        return _report(args, config, log)
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Compare year-separated and unified boundary tables",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--action", choices=ACTIONS, default="both",
        help="What to run (default: both)"
    )
    parser.add_argument(
        "--out-dir", default=".",
        help="Directory for the report and query files (default: .)"
    )
    parser.add_argument(
        "--maps-root", default=str(DEFAULT_MAPS_ROOT),
        help=f"Root of the maps tree (default: {DEFAULT_MAPS_ROOT})"
    )
    parser.add_argument(
        "--log-file", default=str(DEFAULT_LOG),
        help=f"Log file path (default: {DEFAULT_LOG})"
    )
    args = parser.parse_args(argv)
    log  = setup_logging(Path(args.log_file), name="compare_approaches")

    log.info("=== COMPREHENSIVE IMPORT AND COMPARISON ===")
    log.info("Started at %s", datetime.now(timezone.utc).isoformat())
    code = run(args, DbConfig.from_env(), log)
    if code == 0:
        log.info("=== COMPLETED ===")
    sys.exit(code)


if __name__ == "__main__":
    main()
