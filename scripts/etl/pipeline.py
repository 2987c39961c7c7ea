"""
pipeline.py — Run one strategy over the maps/ tree.

Each file moves through:

    DISCOVERED → CLASSIFIED | SKIPPED
               → SCHEMA_ENSURED
               → LOADED | LOAD_FAILED
               → ANNOTATED
               → COUNTED

There are no retries. A LOAD_FAILED file is counted as an error and the run
moves on to the next file. Load and annotate share one transaction per file,
so a file's rows are never visible without their provenance and a failure
between the two rolls both back.

Files are grouped into (year, admin_level) batches. After each batch one line
is appended to the summary log (year,admin_level,files_found,imported,errors)
and every table that received rows is ANALYZEd.
"""

import dataclasses
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import pandas as pd
import psycopg2

from annotate import backfill_provenance
from classify import (
    KNOWN_YEARS,
    AdminLevel,
    Classification,
    classify_path,
    find_level_dir,
    list_json_files,
    resolution_from_path,
    select_resolution_dir,
)
from db import CONNECTION_ERRORS, transaction
from loader import GeometryLoader, LoadError, read_key_values
from schema import (
    PartitionMode,
    PartitionRegistry,
    TableSpec,
    analyze_table,
    ensure_table,
    provision_table,
)
from strategies import ALL_LEVELS, LEVEL_DIRS, Strategy
from views import create_views as create_views_for

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY_LOG = Path("import_summary.log")
SUMMARY_COLUMNS     = ["year", "admin_level", "files_found", "imported", "errors"]


class FileState(str, Enum):
    DISCOVERED     = "discovered"
    CLASSIFIED     = "classified"
    SKIPPED        = "skipped"
    SCHEMA_ENSURED = "schema_ensured"
    LOADED         = "loaded"
    LOAD_FAILED    = "load_failed"
    ANNOTATED      = "annotated"
    COUNTED        = "counted"


@dataclass
class FileResult:
    path:  Path
    state: FileState = FileState.DISCOVERED
    table: str | None = None
    rows:  int = 0            # -1 when the loader cannot tell
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.state is FileState.COUNTED


@dataclass
class YearBatch:
    """The files of one (year, admin_level), consumed in path order."""
    year:        int
    admin_level: AdminLevel
    files:       list[Classification] = field(default_factory=list)
    skipped:     int = 0      # found but not accepted by the strategy

    @property
    def files_found(self) -> int:
        return len(self.files) + self.skipped


# ─── Import summary ───────────────────────────────────────────────────────────

@dataclass
class BatchSummary:
    year:        int | None
    admin_level: str
    files_found: int = 0
    imported:    int = 0
    errors:      int = 0
    skipped:     int = 0
    rows:        int = 0

    @classmethod
    def from_results(cls, batch: YearBatch, results: list[FileResult]) -> "BatchSummary":
        return cls(
            year        = batch.year,
            admin_level = batch.admin_level.value,
            files_found = batch.files_found,
            imported    = sum(1 for r in results if r.ok),
            errors      = sum(1 for r in results if r.state is FileState.LOAD_FAILED),
            skipped     = batch.skipped,
            rows        = sum(r.rows for r in results if r.ok and r.rows > 0),
        )


@dataclass
class ImportSummary:
    """
    Per-batch counters, mirrored line by line into the summary log.

    The log is advisory: it is removed when a run starts and a failure to
    write it is only a warning.
    """
    path:         Path | None = DEFAULT_SUMMARY_LOG
    batches:      list[BatchSummary] = field(default_factory=list)
    unclassified: int = 0
    started_at:   float = field(default_factory=time.time)

    def start(self) -> None:
        if self.path is not None:
            self.path.unlink(missing_ok=True)
        self.started_at = time.time()

    def record(self, batch: BatchSummary, log: logging.Logger = None) -> None:
        self.batches.append(batch)
        if self.path is None:
            return
        line = pd.DataFrame(
            [[batch.year, batch.admin_level, batch.files_found, batch.imported, batch.errors]],
            columns=SUMMARY_COLUMNS,
        )
        try:
            line.to_csv(self.path, mode="a", header=False, index=False)
        except OSError as exc:
            (log or logger).warning("Could not write %s: %s", self.path, exc)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([dataclasses.asdict(b) for b in self.batches])

    @property
    def files_found(self) -> int:
        return sum(b.files_found for b in self.batches)

    @property
    def imported(self) -> int:
        return sum(b.imported for b in self.batches)

    @property
    def errors(self) -> int:
        return sum(b.errors for b in self.batches)

    @property
    def skipped(self) -> int:
        return sum(b.skipped for b in self.batches) + self.unclassified

    @property
    def rows(self) -> int:
        return sum(b.rows for b in self.batches)


def read_summary_log(path: Path) -> pd.DataFrame:
    """Load a summary log written by ImportSummary.record()."""
    return pd.read_csv(path, header=None, names=SUMMARY_COLUMNS)


# Inner width of the summary box; fits the longest strategy name
BOX_WIDTH = 46


def _box_row(text: str) -> str:
    return f"║{text:<{BOX_WIDTH}}║"


def print_summary(summary: ImportSummary, strategy: str, log: logging.Logger) -> None:
    """Print the per-batch table and a boxed total through `log`."""
    elapsed = time.time() - summary.started_at
    elapsed_str = f"{int(elapsed // 3600)}h {int((elapsed % 3600) // 60)}m {int(elapsed % 60)}s"

    if summary.batches:
        frame = summary.to_frame()[SUMMARY_COLUMNS + ["skipped", "rows"]]
        for line in frame.to_string(index=False).splitlines():
            log.info("  %s", line)

    lines = [
        "",
        "╔" + "═" * BOX_WIDTH + "╗",
        _box_row("Boundary Import — Final Summary".center(BOX_WIDTH)),
        "╠" + "═" * BOX_WIDTH + "╣",
        _box_row(f"{'  Strategy:':<24}{strategy}"),
        _box_row(f"{'    Files found:':<24}{summary.files_found}"),
        _box_row(f"{'    Files imported:':<24}{summary.imported}"),
        _box_row(f"{'    Files errored:':<24}{summary.errors}"),
        _box_row(f"{'    Files skipped:':<24}{summary.skipped}"),
        _box_row(f"{'    Rows written:':<24}{summary.rows}"),
        "╠" + "═" * BOX_WIDTH + "╣",
        _box_row(f"  Total elapsed: {elapsed_str}"),
        "╚" + "═" * BOX_WIDTH + "╝",
        "",
    ]
    for line in lines:
        log.info(line)


# ─── Run state ────────────────────────────────────────────────────────────────

@dataclass
class RunContext:
    """Everything one run shares: one connection, one loader, one strategy."""
    conn:        psycopg2.extensions.connection
    loader:      GeometryLoader
    strategy:    Strategy
    years:       tuple[int, ...] = KNOWN_YEARS   # discovery and views only
    log:         logging.Logger = logger
    # False for single-file appends: create missing tables, never drop
    destructive: bool = True
    provisioned: set = field(default_factory=set)
    registries:  dict = field(default_factory=dict)   # table → PartitionRegistry


# ─── Discovery ────────────────────────────────────────────────────────────────

def _level_dir_batches(strategy: Strategy, year: int, year_root: Path, log) -> list[YearBatch]:
    batches = []
    for level in strategy.levels:
        batch = YearBatch(year=year, admin_level=level)
        batches.append(batch)

        level_dir = find_level_dir(year_root, year, level)
        if level_dir is None:
            log.warning("%d: no %s directory under %s", year, level.value, year_root)
            continue

        source_dir = select_resolution_dir(level_dir)
        files = list_json_files(source_dir)
        if not files:
            log.warning("%d: no GeoJSON files in %s", year, source_dir)
        for path in files:
            batch.files.append(Classification(
                path        = path,
                admin_level = level,
                year        = year,
                resolution  = resolution_from_path(path),
            ))
    return batches


def _walk_batches(strategy: Strategy, year: int, year_root: Path, log) -> tuple[list[YearBatch], list[Path]]:
    by_level = {level: YearBatch(year=year, admin_level=level) for level in ALL_LEVELS}
    unclassified = []

    for path in list_json_files(year_root, recursive=True):
        classification = classify_path(path)
        if classification is None:
            log.warning("Skipping unrecognised file: %s", path)
            unclassified.append(path)
            continue
        # The maps/<year>/ being walked decides the year, not an outer segment
        classification = dataclasses.replace(classification, year=year)
        batch = by_level[classification.admin_level]
        if strategy.accepts(classification):
            batch.files.append(classification)
        else:
            log.debug("Strategy %s does not take %s", strategy.name, path)
            batch.skipped += 1

    return [b for b in by_level.values() if b.files_found], unclassified


def discover_batches(
    strategy: Strategy,
    maps_root: Path,
    years=KNOWN_YEARS,
    log: logging.Logger = None,
) -> tuple[list[YearBatch], list[Path]]:
    """
    Enumerate the (year, admin_level) batches `strategy` will import.

    Returns (batches, unclassified_paths). Batches come out year by year in
    level order, files sorted by path. A missing year directory is a warning,
    not an error.
    """
    log = log or logger
    maps_root = Path(maps_root)
    batches: list[YearBatch] = []
    unclassified: list[Path] = []

    for year in years:
        if strategy.discovery == LEVEL_DIRS:
            year_root = maps_root / str(year) / "geojson"
        else:
            year_root = maps_root / str(year)
        if not year_root.is_dir():
            log.warning("Year directory not found: %s", year_root)
            continue

        if strategy.discovery == LEVEL_DIRS:
            batches += _level_dir_batches(strategy, year, year_root, log)
        else:
            found, skipped = _walk_batches(strategy, year, year_root, log)
            batches += found
            unclassified += skipped

    return batches, unclassified


# ─── One file ─────────────────────────────────────────────────────────────────

def ensure_schema(ctx: RunContext, spec: TableSpec) -> None:
    """Provision `spec` at most once per run, before its first load."""
    if spec.name in ctx.provisioned:
        return
    if ctx.destructive:
        provision_table(ctx.conn, spec, ctx.log)
    else:
        ensure_table(ctx.conn, spec, ctx.log)
    ctx.provisioned.add(spec.name)
    if spec.mode is PartitionMode.BY_NAME_KEY:
        ctx.registries[spec.name] = PartitionRegistry(spec.name)


def import_file(ctx: RunContext, classification: Classification) -> FileResult:
    """
    Ensure schema, then load and annotate one file in one transaction.

    Never raises for per-file problems: the returned FileResult carries
    LOAD_FAILED and the error text instead. A lost connection
    (db.CONNECTION_ERRORS) is not a per-file problem and propagates.
    """
    log    = ctx.log
    path   = classification.path
    result = FileResult(path=path, state=FileState.CLASSIFIED)

    try:
        spec = ctx.strategy.table_spec(classification)
        result.table = spec.name
        ensure_schema(ctx, spec)
        result.state = FileState.SCHEMA_ENSURED

        where = None
        if spec.mode is PartitionMode.BY_NAME_KEY:
            where = {spec.partition_key: None}
            # Partitions are committed before the file's own transaction opens
            registry = ctx.registries[spec.name]
            created  = registry.ensure(
                ctx.conn, read_key_values(path, spec.partition_key), log,
            )
            if created:
                log.info("%s: %d new partitions of %s", path.name, len(created), spec.name)

        provenance = ctx.strategy.provenance_for(classification)
        with transaction(ctx.conn):
            rows = ctx.loader.load_file(path, spec, where=where, provenance=provenance)
            result.state = FileState.LOADED
            backfill_provenance(ctx.conn, spec.name, provenance, log)
            result.state = FileState.ANNOTATED

        result.rows  = rows
        result.state = FileState.COUNTED
        log.info("Imported %-40s → %s (%s rows)",
                 path.name, spec.name, rows if rows >= 0 else "?")

    except CONNECTION_ERRORS as exc:
        log.error("Lost the database connection while importing %s: %s", path, str(exc).strip())
        raise
    except (LoadError, psycopg2.Error) as exc:
        result.state = FileState.LOAD_FAILED
        result.error = str(exc).strip()
        log.error("Failed to import %s: %s", path, result.error)
    except Exception as exc:
        result.state = FileState.LOAD_FAILED
        result.error = str(exc)
        log.error("Unhandled error importing %s: %s", path, exc, exc_info=True)
        # Continue with the next file rather than aborting the run

    return result


def _analyze(ctx: RunContext, results: list[FileResult]) -> None:
    for table in sorted({r.table for r in results if r.ok and r.table}):
        try:
            analyze_table(ctx.conn, table)
        except CONNECTION_ERRORS:
            raise
        except psycopg2.Error as exc:
            ctx.log.warning("ANALYZE %s failed: %s", table, exc)


# ─── Runs ─────────────────────────────────────────────────────────────────────

def run_batch(ctx: RunContext, batch: YearBatch, summary: ImportSummary) -> BatchSummary:
    ctx.log.info("=== %d %s: %d files ===", batch.year, batch.admin_level.value, batch.files_found)
    results = []
    try:
        for classification in batch.files:
            results.append(import_file(ctx, classification))
    except CONNECTION_ERRORS:
        # Keep what finished before the connection dropped
        summary.record(BatchSummary.from_results(batch, results), ctx.log)
        raise
    batch_summary = BatchSummary.from_results(batch, results)
    summary.record(batch_summary, ctx.log)
    if batch_summary.imported:
        _analyze(ctx, results)
    return batch_summary


def run_import(
    ctx: RunContext,
    maps_root: Path,
    summary: ImportSummary | None = None,
    create_views: bool = True,
) -> ImportSummary:
    """
    Import every batch `ctx.strategy` discovers under `maps_root`.

    The summary log is reset first, then gets one line per batch as it
    finishes. Views for the strategy are created at the end when asked.
    """
    summary = summary if summary is not None else ImportSummary()
    summary.start()

    batches, unclassified = discover_batches(ctx.strategy, maps_root, ctx.years, ctx.log)
    summary.unclassified += len(unclassified)
    ctx.log.info("Strategy %s: %d batches, %d files",
                 ctx.strategy.name, len(batches), sum(b.files_found for b in batches))

    for batch in batches:
        run_batch(ctx, batch, summary)

    if create_views and ctx.strategy.views:
        try:
            create_views_for(ctx.conn, ctx.strategy.views, ctx.years, ctx.log)
        except CONNECTION_ERRORS:
            raise
        except psycopg2.Error as exc:
            ctx.log.error("Creating %s views failed: %s", ctx.strategy.views, exc)

    return summary


def import_single_file(
    ctx: RunContext,
    path: Path,
    summary: ImportSummary | None = None,
) -> FileResult:
    """
    Append one file to its table without dropping anything.

    Raises ValueError if the path cannot be classified for ctx.strategy;
    load failures come back as a LOAD_FAILED result like in a full run.
    """
    ctx.destructive = False
    path = Path(path)
    classification = classify_path(path)
    if classification is None:
        raise ValueError(f"cannot tell the administrative level of {path}")
    if not ctx.strategy.accepts(classification):
        raise ValueError(f"strategy {ctx.strategy.name} does not take {classification.admin_level.value} files")
    needs_year = ctx.strategy.per_year or {"year", "data_year"} & set(ctx.strategy.provenance)
    if classification.year is None and needs_year:
        raise ValueError(f"no maps/<year>/ segment in {path}")

    batch  = YearBatch(year=classification.year, admin_level=classification.admin_level,
                       files=[classification])
    result = import_file(ctx, classification)
    if summary is not None:
        summary.record(BatchSummary.from_results(batch, [result]), ctx.log)
    if result.ok:
        _analyze(ctx, [result])
    return result
