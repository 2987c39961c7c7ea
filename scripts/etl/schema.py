"""
schema.py — Destination table definitions and parameterised DDL builders.

Every table shares one administrative column set (GADM-style hierarchy
ids/names for levels 0–4, localized and variant names, type fields,
province/region convenience columns) plus a MULTIPOLYGON geometry in
EPSG:4326 with a GIST index. Strategies differ only in which provenance
columns they carry and how the table is partitioned:

    none         plain table, id SERIAL PRIMARY KEY
    by_year      PARTITION BY LIST (year), one partition per known year,
                 named <table>_y<year> so it never collides with the
                 separated strategy's <level>_<year> tables
    by_name_key  PARTITION BY LIST (<key>), partitions created lazily

Provisioning is destructive: the table is dropped (CASCADE) and recreated.
Builders return SQL text with %s placeholders; identifiers are validated,
values are always bound parameters.
"""

import logging
import re
import unicodedata
from dataclasses import dataclass, field
from enum import Enum

import psycopg2

from classify import KNOWN_YEARS
from db import get_cursor

logger = logging.getLogger(__name__)

# ─── Column set ───────────────────────────────────────────────────────────────

MAX_IDENTIFIER_LENGTH = 63   # PostgreSQL NAMEDATALEN - 1

ADMIN_COLUMNS: list[tuple[str, str]] = [
    ("id_0",      "INTEGER"),
    ("iso",       "VARCHAR(10)"),
    ("name_0",    "VARCHAR(100)"),
    ("id_1",      "INTEGER"),
    ("name_1",    "VARCHAR(100)"),
    ("id_2",      "INTEGER"),
    ("name_2",    "VARCHAR(100)"),
    ("id_3",      "INTEGER"),
    ("name_3",    "VARCHAR(100)"),
    ("id_4",      "INTEGER"),
    ("name_4",    "VARCHAR(100)"),
    ("nl_name_1", "VARCHAR(100)"),
    ("nl_name_2", "VARCHAR(100)"),
    ("nl_name_3", "VARCHAR(100)"),
    ("varname_1", "VARCHAR(200)"),
    ("varname_2", "VARCHAR(200)"),
    ("varname_3", "VARCHAR(200)"),
    ("type_1",    "VARCHAR(100)"),
    ("type_2",    "VARCHAR(100)"),
    ("type_3",    "VARCHAR(100)"),
    ("engtype_1", "VARCHAR(100)"),
    ("engtype_2", "VARCHAR(100)"),
    ("engtype_3", "VARCHAR(100)"),
    ("province",  "VARCHAR(100)"),
    ("region",    "VARCHAR(100)"),
]

ADMIN_COLUMN_NAMES = [name for name, _ in ADMIN_COLUMNS]
INTEGER_COLUMNS    = {name for name, sqltype in ADMIN_COLUMNS if sqltype == "INTEGER"}

PROVENANCE_COLUMNS: dict[str, str] = {
    "year":        "INTEGER",
    "data_year":   "INTEGER",
    "admin_level": "VARCHAR(20)",
    "source_path": "TEXT",
}

_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]*$")


class PartitionMode(str, Enum):
    NONE        = "none"
    BY_YEAR     = "by_year"
    BY_NAME_KEY = "by_name_key"


@dataclass(frozen=True)
class TableSpec:
    """Everything needed to (re)create one destination table."""
    name:          str
    mode:          PartitionMode = PartitionMode.NONE
    provenance:    tuple[str, ...] = ()
    partition_key: str | None = None
    years:         tuple[int, ...] = KNOWN_YEARS
    # Extra btree indexes, one tuple of column names each
    indexes:       tuple[tuple[str, ...], ...] = ()

    def __post_init__(self):
        validate_identifier(self.name)
        for col in self.provenance:
            if col not in PROVENANCE_COLUMNS:
                raise ValueError(f"unknown provenance column: {col}")
        if self.mode is PartitionMode.BY_YEAR and "year" not in self.provenance:
            raise ValueError("by_year tables need the 'year' provenance column")
        if self.mode is PartitionMode.BY_NAME_KEY:
            if self.partition_key not in ADMIN_COLUMN_NAMES:
                raise ValueError(f"by_name_key needs an admin column key, got {self.partition_key!r}")

    @property
    def columns(self) -> list[str]:
        """Insertable attribute columns (everything except id, geom and timestamps)."""
        return list(self.provenance) + ADMIN_COLUMN_NAMES


# ─── Identifiers ──────────────────────────────────────────────────────────────

def validate_identifier(name: str) -> str:
    """Raise ValueError unless `name` is a safe, unquoted lower-case identifier."""
    if not _IDENTIFIER_RE.match(name or "") or len(name) > MAX_IDENTIFIER_LENGTH:
        raise ValueError(f"invalid SQL identifier: {name!r}")
    return name


def clean_name(value: str) -> str:
    """
    Turn a name-key value into an identifier fragment.

    Unicode is folded to ASCII, spaces become underscores, anything else that
    is not [a-z0-9_] is dropped.

    Example: "Poblacion (Bgy. 1)" → "poblacion_bgy_1"
    """
    normalized = unicodedata.normalize("NFKD", str(value))
    ascii_str  = normalized.encode("ascii", "ignore").decode("ascii")
    spaced     = re.sub(r"\s+", "_", ascii_str.strip())
    cleaned    = re.sub(r"[^a-zA-Z0-9_]", "", spaced).lower()
    return cleaned or "unknown"


def partition_table_name(parent: str, suffix: str) -> str:
    """`<parent>_<suffix>` cut down to the 63-byte identifier limit."""
    return f"{parent}_{suffix}"[:MAX_IDENTIFIER_LENGTH]


# ─── Statement builders ──────────────────────────────────────────────────────

def _column_definitions(spec: TableSpec) -> list[str]:
    defs = []
    if spec.mode is PartitionMode.NONE:
        defs.append("id SERIAL PRIMARY KEY")
    else:
        defs.append("id SERIAL")

    for col in spec.provenance:
        sqltype = PROVENANCE_COLUMNS[col]
        if spec.mode is PartitionMode.BY_YEAR and col == "year":
            sqltype += " NOT NULL"
        defs.append(f"{col} {sqltype}")

    for col, sqltype in ADMIN_COLUMNS:
        if spec.mode is PartitionMode.BY_NAME_KEY and col == spec.partition_key:
            sqltype += " NOT NULL"
        defs.append(f"{col} {sqltype}")

    defs += [
        "geom GEOMETRY(MULTIPOLYGON, 4326)",
        "created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP",
        "updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP",
    ]

    if spec.mode is PartitionMode.BY_YEAR:
        defs.append("PRIMARY KEY (id, year)")
    elif spec.mode is PartitionMode.BY_NAME_KEY:
        defs.append(f"PRIMARY KEY (id, {spec.partition_key})")
    return defs


def build_create_table_sql(spec: TableSpec) -> list[tuple[str, tuple]]:
    """
    Return the ordered (sql, params) statements that drop and recreate
    `spec.name` with its partitions and indexes.

    Calling it twice for the same spec yields identical statements; running
    them twice yields the same table, never a duplicated one.
    """
    table = spec.name
    body  = ",\n    ".join(_column_definitions(spec))
    create = f"CREATE TABLE {table} (\n    {body}\n)"
    if spec.mode is PartitionMode.BY_YEAR:
        create += " PARTITION BY LIST (year)"
    elif spec.mode is PartitionMode.BY_NAME_KEY:
        create += f" PARTITION BY LIST ({spec.partition_key})"

    statements: list[tuple[str, tuple]] = [
        (f"DROP TABLE IF EXISTS {table} CASCADE", ()),
        (create, ()),
    ]

    if spec.mode is PartitionMode.BY_YEAR:
        for year in spec.years:
            statements.append(build_create_partition_sql(
                table, partition_table_name(table, f"y{year}"), year,
            ))

    geom_index = partition_table_name(table, "geom_idx")
    statements.append((f"CREATE INDEX {geom_index} ON {table} USING GIST (geom)", ()))
    for columns in spec.indexes:
        for col in columns:
            validate_identifier(col)
        index_name = partition_table_name(table, "_".join(columns) + "_idx")
        statements.append((
            f"CREATE INDEX {index_name} ON {table} ({', '.join(columns)})", (),
        ))
    return statements


def build_create_partition_sql(parent: str, partition: str, value) -> tuple[str, tuple]:
    """Idempotent list partition: creating an existing partition is a no-op."""
    validate_identifier(parent)
    validate_identifier(partition)
    return (
        f"CREATE TABLE IF NOT EXISTS {partition} PARTITION OF {parent} FOR VALUES IN (%s)",
        (value,),
    )


def build_backfill_sql(table: str, column: str) -> str:
    """NULL-gated provenance update; the value is bound as the single %s."""
    validate_identifier(table)
    if column not in PROVENANCE_COLUMNS:
        raise ValueError(f"not a provenance column: {column}")
    return (
        f"UPDATE {table} SET {column} = %s, updated_at = NOW() "
        f"WHERE {column} IS NULL"
    )


# ─── Executors ────────────────────────────────────────────────────────────────

def ensure_postgis(conn: psycopg2.extensions.connection) -> None:
    with get_cursor(conn) as cur:
        cur.execute("CREATE EXTENSION IF NOT EXISTS postgis")


def table_exists(conn: psycopg2.extensions.connection, table: str) -> bool:
    with get_cursor(conn) as cur:
        cur.execute("SELECT to_regclass(%s) IS NOT NULL", (table,))
        row = cur.fetchone()
    return bool(row and row[0])


def provision_table(
    conn: psycopg2.extensions.connection,
    spec: TableSpec,
    log: logging.Logger = None,
) -> None:
    """Drop and recreate `spec.name` in one transaction."""
    log = log or logger
    log.info("Creating table: %s (%s)", spec.name, spec.mode.value)
    with get_cursor(conn) as cur:
        for sql, params in build_create_table_sql(spec):
            cur.execute(sql, params or None)


def ensure_table(
    conn: psycopg2.extensions.connection,
    spec: TableSpec,
    log: logging.Logger = None,
) -> bool:
    """
    Non-destructive variant used by single-file imports: create the table
    only if it is missing. Returns True if it was created.
    """
    log = log or logger
    if table_exists(conn, spec.name):
        log.info("Table %s already exists. Appending data…", spec.name)
        return False
    provision_table(conn, spec, log)
    return True


def analyze_table(conn: psycopg2.extensions.connection, table: str) -> None:
    validate_identifier(table)
    with get_cursor(conn) as cur:
        cur.execute(f"ANALYZE {table}")


def list_partitions(conn: psycopg2.extensions.connection, parent: str) -> list[str]:
    """Names of the partitions attached to `parent`, sorted."""
    with get_cursor(conn) as cur:
        cur.execute(
            """
            SELECT c.relname
            FROM   pg_inherits i
            JOIN   pg_class c ON c.oid = i.inhrelid
            WHERE  i.inhparent = to_regclass(%s)
            ORDER BY c.relname
            """,
            (parent,),
        )
        return [row[0] for row in cur.fetchall()]


# ─── Lazy name-key partitions ────────────────────────────────────────────────

@dataclass
class PartitionRegistry:
    """
    Tracks which name-key values already have a partition of `parent`.

    One partition per distinct value for the lifetime of the registry
    (one run, since provisioning starts from an empty table). Values whose
    cleaned names collide get _2, _3 … suffixes, like slugs.
    """
    parent: str
    partitions: dict = field(default_factory=dict)   # value → partition name

    def partition_for(self, value: str, taken: set | None = None) -> str:
        if value in self.partitions:
            return self.partitions[value]
        taken = set(self.partitions.values()) if taken is None else taken
        base  = partition_table_name(self.parent, clean_name(value))
        name  = base
        count = 2
        while name in taken:
            suffix = f"_{count}"
            name   = base[:MAX_IDENTIFIER_LENGTH - len(suffix)] + suffix
            count += 1
        return name

    def ensure(
        self,
        conn: psycopg2.extensions.connection,
        values,
        log: logging.Logger = None,
    ) -> list[str]:
        """
        Create partitions for every previously unseen value in `values`.

        Committed immediately, before any row of the file is loaded, so a
        later rollback of the file's rows never removes a partition the
        registry believes exists. Returns the partitions created.
        """
        log = log or logger
        new_values = sorted({v for v in values if v is not None} - self.partitions.keys())
        if not new_values:
            return []

        pending: dict = {}
        with get_cursor(conn) as cur:
            for value in new_values:
                taken = set(self.partitions.values()) | set(pending.values())
                name  = self.partition_for(value, taken)
                cur.execute(*build_create_partition_sql(self.parent, name, value))
                pending[value] = name
        self.partitions.update(pending)

        log.debug("%s: created %d partitions", self.parent, len(pending))
        return list(pending.values())
