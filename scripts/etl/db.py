"""
db.py — Shared database configuration, connection and bulk insert helpers.

All ETL modules import from here. Connection parameters are read from the
environment exactly once (DbConfig.from_env) by the CLI and passed down
explicitly; nothing below the CLI reads os.environ.
"""

import os
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field

import psycopg2
import psycopg2.extras
from psycopg2 import sql

logger = logging.getLogger(__name__)

# ─── Connection config ───────────────────────────────────────────────────────

# TCP keepalives: prevent PostgreSQL from dropping idle connections while a
# large hires barangay file is being parsed.
_KEEPALIVES = {
    "keepalives":          1,
    "keepalives_idle":     30,   # send keepalive probe after 30s idle
    "keepalives_interval": 10,   # retry probe every 10s
    "keepalives_count":    5,    # give up after 5 unanswered probes
}


@dataclass(frozen=True)
class DbConfig:
    host:     str = "localhost"
    port:     int = 5432
    dbname:   str = "gis"
    user:     str = "postgres"
    password: str = field(default="password", repr=False)

    @classmethod
    def from_env(cls, environ=None) -> "DbConfig":
        """Build the config from DB_HOST / DB_PORT / DB_NAME / DB_USER / DB_PASSWORD."""
        env = os.environ if environ is None else environ
        return cls(
            host     = env.get("DB_HOST",     "localhost"),
            port     = int(env.get("DB_PORT", 5432)),
            dbname   = env.get("DB_NAME",     "gis"),
            user     = env.get("DB_USER",     "postgres"),
            password = env.get("DB_PASSWORD", "password"),
        )

    def connect_kwargs(self, dbname: str | None = None) -> dict:
        return {
            "host":     self.host,
            "port":     self.port,
            "dbname":   dbname or self.dbname,
            "user":     self.user,
            "password": self.password,
            **_KEEPALIVES,
        }

    def pg_connstring(self) -> str:
        """
        OGR-style connection string ("PG:host=… dbname=…").
        The password is not included; it travels via PGPASSWORD.
        """
        return (
            f"PG:host={self.host} port={self.port} "
            f"dbname={self.dbname} user={self.user}"
        )

    def subprocess_env(self, base: dict | None = None) -> dict:
        """Environment for external PostgreSQL tools (ogr2ogr, psql)."""
        env = dict(os.environ if base is None else base)
        env["PGPASSWORD"] = self.password
        return env


# The connection itself is gone: nothing later in the run can succeed
CONNECTION_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)


def get_connection(config: DbConfig, dbname: str | None = None) -> psycopg2.extensions.connection:
    """
    Return an open psycopg2 connection.
    Caller is responsible for calling conn.close().
    """
    return psycopg2.connect(**config.connect_kwargs(dbname))


@contextmanager
def get_cursor(conn: psycopg2.extensions.connection, commit: bool = True):
    """
    Context manager yielding a DictCursor.

    With commit=True the transaction is committed on clean exit. With
    commit=False the caller owns the transaction (see transaction()).
    Any exception rolls back.
    """
    cur = conn.cursor(cursor_factory=psycopg2.extras.DictCursor)
    try:
        yield cur
        if commit:
            conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        cur.close()


@contextmanager
def transaction(conn: psycopg2.extensions.connection):
    """
    One unit of work: commit on clean exit, roll back on any exception.

    Work done inside must use get_cursor(conn, commit=False) so nothing is
    committed half-way.
    """
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise


# ─── Database bootstrap ──────────────────────────────────────────────────────

def ensure_database(config: DbConfig, log: logging.Logger = None) -> bool:
    """
    Create config.dbname via the 'postgres' maintenance database if missing.

    Returns True if the database was created, False if it already existed.
    Raises psycopg2.Error if the server is unreachable or creation fails.
    """
    log = log or logger
    conn = get_connection(config, dbname="postgres")
    try:
        # CREATE DATABASE cannot run inside a transaction block
        conn.autocommit = True
        cur = conn.cursor()
        try:
            cur.execute("SELECT 1 FROM pg_database WHERE datname = %s", (config.dbname,))
            if cur.fetchone():
                return False
            log.info("Database %s does not exist. Creating…", config.dbname)
            cur.execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(config.dbname)))
            return True
        finally:
            cur.close()
    finally:
        conn.close()


# ─── Feature bulk insert ─────────────────────────────────────────────────────

# geom_ewkb is a hex-encoded WKB string produced by shapely's .wkb_hex.
# ST_Multi()  → promotes POLYGON → MULTIPOLYGON
# ST_SetSRID  → every row lands in EPSG:4326
_GEOM_TEMPLATE = "ST_Multi(ST_SetSRID(decode(%(geom_ewkb)s, 'hex')::geometry, 4326))"

FEATURE_BATCH_SIZE = 500


def bulk_insert_features(
    conn: psycopg2.extensions.connection,
    table: str,
    columns: list[str],
    rows: list[dict],
) -> int:
    """
    Bulk-insert feature dicts into `table` without committing.

    Each dict must contain every name in `columns` plus:
        geom_ewkb   str  (hex-encoded WKB, MULTIPOLYGON in EPSG:4326)

    `table` and `columns` must already be validated identifiers (schema.py
    builds them); values always travel as bound parameters.

    Returns:
        Number of rows inserted.
    """
    if not rows:
        return 0

    column_list = ", ".join(columns + ["geom"])
    template = "(" + ", ".join([f"%({c})s" for c in columns] + [_GEOM_TEMPLATE]) + ")"
    insert_sql = f"INSERT INTO {table} ({column_list}) VALUES %s"

    with get_cursor(conn, commit=False) as cur:
        psycopg2.extras.execute_values(
            cur,
            insert_sql,
            rows,
            template=template,
            page_size=FEATURE_BATCH_SIZE,
        )

    logger.debug("bulk_insert_features: inserted %d rows into %s", len(rows), table)
    return len(rows)
