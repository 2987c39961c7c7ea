"""
Shared fixtures: an in-memory stand-in for a psycopg2 connection and a
GeoJSON file writer. No database server is needed to run the suite.

FakeConnection understands the handful of statements the ETL issues:
DROP/CREATE TABLE (with list partitions), CREATE TABLE … PARTITION OF,
to_regclass lookups, the NULL-gated provenance UPDATE and CREATE VIEW.
Everything it executes is recorded in `conn.executed`. Commit snapshots
the state, rollback restores the last snapshot.
"""

import copy
import json
import re

import psycopg2
import pytest

import loader

_WS = re.compile(r"\s+")

DROP_RE          = re.compile(r"^DROP TABLE IF EXISTS (\w+) CASCADE$")
PARTITION_RE     = re.compile(r"^CREATE TABLE IF NOT EXISTS (\w+) PARTITION OF (\w+) FOR VALUES IN \(%s\)$")
CREATE_RE        = re.compile(r"^CREATE TABLE (\w+) \(")
PARTITION_KEY_RE = re.compile(r"PARTITION BY LIST \((\w+)\)$")
BACKFILL_RE      = re.compile(r"^UPDATE (\w+) SET (\w+) = %s, updated_at = NOW\(\) WHERE (\w+) IS NULL$")
REGCLASS_RE      = re.compile(r"^SELECT to_regclass\(%s\) IS NOT NULL$")
VIEW_RE          = re.compile(r"^CREATE OR REPLACE VIEW (\w+) AS")


def normalize_sql(sql) -> str:
    return _WS.sub(" ", str(sql)).strip()


class FakeCursor:
    def __init__(self, conn):
        self.conn        = conn
        self.rowcount    = -1
        self.description = None
        self._rows       = []
        self.closed      = False

    def execute(self, sql, params=None):
        conn = self.conn
        text = normalize_sql(sql)
        conn.executed.append((text, params))
        self.rowcount, self.description, self._rows = -1, None, []

        for pattern, error in conn.failures:
            if re.search(pattern, text):
                raise error

        drop      = DROP_RE.match(text)
        partition = PARTITION_RE.match(text)
        create    = CREATE_RE.match(text)
        backfill  = BACKFILL_RE.match(text)
        view      = VIEW_RE.match(text)

        if drop:
            conn.drop_table(drop.group(1))
        elif partition:
            conn.create_partition(partition.group(1), partition.group(2), params[0])
        elif create:
            key = PARTITION_KEY_RE.search(text)
            conn.create_table(create.group(1), key.group(1) if key else None)
        elif backfill:
            table, column = backfill.group(1), backfill.group(2)
            updated = 0
            for row in conn.tables[table]:
                if row.get(column) is None:
                    row[column] = params[0]
                    updated += 1
            self.rowcount = updated
        elif REGCLASS_RE.match(text):
            self._set_result(["exists"], [(params[0] in conn.tables,)])
        elif view:
            conn.views.add(view.group(1))
        else:
            for pattern, columns, rows in conn.results:
                if re.search(pattern, text):
                    self._set_result(columns, rows)
                    break

    def _set_result(self, columns, rows):
        self.description = [(c,) for c in columns]
        self._rows       = list(rows)
        self.rowcount    = len(self._rows)

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)

    def close(self):
        self.closed = True


class FakeConnection:
    def __init__(self):
        self.tables: dict[str, list[dict]] = {}
        self.partition_keys: dict[str, str] = {}          # parent → key column
        self.partitions: dict[str, dict[str, object]] = {}  # parent → {partition: value}
        self.views: set[str] = set()
        self.executed: list[tuple[str, object]] = []
        self.results: list[tuple[str, list, list]] = []
        self.failures: list[tuple[str, Exception]] = []
        self.commits    = 0
        self.rollbacks  = 0
        self.autocommit = False
        self.closed     = False
        self._snapshot  = self._state()

    # ── psycopg2 surface ──
    def cursor(self, cursor_factory=None):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1
        self._snapshot = self._state()

    def rollback(self):
        self.rollbacks += 1
        self.tables, self.partition_keys, self.partitions, self.views = copy.deepcopy(self._snapshot)

    def close(self):
        self.closed = True

    # ── Test helpers ──
    def on(self, pattern: str, columns: list, rows: list):
        """Answer statements matching `pattern` with canned rows."""
        self.results.append((pattern, columns, rows))

    def fail_on(self, pattern: str, error: Exception):
        self.failures.append((pattern, error))

    def statements(self, prefix: str = "") -> list[str]:
        return [sql for sql, _ in self.executed if sql.startswith(prefix)]

    def _state(self):
        return copy.deepcopy((self.tables, self.partition_keys, self.partitions, self.views))

    def create_table(self, name, partition_key=None):
        if name in self.tables:
            raise psycopg2.ProgrammingError(f'relation "{name}" already exists')
        self.tables[name] = []
        if partition_key:
            self.partition_keys[name] = partition_key
            self.partitions[name] = {}

    def create_partition(self, name, parent, value):
        if name in self.tables:
            return
        if parent not in self.partition_keys:
            raise psycopg2.ProgrammingError(f'"{parent}" is not partitioned')
        self.tables[name] = []
        self.partitions[parent][name] = value

    def drop_table(self, name):
        for partition in self.partitions.pop(name, {}):
            self.tables.pop(partition, None)
        self.partition_keys.pop(name, None)
        self.tables.pop(name, None)
        for children in self.partitions.values():
            children.pop(name, None)

    def insert(self, table, rows):
        if table not in self.tables:
            raise psycopg2.ProgrammingError(f'relation "{table}" does not exist')
        key = self.partition_keys.get(table)
        for row in rows:
            if key is not None and row.get(key) not in self.partitions[table].values():
                raise psycopg2.IntegrityError(
                    f'no partition of relation "{table}" found for row ({key}={row.get(key)!r})'
                )
            self.tables[table].append(dict(row))
        return len(rows)


@pytest.fixture
def fake_conn():
    return FakeConnection()


@pytest.fixture
def fake_bulk_insert(monkeypatch):
    """Route GeoPandasLoader inserts into the FakeConnection's row store."""
    def _insert(conn, table, columns, rows):
        return conn.insert(table, [
            {**{c: r.get(c) for c in columns}, "geom": r["geom_ewkb"]} for r in rows
        ])
    monkeypatch.setattr(loader, "bulk_insert_features", _insert)
    return _insert


def square(x: float, y: float, size: float = 0.1) -> dict:
    return {
        "type": "Polygon",
        "coordinates": [[
            [x, y], [x + size, y], [x + size, y + size], [x, y + size], [x, y],
        ]],
    }


@pytest.fixture
def make_geojson():
    """
    Write a FeatureCollection. Each entry of `features` is a property dict;
    a "__geometry__" key overrides the default (a small square per feature).
    """
    def _make(path, features):
        path.parent.mkdir(parents=True, exist_ok=True)
        out = []
        for i, props in enumerate(features):
            props = dict(props)
            geometry = props.pop("__geometry__", square(120.0 + i, 14.0))
            out.append({"type": "Feature", "properties": props, "geometry": geometry})
        path.write_text(json.dumps({"type": "FeatureCollection", "features": out}))
        return path
    return _make
