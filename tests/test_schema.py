import psycopg2
import pytest

from schema import (
    ADMIN_COLUMN_NAMES,
    MAX_IDENTIFIER_LENGTH,
    PartitionMode,
    PartitionRegistry,
    TableSpec,
    build_backfill_sql,
    build_create_partition_sql,
    build_create_table_sql,
    clean_name,
    ensure_table,
    list_partitions,
    partition_table_name,
    provision_table,
    validate_identifier,
)


def _unified_spec(name="regions"):
    return TableSpec(name=name, mode=PartitionMode.BY_YEAR, provenance=("year",))


# ─── Builders ─────────────────────────────────────────────────────────────────

def test_create_statements_are_deterministic():
    spec = _unified_spec()
    assert build_create_table_sql(spec) == build_create_table_sql(spec)


def test_by_year_table_layout():
    statements = [sql for sql, _ in build_create_table_sql(_unified_spec())]
    assert statements[0] == "DROP TABLE IF EXISTS regions CASCADE"
    create = statements[1]
    assert create.endswith("PARTITION BY LIST (year)")
    assert "year INTEGER NOT NULL" in create
    assert "PRIMARY KEY (id, year)" in create
    assert "geom GEOMETRY(MULTIPOLYGON, 4326)" in create
    for col in ADMIN_COLUMN_NAMES:
        assert f"\n    {col} " in create

    partitions = [(sql, params) for sql, params in build_create_table_sql(_unified_spec())
                  if "PARTITION OF" in sql]
    assert [p[1] for p in partitions] == [(2011,), (2019,), (2023,)]
    assert "regions_y2019 PARTITION OF regions" in partitions[1][0]
    assert "CREATE INDEX regions_geom_idx ON regions USING GIST (geom)" in statements


def test_plain_table_has_serial_primary_key():
    spec = TableSpec(name="regions_2019", provenance=("year",), indexes=(("name_1",),))
    create = build_create_table_sql(spec)[1][0]
    assert "id SERIAL PRIMARY KEY" in create
    assert "PARTITION BY" not in create
    assert "CREATE INDEX regions_2019_name_1_idx ON regions_2019 (name_1)" in [
        sql for sql, _ in build_create_table_sql(spec)
    ]


def test_name_key_table_layout():
    spec = TableSpec(
        name="barangays_partitioned", mode=PartitionMode.BY_NAME_KEY,
        provenance=("data_year",), partition_key="name_3",
    )
    create = build_create_table_sql(spec)[1][0]
    assert create.endswith("PARTITION BY LIST (name_3)")
    assert "name_3 VARCHAR(100) NOT NULL" in create
    assert "PRIMARY KEY (id, name_3)" in create
    # partitions are created lazily, never up front
    assert not any("PARTITION OF" in sql for sql, _ in build_create_table_sql(spec))


def test_spec_validation():
    with pytest.raises(ValueError):
        TableSpec(name="regions", mode=PartitionMode.BY_YEAR)
    with pytest.raises(ValueError):
        TableSpec(name="b", mode=PartitionMode.BY_NAME_KEY, partition_key="nope")
    with pytest.raises(ValueError):
        TableSpec(name="b", provenance=("colour",))
    with pytest.raises(ValueError):
        TableSpec(name="Regions; DROP TABLE x")


def test_partition_sql_binds_the_value():
    sql, params = build_create_partition_sql("barangays_partitioned", "barangays_partitioned_abra", "Abra")
    assert sql.startswith("CREATE TABLE IF NOT EXISTS barangays_partitioned_abra PARTITION OF")
    assert "Abra" not in sql
    assert params == ("Abra",)


def test_backfill_sql_is_null_gated():
    sql = build_backfill_sql("regions_2019", "year")
    assert sql == "UPDATE regions_2019 SET year = %s, updated_at = NOW() WHERE year IS NULL"
    with pytest.raises(ValueError):
        build_backfill_sql("regions", "name_1")


# ─── Identifiers ──────────────────────────────────────────────────────────────

@pytest.mark.parametrize("value,expected", [
    ("Poblacion (Bgy. 1)", "poblacion_bgy_1"),
    ("Santo Niño",         "santo_nino"),
    ("  San  Isidro ",     "san_isidro"),
    ("???",                "unknown"),
])
def test_clean_name(value, expected):
    assert clean_name(value) == expected


def test_partition_names_fit_postgres_limit():
    name = partition_table_name("barangays_partitioned", "x" * 80)
    assert len(name) == MAX_IDENTIFIER_LENGTH
    assert validate_identifier(name) == name


@pytest.mark.parametrize("bad", ["", "1abc", "has space", "Upper", "semi;colon", "a" * 64])
def test_validate_identifier_rejects(bad):
    with pytest.raises(ValueError):
        validate_identifier(bad)


# ─── Executors against the fake connection ────────────────────────────────────

def test_provisioning_twice_equals_once(fake_conn):
    spec = _unified_spec()
    provision_table(fake_conn, spec)
    once = (set(fake_conn.tables), dict(fake_conn.partitions))

    fake_conn.tables["regions"].append({"year": 2019})
    provision_table(fake_conn, spec)
    twice = (set(fake_conn.tables), dict(fake_conn.partitions))

    assert once == twice
    assert fake_conn.partitions["regions"] == {
        "regions_y2011": 2011, "regions_y2019": 2019, "regions_y2023": 2023,
    }
    # destructive: the row from before the second provisioning is gone
    assert fake_conn.tables["regions"] == []


def test_ensure_table_never_drops(fake_conn):
    spec = TableSpec(name="regions_2019", provenance=("year",))
    assert ensure_table(fake_conn, spec) is True
    fake_conn.tables["regions_2019"].append({"year": 2019})

    assert ensure_table(fake_conn, spec) is False
    assert fake_conn.tables["regions_2019"] == [{"year": 2019}]
    assert len(fake_conn.statements("DROP TABLE")) == 1


def test_list_partitions_reads_catalog(fake_conn):
    fake_conn.on(r"FROM pg_inherits", ["relname"], [("regions_y2011",), ("regions_y2019",)])
    assert list_partitions(fake_conn, "regions") == ["regions_y2011", "regions_y2019"]


# ─── PartitionRegistry ────────────────────────────────────────────────────────

def _name_key_table(conn):
    spec = TableSpec(
        name="barangays_partitioned", mode=PartitionMode.BY_NAME_KEY,
        provenance=("data_year",), partition_key="name_3",
    )
    provision_table(conn, spec)
    return PartitionRegistry(spec.name)


def test_registry_creates_one_partition_per_value(fake_conn):
    registry = _name_key_table(fake_conn)

    assert len(registry.ensure(fake_conn, ["Abra", "Bangued", "Abra"])) == 2
    assert registry.ensure(fake_conn, ["Bangued", "Abra"]) == []
    assert len(registry.ensure(fake_conn, ["Abra", "Cagayan", None])) == 1

    assert sorted(fake_conn.partitions["barangays_partitioned"].values()) == ["Abra", "Bangued", "Cagayan"]
    assert len(fake_conn.statements("CREATE TABLE IF NOT EXISTS")) == 3


def test_registry_suffixes_colliding_clean_names(fake_conn):
    registry = _name_key_table(fake_conn)
    registry.ensure(fake_conn, ["San Jose", "San Jose!", "san jose"])

    names = sorted(registry.partitions.values())
    assert names == [
        "barangays_partitioned_san_jose",
        "barangays_partitioned_san_jose_2",
        "barangays_partitioned_san_jose_3",
    ]
    assert len(fake_conn.partitions["barangays_partitioned"]) == 3


def test_registry_is_unchanged_when_creation_fails(fake_conn):
    registry = _name_key_table(fake_conn)
    fake_conn.fail_on(r"PARTITION OF", psycopg2.OperationalError("connection lost"))
    with pytest.raises(psycopg2.OperationalError):
        registry.ensure(fake_conn, ["Abra"])
    assert registry.partitions == {}
    assert fake_conn.rollbacks == 1
