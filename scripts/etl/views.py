"""
views.py — Analysis views created after an import.

unified    administrative_timeline   feature count + unioned geometry per level/year
           boundary_evolution        region area and % change against the previous year
           admin_comparison          2023 regions with 2019/2011 region and province counts
separated  admin_hierarchy_summary_<year>
           geographic_coverage_<year>

A view is only created when every table it reads exists; missing ones are
logged and skipped.
"""

import logging

import psycopg2

from classify import AdminLevel, KNOWN_YEARS
from db import get_cursor
from schema import table_exists

logger = logging.getLogger(__name__)

LEVEL_TABLES  = [level.table for level in AdminLevel]
LEVEL_LABELS  = {
    "regions":        "Regions",
    "provinces":      "Provinces",
    "municipalities": "Municipalities",
    "barangays":      "Barangays",
}


# ─── Unified ─────────────────────────────────────────────────────────────────

def administrative_timeline_sql(tables=LEVEL_TABLES) -> str:
    selects = [
        f"""
    SELECT
        year,
        '{LEVEL_LABELS[table]}' AS admin_level,
        COUNT(*) AS feature_count,
        ST_Union(geom) AS total_geom
    FROM {table}
    GROUP BY year"""
        for table in tables
    ]
    return (
        "CREATE OR REPLACE VIEW administrative_timeline AS"
        + "\n    UNION ALL".join(selects)
        + "\n    ORDER BY admin_level, year"
    )


BOUNDARY_EVOLUTION_SQL = """
    CREATE OR REPLACE VIEW boundary_evolution AS
    WITH region_changes AS (
        SELECT
            name_1,
            year,
            ST_Area(geom) AS area,
            LAG(ST_Area(geom)) OVER (PARTITION BY name_1 ORDER BY year) AS prev_area
        FROM regions
        WHERE name_1 IS NOT NULL
    )
    SELECT
        name_1 AS region_name,
        year,
        area,
        prev_area,
        CASE
            WHEN prev_area IS NOT NULL AND prev_area <> 0
            THEN ((area - prev_area) / prev_area) * 100
            ELSE NULL
        END AS area_change_percent
    FROM region_changes
    ORDER BY name_1, year
"""

ADMIN_COMPARISON_SQL = """
    CREATE OR REPLACE VIEW admin_comparison AS
    SELECT
        r2023.name_1 AS region_name,
        COUNT(DISTINCT r2023.id) AS regions_2023,
        COUNT(DISTINCT r2019.id) AS regions_2019,
        COUNT(DISTINCT r2011.id) AS regions_2011,
        COUNT(DISTINCT p2023.id) AS provinces_2023,
        COUNT(DISTINCT p2019.id) AS provinces_2019,
        COUNT(DISTINCT p2011.id) AS provinces_2011
    FROM regions r2023
    LEFT JOIN regions r2019   ON r2023.name_1 = r2019.name_1 AND r2019.year = 2019
    LEFT JOIN regions r2011   ON r2023.name_1 = r2011.name_1 AND r2011.year = 2011
    LEFT JOIN provinces p2023 ON r2023.name_1 = p2023.region AND p2023.year = 2023
    LEFT JOIN provinces p2019 ON r2023.name_1 = p2019.region AND p2019.year = 2019
    LEFT JOIN provinces p2011 ON r2023.name_1 = p2011.region AND p2011.year = 2011
    WHERE r2023.year = 2023
    GROUP BY r2023.name_1
    ORDER BY r2023.name_1
"""


def create_unified_views(conn: psycopg2.extensions.connection, log: logging.Logger = None) -> list[str]:
    """Create the cross-year views over the year-partitioned tables. Returns view names."""
    log = log or logger
    present = [t for t in LEVEL_TABLES if table_exists(conn, t)]
    created = []

    with get_cursor(conn) as cur:
        if present:
            cur.execute(administrative_timeline_sql(present))
            created.append("administrative_timeline")
        if "regions" in present:
            cur.execute(BOUNDARY_EVOLUTION_SQL)
            created.append("boundary_evolution")
        if {"regions", "provinces"} <= set(present):
            cur.execute(ADMIN_COMPARISON_SQL)
            created.append("admin_comparison")

    missing = sorted(set(LEVEL_TABLES) - set(present))
    if missing:
        log.warning("Unified views skip missing tables: %s", ", ".join(missing))
    log.info("Created views: %s", ", ".join(created) or "none")
    return created


# ─── Separated ───────────────────────────────────────────────────────────────

def admin_hierarchy_summary_sql(year: int) -> str:
    year = int(year)
    return f"""
    CREATE OR REPLACE VIEW admin_hierarchy_summary_{year} AS
    SELECT
        r.name_1 AS region_name,
        COUNT(DISTINCT p.name_2) AS province_count,
        COUNT(DISTINCT m.name_2) AS municipality_count,
        COUNT(DISTINCT b.name_3) AS barangay_count,
        ST_Union(r.geom) AS region_geom
    FROM regions_{year} r
    LEFT JOIN provinces_{year} p      ON r.name_1 = p.region
    LEFT JOIN municipalities_{year} m ON r.name_1 = m.region
    LEFT JOIN barangays_{year} b      ON r.name_1 = b.region
    GROUP BY r.name_1
    ORDER BY r.name_1
"""


def geographic_coverage_sql(year: int) -> str:
    year = int(year)
    selects = [
        f"""
    SELECT
        '{LEVEL_LABELS[table]}' AS admin_level,
        COUNT(*) AS feature_count,
        ST_Union(geom) AS total_area
    FROM {table}_{year}"""
        for table in LEVEL_TABLES
    ]
    return f"CREATE OR REPLACE VIEW geographic_coverage_{year} AS" + "\n    UNION ALL".join(selects)


def create_separated_views(
    conn: psycopg2.extensions.connection,
    years=KNOWN_YEARS,
    log: logging.Logger = None,
) -> list[str]:
    """Per-year summary views for every year whose four tables exist."""
    log = log or logger
    created = []
    for year in years:
        tables = [f"{t}_{int(year)}" for t in LEVEL_TABLES]
        missing = [t for t in tables if not table_exists(conn, t)]
        if missing:
            log.warning("No views for %s: missing %s", year, ", ".join(missing))
            continue
        with get_cursor(conn) as cur:
            cur.execute(admin_hierarchy_summary_sql(year))
            cur.execute(geographic_coverage_sql(year))
        created += [f"admin_hierarchy_summary_{year}", f"geographic_coverage_{year}"]
        log.info("Created summary views for %s", year)
    return created


def create_views(
    conn: psycopg2.extensions.connection,
    kind: str,
    years=KNOWN_YEARS,
    log: logging.Logger = None,
) -> list[str]:
    if kind == "unified":
        return create_unified_views(conn, log)
    if kind == "separated":
        return create_separated_views(conn, years, log)
    raise ValueError(f"unknown view set: {kind!r}")
