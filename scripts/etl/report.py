"""
report.py — Read-only comparison of the separated and unified layouts.

    generate_comparison_report  → comparison_report_YYYYMMDD_HHMMSS.md
    write_sample_queries        → sample_queries_YYYYMMDD_HHMMSS.sql

Query results are rendered with pandas inside ``` fences. Every query that
needs a table checks for it first; a missing table becomes a
"not available" line, never an exception.
"""

import logging
import time
from datetime import datetime
from pathlib import Path

import pandas as pd
import psycopg2

from classify import KNOWN_YEARS, AdminLevel
from db import get_cursor
from schema import table_exists

logger = logging.getLogger(__name__)

LEVEL_TABLES = [level.table for level in AdminLevel]
# Column whose distinct values count the units of each level
UNIQUE_NAME_COLUMN = {
    "regions":        "name_1",
    "provinces":      "name_2",
    "municipalities": "name_2",
    "barangays":      "name_3",
}
SEPARATED_TABLE_PATTERN = r"^(regions|provinces|municipalities|barangays)_[0-9]{4}$"


def _stamp(now: datetime | None) -> str:
    return (now or datetime.now()).strftime("%Y%m%d_%H%M%S")


# ─── Query helpers ───────────────────────────────────────────────────────────

def run_query(conn: psycopg2.extensions.connection, query: str, params=None) -> pd.DataFrame:
    """Execute a read-only query and return the result as a DataFrame."""
    with get_cursor(conn) as cur:
        cur.execute(query, params)
        rows    = cur.fetchall()
        columns = [desc[0] for desc in cur.description] if cur.description else []
    return pd.DataFrame([list(row) for row in rows], columns=columns)


def timed_query(
    conn: psycopg2.extensions.connection,
    description: str,
    query: str,
    log: logging.Logger = None,
) -> tuple[pd.DataFrame | None, float]:
    """Run `query`, logging how long it took. Returns (frame or None, seconds)."""
    log = log or logger
    log.info("Running: %s", description)
    start = time.perf_counter()
    try:
        frame = run_query(conn, query)
    except psycopg2.Error as exc:
        elapsed = time.perf_counter() - start
        log.warning("Failed after %.3fs: %s (%s)", elapsed, description, str(exc).strip())
        return None, elapsed
    elapsed = time.perf_counter() - start
    log.info("Completed in %.3fs: %s", elapsed, description)
    return frame, elapsed


def _fenced(frame: pd.DataFrame | None) -> list[str]:
    if frame is None:
        return ["Query failed, see the log for details.", ""]
    body = "(no rows)" if frame.empty else frame.to_string(index=False)
    return ["```", body, "```", ""]


def _all_exist(conn, tables) -> bool:
    return all(table_exists(conn, t) for t in tables)


# ─── Report sections ─────────────────────────────────────────────────────────

_INTRO = """\
# Philippines Administrative Data Import Comparison Report

## Executive Summary
This report compares two approaches for importing Philippines administrative boundary data:
1. **Year-Separated Tables**: `regions_2011`, `regions_2019`, `regions_2023`, etc.
2. **Unified Tables**: `regions`, `provinces`, etc. with year as a column

## Database Structure Comparison
"""

_RECOMMENDATIONS = """\
## Recommendations

### Use Year-Separated Tables If:
- You primarily analyze one year at a time
- You need maximum query performance for single-year operations
- You want to avoid any risk of data contamination between years
- Different years have significantly different data structures
- You plan to archive or drop old year data regularly

### Use Unified Tables If:
- You frequently perform time-series analysis
- You need to track changes over time (boundary evolution)
- You want simpler database maintenance
- You prefer fewer tables to manage
- You need to JOIN data across years regularly

### Hybrid Approach:
Consider using both:
1. **Unified tables** for analysis and reporting
2. **Year-separated tables** for operational queries
3. **Views** that abstract the complexity

## Sample Queries

### Year-Separated Approach
```sql
-- Single year analysis (fast)
SELECT region, COUNT(*) AS municipalities
FROM municipalities_2023
GROUP BY region;

-- Cross-year comparison (complex)
SELECT '2023' AS year, region, COUNT(*) AS count
FROM municipalities_2023 GROUP BY region
UNION ALL
SELECT '2019' AS year, region, COUNT(*) AS count
FROM municipalities_2019 GROUP BY region
ORDER BY region, year;
```

### Unified Approach
```sql
-- Time series analysis (easy)
SELECT year, region, COUNT(*) AS municipalities
FROM municipalities
GROUP BY year, region
ORDER BY region, year;

-- Single year analysis (requires filter)
SELECT region, COUNT(*) AS municipalities
FROM municipalities
WHERE year = 2023
GROUP BY region;
```
"""


def _structure_section(conn) -> list[str]:
    lines = ["### Year-Separated Approach", "#### Tables Created:"]
    separated = run_query(conn, """
        SELECT schemaname, tablename,
               pg_size_pretty(pg_total_relation_size(schemaname || '.' || tablename)) AS size
        FROM   pg_tables
        WHERE  tablename ~ %s
        ORDER BY tablename
    """, (SEPARATED_TABLE_PATTERN,))
    lines += _fenced(separated) if not separated.empty else ["Year-separated tables not found", ""]

    lines += ["### Unified Approach", "#### Tables Created:"]
    unified = run_query(conn, """
        SELECT schemaname, tablename,
               pg_size_pretty(pg_total_relation_size(schemaname || '.' || tablename)) AS size
        FROM   pg_tables
        WHERE  tablename = ANY(%s)
        ORDER BY tablename
    """, (LEVEL_TABLES,))
    lines += _fenced(unified) if not unified.empty else ["Unified tables not found", ""]
    return lines


def _performance_section(conn, years, log) -> list[str]:
    lines = ["## Performance Comparison", "", "### Query Performance Tests", "",
             "#### Test 1: Count Records by Year"]

    separated_regions = [f"regions_{y}" for y in years]
    if _all_exist(conn, separated_regions):
        query = "\nUNION ALL\n".join(
            f"SELECT '{y}' AS year, COUNT(*) AS count FROM regions_{y}" for y in years
        ) + "\nORDER BY year"
        frame, elapsed = timed_query(conn, "Count regions by year (separated)", query, log)
        lines += [f"**Year-Separated Approach** ({elapsed:.3f}s):"] + _fenced(frame)
    else:
        lines += ["Year-separated tables not available for testing", ""]

    unified_ok = table_exists(conn, "regions")
    if unified_ok:
        frame, elapsed = timed_query(
            conn, "Count regions by year (unified)",
            "SELECT year, COUNT(*) AS count FROM regions GROUP BY year ORDER BY year",
            log,
        )
        lines += [f"**Unified Approach** ({elapsed:.3f}s):"] + _fenced(frame)
    else:
        lines += ["Unified tables not available for testing", ""]

    lines += ["#### Test 2: Regional Analysis"]
    latest = max(years)
    if table_exists(conn, f"regions_{latest}"):
        frame, elapsed = timed_query(conn, "Metro Manila analysis (separated)", f"""
            SELECT name_1, COUNT(*) AS count,
                   pg_size_pretty(SUM(ST_MemSize(geom))) AS geom_size
            FROM   regions_{latest}
            WHERE  name_1 ILIKE '%metro%' OR name_1 ILIKE '%manila%'
            GROUP BY name_1
        """, log)
        lines += [f"**Year-Separated - Metro Manila {latest}** ({elapsed:.3f}s):"] + _fenced(frame)
    else:
        lines += [f"regions_{latest} not available", ""]

    if unified_ok:
        frame, elapsed = timed_query(conn, "Metro Manila analysis (unified)", """
            SELECT year, name_1, COUNT(*) AS count
            FROM   regions
            WHERE  name_1 ILIKE '%metro%' OR name_1 ILIKE '%manila%'
            GROUP BY year, name_1
            ORDER BY year
        """, log)
        lines += [f"**Unified - Metro Manila All Years** ({elapsed:.3f}s):"] + _fenced(frame)
    return lines


def _quality_section(conn, years) -> list[str]:
    lines = ["## Data Quality Assessment", "", "### Record Counts by Administrative Level",
             "#### Year-Separated Tables:"]
    for year in years:
        lines.append(f"**Year {year}:**")
        tables = [f"{t}_{year}" for t in LEVEL_TABLES]
        if not _all_exist(conn, tables):
            lines += [f"No data for {year}", ""]
            continue
        query = "\nUNION ALL\n".join(
            f"SELECT '{table.capitalize()}' AS level, COUNT(*) AS count, "
            f"COUNT(DISTINCT {UNIQUE_NAME_COLUMN[table]}) AS unique_names FROM {table}_{year}"
            for table in LEVEL_TABLES
        )
        lines += _fenced(run_query(conn, query))

    lines.append("#### Unified Tables:")
    present = [t for t in LEVEL_TABLES if table_exists(conn, t)]
    if not present:
        return lines + ["Unified tables not available", ""]
    query = "\nUNION ALL\n".join(
        f"SELECT year, '{table.capitalize()}' AS level, COUNT(*) AS count, "
        f"COUNT(DISTINCT {UNIQUE_NAME_COLUMN[table]}) AS unique_names FROM {table} GROUP BY year"
        for table in present
    ) + "\nORDER BY year, level"
    return lines + _fenced(run_query(conn, query))


def _storage_section(conn, db_name: str) -> list[str]:
    lines = ["## Storage Analysis", "", "### Database Size Comparison", "#### Total Database Size:"]
    lines += _fenced(run_query(
        conn, "SELECT pg_size_pretty(pg_database_size(%s)) AS total_size", (db_name,),
    ))
    lines.append("#### Table Sizes:")
    lines += _fenced(run_query(conn, """
        SELECT tablename,
               pg_size_pretty(pg_total_relation_size(quote_ident(tablename))) AS size,
               pg_size_pretty(pg_relation_size(quote_ident(tablename)))       AS table_size,
               pg_size_pretty(pg_total_relation_size(quote_ident(tablename))
                              - pg_relation_size(quote_ident(tablename)))     AS index_size
        FROM   pg_tables
        WHERE  schemaname = 'public'
        AND    (tablename ~ %s OR tablename = ANY(%s))
        ORDER BY pg_total_relation_size(quote_ident(tablename)) DESC
    """, (SEPARATED_TABLE_PATTERN, LEVEL_TABLES)))
    return lines


# ─── Public entry points ─────────────────────────────────────────────────────

def generate_comparison_report(
    conn: psycopg2.extensions.connection,
    db_name: str,
    out_dir: Path = Path("."),
    now: datetime | None = None,
    years=KNOWN_YEARS,
    log: logging.Logger = None,
) -> Path:
    """
    Write comparison_report_<stamp>.md into `out_dir` and return its path.

    Never writes to the database.
    """
    log = log or logger
    log.info("=== GENERATING COMPARISON REPORT ===")
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    report_file = out_dir / f"comparison_report_{_stamp(now)}.md"

    lines = [_INTRO]
    lines += _structure_section(conn)
    lines += _performance_section(conn, tuple(years), log)
    log.info("Assessing data quality…")
    lines += _quality_section(conn, tuple(years))
    lines += _storage_section(conn, db_name)
    lines += ["", _RECOMMENDATIONS]

    report_file.write_text("\n".join(lines), encoding="utf-8")
    log.info("Comparison report generated: %s", report_file)
    return report_file


SAMPLE_QUERIES = """\
-- Sample Analysis Queries for Philippines Administrative Data
-- Run these to test both approaches

-- =====================================================
-- YEAR-SEPARATED TABLE QUERIES
-- =====================================================

-- 1. Count administrative units by year
SELECT '2011' AS year,
       (SELECT COUNT(*) FROM regions_2011) AS regions,
       (SELECT COUNT(*) FROM provinces_2011) AS provinces,
       (SELECT COUNT(*) FROM municipalities_2011) AS municipalities,
       (SELECT COUNT(*) FROM barangays_2011) AS barangays
UNION ALL
SELECT '2019' AS year,
       (SELECT COUNT(*) FROM regions_2019) AS regions,
       (SELECT COUNT(*) FROM provinces_2019) AS provinces,
       (SELECT COUNT(*) FROM municipalities_2019) AS municipalities,
       (SELECT COUNT(*) FROM barangays_2019) AS barangays
UNION ALL
SELECT '2023' AS year,
       (SELECT COUNT(*) FROM regions_2023) AS regions,
       (SELECT COUNT(*) FROM provinces_2023) AS provinces,
       (SELECT COUNT(*) FROM municipalities_2023) AS municipalities,
       (SELECT COUNT(*) FROM barangays_2023) AS barangays;

-- 2. Regional analysis for 2023
SELECT
    name_1 AS region,
    COUNT(*) AS municipalities,
    pg_size_pretty(SUM(ST_MemSize(geom))) AS total_geom_size
FROM municipalities_2023
GROUP BY name_1
ORDER BY COUNT(*) DESC;

-- 3. Province comparison between years
SELECT
    p2023.name_2 AS province,
    ST_Area(p2023.geom) AS area_2023,
    ST_Area(p2019.geom) AS area_2019,
    ST_Area(p2023.geom) - ST_Area(p2019.geom) AS area_change
FROM provinces_2023 p2023
JOIN provinces_2019 p2019 ON p2023.name_2 = p2019.name_2
WHERE ST_Area(p2023.geom) - ST_Area(p2019.geom) != 0
ORDER BY ABS(ST_Area(p2023.geom) - ST_Area(p2019.geom)) DESC;

-- =====================================================
-- UNIFIED TABLE QUERIES
-- =====================================================

-- 1. Count administrative units by year (unified)
SELECT
    year,
    (SELECT COUNT(*) FROM regions r WHERE r.year = t.year) AS regions,
    (SELECT COUNT(*) FROM provinces p WHERE p.year = t.year) AS provinces,
    (SELECT COUNT(*) FROM municipalities m WHERE m.year = t.year) AS municipalities,
    (SELECT COUNT(*) FROM barangays b WHERE b.year = t.year) AS barangays
FROM (SELECT DISTINCT year FROM regions) t
ORDER BY year;

-- 2. Time series analysis
SELECT
    year,
    name_1 AS region,
    COUNT(*) AS municipalities,
    AVG(ST_Area(geom)) AS avg_municipality_area
FROM municipalities
GROUP BY year, name_1
ORDER BY name_1, year;

-- 3. Administrative evolution
WITH province_evolution AS (
    SELECT
        name_2 AS province,
        year,
        ST_Area(geom) AS area,
        LAG(ST_Area(geom)) OVER (PARTITION BY name_2 ORDER BY year) AS prev_area
    FROM provinces
    WHERE name_2 IS NOT NULL
)
SELECT
    province,
    year,
    area,
    ((area - prev_area) / prev_area) * 100 AS area_change_percent
FROM province_evolution
WHERE prev_area IS NOT NULL AND prev_area <> 0
AND ABS(((area - prev_area) / prev_area) * 100) > 1
ORDER BY ABS(((area - prev_area) / prev_area) * 100) DESC;

-- =====================================================
-- PERFORMANCE COMPARISON QUERIES
-- =====================================================

\\timing on

-- Test 1: Single year query performance
-- Year-separated
EXPLAIN ANALYZE
SELECT region, COUNT(*)
FROM municipalities_2023
WHERE region LIKE '%Luzon%'
GROUP BY region;

-- Unified (year filter prunes to one partition)
EXPLAIN ANALYZE
SELECT region, COUNT(*)
FROM municipalities
WHERE year = 2023 AND region LIKE '%Luzon%'
GROUP BY region;

-- Test 2: Cross-year analysis
-- Year-separated
EXPLAIN ANALYZE
SELECT
    region,
    (SELECT COUNT(*) FROM municipalities_2023 m1 WHERE m1.region = m2019.region) AS count_2023,
    (SELECT COUNT(*) FROM municipalities_2019 m2 WHERE m2.region = m2019.region) AS count_2019
FROM (SELECT DISTINCT region FROM municipalities_2019) m2019;

-- Unified
EXPLAIN ANALYZE
SELECT
    region,
    SUM(CASE WHEN year = 2023 THEN 1 ELSE 0 END) AS count_2023,
    SUM(CASE WHEN year = 2019 THEN 1 ELSE 0 END) AS count_2019
FROM municipalities
WHERE year IN (2019, 2023)
GROUP BY region;

-- =====================================================
-- SPATIAL ANALYSIS EXAMPLES
-- =====================================================

-- Overlapping boundaries between years (unified tables only)
SELECT
    r1.name_1 AS region,
    r1.year AS year1,
    r2.year AS year2,
    ST_Area(ST_Intersection(r1.geom, r2.geom)) AS overlap_area
FROM regions r1
JOIN regions r2 ON r1.name_1 = r2.name_1
WHERE r1.year < r2.year
AND ST_Intersects(r1.geom, r2.geom)
AND ST_Area(ST_Intersection(r1.geom, r2.geom)) > 0;

-- Regional coverage analysis
SELECT
    year,
    COUNT(*) AS total_regions,
    SUM(ST_Area(geom)) AS total_area,
    AVG(ST_Area(geom)) AS avg_region_area,
    pg_size_pretty(SUM(ST_MemSize(geom))) AS geom_memory_usage
FROM regions
GROUP BY year
ORDER BY year;

\\timing off
"""


def write_sample_queries(out_dir: Path = Path("."), now: datetime | None = None,
                         log: logging.Logger = None) -> Path:
    """Write sample_queries_<stamp>.sql into `out_dir` and return its path."""
    log = log or logger
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    query_file = out_dir / f"sample_queries_{_stamp(now)}.sql"
    query_file.write_text(SAMPLE_QUERIES, encoding="utf-8")
    log.info("Sample queries generated: %s", query_file)
    return query_file
