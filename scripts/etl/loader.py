"""
loader.py — Turn one GeoJSON file into rows of a destination table.

The pipeline talks to a GeometryLoader and never to a concrete tool:

    GeoPandasLoader  — in-process: geopandas read → shapely geometry
                       promotion → psycopg2 execute_values (default)
    Ogr2OgrLoader    — shells out to GDAL's ogr2ogr command line

Contract shared by both:
  * every geometry is written as MULTIPOLYGON in EPSG:4326
  * a feature that cannot be converted is skipped, the file continues
  * a `where` filter ({column: value}, value None meaning "IS NOT NULL")
    is applied before anything is written
  * provenance values ({column: value}) are written on every row
  * 2023 PSGC adm<n>_en / adm<n>_psgc properties land in name_<n> / id_<n>
  * a file that cannot be read or written raises LoadError
"""

import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path

import geopandas as gpd
import pandas as pd
import psycopg2
from shapely.errors import GEOSException
from shapely.geometry import GeometryCollection, MultiPolygon, Polygon
from shapely.validation import make_valid

from db import CONNECTION_ERRORS, DbConfig, bulk_insert_features
from schema import INTEGER_COLUMNS, PartitionMode, TableSpec

logger = logging.getLogger(__name__)

TARGET_EPSG = 4326

# 2023 PSGC files use adm<n>_en / adm<n>_psgc instead of GADM NAME_<n> / ID_<n>
PROPERTY_ALIASES = {
    **{f"adm{n}_en":   f"name_{n}" for n in range(1, 5)},
    **{f"adm{n}_psgc": f"id_{n}"   for n in range(1, 5)},
}


class LoadError(Exception):
    """A whole file could not be loaded."""

    def __init__(self, path, reason: str):
        self.path   = Path(path)
        self.reason = reason
        super().__init__(f"{self.path.name}: {reason}")


# ─── Feature reading ─────────────────────────────────────────────────────────

def normalize_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Lower-case property names and map PSGC aliases onto GADM column names."""
    geometry_name = df.geometry.name if isinstance(df, gpd.GeoDataFrame) else None
    renames = {}
    lowered = {str(c).lower() for c in df.columns}
    for col in df.columns:
        if col == geometry_name:
            continue
        low = str(col).lower()
        target = PROPERTY_ALIASES.get(low, low)
        # Never let an alias shadow a real GADM column present in the file
        if target != low and target in lowered:
            target = low
        renames[col] = target
    return df.rename(columns=renames)


def apply_where(df: pd.DataFrame, where: dict | None) -> pd.DataFrame:
    """Keep rows matching every {column: value}; None means IS NOT NULL."""
    if not where:
        return df
    mask = pd.Series(True, index=df.index)
    for column, value in where.items():
        column = column.lower()
        if column not in df.columns:
            return df.iloc[0:0]
        if value is None:
            mask &= df[column].notna()
        else:
            mask &= df[column] == value
    return df[mask]


def read_features(path: Path, where: dict | None = None) -> gpd.GeoDataFrame:
    """
    Read a GeoJSON file into a GeoDataFrame in EPSG:4326 with normalised
    column names and the `where` filter already applied.

    Raises LoadError if the file cannot be parsed.
    """
    try:
        gdf = gpd.read_file(path)
    except Exception as exc:
        raise LoadError(path, f"read failed: {exc}") from exc

    if gdf.crs is None:
        gdf = gdf.set_crs(epsg=TARGET_EPSG)
    elif gdf.crs.to_epsg() != TARGET_EPSG:
        logger.warning("%s has CRS %s — reprojecting to %d", path, gdf.crs, TARGET_EPSG)
        gdf = gdf.to_crs(epsg=TARGET_EPSG)

    return apply_where(normalize_columns(gdf), where)


def read_key_values(path: Path, key: str) -> list[str]:
    """Sorted distinct non-null values of property `key` in a GeoJSON file."""
    try:
        df = gpd.read_file(path, ignore_geometry=True)
    except Exception as exc:
        raise LoadError(path, f"read failed: {exc}") from exc
    df = normalize_columns(df)
    key = key.lower()
    if key not in df.columns:
        return []
    return sorted({str(v).strip() for v in df[key].dropna() if str(v).strip()})


# ─── Row building ────────────────────────────────────────────────────────────

def to_multipolygon(geom) -> MultiPolygon | None:
    """
    Promote Polygon → MultiPolygon, repair invalid rings, keep only the
    polygonal parts of collections. Returns None if nothing polygonal remains.
    """
    if geom is None or geom.is_empty:
        return None
    if not geom.is_valid:
        geom = make_valid(geom)

    if isinstance(geom, Polygon):
        return MultiPolygon([geom])
    if isinstance(geom, MultiPolygon):
        return geom
    if isinstance(geom, GeometryCollection):
        polygons = []
        for part in geom.geoms:
            if isinstance(part, Polygon):
                polygons.append(part)
            elif isinstance(part, MultiPolygon):
                polygons.extend(part.geoms)
        return MultiPolygon(polygons) if polygons else None
    return None


def _clean_value(column: str, value):
    if value is None or (pd.api.types.is_scalar(value) and pd.isna(value)):
        return None
    if column in INTEGER_COLUMNS:
        try:
            return int(value)
        except (TypeError, ValueError):
            return None
    text = str(value).strip()
    return text or None


def build_rows(
    gdf: gpd.GeoDataFrame,
    spec: TableSpec,
    provenance: dict | None = None,
) -> tuple[list[dict], int]:
    """
    Convert features to insert dicts for `spec`.

    Returns (rows, skipped) where skipped counts features whose geometry could
    not be converted (or, for name-key partitioned tables, whose key is NULL).
    """
    provenance = provenance or {}
    attribute_columns = [c for c in spec.columns if c not in provenance]
    rows: list[dict] = []
    skipped = 0

    for idx, feature in gdf.iterrows():
        props = feature.to_dict()
        geom  = props.pop(gdf.geometry.name, None)

        try:
            multi = to_multipolygon(geom)
        except (GEOSException, ValueError) as exc:
            logger.debug("feature %s: geometry conversion failed: %s", idx, exc)
            multi = None
        if multi is None:
            skipped += 1
            continue

        row = {col: _clean_value(col, props.get(col)) for col in attribute_columns}
        row.update({col: provenance[col] for col in spec.columns if col in provenance})

        if spec.mode is PartitionMode.BY_NAME_KEY and row.get(spec.partition_key) is None:
            skipped += 1
            continue

        row["geom_ewkb"] = multi.wkb_hex
        rows.append(row)

    return rows, skipped


# ─── Loader interface ─────────────────────────────────────────────────────────

class GeometryLoader(ABC):
    """Loads one file into one table; see module docstring for the contract."""

    name = "abstract"

    @abstractmethod
    def load_file(
        self,
        path: Path,
        spec: TableSpec,
        where: dict | None = None,
        provenance: dict | None = None,
    ) -> int:
        """Return rows written (-1 if the tool cannot tell). Raise LoadError on failure."""


class GeoPandasLoader(GeometryLoader):
    """
    In-process loader. Writes through `conn` without committing; the caller
    wraps load + annotate in db.transaction().
    """

    name = "geopandas"

    def __init__(self, conn: psycopg2.extensions.connection, log: logging.Logger = None):
        self.conn = conn
        self.log  = log or logger

    def load_file(self, path, spec, where=None, provenance=None) -> int:
        gdf = read_features(path, where)
        rows, skipped = build_rows(gdf, spec, provenance)
        if skipped:
            self.log.warning("%s: skipped %d features that could not be converted",
                             Path(path).name, skipped)
        try:
            return bulk_insert_features(self.conn, spec.name, spec.columns, rows)
        except CONNECTION_ERRORS:
            raise
        except psycopg2.Error as exc:
            raise LoadError(path, f"insert into {spec.name} failed: {exc}") from exc


def _sql_literal(value) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return "'" + str(value).replace("'", "''") + "'"


def source_field(column: str, fields: list[str] | None) -> str | None:
    """
    Name of the layer field that feeds `column`, quoted for SQL: the column
    itself in any case, else its PSGC alias. Without a field list the GADM
    upper-case name is assumed. None if the layer has neither.
    """
    if fields is None:
        return column.upper()
    for field in fields:
        if field.lower() == column:
            return f'"{field}"'
    for field in fields:
        if PROPERTY_ALIASES.get(field.lower()) == column:
            return f'"{field}"'
    return None


def alias_selects(fields: list[str] | None) -> list[str]:
    """`"adm3_en" AS name_3` items for PSGC fields whose GADM column is absent."""
    if not fields:
        return []
    lowered = {f.lower() for f in fields}
    selects = []
    for field in fields:
        target = PROPERTY_ALIASES.get(field.lower())
        if target and target not in lowered:
            selects.append(f'"{field}" AS {target}')
    return selects


def _where_clause(where: dict | None, fields: list[str] | None = None) -> str | None:
    if not where:
        return None
    terms = []
    for column, value in where.items():
        field = source_field(column, fields) or column.upper()
        if value is None:
            terms.append(f"{field} IS NOT NULL")
        else:
            terms.append(f"{field} = {_sql_literal(value)}")
    return " AND ".join(terms)


class Ogr2OgrLoader(GeometryLoader):
    """
    Wraps the ogr2ogr command line. Provenance literals and the 2023 PSGC
    field aliases are injected with a SQLite-dialect -sql statement, so
    partitioned tables receive their key at insert time and rows carry the
    same name_<n> / id_<n> values as with GeoPandasLoader. ogr2ogr does not
    report a row count, so load_file returns -1.
    """

    name = "ogr2ogr"

    def __init__(self, config: DbConfig, binary: str = "ogr2ogr", log: logging.Logger = None):
        self.config = config
        self.binary = binary
        self.log    = log or logger

    def layer_info(self, path: Path) -> tuple[str, list[str]]:
        """(first layer name, its attribute field names) of a vector file."""
        try:
            layers = gpd.list_layers(path)
        except Exception as exc:
            raise LoadError(path, f"cannot list layers: {exc}") from exc
        if layers.empty:
            raise LoadError(path, "file has no layers")
        layer = str(layers["name"].iloc[0])
        try:
            sample = gpd.read_file(path, layer=layer, rows=1)
        except Exception as exc:
            raise LoadError(path, f"cannot read fields of {layer}: {exc}") from exc
        fields = [str(c) for c in sample.columns if c != sample.geometry.name]
        return layer, fields

    def build_command(
        self,
        path: Path,
        spec: TableSpec,
        where: dict | None = None,
        provenance: dict | None = None,
        layer: str | None = None,
        fields: list[str] | None = None,
    ) -> list[str]:
        cmd = [
            self.binary,
            "-f", "PostgreSQL",
            self.config.pg_connstring(),
            str(path),
            "-nln", spec.name,
            "-append",
            "-skipfailures",
            "-lco", "GEOMETRY_NAME=geom",
            "-lco", "PRECISION=NO",
            "-t_srs", f"EPSG:{TARGET_EPSG}",
            "-nlt", "PROMOTE_TO_MULTI",
        ]
        clause  = _where_clause(where, fields)
        selects = alias_selects(fields)
        selects += [f"{_sql_literal(value)} AS {column}" for column, value in (provenance or {}).items()]
        if selects:
            layer = layer or Path(path).stem
            query = f'SELECT *, {", ".join(selects)} FROM "{layer}"'
            if clause:
                query += f" WHERE {clause}"
            cmd += ["-dialect", "SQLite", "-sql", query]
        elif clause:
            cmd += ["-where", clause]
        return cmd

    def load_file(self, path, spec, where=None, provenance=None) -> int:
        path = Path(path)
        if not path.is_file():
            raise LoadError(path, "file not found")
        layer, fields = self.layer_info(path)
        missing = [c for c in (where or {}) if source_field(c, fields) is None]
        if missing:
            # Same outcome as apply_where: nothing in the file can match
            self.log.warning("%s: no %s field, nothing to load", path.name, ", ".join(missing))
            return 0
        cmd = self.build_command(path, spec, where, provenance, layer, fields)
        self.log.debug("Running: %s", " ".join(cmd))
        try:
            subprocess.run(
                cmd,
                env=self.config.subprocess_env(),
                check=True,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as exc:
            raise LoadError(path, f"{self.binary} not found on PATH") from exc
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip().splitlines()
            raise LoadError(
                path, f"{self.binary} exited {exc.returncode}: {stderr[-1] if stderr else ''}"
            ) from exc
        return -1
