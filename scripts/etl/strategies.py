"""
strategies.py — The schema strategies the importer can load into.

A strategy answers three questions for the pipeline:
  * which files to read            (discovery: level directories or a walk)
  * which table a file lands in    (table_spec)
  * which provenance it carries    (provenance_for)

    unified                regions … barangays, list-partitioned by year
    separated              <level>_<year>, one plain table per year
    universal              regions … barangays + admin_level / source_path
    resolution             geojson_lowres / geojson_medres / geojson_hires
    barangays-partitioned  barangays_partitioned, one partition per name_3
    barangays-indexed      all_barangays with name_3 / data_year indexes
"""

from dataclasses import dataclass

from classify import AdminLevel, Classification, KNOWN_YEARS
from schema import PartitionMode, TableSpec

ALL_LEVELS = (
    AdminLevel.REGION,
    AdminLevel.PROVINCE,
    AdminLevel.MUNICIPALITY,
    AdminLevel.BARANGAY,
)

# Discovery modes
LEVEL_DIRS = "level_dirs"   # one resolution directory per (year, level)
WALK       = "walk"         # every *.json under maps/<year>/, classified per file

_YEAR_TABLE_INDEXES = (
    ("year",),
    ("name_1",),
    ("name_2",),
    ("name_3",),
    ("region",),
    ("province",),
    ("year", "region"),
    ("year", "name_1", "name_2", "name_3"),
)

_SEPARATED_INDEXES = (
    ("year",),
    ("name_0",),
    ("name_1",),
    ("name_2",),
    ("name_3",),
    ("region",),
    ("province",),
    ("name_0", "name_1", "name_2", "name_3"),
    ("year", "region"),
    ("year", "province"),
)


@dataclass(frozen=True)
class Strategy:
    name:          str
    description:   str
    provenance:    tuple[str, ...]
    mode:          PartitionMode = PartitionMode.NONE
    partition_key: str | None = None
    discovery:     str = LEVEL_DIRS
    levels:        tuple[AdminLevel, ...] = ALL_LEVELS
    indexes:       tuple[tuple[str, ...], ...] = ()
    views:         str | None = None          # "unified" | "separated"
    fixed_table:   str | None = None          # one table for every file
    per_year:      bool = False               # <level>_<year> tables
    per_resolution: bool = False              # geojson_<resolution> tables

    def table_name(self, classification: Classification) -> str:
        if self.fixed_table:
            return self.fixed_table
        if self.per_resolution:
            return f"geojson_{classification.resolution}"
        if self.per_year:
            return f"{classification.table}_{classification.year}"
        return classification.table

    def table_spec(self, classification: Classification) -> TableSpec:
        """By-year tables always get a partition for every KNOWN_YEARS entry."""
        return TableSpec(
            name          = self.table_name(classification),
            mode          = self.mode,
            provenance    = self.provenance,
            partition_key = self.partition_key,
            years         = KNOWN_YEARS,
            indexes       = self.indexes,
        )

    def provenance_for(self, classification: Classification) -> dict:
        values = {
            "year":        classification.year,
            "data_year":   classification.year,
            "admin_level": classification.admin_level.value,
            "source_path": str(classification.path),
        }
        return {col: values[col] for col in self.provenance}

    def accepts(self, classification: Classification) -> bool:
        if classification.admin_level not in self.levels:
            return False
        if self.per_resolution and classification.resolution is None:
            return False
        return True


STRATEGIES: dict[str, Strategy] = {
    s.name: s for s in (
        Strategy(
            name        = "unified",
            description = "One table per level, list-partitioned by year",
            provenance  = ("year",),
            mode        = PartitionMode.BY_YEAR,
            indexes     = _YEAR_TABLE_INDEXES,
            views       = "unified",
        ),
        Strategy(
            name        = "separated",
            description = "One table per level and year (regions_2019 …)",
            provenance  = ("year",),
            indexes     = _SEPARATED_INDEXES,
            views       = "separated",
            per_year    = True,
        ),
        Strategy(
            name        = "universal",
            description = "Every file under maps/, tagged with admin_level and source_path",
            provenance  = ("admin_level", "source_path"),
            discovery   = WALK,
        ),
        Strategy(
            name           = "resolution",
            description    = "All years bucketed by resolution (geojson_lowres …)",
            provenance     = ("year", "admin_level", "source_path"),
            discovery      = WALK,
            per_resolution = True,
        ),
        Strategy(
            name          = "barangays-partitioned",
            description   = "Barangays list-partitioned by name_3, partitions created on demand",
            provenance    = ("data_year",),
            mode          = PartitionMode.BY_NAME_KEY,
            partition_key = "name_3",
            levels        = (AdminLevel.BARANGAY,),
            indexes       = (("data_year",),),
            fixed_table   = "barangays_partitioned",
        ),
        Strategy(
            name        = "barangays-indexed",
            description = "All barangays in one table indexed on name_3 and data_year",
            provenance  = ("data_year",),
            levels      = (AdminLevel.BARANGAY,),
            indexes     = (("name_3",), ("data_year",), ("name_3", "data_year")),
            fixed_table = "all_barangays",
        ),
    )
}

DEFAULT_STRATEGY = "unified"


def get_strategy(name: str) -> Strategy:
    try:
        return STRATEGIES[name]
    except KeyError:
        raise ValueError(
            f"unknown strategy {name!r} (choose from {', '.join(STRATEGIES)})"
        ) from None
