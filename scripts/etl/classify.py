"""
classify.py — Map a GeoJSON path under maps/ to an administrative level.

Input layout:
    maps/<year>/geojson/<admin-subdir>[/<resolution>]/<file>.json

Directory rules (first match wins):
    /regions/                                → region
    /provinces/ or /provdists/               → province
    /municties/, /municities/ or /bgysubmuns/ → municipality
    /barangays/                              → barangay

If no directory decides, the file-name conventions are used. The two
conventions name a file after the unit that groups its features:

    2023                     2011 / 2019              table
    provdists-region-*       provinces-region-*       regions
    municities-provdist-*    municities-province-*    provinces
    bgysubmuns-municity-*    barangays-municity-*     municipalities

Resolution sub-directories (lowres / medres / hires) are tags, never
classifiers.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePath

logger = logging.getLogger(__name__)

# ─── Constants ────────────────────────────────────────────────────────────────

KNOWN_YEARS  = (2011, 2019, 2023)
RESOLUTIONS  = ("lowres", "medres", "hires")
# Sub-directory preference when one resolution must be picked per level
RESOLUTION_PREFERENCE = ("medres", "hires", "lowres")


class AdminLevel(str, Enum):
    REGION       = "region"
    PROVINCE     = "province"
    MUNICIPALITY = "municipality"
    BARANGAY     = "barangay"

    @property
    def table(self) -> str:
        return _LEVEL_TABLES[self]


_LEVEL_TABLES = {
    AdminLevel.REGION:       "regions",
    AdminLevel.PROVINCE:     "provinces",
    AdminLevel.MUNICIPALITY: "municipalities",
    AdminLevel.BARANGAY:     "barangays",
}

# Order matters: first match wins.
DIRECTORY_RULES: list[tuple[tuple[str, ...], AdminLevel]] = [
    (("regions",),                             AdminLevel.REGION),
    (("provinces", "provdists"),               AdminLevel.PROVINCE),
    (("municties", "municities", "bgysubmuns"), AdminLevel.MUNICIPALITY),
    (("barangays",),                           AdminLevel.BARANGAY),
]

FILENAME_RULES_2023: list[tuple[str, AdminLevel]] = [
    ("provdists-region-",     AdminLevel.REGION),
    ("municities-provdist-",  AdminLevel.PROVINCE),
    ("bgysubmuns-municity-",  AdminLevel.MUNICIPALITY),
]

FILENAME_RULES_2011_2019: list[tuple[str, AdminLevel]] = [
    ("provinces-region-",     AdminLevel.REGION),
    ("municities-province-",  AdminLevel.PROVINCE),
    ("barangays-municity-",   AdminLevel.MUNICIPALITY),
]

# Level sub-directories actually present per year, in lookup order. The
# misspelt "municties" appears in some checkouts of the source maps.
YEAR_LEVEL_DIRS: dict[int, dict[AdminLevel, tuple[str, ...]]] = {
    2011: {
        AdminLevel.REGION:       ("regions",),
        AdminLevel.PROVINCE:     ("provinces",),
        AdminLevel.MUNICIPALITY: ("municties", "municities"),
        AdminLevel.BARANGAY:     ("barangays",),
    },
    2019: {
        AdminLevel.REGION:       ("regions",),
        AdminLevel.PROVINCE:     ("provinces",),
        AdminLevel.MUNICIPALITY: ("municties", "municities"),
        AdminLevel.BARANGAY:     ("barangays",),
    },
    2023: {
        AdminLevel.REGION:       ("regions",),
        AdminLevel.PROVINCE:     ("provdists",),
        AdminLevel.MUNICIPALITY: ("municties", "municities", "bgysubmuns"),
        AdminLevel.BARANGAY:     ("barangays",),
    },
}

_YEAR_RE = re.compile(r"^(19|20)\d\d$")


@dataclass(frozen=True)
class Classification:
    path:        Path
    admin_level: AdminLevel
    year:        int | None
    resolution:  str | None

    @property
    def table(self) -> str:
        return self.admin_level.table


# ─── Path parsing ─────────────────────────────────────────────────────────────

def year_from_path(path) -> int | None:
    """
    Year of the maps/<year>/ tree `path` sits in, or None.

    The innermost year segment directly after "maps" or directly before
    "geojson" wins; failing that, the innermost 4-digit year segment. Years
    in outer directories (/data/2024/maps/2019/…) are ignored.
    """
    parts = PurePath(path).parts
    fallback = None
    for i in reversed(range(len(parts))):
        if not _YEAR_RE.match(parts[i]):
            continue
        after_maps     = i > 0 and parts[i - 1] == "maps"
        before_geojson = i + 1 < len(parts) and parts[i + 1] == "geojson"
        if after_maps or before_geojson:
            return int(parts[i])
        if fallback is None:
            fallback = int(parts[i])
    return fallback


def resolution_from_path(path) -> str | None:
    """Return lowres / medres / hires if `path` sits under such a directory."""
    for part in PurePath(path).parent.parts:
        if part in RESOLUTIONS:
            return part
    return None


def _level_from_directories(path) -> AdminLevel | None:
    dirs = set(PurePath(path).parent.parts)
    for names, level in DIRECTORY_RULES:
        if dirs.intersection(names):
            return level
    return None


def _level_from_filename(path, year: int | None) -> AdminLevel | None:
    name = PurePath(path).name
    # Both conventions are tried regardless of year, the year only decides
    # which one is checked first.
    if year == 2023:
        rule_sets = (FILENAME_RULES_2023, FILENAME_RULES_2011_2019)
    else:
        rule_sets = (FILENAME_RULES_2011_2019, FILENAME_RULES_2023)
    for rules in rule_sets:
        for prefix, level in rules:
            if name.startswith(prefix):
                return level
    return None


def classify_path(path) -> Classification | None:
    """
    Classify one file path.

    Returns None for paths that match neither a level directory nor a known
    file-name convention; the caller logs and skips them.
    """
    year  = year_from_path(path)
    level = _level_from_directories(path) or _level_from_filename(path, year)
    if level is None:
        return None
    return Classification(
        path        = Path(path),
        admin_level = level,
        year        = year,
        resolution  = resolution_from_path(path),
    )


# ─── Directory selection ─────────────────────────────────────────────────────

def find_level_dir(year_root: Path, year: int, level: AdminLevel) -> Path | None:
    """
    Return the first existing level directory under maps/<year>/geojson for
    `level`, or None when the year has no data for that level.
    """
    candidates = YEAR_LEVEL_DIRS.get(year, YEAR_LEVEL_DIRS[2019]).get(level, ())
    for name in candidates:
        level_dir = year_root / name
        if level_dir.is_dir():
            return level_dir
    return None


def select_resolution_dir(level_dir: Path, preference=RESOLUTION_PREFERENCE) -> Path:
    """
    Pick the one directory to read for a level so that a feature is never
    loaded once per resolution: the first preferred resolution sub-directory
    that exists, else the level directory itself.
    """
    for resolution in preference:
        candidate = level_dir / resolution
        if candidate.is_dir():
            return candidate
    return level_dir


def list_json_files(directory: Path, recursive: bool = False) -> list[Path]:
    """Sorted *.json files in `directory` (direct children unless recursive)."""
    if not directory.is_dir():
        return []
    pattern = "**/*.json" if recursive else "*.json"
    return sorted(p for p in directory.glob(pattern) if p.is_file())
