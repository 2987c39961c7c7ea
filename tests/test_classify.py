from pathlib import Path

import pytest

from classify import (
    AdminLevel,
    classify_path,
    find_level_dir,
    list_json_files,
    select_resolution_dir,
    year_from_path,
)
from strategies import get_strategy


@pytest.mark.parametrize("resolution", ["lowres", "medres", "hires"])
def test_regions_directory_wins_at_every_resolution(resolution):
    path = f"maps/2019/geojson/regions/{resolution}/regions.0.001.json"
    c = classify_path(path)
    assert c.admin_level is AdminLevel.REGION
    assert c.table == "regions"
    assert c.resolution == resolution
    assert c.year == 2019


def test_directory_beats_file_name():
    # A barangays-municity-* name would mean municipalities, the folder says barangays
    c = classify_path("maps/2019/geojson/barangays/medres/barangays-municity-123.json")
    assert c.admin_level is AdminLevel.BARANGAY


@pytest.mark.parametrize("directory,level", [
    ("regions",    AdminLevel.REGION),
    ("provinces",  AdminLevel.PROVINCE),
    ("provdists",  AdminLevel.PROVINCE),
    ("municties",  AdminLevel.MUNICIPALITY),
    ("municities", AdminLevel.MUNICIPALITY),
    ("bgysubmuns", AdminLevel.MUNICIPALITY),
    ("barangays",  AdminLevel.BARANGAY),
])
def test_directory_rules(directory, level):
    assert classify_path(f"maps/2023/geojson/{directory}/x.json").admin_level is level


@pytest.mark.parametrize("name,level", [
    ("provdists-region-100000000.0.1.json",    AdminLevel.REGION),
    ("municities-provdist-102800000.0.1.json", AdminLevel.PROVINCE),
    ("bgysubmuns-municity-102801000.0.1.json", AdminLevel.MUNICIPALITY),
])
def test_2023_file_names(name, level):
    c = classify_path(f"maps/2023/geojson/{name}")
    assert c.admin_level is level
    assert c.year == 2023


@pytest.mark.parametrize("name,level", [
    ("provinces-region-ph010000000.0.1.json",    AdminLevel.REGION),
    ("municities-province-ph012800000.0.1.json", AdminLevel.PROVINCE),
    ("barangays-municity-ph012801000.0.1.json",  AdminLevel.MUNICIPALITY),
])
@pytest.mark.parametrize("year", [2011, 2019])
def test_2011_2019_file_names(name, level, year):
    c = classify_path(f"maps/{year}/geojson/{name}")
    assert c.admin_level is level
    assert c.year == year


def test_same_prefix_means_different_tables_across_conventions():
    # municities-* groups by province in 2011/2019 and by provdist in 2023;
    # both describe provinces. bgysubmuns-* and barangays-* both mean municipalities.
    old = classify_path("maps/2019/geojson/municities-province-1.json")
    new = classify_path("maps/2023/geojson/municities-provdist-1.json")
    assert old.table == new.table == "provinces"
    assert classify_path("maps/2023/geojson/bgysubmuns-municity-1.json").table == "municipalities"
    assert classify_path("maps/2019/geojson/barangays-municity-1.json").table == "municipalities"


def test_unrecognised_path_is_none():
    assert classify_path("maps/2019/geojson/country/lowres/country.json") is None
    assert classify_path("notes/readme.json") is None


def test_resolution_directory_is_not_a_classifier():
    assert classify_path("maps/2019/geojson/medres/something.json") is None


def test_year_from_path():
    assert year_from_path("maps/2011/geojson/regions/x.json") == 2011
    assert year_from_path("maps/latest/regions/x.json") is None


@pytest.mark.parametrize("path", [
    "/data/2024/maps/2019/geojson/regions/r.json",
    "/archive/2024/ph/2019/geojson/regions/r.json",
    "/backup/2024/maps/2019/regions/r.json",
])
def test_year_comes_from_the_maps_tree_not_outer_directories(path):
    assert year_from_path(path) == 2019
    c = classify_path(path)
    assert c.year == 2019
    assert get_strategy("separated").table_name(c) == "regions_2019"


def test_year_falls_back_to_innermost_year_segment():
    assert year_from_path("/data/2011/exports/2023/regions/r.json") == 2023


def test_find_level_dir_prefers_existing_spelling(tmp_path):
    year_root = tmp_path / "2019" / "geojson"
    (year_root / "municities").mkdir(parents=True)
    assert find_level_dir(year_root, 2019, AdminLevel.MUNICIPALITY) == year_root / "municities"
    assert find_level_dir(year_root, 2019, AdminLevel.BARANGAY) is None


def test_2023_province_dir_is_provdists(tmp_path):
    year_root = tmp_path / "2023" / "geojson"
    (year_root / "provdists").mkdir(parents=True)
    (year_root / "provinces").mkdir(parents=True)
    assert find_level_dir(year_root, 2023, AdminLevel.PROVINCE).name == "provdists"


def test_select_resolution_prefers_medres(tmp_path):
    level_dir = tmp_path / "regions"
    for res in ("lowres", "hires", "medres"):
        (level_dir / res).mkdir(parents=True)
    assert select_resolution_dir(level_dir).name == "medres"

    (level_dir / "medres").rmdir()
    assert select_resolution_dir(level_dir).name == "hires"


def test_select_resolution_falls_back_to_level_dir(tmp_path):
    assert select_resolution_dir(tmp_path) == tmp_path


def test_list_json_files_sorted_and_shallow(tmp_path):
    for name in ("b.json", "a.json", "notes.txt"):
        (tmp_path / name).write_text("{}")
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "c.json").write_text("{}")

    assert [p.name for p in list_json_files(tmp_path)] == ["a.json", "b.json"]
    assert [p.name for p in list_json_files(tmp_path, recursive=True)] == ["a.json", "b.json", "c.json"]
    assert list_json_files(Path(tmp_path / "missing")) == []
