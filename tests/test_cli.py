import logging

import psycopg2
import pytest

import compare_approaches
import import_boundaries
from db import DbConfig

LOG = logging.getLogger("test_cli")


def test_help_exits_zero(capsys):
    with pytest.raises(SystemExit) as info:
        import_boundaries.build_parser().parse_args(["--help"])
    assert info.value.code == 0
    assert "--strategy" in capsys.readouterr().out


def test_defaults():
    args = import_boundaries.build_parser().parse_args([])
    assert args.strategy == "unified"
    assert args.maps_root == "maps"
    assert args.years == [2011, 2019, 2023]
    assert args.loader == "geopandas"
    assert args.file is None


def test_unknown_strategy_is_rejected():
    with pytest.raises(SystemExit) as info:
        import_boundaries.build_parser().parse_args(["--strategy", "by-barangay"])
    assert info.value.code == 2


def test_missing_maps_root_exits_one(tmp_path, monkeypatch):
    def _unreachable(*args, **kwargs):
        raise AssertionError("the database must not be contacted")
    monkeypatch.setattr(import_boundaries, "verify_database_connection", _unreachable)

    args = import_boundaries.build_parser().parse_args(["--maps-root", str(tmp_path / "nope")])
    assert import_boundaries.run(args, DbConfig(), LOG) == 1


def test_missing_single_file_exits_one(tmp_path):
    args = import_boundaries.build_parser().parse_args(["--file", str(tmp_path / "x.json")])
    assert import_boundaries.run(args, DbConfig(), LOG) == 1


def test_unreachable_database_exits_one(tmp_path, monkeypatch):
    monkeypatch.setattr(import_boundaries, "verify_database_connection", lambda *a, **k: False)
    args = import_boundaries.build_parser().parse_args(["--maps-root", str(tmp_path)])
    assert import_boundaries.run(args, DbConfig(), LOG) == 1


def test_single_file_run_with_fake_database(tmp_path, make_geojson, fake_conn, fake_bulk_insert, monkeypatch):
    path = make_geojson(tmp_path / "maps" / "2019" / "geojson" / "regions" / "r.json",
                        [{"NAME_1": "Ilocos"}])
    monkeypatch.setattr(import_boundaries, "verify_database_connection", lambda *a, **k: True)
    monkeypatch.setattr(import_boundaries, "prepare_database", lambda config, log: fake_conn)

    args = import_boundaries.build_parser().parse_args([
        "--file", str(path), "--strategy", "separated",
        "--summary-log", str(tmp_path / "summary.log"),
    ])
    assert import_boundaries.run(args, DbConfig(), LOG) == 0
    assert len(fake_conn.tables["regions_2019"]) == 1
    assert (tmp_path / "summary.log").read_text().strip() == "2019,region,1,1,0"
    assert fake_conn.closed


def test_lost_connection_exits_one(tmp_path, make_geojson, fake_conn, fake_bulk_insert, monkeypatch):
    regions = tmp_path / "maps" / "2019" / "geojson" / "regions"
    for name in ("a.json", "b.json", "c.json"):
        make_geojson(regions / name, [{"NAME_1": name}])
    fake_conn.fail_on(r"^UPDATE", psycopg2.OperationalError("server closed the connection unexpectedly"))
    monkeypatch.setattr(import_boundaries, "verify_database_connection", lambda *a, **k: True)
    monkeypatch.setattr(import_boundaries, "prepare_database", lambda config, log: fake_conn)

    args = import_boundaries.build_parser().parse_args([
        "--maps-root", str(tmp_path / "maps"), "--strategy", "separated", "--years", "2019",
        "--summary-log", str(tmp_path / "summary.log"),
    ])
    assert import_boundaries.run(args, DbConfig(), LOG) == 1
    assert len(fake_conn.statements("UPDATE")) == 1
    assert fake_conn.closed


def test_compare_queries_needs_no_database(tmp_path):
    parser_args = ["--action", "queries", "--out-dir", str(tmp_path)]
    with pytest.raises(SystemExit) as info:
        compare_approaches.main(parser_args + ["--log-file", str(tmp_path / "compare.log")])
    assert info.value.code == 0
    assert len(list(tmp_path.glob("sample_queries_*.sql"))) == 1


def test_compare_both_runs_separated_then_unified(tmp_path, monkeypatch):
    calls = []
    monkeypatch.setattr(compare_approaches, "_import",
                        lambda strategy, args, config, log: calls.append(strategy) or 0)
    monkeypatch.setattr(compare_approaches, "_report",
                        lambda args, config, log: calls.append("report") or 0)

    args = compare_approaches.argparse.Namespace(action="both", out_dir=str(tmp_path))
    assert compare_approaches.run(args, DbConfig(), LOG) == 0
    assert calls == ["separated", "unified", "report"]
