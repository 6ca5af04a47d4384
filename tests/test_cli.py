import json
import sys

import pytest

from letterboxd_stats import cli
from letterboxd_stats.cache import CacheLayer, CacheScope, MemoryCacheBackend, SQLiteCacheBackend
from letterboxd_stats.errors import UserNotFoundError
from letterboxd_stats.models import CanonicalRecord
from letterboxd_stats.pipeline import UserData


def test_validate_username():
    assert cli._validate_username("Alice_99") == "alice_99"
    assert cli._validate_username("bad name!") == "badname"


def test_cli_dispatch_stats(monkeypatch):
    called = {}

    def fake_stats(args):
        called["command"] = args.command
        called["file"] = args.file
        called["top"] = args.top

    monkeypatch.setattr(cli, "cmd_stats", fake_stats)
    monkeypatch.setattr(sys, "argv", ["prog", "stats", "history.json", "--top", "3"])

    cli.main()
    assert called == {"command": "stats", "file": "history.json", "top": 3}


def test_cli_parses_fetch_args(monkeypatch):
    captured = {}

    def fake_fetch(args):
        captured["username"] = args.username
        captured["force_refresh"] = args.force_refresh
        captured["max_pages"] = args.max_pages
        captured["output"] = args.output
        return 0

    monkeypatch.setattr(cli, "cmd_fetch", fake_fetch)
    monkeypatch.setattr(
        sys,
        "argv",
        ["prog", "-v", "fetch", "alice", "--force-refresh", "--max-pages", "2", "--output", "out.json"],
    )

    assert cli.main() == 0
    assert captured == {"username": "alice", "force_refresh": True, "max_pages": 2, "output": "out.json"}


class FakePipeline:
    def __init__(self, outcome):
        self.outcome = outcome

    async def run(self, username, force_refresh=False):
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome

    async def enrich(self, records, force_refresh=False):
        for record in records:
            record.not_found = True
        return records


def _fetch_args(tmp_path, **overrides):
    import argparse

    values = {"username": "alice", "force_refresh": False, "max_pages": 5, "output": str(tmp_path / "out.json")}
    values.update(overrides)
    return argparse.Namespace(**values)


def test_cmd_fetch_writes_json(monkeypatch, tmp_path):
    result = UserData("alice", [CanonicalRecord(film_key="https://letterboxd.com/film/heat/", title="Heat")])
    monkeypatch.setattr(cli, "_build_pipeline", lambda args: FakePipeline(result))

    args = _fetch_args(tmp_path)
    assert cli.cmd_fetch(args) == 0

    payload = json.loads((tmp_path / "out.json").read_text())
    assert payload["count"] == 1
    assert payload["movies"][0]["Name"] == "Heat"


def test_cmd_fetch_reports_unknown_user(monkeypatch, tmp_path):
    monkeypatch.setattr(cli, "_build_pipeline", lambda args: FakePipeline(UserNotFoundError("ghost")))

    assert cli.cmd_fetch(_fetch_args(tmp_path, username="ghost")) == 1
    assert not (tmp_path / "out.json").exists()


def test_cmd_import_csv_with_enrich(monkeypatch, tmp_path, capsys):
    import argparse

    csv_path = tmp_path / "diary.csv"
    csv_path.write_text(
        "Date,Name,Year,Letterboxd URI,Rating\n2024-01-01,Heat,1995,https://letterboxd.com/film/heat/,4\n",
        encoding="utf-8",
    )
    monkeypatch.setattr(cli, "_build_pipeline", lambda args: FakePipeline(None))

    args = argparse.Namespace(file=str(csv_path), enrich=True, force_refresh=False, output=None)
    assert cli.cmd_import_csv(args) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["username"] == "diary"
    assert payload["movies"][0]["Rating"] == "4"
    assert payload["movies"][0]["notFound"] is True


def test_cmd_stats_reads_saved_history(tmp_path, capsys):
    import argparse

    history = tmp_path / "alice.json"
    history.write_text(json.dumps({
        "username": "alice",
        "movies": [
            {"Name": "Heat", "Year": "1995", "Rating": "4", "Date": "2024-03-09", "LetterboxdURI": "x"},
            {"Name": "Alien", "Year": "1979", "Rating": "5", "Date": "", "LetterboxdURI": "y"},
        ],
        "count": 2,
    }))

    assert cli.cmd_stats(argparse.Namespace(file=str(history), top=5)) == 0

    stats = json.loads(capsys.readouterr().out)
    assert stats["total_films"] == 2
    assert stats["average_rating"] == 4.5


def test_cmd_stats_missing_file(tmp_path):
    import argparse

    assert cli.cmd_stats(argparse.Namespace(file=str(tmp_path / "missing.json"), top=5)) == 1


def test_cache_clear_by_scope(monkeypatch, tmp_path):
    import argparse

    db_path = tmp_path / "cache.db"
    seed = SQLiteCacheBackend(db_path)
    layer = CacheLayer(seed)
    layer.set(CacheScope.USER, "alice", {"n": 1})
    layer.set(CacheScope.FILM_DETAIL, "heat", {"n": 2})
    seed.close()

    monkeypatch.setattr(cli, "build_cache_backend", lambda: SQLiteCacheBackend(db_path))
    assert cli.cmd_cache_clear(argparse.Namespace(scope="user")) == 0

    check = SQLiteCacheBackend(db_path)
    try:
        layer = CacheLayer(check)
        assert layer.get(CacheScope.USER, "alice") is None
        assert layer.get(CacheScope.FILM_DETAIL, "heat") == {"n": 2}
    finally:
        check.close()


@pytest.mark.parametrize("command", [cli.cmd_cache_clear, cli.cmd_cache_purge])
def test_cache_maintenance_requires_sqlite(monkeypatch, command):
    import argparse

    monkeypatch.setattr(cli, "build_cache_backend", lambda: MemoryCacheBackend())
    assert command(argparse.Namespace(scope=None)) == 1


def test_cmd_import_csv_resolve_links_without_short_links(tmp_path, capsys):
    import argparse

    csv_path = tmp_path / "diary.csv"
    csv_path.write_text(
        "Date,Name,Year,Letterboxd URI,Rating\n"
        "2024-01-01,Heat,1995,https://letterboxd.com/alice/film/heat/,4\n"
        "2024-02-01,Heat,1995,https://letterboxd.com/alice/film/heat/1/,4\n",
        encoding="utf-8",
    )

    args = argparse.Namespace(file=str(csv_path), enrich=False, resolve_links=True,
                              force_refresh=False, output=None)
    assert cli.cmd_import_csv(args) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["count"] == 1
    assert payload["movies"][0]["Date"] == "2024-02-01"
