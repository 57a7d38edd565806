"""Tests for the operator command line."""

import json
import logging

import pytest

from smart_sync import cli
from smart_sync.metadata import SYNC_METADATA_KEY


@pytest.fixture(autouse=True)
def restore_logging():
    """main() reconfigures the package logger; put it back afterwards."""
    logger = logging.getLogger("smart_sync")
    handlers, level = list(logger.handlers), logger.level
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)


@pytest.fixture
def cache_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(cli, "DEFAULT_SETTINGS_PATH", tmp_path / "no-settings.yaml")
    path = tmp_path / "cache"
    path.mkdir()
    (path / f"{SYNC_METADATA_KEY}.json").write_text(
        json.dumps({"officers": "2024-01-01T00:00:00+00:00", "logs": "2024-02-01T00:00:00+00:00"})
    )
    (path / "officers.json").write_text(json.dumps([{"id": "1", "name": "Ana"}]))
    return path


def run(capsys, *argv: str) -> tuple[int, str]:
    code = cli.main(list(argv))
    return code, capsys.readouterr().out


class TestCli:
    """Tests for smart-sync subcommands."""

    def test_status(self, cache_dir, capsys):
        code, out = run(capsys, "--local-path", str(cache_dir), "status")

        assert code == 0
        assert json.loads(out) == {
            "logs": "2024-02-01T00:00:00+00:00",
            "officers": "2024-01-01T00:00:00+00:00",
        }

    def test_reset_one(self, cache_dir, capsys):
        code, out = run(capsys, "--local-path", str(cache_dir), "reset", "officers")

        assert code == 0
        assert json.loads(out) == {"reset": ["officers"]}
        metadata = json.loads((cache_dir / f"{SYNC_METADATA_KEY}.json").read_text())
        assert metadata == {"logs": "2024-02-01T00:00:00+00:00"}

    def test_reset_all(self, cache_dir, capsys):
        code, out = run(capsys, "--local-path", str(cache_dir), "reset")

        assert json.loads(out) == {"reset": ["logs", "officers"]}
        assert not (cache_dir / f"{SYNC_METADATA_KEY}.json").exists()
        assert (cache_dir / "officers.json").exists()

    def test_show(self, cache_dir, capsys):
        code, out = run(capsys, "--local-path", str(cache_dir), "show", "officers")

        assert code == 0
        assert json.loads(out) == [{"id": "1", "name": "Ana"}]

    def test_sync_without_collections(self, cache_dir, capsys, monkeypatch):
        monkeypatch.delenv("SMART_SYNC_COLLECTIONS", raising=False)

        code, _ = run(capsys, "--local-path", str(cache_dir), "sync")

        assert code == 2

    def test_settings_file(self, tmp_path, cache_dir, capsys):
        settings = tmp_path / "settings.yaml"
        settings.write_text(f"sync:\n  local_path: {cache_dir}\n")

        code, out = run(capsys, "--settings", str(settings), "status")

        assert code == 0
        assert "officers" in json.loads(out)

    def test_configuration_error_exit_code(self, tmp_path, capsys):
        settings = tmp_path / "settings.yaml"
        settings.write_text("sync:\n  bogus: 1\n")

        assert cli.main(["--settings", str(settings), "status"]) == 1
        assert "bogus" in capsys.readouterr().err
