"""Tests for the databridge CLI commands that need no database."""

from pathlib import Path

import pytest
from typer.testing import CliRunner

from config import Settings
from databridge.cli import main as cli

runner = CliRunner()


@pytest.fixture(autouse=True)
def _settings(monkeypatch: pytest.MonkeyPatch, settings: Settings) -> None:
    monkeypatch.setattr(cli, "get_settings", lambda: settings)


class TestPreview:
    def test_shows_type_and_count(self, tmp_path: Path) -> None:
        path: Path = tmp_path / "posts.csv"
        path.write_bytes(b"Site ID,Post Title,Post Type\r\n1,A,post\r\n1,B,page\r\n1,C,post\r\n")
        result = runner.invoke(cli.app, ["preview", str(path), "--rows", "2"])
        assert result.exit_code == 0, result.output
        assert "posts, 3 rows" in result.output

    def test_empty_file_fails(self, tmp_path: Path) -> None:
        path: Path = tmp_path / "empty.csv"
        path.write_bytes(b"")
        result = runner.invoke(cli.app, ["preview", str(path)])
        assert result.exit_code == 1

    def test_missing_file(self, tmp_path: Path) -> None:
        result = runner.invoke(cli.app, ["preview", str(tmp_path / "nope.csv")])
        assert result.exit_code != 0
