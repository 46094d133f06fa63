"""Tests for the typer CLI."""
from __future__ import annotations

from typer.testing import CliRunner

from conftest import CHICAGO_DALLAS_CSV
from cli import app

runner = CliRunner()


class TestCli:

    def test_detect(self, tmp_path):
        path = tmp_path / "mixed.csv"
        path.write_text(CHICAGO_DALLAS_CSV, encoding="utf-8")

        result = runner.invoke(app, ["detect", str(path)])

        assert result.exit_code == 0
        assert "Rows: 6  Missing location: 1" in result.output
        assert "Chicago, IL: 3" in result.output
        assert "Multi-location file" in result.output

    def test_missing_file(self, tmp_path):
        result = runner.invoke(app, ["detect", str(tmp_path / "nope.csv")])
        assert result.exit_code == 1

    def test_info(self):
        result = runner.invoke(app, ["info"])
        assert result.exit_code == 0
        assert "Geocoders:" in result.output
