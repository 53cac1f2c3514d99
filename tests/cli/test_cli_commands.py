"""Tests for keel.cli: CLI command smoke tests via CliRunner."""

from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from keel import __version__
from keel.cli.app import app

runner = CliRunner()


def _write(tmp_path, document, name="context.json"):
    path = tmp_path / name
    path.write_text(json.dumps(document))
    return path


@pytest.fixture
def tiered_document():
    return {
        "pinned": [{"content": "You are a helpful assistant.", "cost": 30, "key": "system"}],
        "recent": [
            {"payload": "first", "cost": 40, "key": "m1"},
            {"payload": "second", "cost": 40, "key": "m2"},
            {"payload": "third", "cost": 40, "key": "m3"},
        ],
    }


class TestRootCLI:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"keel-core {__version__}" in result.output

    def test_bad_log_level(self):
        result = runner.invoke(app, ["--log-level", "LOUD", "config", "show"])
        assert result.exit_code != 0


# ─── Config commands ─────────────────────────────────────────────────────


class TestConfigCLI:
    """Tests for the 'config' sub-commands."""

    def test_config_show_json(self):
        """config show --format json should output the settings as JSON."""
        result = runner.invoke(app, ["config", "show", "--format", "json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["failure_threshold"] == 5
        assert data["open_timeout"] == 60.0

    def test_config_show_env(self):
        """config show --format env should output KEEL_ variables."""
        result = runner.invoke(app, ["config", "show", "--format", "env"])
        assert result.exit_code == 0
        assert "KEEL_FAILURE_THRESHOLD=5" in result.output
        assert "KEEL_MAX_ATTEMPTS=3" in result.output

    def test_config_show_table(self):
        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 0
        assert "failure_threshold" in result.output

    def test_config_show_reads_environment(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("KEEL_MAX_ATTEMPTS", "7")
        result = runner.invoke(app, ["config", "show", "--format", "json"])
        assert result.exit_code == 0
        assert json.loads(result.output)["max_attempts"] == 7

    def test_config_show_unknown_format(self):
        result = runner.invoke(app, ["config", "show", "--format", "yaml"])
        assert result.exit_code == 1

    def test_config_validate_ok(self):
        result = runner.invoke(app, ["config", "validate"])
        assert result.exit_code == 0
        assert "valid" in result.output

    def test_config_validate_error(self, monkeypatch: pytest.MonkeyPatch):
        """config validate should report config errors."""
        monkeypatch.setenv("KEEL_FAILURE_THRESHOLD", "0")
        result = runner.invoke(app, ["config", "validate"])
        assert result.exit_code == 1


# ─── Retry commands ──────────────────────────────────────────────────────


class TestRetryCLI:
    """Tests for 'retry schedule'."""

    def test_schedule_json(self):
        result = runner.invoke(
            app, ["retry", "schedule", "--max-attempts", "4", "--jitter", "0", "--json"]
        )
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert [row["delay"] for row in data["delays"]] == [4.0, 8.0, 10.0]
        assert data["delays"][-1]["cumulative"] == 22.0

    def test_schedule_table(self):
        result = runner.invoke(app, ["retry", "schedule"])
        assert result.exit_code == 0
        assert "Backoff" in result.output

    def test_single_attempt(self):
        result = runner.invoke(app, ["retry", "schedule", "--max-attempts", "1"])
        assert result.exit_code == 0
        assert "no retries" in result.output

    def test_invalid_policy(self):
        result = runner.invoke(app, ["retry", "schedule", "--multiplier", "1"])
        assert result.exit_code == 1


# ─── Context commands ────────────────────────────────────────────────────


class TestContextCLI:
    """Tests for 'context assemble'."""

    def test_assemble_json(self, tmp_path, tiered_document):
        path = _write(tmp_path, tiered_document)
        result = runner.invoke(app, ["context", "assemble", str(path), "--budget", "100", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["total_cost"] == 70.0
        assert data["truncated"] is True
        assert [u["key"] for u in data["units"]] == ["system", "m1"]

    def test_assemble_table(self, tmp_path, tiered_document):
        path = _write(tmp_path, tiered_document)
        result = runner.invoke(app, ["context", "assemble", str(path), "--budget", "100"])
        assert result.exit_code == 0
        assert "Truncated" in result.output

    def test_assemble_strings_with_estimator(self, tmp_path):
        path = _write(tmp_path, {"recent": ["one two three", "four"]})
        result = runner.invoke(
            app, ["context", "assemble", str(path), "--budget", "3", "--estimator", "words", "--json"]
        )
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert [u["cost"] for u in data["units"]] == [3.0]

    def test_pinned_over_budget(self, tmp_path):
        path = _write(tmp_path, {"pinned": [{"content": "huge", "cost": 150}]})
        result = runner.invoke(app, ["context", "assemble", str(path), "--budget", "100"])
        assert result.exit_code == 0
        assert "exceeds the budget" in result.output

    def test_unknown_tier(self, tmp_path):
        path = _write(tmp_path, {"urgent": ["x"]})
        result = runner.invoke(app, ["context", "assemble", str(path), "--budget", "10"])
        assert result.exit_code == 1

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")
        result = runner.invoke(app, ["context", "assemble", str(path)])
        assert result.exit_code == 1

    def test_negative_budget(self, tmp_path, tiered_document):
        path = _write(tmp_path, tiered_document)
        result = runner.invoke(app, ["context", "assemble", str(path), "--budget", "-5"])
        assert result.exit_code == 1

    def test_missing_file(self, tmp_path):
        result = runner.invoke(app, ["context", "assemble", str(tmp_path / "nope.json")])
        assert result.exit_code == 2
