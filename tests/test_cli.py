"""Tests for the command line interface."""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from chatcompact.cli.commands import app

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "context": {"tokenCounting": "heuristic", "safetyMargin": 0.0},
        "providers": {"gemini": {"apiKey": "secret-gemini-key"}},
        "debugLogPath": str(tmp_path / "debug.json"),
    }))
    return path


@pytest.fixture
def transcript(tmp_path: Path) -> Path:
    path = tmp_path / "chat.jsonl"
    path.write_text("\n".join(
        json.dumps({"id": f"m{i}", "role": "user", "text": f"turn {i}", "created_at": i, "token_count": 100})
        for i in range(10)
    ))
    return path


class TestCli:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "chatcompact v" in result.stdout

    def test_compact_trim(self, config_file: Path, transcript: Path):
        result = runner.invoke(app, [
            "compact", str(transcript),
            "--strategy", "trim",
            "--max-tokens", "550",
            "--recent-tokens", "100",
            "--config", str(config_file),
        ])
        assert result.exit_code == 0, result.stdout
        assert "turn 9" in result.stdout
        assert "turn 4" not in result.stdout
        assert "Diagnostics" in result.stdout

    def test_compact_fits(self, config_file: Path, transcript: Path):
        result = runner.invoke(app, ["compact", str(transcript), "--config", str(config_file)])
        assert result.exit_code == 0
        assert "returned unchanged" in result.stdout

    def test_compact_invalid_budget(self, config_file: Path, transcript: Path):
        result = runner.invoke(app, [
            "compact", str(transcript),
            "--strategy", "trim",
            "--max-tokens", "500",
            "--recent-tokens", "900",
            "--config", str(config_file),
        ])
        assert result.exit_code == 1
        assert "Invalid settings" in result.stdout

    def test_compact_missing_transcript(self, config_file: Path, tmp_path: Path):
        result = runner.invoke(app, ["compact", str(tmp_path / "none.jsonl"), "--config", str(config_file)])
        assert result.exit_code == 1

    def test_config_redacts_keys(self, config_file: Path):
        result = runner.invoke(app, ["config", "--config", str(config_file)])
        assert result.exit_code == 0
        assert "secret-gemini-key" not in result.stdout
        assert "heuristic" in result.stdout

    def test_check_unknown_provider(self, config_file: Path):
        result = runner.invoke(app, ["check", "claude", "--config", str(config_file)])
        assert result.exit_code == 1

    def test_debug_stats_empty(self, config_file: Path):
        result = runner.invoke(app, ["debug-stats", "conv-1", "--config", str(config_file)])
        assert result.exit_code == 0
        assert "No debug logs" in result.stdout
