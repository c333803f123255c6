"""Tests for the secwatch CLI."""

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import yaml
from click.testing import CliRunner

from secwatch import __version__
from secwatch.cli.main import cli
from secwatch.config import CONFIG_FILENAME


def runner() -> CliRunner:
    return CliRunner()


def _init(tmp_path: Path) -> Path:
    result = runner().invoke(cli, ["init", str(tmp_path)])
    assert result.exit_code == 0, result.output
    return tmp_path / CONFIG_FILENAME


def _auth_failures(n: int, ip: str = "203.0.113.7", minutes_apart: int = 0) -> list[dict]:
    start = datetime(2025, 1, 15, 10, 0, tzinfo=UTC)
    return [
        {
            "type": "auth_failure",
            "source": "auth-service",
            "severity": "low",
            "related_ip": ip,
            "timestamp": (start + timedelta(minutes=i * minutes_apart)).isoformat(),
        }
        for i in range(n)
    ]


class TestVersion:
    def test_version(self):
        result = runner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


# --- init command ---


class TestInitCommand:
    def test_writes_starter_config(self, tmp_path: Path):
        config_file = _init(tmp_path)
        data = yaml.safe_load(config_file.read_text(encoding="utf-8"))
        assert data["rules"][0]["id"] == "auth-failure-burst"
        assert data["store"] == "sqlite"

    def test_refuses_to_overwrite(self, tmp_path: Path):
        _init(tmp_path)
        result = runner().invoke(cli, ["init", str(tmp_path)])
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_force_overwrites(self, tmp_path: Path):
        config_file = _init(tmp_path)
        config_file.write_text("garbage", encoding="utf-8")
        result = runner().invoke(cli, ["init", str(tmp_path), "--force"])
        assert result.exit_code == 0
        assert "auth-failure-burst" in config_file.read_text(encoding="utf-8")


# --- validate command ---


class TestValidateCommand:
    def test_starter_config_is_valid(self, tmp_path: Path):
        config_file = _init(tmp_path)
        result = runner().invoke(cli, ["validate", "--config", str(config_file)])
        assert result.exit_code == 0
        assert "OK" in result.output
        assert "1 rule(s), 1 channel(s), 1 auto-resolve rule(s)" in result.output

    def test_reports_every_error(self, tmp_path: Path):
        config_file = tmp_path / CONFIG_FILENAME
        config_file.write_text(yaml.safe_dump({
            "rules": [
                {"id": "a", "event_type": "x", "window_minutes": 0, "threshold": 1},
                {"id": "b", "event_type": "x", "window_minutes": 1, "threshold": 1,
                 "notification_channel_ids": ["ghost"]},
            ],
            "mystery": True,
        }), encoding="utf-8")
        result = runner().invoke(cli, ["validate", "--config", str(config_file)])
        assert result.exit_code == 1
        assert "rules[a].window_minutes" in result.output
        assert "unknown notification channel 'ghost'" in result.output
        assert "mystery: unknown configuration key" in result.output
        assert "3 error(s) found." in result.output

    def test_missing_file(self, tmp_path: Path):
        result = runner().invoke(cli, ["validate", "--config", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 1
        assert "FAIL" in result.output

    def test_no_config_found(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        result = runner().invoke(cli, ["validate"])
        assert result.exit_code == 0
        assert "defaults are valid" in result.output


# --- check command ---


class TestCheckCommand:
    def test_replay_raises_alert(self, tmp_path: Path):
        config_file = _init(tmp_path)
        events_file = tmp_path / "events.yaml"
        events_file.write_text(
            yaml.safe_dump({"events": _auth_failures(5)}), encoding="utf-8",
        )
        result = runner().invoke(cli, [
            "check", str(events_file), "--config", str(config_file),
        ])
        assert result.exit_code == 0, result.output
        assert "5 event(s) replayed, 1 alert(s) raised." in result.output
        assert "203.0.113.7" in result.output
        assert "would notify security-webhook" in result.output
        assert not (tmp_path / "secwatch.db").exists()

    def test_below_threshold(self, tmp_path: Path):
        config_file = _init(tmp_path)
        events_file = tmp_path / "events.json"
        events_file.write_text(json.dumps(_auth_failures(4)), encoding="utf-8")
        result = runner().invoke(cli, [
            "check", str(events_file), "--config", str(config_file),
        ])
        assert result.exit_code == 0
        assert "4 event(s) replayed, 0 alert(s) raised." in result.output

    def test_rejected_events_reported(self, tmp_path: Path):
        config_file = _init(tmp_path)
        events_file = tmp_path / "events.json"
        events = [*_auth_failures(2), {"type": "auth_failure"}]
        events_file.write_text(json.dumps(events), encoding="utf-8")
        result = runner().invoke(cli, [
            "check", str(events_file), "--config", str(config_file),
        ])
        assert result.exit_code == 0
        assert "REJECTED" in result.output
        assert "2 event(s) replayed" in result.output

    def test_json_output(self, tmp_path: Path):
        config_file = _init(tmp_path)
        events_file = tmp_path / "events.json"
        events_file.write_text(json.dumps(_auth_failures(6)), encoding="utf-8")
        result = runner().invoke(cli, [
            "check", str(events_file), "--config", str(config_file), "--json",
        ])
        assert result.exit_code == 0
        alerts = json.loads(result.output)
        assert len(alerts) == 1
        assert alerts[0]["triggering_event_count"] == 6
        assert alerts[0]["rule_id"] == "auth-failure-burst"

    def test_unparseable_events_file(self, tmp_path: Path):
        config_file = _init(tmp_path)
        events_file = tmp_path / "events.json"
        events_file.write_text("{not json", encoding="utf-8")
        result = runner().invoke(cli, [
            "check", str(events_file), "--config", str(config_file),
        ])
        assert result.exit_code == 1
        assert "cannot parse" in result.output

    def test_events_file_must_be_list(self, tmp_path: Path):
        config_file = _init(tmp_path)
        events_file = tmp_path / "events.yaml"
        events_file.write_text("just a string\n", encoding="utf-8")
        result = runner().invoke(cli, [
            "check", str(events_file), "--config", str(config_file),
        ])
        assert result.exit_code == 1
        assert "must contain a list" in result.output

    def test_replay_follows_event_timestamps(self, tmp_path: Path):
        config_file = _init(tmp_path)
        events_file = tmp_path / "events.json"
        events_file.write_text(
            json.dumps(_auth_failures(5, minutes_apart=60)), encoding="utf-8",
        )
        result = runner().invoke(cli, [
            "check", str(events_file), "--config", str(config_file),
        ])
        assert result.exit_code == 0
        assert "5 event(s) replayed, 0 alert(s) raised." in result.output

    def test_replay_within_window_raises_alert(self, tmp_path: Path):
        config_file = _init(tmp_path)
        events_file = tmp_path / "events.json"
        events_file.write_text(
            json.dumps(_auth_failures(5, minutes_apart=1)), encoding="utf-8",
        )
        result = runner().invoke(cli, [
            "check", str(events_file), "--config", str(config_file), "--json",
        ])
        [alert] = json.loads(result.output)
        assert alert["first_triggered_at"].startswith("2025-01-15T10:00:00")
        assert alert["last_triggered_at"].startswith("2025-01-15T10:04:00")

    def test_ingestion_cap_drops_are_reported(self, tmp_path: Path):
        config_file = _init(tmp_path)
        data = yaml.safe_load(config_file.read_text(encoding="utf-8"))
        data["max_events_per_minute"] = 3
        config_file.write_text(yaml.safe_dump(data), encoding="utf-8")
        events = _auth_failures(5) + _auth_failures(2, ip="198.51.100.1")
        events[-1]["timestamp"] = "2025-01-15T10:02:00+00:00"
        events_file = tmp_path / "events.json"
        events_file.write_text(json.dumps(events), encoding="utf-8")
        result = runner().invoke(cli, [
            "check", str(events_file), "--config", str(config_file),
        ])
        assert result.exit_code == 0
        assert "4 event(s) replayed, 0 alert(s) raised." in result.output
        assert "3 event(s) dropped by the ingestion cap" in result.output
