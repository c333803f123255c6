"""secwatch CLI: command-line interface for the monitoring engine.

Commands:
    init        Write a starter secwatch.yaml
    validate    Validate a config file and print every violation
    check       Replay events from a file against the configured rules
    serve       Run the HTTP API with background sweeps
"""

from __future__ import annotations

import json
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click
import pydantic
import yaml

from secwatch import __version__
from secwatch.config import CONFIG_FILENAME, ConfigManager, load_config
from secwatch.errors import ValidationError
from secwatch.intake.limiter import IngestionLimiter
from secwatch.log import setup_logging
from secwatch.models import ChannelType, EventSubmission, NotificationChannel, utcnow
from secwatch.monitor import SecurityMonitor
from secwatch.notify.channels import AlertMessage

_INIT_CONFIG = """\
# Secwatch engine configuration
# Relative paths are resolved against this file.

store: sqlite
db_path: ./secwatch.db

max_events_per_minute: 1000
event_retention_days: 30
alert_retention_days: 90
auto_resolve_interval_seconds: 60

channels:
  - id: security-webhook
    name: Security webhook
    type: webhook
    min_severity: medium
    configuration:
      url: http://localhost:9000/alerts

rules:
  - id: auth-failure-burst
    name: Repeated authentication failures
    event_type: auth_failure
    group_by: related_ip
    window_minutes: 5
    threshold: 5
    cooldown_minutes: 15
    alert_severity: medium
    title_template: "{count} failed logins from {group_key}"
    description_template: "{count} auth failures from {group_key} in {window_minutes} minutes"
    notification_channel_ids: [security-webhook]

auto_resolve_rules:
  - id: auth-failure-quiet
    alert_type: auth_failure
    resolution_minutes: 60
"""


@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", default="WARNING", help="Log level (DEBUG, INFO, WARNING, ERROR)")
def cli(log_level: str) -> None:
    """Secwatch: real-time security event monitoring and alerting."""
    setup_logging(log_level)


# --- init command ---


@cli.command()
@click.argument("directory", default=".")
@click.option("--force", is_flag=True, help="Overwrite an existing config file")
def init(directory: str, force: bool) -> None:
    """Write a starter secwatch.yaml into DIRECTORY."""
    root = Path(directory)
    root.mkdir(parents=True, exist_ok=True)
    config_file = root / CONFIG_FILENAME
    if config_file.exists() and not force:
        click.echo(f"{config_file} already exists (use --force to overwrite)", err=True)
        sys.exit(1)
    config_file.write_text(_INIT_CONFIG, encoding="utf-8")
    click.echo(click.style("Created", fg="green") + f"  {config_file}")


# --- validate command ---


@cli.command()
@click.option("--config", "config_path", default=None, help="Path to secwatch.yaml")
def validate(config_path: str | None) -> None:
    """Validate the engine configuration."""
    try:
        config, found = load_config(config_path)
    except FileNotFoundError as e:
        click.echo(click.style("FAIL", fg="red") + f"  {e}", err=True)
        sys.exit(1)
    except ValidationError as e:
        for err in e.errors:
            click.echo(click.style("FAIL", fg="red") + f"  {err}")
        click.echo(f"\n{len(e.errors)} error(s) found.")
        sys.exit(1)

    if found is None:
        click.echo("No config file found; defaults are valid.")
        return
    click.echo(
        click.style("OK", fg="green")
        + f"  {found}: {len(config.rules)} rule(s), {len(config.channels)} channel(s), "
        f"{len(config.auto_resolve_rules)} auto-resolve rule(s)"
    )


# --- check command ---


@cli.command()
@click.argument("events_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--config", "config_path", default=None, help="Path to secwatch.yaml")
@click.option("--json", "as_json", is_flag=True, help="Output alerts as JSON")
def check(events_file: str, config_path: str | None, as_json: bool) -> None:
    """Replay EVENTS_FILE (YAML or JSON list) against the rules, in memory.

    Each event is replayed at its own ``timestamp``, so windows, cooldowns and
    the ingestion cap see the spacing recorded in the file. Nothing is stored
    and no notifications are sent.
    """
    try:
        config, _found = load_config(config_path)
    except (FileNotFoundError, ValidationError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    events = _read_events(Path(events_file))
    manager = ConfigManager(config.model_copy(update={"store": "memory", "db_path": None}))
    recorder = _RecordingSender()
    clock = _ReplayClock()
    monitor = SecurityMonitor(
        manager,
        senders=dict.fromkeys(ChannelType, recorder),
        limiter=IngestionLimiter(_clock=lambda: clock().timestamp()),
        _clock=clock,
    )

    rejected = 0
    for raw in events:
        try:
            submission = EventSubmission.model_validate(raw)
        except pydantic.ValidationError as e:
            rejected += 1
            click.echo(
                click.style("REJECTED", fg="yellow") + f"  {ValidationError.from_pydantic(e)}",
                err=True,
            )
            continue
        clock.move_to(submission.timestamp)
        monitor.submit_event(submission)

    stats = monitor.intake.stats()
    alerts = monitor.list_alerts(limit=500).items
    monitor.stop()

    if as_json:
        click.echo(json.dumps([a.model_dump(mode="json") for a in alerts], indent=2))
        return

    click.echo(f"{stats.accepted_events} event(s) replayed, {len(alerts)} alert(s) raised.")
    if stats.dropped_events:
        click.echo(f"  {stats.dropped_events} event(s) dropped by the ingestion cap")
    if rejected:
        click.echo(f"  {rejected} event(s) rejected")
    for alert in alerts:
        click.echo(
            f"  {_severity_badge(alert.severity)} {alert.title} "
            f"(rule={alert.rule_id}, group={alert.group_key}, "
            f"events={alert.triggering_event_count})"
        )
    for alert_id, channel_id in recorder.sent:
        click.echo(f"  would notify {channel_id} about {alert_id}")


# --- serve command ---


@cli.command()
@click.option("--host", default=None, help="Bind address")
@click.option("--port", default=None, type=int, help="Port number")
@click.option("--config", "config_path", default=None, help="Path to secwatch.yaml")
@click.option("--dev", is_flag=True, help="Enable CORS for frontend dev server")
def serve(host: str | None, port: int | None, config_path: str | None, dev: bool) -> None:
    """Run the HTTP API and background sweeps."""
    try:
        import uvicorn
    except ImportError:
        click.echo(
            "The server requires extra dependencies. Install with:\n"
            "  pip install secwatch[server]",
            err=True,
        )
        sys.exit(1)

    from secwatch.api.app import create_app
    from secwatch.api.config import ServerConfig

    server = ServerConfig.from_env()
    server.host = host or server.host
    server.port = port or server.port
    server.config_file = config_path or server.config_file
    server.dev_mode = dev or server.dev_mode

    try:
        monitor = SecurityMonitor.from_file(server.config_file or None)
    except (FileNotFoundError, ValidationError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    app = create_app(monitor, server)
    click.echo(f"Secwatch API on http://{server.host}:{server.port}")
    uvicorn.run(app, host=server.host, port=server.port, log_level=server.log_level.lower())


# --- helpers ---


class _ReplayClock:
    """Engine time during a replay: the timestamp of the event being submitted."""

    def __init__(self) -> None:
        self._now = utcnow()

    def __call__(self) -> datetime:
        return self._now

    def move_to(self, timestamp: datetime) -> None:
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)
        self._now = timestamp


class _RecordingSender:
    """Stands in for real channels during a dry-run replay."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def send(self, message: AlertMessage, channel: NotificationChannel) -> None:
        self.sent.append((message.alert.id, channel.id))


def _read_events(path: Path) -> list[dict[str, Any]]:
    text = path.read_text(encoding="utf-8")
    try:
        data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        click.echo(f"Error: cannot parse {path}: {e}", err=True)
        sys.exit(1)
    if isinstance(data, dict):
        data = data.get("events", [])
    if not isinstance(data, list):
        click.echo(f"Error: {path} must contain a list of events", err=True)
        sys.exit(1)
    return data


def _severity_badge(severity: str) -> str:
    color = {
        "info": "white",
        "low": "cyan",
        "medium": "yellow",
        "high": "red",
        "critical": "magenta",
    }.get(severity, "white")
    return click.style(f"[{severity}]", fg=color)
