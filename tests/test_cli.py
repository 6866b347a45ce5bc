import json
from datetime import timedelta

import pytest
from loguru import logger
from rich.console import Console
from typer.testing import CliRunner

from conftest import T0, timed_preset, untimed_preset
from scute import cli

runner = CliRunner()


@pytest.fixture
def cli_manager(manager, tmp_settings, monkeypatch):
    monkeypatch.setattr(cli, "get_manager", lambda: manager)
    # Wide enough that table cells are never truncated
    monkeypatch.setattr(cli, "console", Console(width=200))
    yield manager
    # Commands point loguru at the runner's streams
    logger.remove()


def iso(dt):
    return dt.isoformat()


def test_add_and_list(cli_manager):
    result = runner.invoke(cli.app, ["add", "Focus", "--minutes", "25", "--apps", "discord,steam"])

    assert result.exit_code == 0, result.output
    preset = cli_manager.find("Focus")
    assert preset.timer_minutes == 25
    assert preset.selected_apps == ["discord", "steam"]
    assert not preset.is_active

    listed = runner.invoke(cli.app, ["list"])
    assert listed.exit_code == 0
    assert "Focus" in listed.output


def test_list_without_presets(cli_manager):
    result = runner.invoke(cli.app, ["list"])
    assert result.exit_code == 0
    assert "No presets found" in result.output


def test_schedule_needs_both_bounds(cli_manager):
    result = runner.invoke(cli.app, ["add", "Evening", "--start", iso(T0 + timedelta(hours=9))])

    assert result.exit_code == 1
    assert "both --start and --end" in result.output
    assert cli_manager.presets() == []


def test_added_schedule_is_disabled_until_enabled(cli_manager, gateway):
    start, end = T0 + timedelta(hours=9), T0 + timedelta(hours=10)
    result = runner.invoke(cli.app, ["add", "Evening", "--start", iso(start), "--end", iso(end)])
    assert result.exit_code == 0, result.output
    assert not cli_manager.find("Evening").is_active

    enabled = runner.invoke(cli.app, ["enable", "Evening"])

    assert enabled.exit_code == 0, enabled.output
    evening = cli_manager.find("Evening")
    assert evening.is_active
    assert gateway.alarms[evening.id] == start

    disabled = runner.invoke(cli.app, ["disable", "Evening"])
    assert disabled.exit_code == 0
    assert not cli_manager.find("Evening").is_active
    assert evening.id not in gateway.alarms


def test_enable_overlapping_schedule_fails(cli_manager):
    for name, offset in (("Evening", 9), ("Late", 9)):
        start = T0 + timedelta(hours=offset)
        runner.invoke(cli.app, ["add", name, "--start", iso(start), "--end", iso(start + timedelta(hours=1))])
    runner.invoke(cli.app, ["enable", "Evening"])

    result = runner.invoke(cli.app, ["enable", "Late"])

    assert result.exit_code == 1
    assert "Evening" in result.output


def test_edit_updates_fields(cli_manager):
    cli_manager.store.save_preset(timed_preset("Focus", minutes=30, selected_apps=["discord"]))

    result = runner.invoke(cli.app, ["edit", "Focus", "--apps", "slack", "--strict", "--name", "Study"])

    assert result.exit_code == 0, result.output
    study = cli_manager.find("Study")
    assert study.selected_apps == ["slack"]
    assert study.strict_mode
    assert study.timer_minutes == 30


def test_edit_of_blocking_preset_fails(cli_manager):
    cli_manager.store.save_preset(untimed_preset("Deep Work"))
    cli_manager.activate("Deep Work")

    result = runner.invoke(cli.app, ["edit", "Deep Work", "--apps", "slack"])

    assert result.exit_code == 1
    assert cli_manager.find("Deep Work").selected_apps == []


def test_remove(cli_manager):
    cli_manager.store.save_preset(timed_preset("Focus"))

    assert runner.invoke(cli.app, ["remove", "Focus"]).exit_code == 0
    assert cli_manager.presets() == []

    missing = runner.invoke(cli.app, ["remove", "Focus"])
    assert missing.exit_code == 1


def test_select_without_daemon_is_applied_directly(cli_manager):
    cli_manager.store.save_preset(timed_preset("Focus"))

    result = runner.invoke(cli.app, ["select", "Focus"])

    assert result.exit_code == 0, result.output
    assert cli_manager.find("Focus").is_active


def test_lock_requires_running_daemon(cli_manager):
    cli_manager.store.save_preset(timed_preset("Focus"))

    result = runner.invoke(cli.app, ["lock", "Focus"])

    assert result.exit_code == 1
    assert "Daemon is not running" in result.output
    assert not cli_manager.session().is_locked


def test_lock_without_selection_fails(cli_manager):
    result = runner.invoke(cli.app, ["lock"])
    assert result.exit_code == 1
    assert "No preset selected" in result.output


def test_status_reports_block(cli_manager):
    cli_manager.store.save_preset(untimed_preset("Deep Work", selected_apps=["steam"]))
    cli_manager.activate("Deep Work")

    result = runner.invoke(cli.app, ["status"])

    assert result.exit_code == 0, result.output
    assert "BLOCKING: Deep Work" in result.output
    assert "Emergency tapouts: 3" in result.output


def test_status_when_idle(cli_manager):
    result = runner.invoke(cli.app, ["status"])
    assert result.exit_code == 0
    assert "Stopped" in result.output
    assert "No block currently active" in result.output


def test_config_is_saved(cli_manager, tmp_path):
    result = runner.invoke(cli.app, ["config", "--user", "alice", "--io-timeout", "3"])

    assert result.exit_code == 0, result.output
    saved = json.loads((tmp_path / "config.json").read_text())
    assert saved["user_id"] == "alice"
    assert saved["io_timeout_seconds"] == 3.0


def test_config_rejects_non_positive_timeout(cli_manager, tmp_path):
    result = runner.invoke(cli.app, ["config", "--io-timeout", "0"])
    assert result.exit_code == 1
    assert not (tmp_path / "config.json").exists()
