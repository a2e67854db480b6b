from __future__ import annotations

import json

from typer.testing import CliRunner

from turnout import cli, config

runner = CliRunner()


def test_rsvp_capacity_and_waitlist_commands(make_event):
    event_id = make_event(max_attendees=1, waitlist_enabled=True)

    result = runner.invoke(cli.app, ["rsvp", event_id, "u1", "going", "--name", "Ada"])
    assert result.exit_code == 0
    assert "You're going!" in result.output

    result = runner.invoke(cli.app, ["rsvp", event_id, "u2", "going", "--name", "Bo"])
    assert result.exit_code == 0
    assert "position 1" in result.output

    result = runner.invoke(cli.app, ["capacity", event_id])
    assert result.exit_code == 0
    assert "State: waitlist" in result.output
    assert "Event is full - join waitlist" in result.output

    result = runner.invoke(cli.app, ["waitlist", event_id])
    assert result.exit_code == 0
    assert "1. Bo (primary)" in result.output


def test_rsvp_command_reports_full_event(make_event):
    event_id = make_event(max_attendees=0)
    result = runner.invoke(cli.app, ["rsvp", event_id, "u1", "going"])
    assert result.exit_code == 1
    assert "No more RSVPs can be accepted." in result.output


def test_unknown_event(make_event):
    result = runner.invoke(cli.app, ["capacity", "missing"])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_reconcile_command(make_event):
    event_id = make_event(max_attendees=3)
    result = runner.invoke(cli.app, ["reconcile", event_id])
    assert result.exit_code == 0
    assert json.loads(result.output)["drifted"] is False

    result = runner.invoke(cli.app, ["reconcile"])
    assert result.exit_code == 0
    assert "Reconcile complete" in result.output


def test_config_set_and_show(monkeypatch, tmp_path):
    monkeypatch.setattr(config, "settings", config.settings)
    path = tmp_path / "turnout.toml"

    result = runner.invoke(
        cli.app, ["config", "set", "near_full_ratio", "0.8", "--config-path", str(path)]
    )
    assert result.exit_code == 0
    assert "near_full_ratio = 0.8" in path.read_text(encoding="utf-8")

    result = runner.invoke(cli.app, ["config", "show", "--config-path", str(path)])
    assert result.exit_code == 0
    assert json.loads(result.output)["near_full_ratio"] == 0.8

    result = runner.invoke(
        cli.app, ["config", "set", "decay_factor", "0.5", "--config-path", str(path)]
    )
    assert result.exit_code == 1
    assert "Unknown configuration key" in result.output
