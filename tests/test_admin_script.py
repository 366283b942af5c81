from __future__ import annotations

from pathlib import Path

import pytest

from pulse.app.dependencies import get_database, get_source_repository
from pulse.app.repositories.fanout_repository import FanoutRepository
from pulse.app.scripts import pulse_admin


def test_sources_add_list_remove(runtime_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert (
        pulse_admin.main(
            ["sources", "add", "--name", "Reuters", "--locator", "https://r.test/rss"]
        )
        == 0
    )
    source = get_source_repository().list_sources()[0]

    assert pulse_admin.main(["sources", "list"]) == 0
    assert pulse_admin.main(["sources", "remove", "--id", source.source_id]) == 0
    assert pulse_admin.main(["sources", "remove", "--id", source.source_id]) == 1

    output = capsys.readouterr().out
    assert f"Added source: {source.source_id}" in output
    assert "https://r.test/rss" in output
    assert f"Removed source: {source.source_id}" in output
    assert "No source found" in output


def test_sources_add_rejects_duplicates(runtime_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    args = ["sources", "add", "--name", "Elon", "--kind", "TIMELINE", "--locator", "@elonmusk"]

    assert pulse_admin.main(args) == 0
    assert pulse_admin.main(args) == 1
    assert "Could not add source" in capsys.readouterr().out


def test_poll_once_with_no_sources(runtime_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert pulse_admin.main(["poll-once"]) == 0

    output = capsys.readouterr().out
    assert "sources: 0" in output
    assert "succeeded: True" in output


def test_scheduler_commands(runtime_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert pulse_admin.main(["scheduler", "start", "--interval-minutes", "10"]) == 0
    assert pulse_admin.main(["scheduler", "status"]) == 0
    assert pulse_admin.main(["scheduler", "stop"]) == 0
    assert pulse_admin.main(["scheduler", "start", "--interval-minutes", "0"]) == 1

    output = capsys.readouterr().out
    assert "state: idle" in output
    assert "base_interval_minutes: 10" in output
    assert "state: stopped" in output
    assert "Could not start scheduler" in output


def test_fanout_seeding_commands(runtime_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert pulse_admin.main(["fanout", "subscribe", "--user", "alice", "--url", "https://r.test/rss"]) == 0
    assert pulse_admin.main(["fanout", "register-device", "--user", "alice", "--device-token", "phone"]) == 0

    repository = FanoutRepository(get_database())
    assert repository.list_subscriber_ids("https://r.test/rss") == ["alice"]
    assert repository.list_push_tokens("alice") == ["phone"]
    assert "Subscribed alice" in capsys.readouterr().out
