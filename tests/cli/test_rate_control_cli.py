"""CLI tests for cooldown and throttle inspection commands."""

from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from RecipePoster.RateControl import FileCooldownStore, IntervalTracker
from RecipePoster.RateControl.sqlite_cooldown_store import SQLiteCooldownStore
from RecipePoster.cli import app

runner = CliRunner()


@pytest.fixture
def invoke(tmp_path: Path):
    def _invoke(*args: str):
        return runner.invoke(app, ["--state-dir", str(tmp_path), *args])

    return _invoke


def test_cooldown_show_empty(invoke) -> None:
    result = invoke("cooldown", "show")

    assert result.exit_code == 0, result.output
    assert "No cooldowns to show." in result.output


def test_cooldown_set_show_clear(invoke, tmp_path: Path) -> None:
    result = invoke("cooldown", "set", "openai_images", "--seconds", "600", "--reason", "maintenance")
    assert result.exit_code == 0, result.output
    assert (tmp_path / "cooldowns" / "openai_images.cooldown").exists()

    shown = invoke("cooldown", "show")
    assert shown.exit_code == 0, shown.output
    assert "openai_images" in shown.output
    assert "maintenance" in shown.output

    cleared = invoke("cooldown", "clear", "openai_images")
    assert cleared.exit_code == 0, cleared.output
    assert not (tmp_path / "cooldowns" / "openai_images.cooldown").exists()
    assert "No cooldowns to show." in invoke("cooldown", "show").output


def test_cooldown_show_filters_by_key(invoke, tmp_path: Path) -> None:
    gate_store = FileCooldownStore(tmp_path / "cooldowns")
    gate_store.set_until("openai_images", gate_store.clock.monotonic() + 300, "http-429")
    gate_store.set_until("instagram", gate_store.clock.monotonic() + 300, "http-429")

    result = invoke("cooldown", "show", "--key", "instagram")

    assert result.exit_code == 0, result.output
    assert "instagram" in result.output
    assert "openai_images" not in result.output


def test_cooldown_set_rejects_unusable_key(invoke) -> None:
    result = invoke("cooldown", "set", "///", "--seconds", "10")

    assert result.exit_code == 1
    assert "no usable characters" in result.output


def test_cooldown_set_requires_seconds(invoke) -> None:
    result = invoke("cooldown", "set", "openai_images")

    assert result.exit_code != 0


def test_sqlite_backend(invoke, tmp_path: Path) -> None:
    result = invoke("--backend", "sqlite", "cooldown", "set", "instagram", "--seconds", "60")
    assert result.exit_code == 0, result.output
    assert (tmp_path / "cooldowns.sqlite").exists()

    shown = invoke("--backend", "sqlite", "cooldown", "show")
    assert "instagram" in shown.output


@pytest.mark.parametrize(
    "args",
    [
        ("cooldown", "set", "instagram", "--seconds", "60"),
        ("cooldown", "show"),
        ("cooldown", "clear", "instagram"),
        ("cooldown", "set", "///", "--seconds", "60"),
    ],
)
def test_sqlite_store_is_closed_after_each_command(
    invoke, monkeypatch: pytest.MonkeyPatch, args
) -> None:
    closed = []
    original_close = SQLiteCooldownStore.close

    def _close(self) -> None:
        closed.append(self.db_path)
        original_close(self)

    monkeypatch.setattr(SQLiteCooldownStore, "close", _close)

    invoke("--backend", "sqlite", *args)

    assert len(closed) == 1


def test_throttle_show_empty(invoke) -> None:
    result = invoke("throttle", "show")

    assert result.exit_code == 0, result.output
    assert "No throttle state recorded." in result.output


def test_throttle_show_lists_keys(invoke, tmp_path: Path) -> None:
    IntervalTracker(tmp_path / "rate_state.json").throttle("openai_images", 0)

    result = invoke("throttle", "show")

    assert result.exit_code == 0, result.output
    assert "openai_images" in result.output
    assert "25000" in result.output
