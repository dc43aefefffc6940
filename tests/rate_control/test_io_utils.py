"""Tests for atomic JSON persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

import pytest

from RecipePoster.RateControl.io_utils import atomic_write_json, read_json, safe_key_filename


def test_atomic_write_creates_parents_and_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "state" / "rate_state.json"

    atomic_write_json(target, {"openai_images": 12.5})

    assert json.loads(target.read_text(encoding="utf-8")) == {"openai_images": 12.5}
    assert sorted(os.listdir(target.parent)) == ["rate_state.json"]


def test_atomic_write_replaces_existing_document(tmp_path: Path) -> None:
    target = tmp_path / "rate_state.json"
    atomic_write_json(target, {"a": 1})
    atomic_write_json(target, {"b": 2})

    assert read_json(target, None) == {"b": 2}


def test_failed_serialisation_keeps_previous_document(tmp_path: Path) -> None:
    target = tmp_path / "rate_state.json"
    atomic_write_json(target, {"a": 1})

    with pytest.raises(TypeError):
        atomic_write_json(target, {"a": object()})

    assert read_json(target, None) == {"a": 1}
    assert sorted(os.listdir(tmp_path)) == ["rate_state.json"]


def test_read_json_missing_file_returns_default(tmp_path: Path) -> None:
    assert read_json(tmp_path / "absent.json", {}) == {}


@pytest.mark.parametrize("raw", [b"", b"   \n", b"{truncated", b"\xff\xfe\x00garbage"])
def test_read_json_corrupt_file_returns_default(tmp_path: Path, raw: bytes, caplog) -> None:
    path = tmp_path / "state.json"
    path.write_bytes(raw)

    with caplog.at_level(logging.WARNING, logger="RecipePoster"):
        assert read_json(path, {"default": True}) == {"default": True}


@pytest.mark.parametrize("key", ["openai_images", "instagram-graph.v2", "A1"])
def test_safe_keys_keep_their_name(key: str) -> None:
    assert safe_key_filename(key, ".cooldown") == f"{key}.cooldown"


@pytest.mark.parametrize(
    ("key", "prefix"),
    [
        ("openai/images", "openai_images-"),
        ("  instagram graph  ", "instagram_graph-"),
        ("..hidden", "hidden-"),
    ],
)
def test_rewritten_keys_carry_a_digest(key: str, prefix: str) -> None:
    name = safe_key_filename(key, ".cooldown")

    assert name.startswith(prefix)
    assert name.endswith(".cooldown")
    assert name == safe_key_filename(key, ".cooldown")


def test_distinct_keys_never_share_a_file_name() -> None:
    keys = ["openai_images", "openai/images", "openai images", "openai:images", " openai_images"]

    assert len({safe_key_filename(key, ".cooldown") for key in keys}) == len(keys)


@pytest.mark.parametrize("key", ["", "   ", "///", ".."])
def test_safe_key_filename_rejects_empty_keys(key: str) -> None:
    with pytest.raises(ValueError):
        safe_key_filename(key, ".cooldown")
