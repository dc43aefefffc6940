"""Atomic JSON persistence helpers shared by the rate-control stores."""

from __future__ import annotations

import contextlib
import hashlib
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any

LOGGER = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_key_filename(key: str, suffix: str) -> str:
    """Map a throttle key onto a filesystem-safe file name.

    Keys that are already safe keep their name. Keys that needed rewriting get
    a short digest of the raw key appended so that, e.g., ``openai/images`` and
    ``openai_images`` never share a file.
    """

    cleaned = _UNSAFE_CHARS.sub("_", key.strip()).strip("._")
    if not cleaned:
        raise ValueError(f"Throttle key {key!r} has no usable characters")
    if cleaned != key:
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:10]
        cleaned = f"{cleaned}-{digest}"
    return f"{cleaned}{suffix}"


def atomic_write_json(path: Path, payload: Any) -> None:
    """Write ``payload`` as JSON so readers only ever see a complete document.

    The document is written to a temporary file in the destination directory,
    flushed, fsynced and then moved into place with :func:`os.replace`.
    """

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".part-", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_path)
        raise


def read_json(path: Path, default: Any) -> Any:
    """Load JSON from ``path``; missing, empty or corrupt files yield ``default``."""

    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    except UnicodeDecodeError:
        LOGGER.warning("state-corrupt path=%s; treating as empty", path)
        return default
    if not raw.strip():
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        LOGGER.warning("state-corrupt path=%s; treating as empty", path)
        return default

