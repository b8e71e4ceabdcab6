"""Shared pytest fixtures for photo_sync tests."""

from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path
from typing import Callable

import pytest

from photo_sync import SyncConfig


@pytest.fixture
def logger() -> logging.Logger:
    """Return a logger under the photo_sync namespace."""
    return logging.getLogger("photo_sync.tests")


@pytest.fixture
def source(tmp_path: Path) -> Path:
    root = tmp_path / "source"
    root.mkdir()
    return root


@pytest.fixture
def dest(tmp_path: Path) -> Path:
    root = tmp_path / "dest"
    root.mkdir()
    return root


@pytest.fixture
def config(tmp_path: Path, source: Path, dest: Path) -> SyncConfig:
    """Return a quiet config with the cache kept outside both trees."""
    return SyncConfig(
        source=source,
        dest=dest,
        cache_dir=tmp_path / "cache",
        workers=2,
        progress=False,
    )


@pytest.fixture
def write_file() -> Callable[..., Path]:
    """Return a helper that writes bytes (and optionally an mtime) to a path."""

    def _write(path: Path, data: bytes, mtime: int | None = None) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        if mtime is not None:
            os.utime(path, (mtime, mtime))
        return path

    return _write


@pytest.fixture
def sha() -> Callable[[bytes], str]:
    return lambda data: hashlib.sha256(data).hexdigest()
