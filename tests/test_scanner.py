"""Tests for tree walking and digest index construction."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable

import pytest

import photo_sync
from photo_sync import MetadataCache, build_index, collect_files, sweep_stale_temp_files


def _build(root: Path, cache: MetadataCache, logger: logging.Logger, **kwargs):
    return build_index(root, cache, workers=2, chunk_size=64, logger=logger, progress=False, **kwargs)


def _count_hashes(monkeypatch: pytest.MonkeyPatch) -> list[Path]:
    calls: list[Path] = []
    original = photo_sync.compute_sha256

    def counting(file_path, chunk_size=photo_sync.DEFAULT_CHUNK_SIZE):
        calls.append(file_path)
        return original(file_path, chunk_size)

    monkeypatch.setattr(photo_sync, "compute_sha256", counting)
    return calls


def test_collect_files_skips_metadata_symlinks_and_temp_files(
    source: Path, logger: logging.Logger, write_file: Callable[..., Path]
) -> None:
    write_file(source / "b.jpg", b"b")
    write_file(source / "album" / "a.jpg", b"a")
    write_file(source / ".DS_Store", b"x")
    write_file(source / "album" / "._a.jpg", b"x")
    write_file(source / ".photo-sync-abc.tmp", b"x")
    write_file(source / ".Trash" / "deleted.jpg", b"x")
    os.symlink(source / "b.jpg", source / "link.jpg")

    files = collect_files(source, logger)

    assert files == [source / "album" / "a.jpg", source / "b.jpg"]


def test_duplicate_names_collapse_to_one_digest(
    source: Path,
    logger: logging.Logger,
    write_file: Callable[..., Path],
    sha: Callable[[bytes], str],
) -> None:
    first = write_file(source / "IMG_0001.jpg", b"A" * 100)
    second = write_file(source / "IMG_0001 (2).jpg", b"A" * 100)
    write_file(source / "IMG_0002.jpg", b"B" * 100)

    index = _build(source, MetadataCache(), logger)

    assert index.file_count == 3
    assert len(index) == 2
    canonical = min(first, second, key=str)
    assert index.entries[sha(b"A" * 100)] == canonical
    assert [(dup, canon) for dup, canon, _ in index.duplicates] == [
        (max(first, second, key=str), canonical)
    ]


def test_unchanged_files_are_served_from_cache(
    source: Path,
    logger: logging.Logger,
    write_file: Callable[..., Path],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    write_file(source / "a.jpg", b"aaa", mtime=1_600_000_000)
    write_file(source / "b.jpg", b"bbb", mtime=1_600_000_000)
    cache = MetadataCache()
    first = _build(source, cache, logger)

    calls = _count_hashes(monkeypatch)
    second = _build(source, cache, logger)

    assert calls == []
    assert second.entries == first.entries


def test_changed_file_is_rehashed(
    source: Path,
    logger: logging.Logger,
    write_file: Callable[..., Path],
    monkeypatch: pytest.MonkeyPatch,
    sha: Callable[[bytes], str],
) -> None:
    write_file(source / "a.jpg", b"aaa", mtime=1_600_000_000)
    write_file(source / "b.jpg", b"bbb", mtime=1_600_000_000)
    cache = MetadataCache()
    _build(source, cache, logger)

    write_file(source / "b.jpg", b"bbbb", mtime=1_600_000_500)
    calls = _count_hashes(monkeypatch)
    index = _build(source, cache, logger)

    assert calls == [source / "b.jpg"]
    assert sha(b"bbbb") in index
    assert sha(b"bbb") not in index


def test_rehash_ignores_cache(
    source: Path,
    logger: logging.Logger,
    write_file: Callable[..., Path],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    write_file(source / "a.jpg", b"aaa")
    write_file(source / "b.jpg", b"bbb")
    cache = MetadataCache()
    _build(source, cache, logger)

    calls = _count_hashes(monkeypatch)
    _build(source, cache, logger, rehash=True)

    assert sorted(calls) == [source / "a.jpg", source / "b.jpg"]


def test_unreadable_file_is_skipped_with_warning(
    source: Path,
    logger: logging.Logger,
    write_file: Callable[..., Path],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    write_file(source / "good.jpg", b"good")
    bad = write_file(source / "bad.jpg", b"bad")
    original = photo_sync.compute_sha256

    def flaky(file_path, chunk_size=photo_sync.DEFAULT_CHUNK_SIZE):
        if file_path == bad:
            raise PermissionError(13, "Permission denied", str(file_path))
        return original(file_path, chunk_size)

    monkeypatch.setattr(photo_sync, "compute_sha256", flaky)
    index = _build(source, MetadataCache(), logger)

    assert len(index) == 1
    assert [issue.kind for issue in index.issues] == ["SourceReadError"]
    assert index.issues[0].path == str(bad)
    # the name is still occupied even though its digest is unknown
    assert index.has_name(Path("bad.jpg"))


def test_unicode_and_suffixed_names_are_indexed(
    source: Path, logger: logging.Logger, write_file: Callable[..., Path]
) -> None:
    write_file(source / "Фото" / "снимок 1.jpg", b"one")
    write_file(source / "写真 (2).JPG", b"two")
    write_file(source / "café.heic", b"three")

    index = _build(source, MetadataCache(), logger)

    assert len(index) == 3
    assert index.has_name(Path("写真 (2).jpg"))
    assert index.has_name(Path("Фото") / "СНИМОК 1.jpg")


def test_sweep_removes_only_our_temp_files(
    dest: Path, logger: logging.Logger, write_file: Callable[..., Path]
) -> None:
    stale = write_file(dest / "2020" / ".photo-sync-x1y2.tmp", b"partial")
    keep = write_file(dest / "2020" / "IMG_0001.jpg", b"photo")
    other = write_file(dest / "notes.tmp", b"user file")

    removed = sweep_stale_temp_files(dest, logger)

    assert removed == 1
    assert not stale.exists()
    assert keep.exists()
    assert other.exists()
