#!/usr/bin/env python3
"""
photo_sync.py - Content-addressed incremental photo library mirror.

Mirrors a source photo tree (typically a mounted cloud library whose file
names change from one mount to the next) into a destination directory so
that every distinct file appears there exactly once:
  - Identity is the SHA-256 of the file bytes, never its name
  - A persistent (path, size, mtime) -> digest cache avoids rehashing
  - New files are written to a temp file and atomically renamed into place

License: MIT
"""

import argparse
import csv
import hashlib
import logging
import os
import pickle
import shutil
import sys
import tempfile
import threading
import unicodedata
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager, suppress
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Callable, Iterable, Optional

try:
    from tqdm import tqdm
except ImportError:
    print("ERROR: tqdm not installed. Run: pip install tqdm", file=sys.stderr)
    sys.exit(1)

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------

DEFAULT_CACHE_DIR = "./cache"
DEFAULT_REPORT_DIR = "./reports"
DEFAULT_CHUNK_SIZE = 256 * 1024  # 256KB
DEFAULT_WORKERS = min(8, os.cpu_count() or 4)
DEFAULT_COPY_WORKERS = 1

CACHE_FILE = "metadata_cache.pkl"
CACHE_VERSION = 1

# In-flight copies live next to their final name under this prefix
TEMP_PREFIX = ".photo-sync-"
TEMP_SUFFIX = ".tmp"

# Digest prefix lengths tried, in order, when a target name is taken
DIGEST_SUFFIX_LENGTHS = (12, 16, 24, 32, 64)

# Mac metadata files/dirs to ignore
IGNORED_FILES = {".DS_Store"}
IGNORED_PREFIXES = ("._", TEMP_PREFIX)
IGNORED_DIRS = {".Trash", ".Trashes", ".Spotlight-V100", ".fseventsd"}

EXIT_OK = 0
EXIT_COPY_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130

# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------


class PhotoSyncError(Exception):
    """Base class for all errors raised by photo_sync."""


class SourceReadError(PhotoSyncError):
    """A file could not be stat'ed or read while scanning or copying."""


class DestinationWriteError(PhotoSyncError):
    """Writing, syncing or renaming a file in the destination failed."""


class CacheCorruptionError(PhotoSyncError):
    """The persisted metadata cache is unreadable or malformed."""


class FatalConfigurationError(PhotoSyncError):
    """The run cannot start (missing roots, overlapping trees, bad limits)."""


# -----------------------------------------------------------------------------
# Data Classes
# -----------------------------------------------------------------------------

@dataclass
class FileRecord:
    """A file observed on disk during one scan."""
    path: Path
    size: int
    modified_time: int
    digest: Optional[str] = None
    from_cache: bool = False


@dataclass
class SyncIssue:
    """A per-file problem recorded in the run report."""
    kind: str
    path: str
    message: str


@dataclass
class DigestIndex:
    """
    Digest -> canonical path for one directory tree.

    On the source side the canonical path is the lexicographically first
    path holding the digest; every other path with the same bytes is kept
    in `duplicates` and never copied. On the destination side it is the
    file already mirrored for that digest.
    """
    root: Path
    entries: dict = field(default_factory=dict)
    # normalized relative names of every file seen, hashed or not
    names: set = field(default_factory=set)
    # (duplicate_path, canonical_path, digest)
    duplicates: list = field(default_factory=list)
    issues: list = field(default_factory=list)
    file_count: int = 0

    def __contains__(self, digest: str) -> bool:
        return digest in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def add(self, digest: str, path: Path) -> Optional[Path]:
        """Record path under digest; returns the existing canonical path if there is one."""
        existing = self.entries.get(digest)
        if existing is not None:
            return existing
        self.entries[digest] = path
        return None

    def relative(self, path: Path) -> Path:
        return path.relative_to(self.root)

    def add_name(self, relative_path: Path):
        self.names.add(name_key(relative_path))

    def has_name(self, relative_path: Path) -> bool:
        return name_key(relative_path) in self.names


@dataclass(frozen=True)
class CopyAction:
    """One planned transfer: read `source`, publish as `target` under the destination root."""
    digest: str
    source: Path
    target: Path


@dataclass
class SyncPlan:
    """Ordered copy actions plus the source files found to be already synced."""
    actions: list = field(default_factory=list)
    # (source_path, matching destination or reference path, digest)
    already_present: list = field(default_factory=list)
    issues: list = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.actions)

    def __iter__(self):
        return iter(self.actions)


@dataclass
class ActionResult:
    """Result of handling a single source file."""
    source_path: str
    action: str  # copied, planned, exact_dup, already_synced, unreadable, failed
    target_path: str = ""
    digest: str = ""
    reason: str = ""
    error: Optional[SyncIssue] = None


@dataclass
class SyncReport:
    """Outcome of one sync run."""
    files_scanned: int = 0
    destination_files: int = 0
    copied: int = 0
    source_duplicates: int = 0
    already_present: int = 0
    failed: int = 0
    dry_run: bool = False
    errors: list = field(default_factory=list)
    warnings: list = field(default_factory=list)

    @property
    def skipped_duplicates(self) -> int:
        return self.source_duplicates + self.already_present

    @property
    def exit_code(self) -> int:
        return EXIT_COPY_FAILED if self.failed else EXIT_OK


@dataclass
class SyncConfig:
    """Settings for one run, normally built from the command line."""
    source: Path
    dest: Path
    cache_dir: Path = Path(DEFAULT_CACHE_DIR)
    refs: list = field(default_factory=list)
    workers: int = DEFAULT_WORKERS
    copy_workers: int = DEFAULT_COPY_WORKERS
    chunk_size: int = DEFAULT_CHUNK_SIZE
    flatten: bool = False
    rehash: bool = False
    dry_run: bool = False
    prune: bool = True
    progress: bool = True

    @property
    def cache_file(self) -> Path:
        return self.cache_dir / CACHE_FILE


# -----------------------------------------------------------------------------
# Utility Functions
# -----------------------------------------------------------------------------

def setup_logging(report_dir: Path) -> logging.Logger:
    """Configure logging to file and console."""
    logger = logging.getLogger("photo_sync")
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()

    # File handler - detailed
    log_file = report_dir / "sync_log.txt"
    fh = logging.FileHandler(log_file, mode='w', encoding='utf-8', errors='backslashreplace')
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))

    # Console handler - summary only
    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)
    ch.setFormatter(logging.Formatter('%(message)s'))

    logger.addHandler(fh)
    logger.addHandler(ch)

    return logger


def should_ignore_file(path: Path) -> bool:
    """Check if a file is Mac metadata or one of our own temp files."""
    name = path.name

    if name in IGNORED_FILES:
        return True

    if any(name.startswith(prefix) for prefix in IGNORED_PREFIXES):
        return True

    return False


def should_ignore_dir(path: Path) -> bool:
    """Check if a directory should be ignored."""
    return path.name in IGNORED_DIRS


def name_key(relative_path: Path) -> str:
    """
    Normalize a relative path for collision checks.

    APFS/HFS+ volumes are case-insensitive and cloud mounts may hand back
    NFD names, so 'IMG_0001.JPG' and 'img_0001.jpg' occupy the same slot.
    """
    return unicodedata.normalize("NFC", relative_path.as_posix()).casefold()


def parent_keys(key: str) -> list[str]:
    """Folder keys enclosing a name_key: 'a/b/c.jpg' -> ['a', 'a/b']."""
    parts = key.split("/")
    return ["/".join(parts[:n]) for n in range(1, len(parts))]


def compute_sha256(file_path: Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """Compute the SHA-256 hex digest of a file in chunks. OSError propagates."""
    hasher = hashlib.sha256()
    with open(file_path, 'rb') as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            hasher.update(chunk)
    return hasher.hexdigest()


def collect_files(root_dir: Path, logger: logging.Logger) -> list[Path]:
    """
    Recursively collect all regular files under a directory, sorted by path.

    Symlinks to files are SKIPPED (not resolved) so a link cannot pull
    content from outside the tree or be counted twice.
    """
    files = []

    for dirpath, dirnames, filenames in os.walk(root_dir, followlinks=False):
        current = Path(dirpath)

        # Filter out ignored directories (modifies in-place to prevent descent)
        dirnames[:] = [d for d in dirnames if not should_ignore_dir(current / d)]

        for filename in filenames:
            file_path = current / filename

            if should_ignore_file(file_path):
                continue

            if file_path.is_symlink():
                logger.debug(f"Skipping symlink: {file_path}")
                continue

            if not file_path.is_file():
                continue

            files.append(file_path)

    files.sort(key=str)
    return files


def sweep_stale_temp_files(dest_root: Path, logger: logging.Logger) -> int:
    """Remove temp files left in the destination by an interrupted run."""
    removed = 0
    for dirpath, _dirnames, filenames in os.walk(dest_root, followlinks=False):
        for filename in filenames:
            if not (filename.startswith(TEMP_PREFIX) and filename.endswith(TEMP_SUFFIX)):
                continue
            stale = Path(dirpath) / filename
            try:
                stale.unlink()
                removed += 1
                logger.debug(f"Removed stale temp file: {stale}")
            except OSError as e:
                logger.warning(f"Could not remove stale temp file {stale}: {e}")
    if removed:
        logger.info(f"Removed {removed} stale temp file(s) from an interrupted run")
    return removed


# -----------------------------------------------------------------------------
# Metadata Cache
# -----------------------------------------------------------------------------

def read_cache_file(cache_file: Path) -> dict:
    """
    Load and validate the pickled cache payload.

    Raises CacheCorruptionError for anything that is not a well-formed
    payload of the current version.
    """
    try:
        with open(cache_file, 'rb') as f:
            payload = pickle.load(f)
    except Exception as e:
        raise CacheCorruptionError(f"Cannot read {cache_file}: {e}") from e

    if not isinstance(payload, dict) or payload.get("version") != CACHE_VERSION:
        raise CacheCorruptionError(f"Unsupported cache payload in {cache_file}")

    entries = payload.get("entries")
    if not isinstance(entries, dict):
        raise CacheCorruptionError(f"Malformed cache entries in {cache_file}")

    for key, value in entries.items():
        if not (isinstance(key, str) and isinstance(value, tuple) and len(value) == 3):
            raise CacheCorruptionError(f"Malformed cache entry for {key!r} in {cache_file}")

    return entries


class MetadataCache:
    """
    Persistent path -> (size, modified_time, digest) table.

    An entry only answers a lookup when both size and modified_time match
    the file on disk. Lookups and stores are thread-safe; the scanners
    call them from hashing workers.
    """

    def __init__(self, cache_file: Optional[Path] = None, entries: Optional[dict] = None):
        self.cache_file = cache_file
        self._entries = entries if entries is not None else {}
        self._touched = set()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path) -> bool:
        return str(path) in self._entries

    @classmethod
    def load(cls, cache_file: Path, logger: logging.Logger) -> "MetadataCache":
        """Load the cache, starting empty if it is missing or corrupt."""
        if not cache_file.exists():
            logger.info(f"No metadata cache at {cache_file}; all files will be hashed")
            return cls(cache_file)

        try:
            entries = read_cache_file(cache_file)
        except CacheCorruptionError as e:
            logger.warning(f"Discarding metadata cache, full rehash required: {e}")
            return cls(cache_file)

        logger.info(f"Loaded metadata cache: {len(entries):,} entries")
        return cls(cache_file, entries)

    def lookup(self, path: Path, size: int, modified_time: int) -> Optional[str]:
        """Return the cached digest only if the stored fingerprint matches exactly."""
        key = str(path)
        with self._lock:
            self._touched.add(key)
            entry = self._entries.get(key)
            if entry is not None and entry[0] == size and entry[1] == modified_time:
                self.hits += 1
                return entry[2]
            self.misses += 1
            return None

    def store(self, path: Path, size: int, modified_time: int, digest: str):
        key = str(path)
        with self._lock:
            self._entries[key] = (size, modified_time, digest)
            self._touched.add(key)

    def prune(self, roots: Iterable[Path]) -> int:
        """Drop entries under the given roots that were not seen this run."""
        prefixes = tuple(os.path.join(str(root), "") for root in roots)
        with self._lock:
            stale = [
                key for key in self._entries
                if key not in self._touched and key.startswith(prefixes)
            ]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def persist(self):
        """Atomically replace the cache file with the current table."""
        if self.cache_file is None:
            return

        with self._lock:
            payload = {"version": CACHE_VERSION, "entries": dict(self._entries)}

        self.cache_file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.cache_file.parent, prefix=f"{self.cache_file.name}.", suffix=TEMP_SUFFIX
        )
        try:
            with os.fdopen(fd, 'wb') as f:
                pickle.dump(payload, f, protocol=pickle.HIGHEST_PROTOCOL)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.cache_file)
        except BaseException:
            with suppress(OSError):
                os.unlink(tmp_name)
            raise


# -----------------------------------------------------------------------------
# Indexing Functions
# -----------------------------------------------------------------------------

def resolve_record(
    file_path: Path,
    cache: MetadataCache,
    chunk_size: int,
    rehash: bool = False
) -> FileRecord:
    """Stat a file and obtain its digest from the cache, hashing on a miss."""
    try:
        stat = file_path.stat()
    except OSError as e:
        raise SourceReadError(f"Cannot stat {file_path}: {e}") from e

    record = FileRecord(path=file_path, size=stat.st_size, modified_time=int(stat.st_mtime))

    if not rehash:
        record.digest = cache.lookup(file_path, record.size, record.modified_time)
        record.from_cache = record.digest is not None

    if record.digest is None:
        try:
            record.digest = compute_sha256(file_path, chunk_size)
        except OSError as e:
            raise SourceReadError(f"Cannot read {file_path}: {e}") from e
        cache.store(file_path, record.size, record.modified_time, record.digest)

    return record


def build_index(
    root: Path,
    cache: MetadataCache,
    workers: int,
    chunk_size: int,
    logger: logging.Logger,
    label: str = "source",
    rehash: bool = False,
    progress: bool = True,
    position: int = 0
) -> DigestIndex:
    """
    Walk a tree and build its digest index.

    Digests come from the cache when the fingerprint is unchanged and are
    computed on a bounded thread pool otherwise. Unreadable files are
    recorded as SourceReadError issues and left out of the index.
    """
    index = DigestIndex(root=root)
    files = collect_files(root, logger)
    index.file_count = len(files)
    for file_path in files:
        index.add_name(index.relative(file_path))

    logger.info(f"Indexing {label} directory: {len(files):,} files in {root}")

    records = []
    hashed_bytes = 0
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {
            executor.submit(resolve_record, f, cache, chunk_size, rehash): f
            for f in files
        }

        for future in tqdm(as_completed(futures), total=len(futures),
                           desc=f"Indexing {label}", unit="files",
                           disable=not progress, position=position):
            file_path = futures[future]
            try:
                record = future.result()
            except SourceReadError as e:
                logger.warning(f"Skipping unreadable file: {e}")
                index.issues.append(SyncIssue("SourceReadError", str(file_path), str(e)))
                continue
            if not record.from_cache:
                hashed_bytes += record.size
            records.append(record)

    # as_completed order is arbitrary; the canonical path must not be
    records.sort(key=lambda r: str(r.path))
    for record in records:
        canonical = index.add(record.digest, record.path)
        if canonical is not None:
            index.duplicates.append((record.path, canonical, record.digest))
            logger.debug(f"Duplicate content: {record.path} == {canonical}")

    cached = sum(1 for r in records if r.from_cache)
    logger.info(
        f"{label.capitalize()} index: {len(index):,} unique digests, "
        f"{len(index.duplicates):,} duplicates, {cached:,} from cache, "
        f"{hashed_bytes / 1_000_000:,.1f}MB hashed, {len(index.issues):,} unreadable"
    )
    return index


# -----------------------------------------------------------------------------
# Sync Planning
# -----------------------------------------------------------------------------

def choose_target_name(
    relative_path: Path,
    digest: str,
    is_taken: Callable[[Path], bool]
) -> Path:
    """
    Pick the destination name for a new digest.

    Keeps the source name when it is free; otherwise appends a digest
    prefix to the stem so reruns reproduce the same name.
    """
    if not is_taken(relative_path):
        return relative_path

    stem = relative_path.stem
    suffix = relative_path.suffix
    for length in DIGEST_SUFFIX_LENGTHS:
        candidate = relative_path.with_name(f"{stem}-{digest[:length]}{suffix}")
        if not is_taken(candidate):
            return candidate

    raise DestinationWriteError(f"No free destination name for {relative_path}")


def plan_sync(
    source_index: DigestIndex,
    dest_index: DigestIndex,
    references: Iterable[DigestIndex] = (),
    flatten: bool = False,
    logger: Optional[logging.Logger] = None
) -> SyncPlan:
    """
    Diff the source index against the destination (and reference) indexes.

    Produces one CopyAction per source digest that is not already synced,
    ordered by source path. The same inputs always give the same plan.
    """
    references = list(references)
    plan = SyncPlan()
    taken = set(dest_index.names)
    folders = {parent for key in taken for parent in parent_keys(key)}

    def is_taken(relative_path: Path) -> bool:
        key = name_key(relative_path)
        if key in taken or key in folders:
            return True
        # a file already sits where one of the target's folders would go
        return any(parent in taken for parent in parent_keys(key))

    for digest, source in sorted(source_index.entries.items(), key=lambda item: str(item[1])):
        match = dest_index.entries.get(digest)
        if match is None:
            for reference in references:
                match = reference.entries.get(digest)
                if match is not None:
                    break

        if match is not None:
            plan.already_present.append((source, match, digest))
            continue

        relative = Path(source.name) if flatten else source_index.relative(source)
        try:
            target = choose_target_name(relative, digest, is_taken)
        except DestinationWriteError as e:
            if relative.parent == Path("."):
                plan.issues.append(SyncIssue("DestinationWriteError", str(source), str(e)))
                continue
            # folder path blocked by a file; place it in the destination root
            try:
                target = choose_target_name(Path(relative.name), digest, is_taken)
            except DestinationWriteError:
                plan.issues.append(SyncIssue("DestinationWriteError", str(source), str(e)))
                continue

        if logger and target != relative:
            logger.debug(f"Name collision: {relative} -> {target}")
        target_key = name_key(target)
        taken.add(target_key)
        folders.update(parent_keys(target_key))
        plan.actions.append(CopyAction(digest=digest, source=source, target=target))

    if logger:
        logger.info(
            f"Sync plan: {len(plan.actions):,} new, "
            f"{len(plan.already_present):,} already synced"
        )
    return plan


# -----------------------------------------------------------------------------
# Copying
# -----------------------------------------------------------------------------

def copy_with_digest(src: Path, dst_file: BinaryIO, chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """
    Stream src into an open destination file, hashing what is written.

    Read failures raise SourceReadError, write/sync failures
    DestinationWriteError. Returns the SHA-256 of the written bytes.
    """
    hasher = hashlib.sha256()
    try:
        src_file = open(src, 'rb')
    except OSError as e:
        raise SourceReadError(f"Cannot open {src}: {e}") from e

    with src_file:
        while True:
            try:
                chunk = src_file.read(chunk_size)
            except OSError as e:
                raise SourceReadError(f"Failed to read {src}: {e}") from e
            if not chunk:
                break
            try:
                dst_file.write(chunk)
            except OSError as e:
                raise DestinationWriteError(f"Failed to write copy of {src}: {e}") from e
            hasher.update(chunk)

    try:
        dst_file.flush()
        os.fsync(dst_file.fileno())
    except OSError as e:
        raise DestinationWriteError(f"Failed to sync copy of {src}: {e}") from e

    return hasher.hexdigest()


def copy_one(action: CopyAction, dest_root: Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Path:
    """
    Copy one planned file into the destination and return its final path.

    The bytes go to a temp file in the target directory and are renamed
    into place only after the digest checks out, so the final name never
    shows a partial file. An existing file is never overwritten.
    """
    final_path = dest_root / action.target

    try:
        final_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = tempfile.NamedTemporaryFile(
            dir=final_path.parent, prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX, delete=False
        )
    except OSError as e:
        raise DestinationWriteError(f"Cannot create temp file for {final_path}: {e}") from e

    tmp_path = Path(tmp.name)
    try:
        try:
            with tmp:
                digest = copy_with_digest(action.source, tmp, chunk_size)
        except OSError as e:
            raise DestinationWriteError(f"Cannot close {tmp_path}: {e}") from e

        if digest != action.digest:
            raise SourceReadError(f"{action.source} changed since it was scanned")

        try:
            shutil.copystat(action.source, tmp_path)
        except OSError as e:
            raise DestinationWriteError(f"Cannot copy timestamps onto {tmp_path}: {e}") from e

        if os.path.lexists(final_path):
            raise DestinationWriteError(f"Refusing to overwrite existing file {final_path}")

        try:
            os.replace(tmp_path, final_path)
        except OSError as e:
            raise DestinationWriteError(f"Cannot rename into {final_path}: {e}") from e
    except BaseException:
        with suppress(OSError):
            tmp_path.unlink()
        raise

    return final_path


def execute_plan(
    plan: SyncPlan,
    dest_index: DigestIndex,
    cache: MetadataCache,
    logger: logging.Logger,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    workers: int = DEFAULT_COPY_WORKERS,
    dry_run: bool = False,
    progress: bool = True,
    on_result: Optional[Callable[[ActionResult], None]] = None
) -> list[ActionResult]:
    """
    Run every copy action, collecting per-action failures instead of stopping.

    A digest is claimed before its copy starts and published to dest_index
    once the rename succeeds, so two actions carrying the same bytes never
    both land in the destination.
    """
    lock = threading.Lock()
    in_flight = set()

    def run_action(action: CopyAction) -> ActionResult:
        source_str = str(action.source)
        target_str = str(dest_index.root / action.target)

        with lock:
            if action.digest in dest_index or action.digest in in_flight:
                return ActionResult(
                    source_path=source_str,
                    action="exact_dup",
                    digest=action.digest,
                    reason="Content already copied during this run"
                )
            in_flight.add(action.digest)

        if dry_run:
            return ActionResult(
                source_path=source_str,
                action="planned",
                target_path=target_str,
                digest=action.digest,
                reason=f"[DRY-RUN] Would copy to {target_str}"
            )

        try:
            final_path = copy_one(action, dest_index.root, chunk_size)
        except SourceReadError as e:
            with lock:
                in_flight.discard(action.digest)
            logger.warning(f"Skipping unreadable source: {e}")
            return ActionResult(
                source_path=source_str,
                action="unreadable",
                target_path=target_str,
                digest=action.digest,
                reason=str(e),
                error=SyncIssue("SourceReadError", source_str, str(e))
            )
        except DestinationWriteError as e:
            with lock:
                in_flight.discard(action.digest)
            logger.error(f"Copy failed for {action.source}: {e}")
            return ActionResult(
                source_path=source_str,
                action="failed",
                target_path=target_str,
                digest=action.digest,
                reason=str(e),
                error=SyncIssue(type(e).__name__, source_str, str(e))
            )

        with lock:
            dest_index.add(action.digest, final_path)
            dest_index.add_name(action.target)
            in_flight.discard(action.digest)

        # Bytes were hashed while copying; record them so the next run skips the rehash
        try:
            stat = final_path.stat()
            cache.store(final_path, stat.st_size, int(stat.st_mtime), action.digest)
        except OSError as e:
            logger.debug(f"Cannot stat new file {final_path}: {e}")

        logger.debug(f"Copied {action.source} -> {final_path}")
        return ActionResult(
            source_path=source_str,
            action="copied",
            target_path=str(final_path),
            digest=action.digest,
            reason=f"Copied to {final_path}"
        )

    if not plan.actions:
        logger.info("Nothing to copy")
        return []

    if dry_run:
        logger.info("*** DRY-RUN MODE - No files will be copied ***")

    order = {action: position for position, action in enumerate(plan.actions)}
    results = {}
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(run_action, action): action for action in plan.actions}

        for future in tqdm(as_completed(futures), total=len(futures),
                           desc="Copying", unit="files", disable=not progress):
            result = future.result()
            results[order[futures[future]]] = result
            if on_result:
                on_result(result)

    return [results[position] for position in sorted(results)]


# -----------------------------------------------------------------------------
# Main Processing
# -----------------------------------------------------------------------------

def validate_config(config: SyncConfig):
    """Raise FatalConfigurationError if the run cannot safely start."""
    for label, root in (("Source", config.source), ("Destination", config.dest)):
        if not root.exists():
            raise FatalConfigurationError(f"{label} directory does not exist: {root}")
        if not root.is_dir():
            raise FatalConfigurationError(f"{label} is not a directory: {root}")

    source_resolved = config.source.resolve()
    dest_resolved = config.dest.resolve()

    if source_resolved == dest_resolved:
        raise FatalConfigurationError("Destination directory cannot be the same as source")

    if dest_resolved.is_relative_to(source_resolved) or source_resolved.is_relative_to(dest_resolved):
        raise FatalConfigurationError("Source and destination directories cannot be nested")

    for ref in config.refs:
        if not ref.is_dir():
            raise FatalConfigurationError(f"Reference directory does not exist: {ref}")
        ref_resolved = ref.resolve()
        if ref_resolved.is_relative_to(source_resolved) or source_resolved.is_relative_to(ref_resolved):
            raise FatalConfigurationError(f"Reference directory cannot overlap the source: {ref}")

    # The cache file would otherwise be scanned as a photo
    cache_resolved = config.cache_dir.resolve()
    if cache_resolved.is_relative_to(source_resolved) or cache_resolved.is_relative_to(dest_resolved):
        raise FatalConfigurationError("Cache directory cannot be inside source or destination")

    if config.workers < 1 or config.copy_workers < 1:
        raise FatalConfigurationError("Worker counts must be at least 1")

    if config.chunk_size < 1:
        raise FatalConfigurationError("Chunk size must be positive")


def scan_rows(source_index: DigestIndex, plan: SyncPlan) -> list[ActionResult]:
    """Report rows for source files that need no copy action."""
    rows = []
    for issue in source_index.issues:
        rows.append(ActionResult(
            source_path=issue.path,
            action="unreadable",
            reason=issue.message,
            error=issue
        ))
    for path, canonical, digest in source_index.duplicates:
        rows.append(ActionResult(
            source_path=str(path),
            action="exact_dup",
            target_path=str(canonical),
            digest=digest,
            reason="Byte-identical to another source file"
        ))
    for path, match, digest in plan.already_present:
        rows.append(ActionResult(
            source_path=str(path),
            action="already_synced",
            target_path=str(match),
            digest=digest,
            reason="Content already in destination"
        ))
    for issue in plan.issues:
        rows.append(ActionResult(
            source_path=issue.path,
            action="failed",
            reason=issue.message,
            error=issue
        ))
    return rows


def run_sync(
    config: SyncConfig,
    logger: logging.Logger,
    csv_writer: Optional[Callable[[ActionResult], None]] = None
) -> SyncReport:
    """
    Main sync workflow.

    Validates the configuration, scans source, destination and reference
    trees concurrently, plans and executes the copies, then prunes and
    persists the metadata cache.
    """
    validate_config(config)

    source_root = config.source.resolve()
    dest_root = config.dest.resolve()
    ref_roots = [ref.resolve() for ref in config.refs]

    cache = MetadataCache.load(config.cache_file, logger)

    if not config.dry_run:
        sweep_stale_temp_files(dest_root, logger)

    roots = [("source", source_root), ("destination", dest_root)]
    roots += [(f"reference {n}", ref) for n, ref in enumerate(ref_roots, start=1)]

    with ThreadPoolExecutor(max_workers=len(roots)) as executor:
        futures = [
            executor.submit(
                build_index, root, cache, config.workers, config.chunk_size, logger,
                label=label, rehash=config.rehash, progress=config.progress, position=position
            )
            for position, (label, root) in enumerate(roots)
        ]
        indexes = [future.result() for future in futures]

    source_index, dest_index, ref_indexes = indexes[0], indexes[1], indexes[2:]

    # Checkpoint: hashing work survives an interrupted copy phase
    cache.persist()
    logger.info(f"Saved metadata cache checkpoint ({len(cache):,} entries)")

    report = SyncReport(dry_run=config.dry_run)
    report.files_scanned = source_index.file_count
    report.destination_files = dest_index.file_count
    report.source_duplicates = len(source_index.duplicates)
    for index in indexes:
        report.warnings.extend(index.issues)

    plan = plan_sync(source_index, dest_index, ref_indexes, flatten=config.flatten, logger=logger)
    report.already_present = len(plan.already_present)
    report.errors.extend(plan.issues)
    report.failed += len(plan.issues)

    if csv_writer:
        for row in scan_rows(source_index, plan):
            csv_writer(row)

    results = execute_plan(
        plan, dest_index, cache, logger,
        chunk_size=config.chunk_size,
        workers=config.copy_workers,
        dry_run=config.dry_run,
        progress=config.progress,
        on_result=csv_writer
    )

    for result in results:
        if result.action in ("copied", "planned"):
            report.copied += 1
        elif result.action == "exact_dup":
            report.source_duplicates += 1
        elif result.action == "failed":
            report.failed += 1
            report.errors.append(result.error)
        elif result.action == "unreadable":
            report.warnings.append(result.error)

    if config.prune:
        pruned = cache.prune([source_root, dest_root, *ref_roots])
        if pruned:
            logger.info(f"Pruned {pruned:,} stale cache entries")

    cache.persist()
    logger.info(f"Saved metadata cache ({len(cache):,} entries, {cache.hits:,} hits, {cache.misses:,} misses)")

    return report


@contextmanager
def streaming_csv_writer(report_dir: Path):
    """
    Context manager for streaming CSV results.

    Flushes every 500 rows for auditability if interrupted.
    """
    csv_path = report_dir / "results.csv"
    # undecodable POSIX names arrive surrogate-escaped
    f = open(csv_path, 'w', newline='', encoding='utf-8', errors='backslashreplace')
    writer = csv.writer(f)
    writer.writerow(["source_path", "action", "target_path", "digest", "reason"])
    row_count = [0]  # mutable counter for closure

    def write_result(result: ActionResult):
        writer.writerow([
            result.source_path, result.action, result.target_path,
            result.digest[:16], result.reason
        ])
        row_count[0] += 1
        if row_count[0] % 500 == 0:
            f.flush()

    try:
        yield write_result
    finally:
        f.close()


def print_summary(report: SyncReport, logger: logging.Logger):
    """Print final summary statistics."""
    logger.info("")
    logger.info("=" * 60)
    logger.info("SUMMARY" + (" (DRY-RUN)" if report.dry_run else ""))
    logger.info("=" * 60)
    logger.info(f"Source files scanned: {report.files_scanned:,}")
    logger.info(f"Destination files:    {report.destination_files:,}")
    logger.info(f"Copied:               {report.copied:,}")
    logger.info(f"Skipped duplicates:   {report.skipped_duplicates:,}")
    logger.info(f"  in-source dups:     {report.source_duplicates:,}")
    logger.info(f"  already synced:     {report.already_present:,}")
    logger.info(f"Unreadable (warned):  {len(report.warnings):,}")
    logger.info(f"Failed copies:        {report.failed:,}")
    logger.info("=" * 60)

    for issue in report.errors:
        logger.error(f"{issue.kind}: {issue.path}: {issue.message}")


# -----------------------------------------------------------------------------
# CLI
# -----------------------------------------------------------------------------

def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Mirror new, content-unique photos from Source into Destination",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Dry-run to see what would be copied
  photo-sync --source /Volumes/iCloud/Photos --dest /Volumes/Archive/Photos --dry-run

  # Scheduled run with a fixed cache location
  photo-sync --source /Volumes/iCloud/Photos --dest /Volumes/Archive/Photos \\
             --cache-dir ~/.cache/photo-sync --no-progress

  # Treat an old export as already synced
  photo-sync --source SRC --dest DEST --ref /Volumes/Old/Export

  # Ignore cached digests and rehash everything once
  photo-sync --source SRC --dest DEST --rehash
        """
    )

    parser.add_argument(
        "--source", type=Path, required=True,
        help="Source photo directory (read-only)"
    )
    parser.add_argument(
        "--dest", type=Path, required=True,
        help="Destination directory to mirror into"
    )
    parser.add_argument(
        "--ref", type=Path, action="append", default=[],
        help="Extra directory whose contents count as already synced (repeatable)"
    )
    parser.add_argument(
        "--cache-dir", type=Path, default=Path(DEFAULT_CACHE_DIR),
        help=f"Directory for the metadata cache (default: {DEFAULT_CACHE_DIR})"
    )
    parser.add_argument(
        "--report-dir", type=Path, default=Path(DEFAULT_REPORT_DIR),
        help=f"Directory for sync_log.txt and results.csv (default: {DEFAULT_REPORT_DIR})"
    )
    parser.add_argument(
        "--workers", type=int, default=DEFAULT_WORKERS,
        help=f"Number of hashing threads per tree (default: {DEFAULT_WORKERS})"
    )
    parser.add_argument(
        "--copy-workers", type=int, default=DEFAULT_COPY_WORKERS,
        help=f"Number of concurrent copies (default: {DEFAULT_COPY_WORKERS})"
    )
    parser.add_argument(
        "--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE,
        help=f"Chunk size for hashing and copying in bytes (default: {DEFAULT_CHUNK_SIZE})"
    )
    parser.add_argument(
        "--flatten", action="store_true",
        help="Copy into the destination root instead of mirroring source folders"
    )
    parser.add_argument(
        "--rehash", action="store_true",
        help="Ignore cached digests and hash every file again"
    )
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Show what would be copied without actually copying"
    )
    parser.add_argument(
        "--no-prune", action="store_true",
        help="Keep cache entries for files that no longer exist"
    )
    parser.add_argument(
        "--no-progress", action="store_true",
        help="Disable progress bars (for cron/launchd)"
    )

    return parser.parse_args(argv)


def config_from_args(args: argparse.Namespace) -> SyncConfig:
    return SyncConfig(
        source=args.source,
        dest=args.dest,
        cache_dir=args.cache_dir,
        refs=list(args.ref),
        workers=args.workers,
        copy_workers=args.copy_workers,
        chunk_size=args.chunk_size,
        flatten=args.flatten,
        rehash=args.rehash,
        dry_run=args.dry_run,
        prune=not args.no_prune,
        progress=not args.no_progress
    )


def main(argv: Optional[list[str]] = None):
    """Main entry point."""
    args = parse_args(argv)
    config = config_from_args(args)

    try:
        validate_config(config)
    except FatalConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)

    args.report_dir.mkdir(parents=True, exist_ok=True)
    logger = setup_logging(args.report_dir)

    logger.info("=" * 60)
    logger.info("PHOTO SYNC")
    logger.info("=" * 60)
    logger.info(f"Source:        {config.source}")
    logger.info(f"Destination:   {config.dest}")
    for ref in config.refs:
        logger.info(f"Reference:     {ref}")
    logger.info(f"Cache:         {config.cache_file}")
    logger.info(f"Log/Report:    {args.report_dir}")
    logger.info(f"Workers:       {config.workers} hashing, {config.copy_workers} copying")
    logger.info(f"Chunk size:    {config.chunk_size:,} bytes")
    logger.info(f"Flatten:       {config.flatten}")
    logger.info(f"Rehash:        {config.rehash}")
    logger.info(f"Dry-run:       {config.dry_run}")
    logger.info(f"Started:       {datetime.now().isoformat()}")
    logger.info("=" * 60)

    try:
        with streaming_csv_writer(args.report_dir) as csv_writer:
            report = run_sync(config, logger, csv_writer)

        logger.info(f"Results written to: {args.report_dir / 'results.csv'}")
        print_summary(report, logger)
        logger.info(f"Completed: {datetime.now().isoformat()}")

    except FatalConfigurationError as e:
        logger.error(f"ERROR: {e}")
        sys.exit(EXIT_CONFIG_ERROR)
    except KeyboardInterrupt:
        logger.info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        raise

    sys.exit(report.exit_code)


if __name__ == "__main__":
    main()
