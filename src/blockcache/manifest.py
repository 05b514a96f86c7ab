"""
Per-namespace manifest of cached batch files, guarded by a file-presence lock.

Every manifest access, read or write, runs under `<manifest>.lock`. The lock is
created with O_EXCL, removed on every exit path, and evicted by contenders once
its mtime is older than `LockOptions.stale_after`.
"""

from __future__ import annotations

import json
import os
import random
import socket
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Iterator

import structlog

log = structlog.get_logger(__name__)


class LockError(RuntimeError):
    """Base class for manifest lock failures."""


class LockTimeoutError(LockError):
    """Raised when the manifest lock could not be acquired within the timeout."""

    def __init__(self, lock_path: Path, holder: "LockMeta | None", age: float, waited: float) -> None:
        held_by = f" (held by pid={holder.pid} host={holder.host} since {holder.at})" if holder else ""
        super().__init__(
            f"Timeout acquiring manifest lock: {lock_path}{held_by}; age={age:.3f}s; waited={waited:.3f}s"
        )
        self.lock_path = lock_path
        self.holder = holder
        self.age = age
        self.waited = waited


class LockCancelledError(LockError):
    """Raised when a lock wait is aborted through its cancel event."""


@dataclass(frozen=True)
class LockOptions:
    """Lock acquisition tuning, all durations in seconds."""

    timeout: float = 15.0
    stale_after: float = 60.0
    base_delay: float = 0.025
    backoff_factor: float = 1.5
    max_delay: float = 0.5
    jitter: float = 0.025


@dataclass(frozen=True)
class LockMeta:
    pid: int
    host: str
    at: str

    @classmethod
    def current(cls) -> "LockMeta":
        at = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        return cls(pid=os.getpid(), host=socket.gethostname(), at=at)

    def to_dict(self) -> dict[str, Any]:
        return {"pid": self.pid, "host": self.host, "at": self.at}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LockMeta":
        return cls(pid=int(data["pid"]), host=str(data["host"]), at=str(data["at"]))


@dataclass(frozen=True)
class ManifestEntry:
    path: str
    min_block: int
    max_block: int

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "minBlock": self.min_block, "maxBlock": self.max_block}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ManifestEntry":
        return cls(path=str(data["path"]), min_block=int(data["minBlock"]), max_block=int(data["maxBlock"]))


@dataclass(frozen=True)
class Manifest:
    """Index of the batch files cached in one namespace."""

    files: tuple[ManifestEntry, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "files", tuple(self.files))

    def append(self, entry: ManifestEntry) -> "Manifest":
        """Return a new manifest with `entry` added, kept sorted by min_block."""
        return Manifest(files=tuple(sorted((*self.files, entry), key=lambda item: item.min_block)))

    def to_dict(self) -> dict[str, Any]:
        return {"files": [entry.to_dict() for entry in self.files]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Manifest":
        return cls(files=tuple(ManifestEntry.from_dict(item) for item in data.get("files", [])))


@dataclass(frozen=True)
class ReplayFile:
    abs_path: Path
    min_block: int
    max_block: int


def lock_path_for(manifest_path: Path) -> Path:
    return manifest_path.with_name(manifest_path.name + ".lock")


def _try_create_lock(lock_path: Path) -> bool:
    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        json.dump(LockMeta.current().to_dict(), handle)
    return True


def _lock_age(lock_path: Path) -> float:
    try:
        return max(0.0, time.time() - lock_path.stat().st_mtime)
    except FileNotFoundError:
        return 0.0


def read_lock_meta(lock_path: Path) -> LockMeta | None:
    try:
        with lock_path.open("r", encoding="utf-8") as handle:
            return LockMeta.from_dict(json.load(handle))
    except (OSError, ValueError, KeyError, TypeError):
        return None


def acquire_lock(
    manifest_path: str | Path,
    options: LockOptions | None = None,
    cancel: threading.Event | None = None,
) -> Path:
    """Block until the manifest lock is held, evicting stale locks along the way."""
    opts = options or LockOptions()
    manifest_path = Path(manifest_path)
    lock_path = lock_path_for(manifest_path)
    manifest_path.parent.mkdir(parents=True, exist_ok=True)

    if _try_create_lock(lock_path):
        return lock_path

    started = time.monotonic()
    delay = opts.base_delay
    while True:
        age = _lock_age(lock_path)
        if age > opts.stale_after:
            log.warning(
                "stale_lock_evicted",
                lock_path=str(lock_path),
                age=round(age, 3),
                holder=read_lock_meta(lock_path),
            )
            lock_path.unlink(missing_ok=True)

        if _try_create_lock(lock_path):
            return lock_path

        waited = time.monotonic() - started
        if waited >= opts.timeout:
            raise LockTimeoutError(lock_path, read_lock_meta(lock_path), age, waited)

        pause = min(delay + random.uniform(0, max(0.0, opts.jitter)), opts.max_delay)
        if cancel is not None:
            if cancel.wait(pause):
                raise LockCancelledError(f"Lock wait cancelled: {lock_path}")
        else:
            time.sleep(pause)
        delay = min(delay * opts.backoff_factor, opts.max_delay)


def release_lock(manifest_path: str | Path) -> None:
    lock_path_for(Path(manifest_path)).unlink(missing_ok=True)


@contextmanager
def manifest_lock(
    manifest_path: str | Path,
    options: LockOptions | None = None,
    cancel: threading.Event | None = None,
) -> Iterator[Path]:
    lock_path = acquire_lock(manifest_path, options, cancel)
    try:
        yield lock_path
    finally:
        release_lock(manifest_path)


def _read_manifest(manifest_path: Path) -> Manifest:
    try:
        with manifest_path.open("r", encoding="utf-8") as handle:
            return Manifest.from_dict(json.load(handle))
    except FileNotFoundError:
        return Manifest()
    except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
        log.warning("manifest_unreadable", manifest_path=str(manifest_path), error=str(exc))
        return Manifest()


def _write_manifest(manifest_path: Path, manifest: Manifest) -> None:
    temp_path = manifest_path.with_name(manifest_path.name + ".tmp")
    try:
        with temp_path.open("w", encoding="utf-8") as handle:
            json.dump(manifest.to_dict(), handle, indent=2)
        os.replace(temp_path, manifest_path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def resolve_entries(manifest_path: Path, manifest: Manifest) -> list[ReplayFile]:
    base = manifest_path.parent
    return [
        ReplayFile(
            abs_path=base.joinpath(*PurePosixPath(entry.path).parts),
            min_block=entry.min_block,
            max_block=entry.max_block,
        )
        for entry in manifest.files
    ]


def with_manifest(
    manifest_path: str | Path,
    mutate: Callable[[Manifest], Manifest] | None = None,
    *,
    options: LockOptions | None = None,
    cancel: threading.Event | None = None,
) -> Any:
    """
    Read or mutate a manifest under its lock.

    Without `mutate`, return the entries as ReplayFile records with absolute
    paths. With `mutate`, persist and return `mutate(current)`. A missing or
    corrupt manifest reads as empty.
    """
    manifest_path = Path(manifest_path)
    with manifest_lock(manifest_path, options, cancel):
        current = _read_manifest(manifest_path)
        if mutate is None:
            return resolve_entries(manifest_path, current)
        updated = mutate(current)
        _write_manifest(manifest_path, updated)
        return updated
