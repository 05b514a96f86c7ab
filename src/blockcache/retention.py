"""
Retention over the cache tree `<root>/<project>/<chain>/<fingerprint>/<YYYY-MM-DD>`.

Both policies delete whole date partitions and never consult manifests;
manifest entries pointing at deleted files are tolerated by readers.
"""

from __future__ import annotations

import os
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Iterator

import structlog

log = structlog.get_logger(__name__)

DATE_PARTITION_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass(frozen=True)
class PruneFilters:
    """Optional project/chain allow-lists; None means no restriction."""

    projects: frozenset[str] | None = None
    chains: frozenset[str] | None = None

    def __post_init__(self) -> None:
        if self.projects is not None:
            object.__setattr__(self, "projects", frozenset(self.projects))
        if self.chains is not None:
            object.__setattr__(self, "chains", frozenset(self.chains))

    @classmethod
    def from_lists(cls, projects: Iterable[str] | None = None, chains: Iterable[str] | None = None) -> "PruneFilters":
        return cls(
            projects=frozenset(projects) if projects else None,
            chains=frozenset(chains) if chains else None,
        )


@dataclass(frozen=True)
class DatePartition:
    path: Path
    day: datetime


@dataclass
class PruneReport:
    removed: list[Path] = field(default_factory=list)
    failed: list[Path] = field(default_factory=list)
    bytes_before: int | None = None
    bytes_after: int | None = None
    dry_run: bool = False

    @property
    def count(self) -> int:
        return len(self.removed)

    @property
    def ok(self) -> bool:
        return not self.failed


def _safe_listdir(path: Path) -> list[str]:
    try:
        return sorted(os.listdir(path))
    except OSError:
        return []


def parse_partition_day(name: str) -> datetime | None:
    """Return UTC midnight for a `YYYY-MM-DD` partition name, or None if it is not one."""
    if not DATE_PARTITION_RE.match(name):
        return None
    try:
        return datetime.strptime(name, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def dir_size_bytes(path: Path) -> int:
    """Recursive size of regular files under `path`, without following symlinks."""
    total = 0
    for name in _safe_listdir(path):
        full = path / name
        try:
            stat = full.lstat()
        except OSError:
            continue
        if full.is_dir() and not full.is_symlink():
            total += dir_size_bytes(full)
        else:
            total += stat.st_size
    return total


def _iter_fingerprint_dirs(root: Path, filters: PruneFilters) -> Iterator[Path]:
    for project in _safe_listdir(root):
        if filters.projects is not None and project not in filters.projects:
            continue
        project_dir = root / project
        for chain in _safe_listdir(project_dir):
            if filters.chains is not None and chain not in filters.chains:
                continue
            chain_dir = project_dir / chain
            for config_hash in _safe_listdir(chain_dir):
                hash_dir = chain_dir / config_hash
                if hash_dir.is_dir():
                    yield hash_dir


def collect_date_partitions(root: str | Path, filters: PruneFilters | None = None) -> list[DatePartition]:
    """All date partitions in scope, oldest first."""
    items: list[DatePartition] = []
    for hash_dir in _iter_fingerprint_dirs(Path(root), filters or PruneFilters()):
        for name in _safe_listdir(hash_dir):
            day = parse_partition_day(name)
            partition = hash_dir / name
            if day is None or not partition.is_dir():
                continue
            items.append(DatePartition(path=partition, day=day))
    items.sort(key=lambda item: (item.day, str(item.path)))
    return items


def total_size(root: str | Path, filters: PruneFilters | None = None) -> int:
    return sum(dir_size_bytes(hash_dir) for hash_dir in _iter_fingerprint_dirs(Path(root), filters or PruneFilters()))


def _remove(path: Path, report: PruneReport) -> bool:
    if report.dry_run:
        report.removed.append(path)
        return True
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        log.error("partition_delete_failed", path=str(path), error=str(exc))
        report.failed.append(path)
        return False
    report.removed.append(path)
    return True


def prune_by_age(
    root: str | Path,
    days: int,
    filters: PruneFilters | None = None,
    dry_run: bool = False,
    now: datetime | None = None,
) -> PruneReport:
    """Delete date partitions whose UTC midnight is at or before `now - days`."""
    if days < 0:
        raise ValueError("days must be non-negative")
    now_utc = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    cutoff = now_utc - timedelta(days=days)
    report = PruneReport(dry_run=dry_run)
    for partition in collect_date_partitions(root, filters):
        if partition.day > cutoff:
            continue
        log.info("partition_delete", policy="age", path=str(partition.path), dry_run=dry_run)
        _remove(partition.path, report)
    log.info("prune_by_age_done", removed=report.count, failed=len(report.failed), days=days, dry_run=dry_run)
    return report


def prune_by_size(
    root: str | Path,
    max_bytes: int,
    filters: PruneFilters | None = None,
    dry_run: bool = False,
) -> PruneReport:
    """Delete oldest date partitions until the filtered cache size is at or below `max_bytes`."""
    if max_bytes < 0:
        raise ValueError("max_bytes must be non-negative")
    current = total_size(root, filters)
    report = PruneReport(bytes_before=current, bytes_after=current, dry_run=dry_run)
    log.info("prune_by_size_start", current_bytes=current, max_bytes=max_bytes)
    if current <= max_bytes:
        log.info("prune_by_size_noop", current_bytes=current, max_bytes=max_bytes)
        return report

    for partition in collect_date_partitions(root, filters):
        size = dir_size_bytes(partition.path)
        log.info("partition_delete", policy="size", path=str(partition.path), bytes=size, dry_run=dry_run)
        if not _remove(partition.path, report):
            continue
        current -= size
        if current <= max_bytes:
            break

    report.bytes_after = current
    log.info("prune_by_size_done", removed=report.count, estimated_bytes=current, dry_run=dry_run)
    return report
