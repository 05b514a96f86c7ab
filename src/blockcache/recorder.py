from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

import structlog

from blockcache.codec import BatchFileReader, read_batch_file, write_batch_file
from blockcache.config import CacheMode, CacheSettings
from blockcache.coverage import (
    block_range,
    fully_covered,
    is_complete,
    select_overlapping,
    stitch_batches,
)
from blockcache.hashing import fingerprint, namespace_path
from blockcache.manifest import ManifestEntry, ReplayFile, with_manifest
from blockcache.models import Batch, normalize_batches

FILE_KIND = "evm-batch"
FILE_VERSION = 1
MANIFEST_NAME = "manifest.json"


def _isoformat_z(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _as_bound_logger(logger: Any | None) -> Any:
    if logger is None:
        return structlog.get_logger(__name__)
    if not hasattr(logger, "bind"):
        return structlog.wrap_logger(logger)
    return logger


class Recorder:
    """Record, list, replay and auto-swap cached batches for one project/chain/identity namespace."""

    def __init__(
        self,
        project: str,
        chain: str,
        identity: Any,
        *,
        settings: CacheSettings | None = None,
        root: str | Path | None = None,
        mode: CacheMode | None = None,
        logger: Any | None = None,
    ) -> None:
        # model_construct skips the environment; callers opt in via load_settings().
        self._settings = settings if settings is not None else CacheSettings.model_construct()
        self._project = project
        self._chain = chain
        self._root = Path(root) if root is not None else Path(self._settings.root)
        self._mode: CacheMode = mode or self._settings.mode
        self._config_hash = fingerprint(project, chain, identity)
        self._base_dir = namespace_path(self._root, project, chain, self._config_hash)
        self._lock_options = self._settings.lock_options()
        self._log = _as_bound_logger(logger).bind(
            namespace=f"{project}/{chain}@{self._config_hash}"
        )
        self._log.info("cache_ready", base_dir=str(self._base_dir), mode=self._mode)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def project(self) -> str:
        return self._project

    @property
    def chain(self) -> str:
        return self._chain

    @property
    def config_hash(self) -> str:
        return self._config_hash

    @property
    def mode(self) -> CacheMode:
        return self._mode

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    @property
    def manifest_path(self) -> Path:
        return self._base_dir / MANIFEST_NAME

    def record_batch(self, raw_batches: Sequence[Any], *, now: datetime | None = None) -> Path | None:
        """Persist one batch set and index it in the manifest; returns the file written."""
        if self._mode in ("replay", "off"):
            self._log.debug("record_skipped", reason=f"mode={self._mode}")
            return None
        if not raw_batches:
            self._log.debug("record_skipped", reason="empty batch")
            return None

        batches = normalize_batches(raw_batches)
        min_block = batches[0].height
        max_block = batches[-1].height
        now_utc = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        day_dir = self._base_dir / now_utc.date().isoformat()
        day_dir.mkdir(parents=True, exist_ok=True)
        destination = day_dir / f"{min_block}-{max_block}.ndjson.gz"

        header = {
            "kind": FILE_KIND,
            "project": self._project,
            "chain": self._chain,
            "configHash": self._config_hash,
            "fileVersion": FILE_VERSION,
            "minBlock": min_block,
            "maxBlock": max_block,
            "createdAt": _isoformat_z(now_utc),
        }
        write_batch_file(destination, header, batches)

        entry = ManifestEntry(
            path=destination.relative_to(self._base_dir).as_posix(),
            min_block=min_block,
            max_block=max_block,
        )
        with_manifest(self.manifest_path, lambda manifest: manifest.append(entry), options=self._lock_options)

        total_logs = sum(len(batch.logs) for batch in batches)
        self._log.info("batch_cached", min_block=min_block, max_block=max_block, logs=total_logs)
        return destination

    def list_replay_files(self) -> list[ReplayFile]:
        files: list[ReplayFile] = with_manifest(self.manifest_path, options=self._lock_options)
        self._log.info("replay_index", files=len(files))
        return files

    def read_file(self, abs_path: str | Path, *, group_size: int | None = None) -> BatchFileReader:
        """Open the cached file at `abs_path` as groups of Batch records."""
        path = Path(abs_path)
        self._log.info("cache_file_opened", file=path.name)
        return read_batch_file(path, skip_header=True, group_size=group_size, decode=Batch.from_dict)

    def auto_swap_blocks(self, live_batches: Sequence[Any], *, logger: Any | None = None) -> list[Any]:
        """
        Return cached batches in place of `live_batches` when the cache provably covers them.

        Falls back to `live_batches` unchanged whenever auto-use is off, nothing
        overlaps, or full coverage is required and cannot be established.
        """
        if not self._settings.auto_use or not live_batches:
            return list(live_batches)
        log = _as_bound_logger(logger) if logger is not None else self._log
        require_full = self._settings.auto_require_full_cover

        lo, hi = block_range(normalize_batches(live_batches))
        files = self.list_replay_files()
        if not files:
            return list(live_batches)

        in_range = select_overlapping(files, lo, hi)
        if not in_range:
            return list(live_batches)

        if require_full and not fully_covered(lo, hi, [(item.min_block, item.max_block) for item in in_range]):
            log.debug("auto_swap_skipped", reason="coverage not full", min_block=lo, max_block=hi)
            return list(live_batches)

        groups: list[list[Batch]] = []
        for item in in_range:
            if not item.abs_path.exists():
                log.warning("cache_file_missing", file=str(item.abs_path))
                if require_full:
                    return list(live_batches)
                continue
            with self.read_file(item.abs_path) as reader:
                groups.extend(reader)

        stitched = stitch_batches(groups, lo, hi)
        if require_full and not is_complete(stitched, lo, hi):
            log.debug("auto_swap_skipped", reason="stitched batches incomplete", min_block=lo, max_block=hi)
            return list(live_batches)
        if not stitched:
            return list(live_batches)

        log.info(
            "auto_swap_used",
            project=self._project,
            chain=self._chain,
            min_block=lo,
            max_block=hi,
            files=len(in_range),
        )
        return stitched

