"""
Orchestrated replay of cached batches into caller-supplied runners.

Targets run on a bounded thread pool; every target settles independently and a
failing target never cancels its siblings.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

import structlog

from blockcache.config import CacheSettings
from blockcache.coverage import intersects
from blockcache.models import Batch
from blockcache.recorder import Recorder

log = structlog.get_logger(__name__)

T = TypeVar("T")


class RunnerContractError(TypeError):
    """Raised when a runner does not expose a callable replay_batch."""


class BatchRunner(Protocol):
    def replay_batch(self, project: str, chain: str, batches: Sequence[Batch]) -> None: ...


def ensure_runner(runner: Any, *, name: str | None = None) -> BatchRunner:
    if not callable(getattr(runner, "replay_batch", None)):
        label = name or type(runner).__name__
        raise RunnerContractError(f"Runner {label} must provide replay_batch(project, chain, batches)")
    return runner


@dataclass(frozen=True)
class ReplayTarget:
    project: str
    chain: str
    runner: BatchRunner
    identity: Any = None

    def __post_init__(self) -> None:
        ensure_runner(self.runner, name=f"for {self.label}")

    @property
    def label(self) -> str:
        return f"{self.project}/{self.chain}"


@dataclass
class TargetResult:
    target: str
    config_hash: str
    files: int = 0
    batches: int = 0
    skipped_files: int = 0


@dataclass
class ReplaySummary:
    succeeded: list[TargetResult] = field(default_factory=list)
    failed: list[tuple[str, BaseException]] = field(default_factory=list)
    planned: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def _in_block_range(height: int, from_block: int | None, to_block: int | None) -> bool:
    if from_block is not None and height < from_block:
        return False
    if to_block is not None and height > to_block:
        return False
    return True


def replay_target(
    target: ReplayTarget,
    settings: CacheSettings,
    from_block: int | None = None,
    to_block: int | None = None,
) -> TargetResult:
    """Feed every cached group for `target` to its runner, honouring an optional block range."""
    recorder = Recorder(target.project, target.chain, target.identity, settings=settings, mode="replay")
    result = TargetResult(target=target.label, config_hash=recorder.config_hash)
    files = recorder.list_replay_files()
    if not files:
        log.info("replay_no_cache", target=target.label, config_hash=recorder.config_hash)
        return result

    lo = from_block if from_block is not None else float("-inf")
    hi = to_block if to_block is not None else float("inf")
    log.info("replay_start", target=target.label, config_hash=recorder.config_hash, files=len(files))
    for item in files:
        if not intersects(lo, hi, item.min_block, item.max_block):
            result.skipped_files += 1
            continue
        if not item.abs_path.exists():
            log.warning("cache_file_missing", target=target.label, file=str(item.abs_path))
            result.skipped_files += 1
            continue
        result.files += 1
        with recorder.read_file(item.abs_path) as reader:
            for group in reader:
                batches = [batch for batch in group if _in_block_range(batch.height, from_block, to_block)]
                if not batches:
                    continue
                target.runner.replay_batch(target.project, target.chain, batches)
                result.batches += len(batches)
    log.info("replay_done", target=target.label, files=result.files, batches=result.batches)
    return result


def _project_chain(target: Any) -> tuple[str, str]:
    if isinstance(target, Mapping):
        return target["project"], target["chain"]
    return target.project, target.chain


def select_targets(
    targets: Iterable[T],
    projects: Iterable[str] | None = None,
    chains: Iterable[str] | None = None,
) -> list[T]:
    """Keep targets (ReplayTarget or raw `{project, chain, ...}` records) matching the filters."""
    project_set = set(projects) if projects else None
    chain_set = set(chains) if chains else None
    selected = []
    for target in targets:
        project, chain = _project_chain(target)
        if (project_set is None or project in project_set) and (chain_set is None or chain in chain_set):
            selected.append(target)
    return selected


def run_replay(
    targets: Iterable[ReplayTarget],
    settings: CacheSettings,
    *,
    concurrency: int | None = None,
    projects: Iterable[str] | None = None,
    chains: Iterable[str] | None = None,
    from_block: int | None = None,
    to_block: int | None = None,
    dry_run: bool = False,
) -> ReplaySummary:
    """Replay all selected targets with at most `concurrency` running at once."""
    if from_block is not None and to_block is not None and from_block > to_block:
        raise ValueError("from_block must be less than or equal to to_block")
    selected = select_targets(targets, projects, chains)
    summary = ReplaySummary(planned=[target.label for target in selected])
    if dry_run:
        for target in selected:
            log.info("replay_planned", target=target.label, runner=type(target.runner).__name__)
        return summary

    workers = max(1, concurrency or settings.replay_concurrency)
    log.info("replay_run_start", targets=len(selected), concurrency=workers)
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="blockcache-replay") as pool:
        futures = [
            (target.label, pool.submit(replay_target, target, settings, from_block, to_block))
            for target in selected
        ]
        for label, future in futures:
            try:
                summary.succeeded.append(future.result())
            except Exception as exc:
                log.exception("replay_failed", target=label)
                summary.failed.append((label, exc))
    log.info("replay_run_done", ok=len(summary.succeeded), failed=len(summary.failed))
    return summary
