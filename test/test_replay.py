from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

import pytest

from blockcache import Batch, CacheSettings, Recorder, ReplayTarget, RunnerContractError, run_replay
from blockcache.replay import replay_target, select_targets

NOW = datetime(2026, 2, 5, tzinfo=timezone.utc)


class CollectingRunner:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, list[int]]] = []
        self._lock = threading.Lock()

    def replay_batch(self, project: str, chain: str, batches: Sequence[Batch]) -> None:
        with self._lock:
            self.calls.append((project, chain, [batch.height for batch in batches]))


class FailingRunner:
    def replay_batch(self, project: str, chain: str, batches: Sequence[Batch]) -> None:
        raise RuntimeError("database unavailable")


class SlowRunner:
    def __init__(self) -> None:
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def replay_batch(self, project: str, chain: str, batches: Sequence[Batch]) -> None:
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        time.sleep(0.02)
        with self._lock:
            self.active -= 1


def _settings(tmp_path: Path) -> CacheSettings:
    return CacheSettings(root=tmp_path, lock_base_delay_ms=1, lock_max_delay_ms=5)


def _seed(settings: CacheSettings, project: str, chain: str, ranges: list[tuple[int, int]], identity=None) -> None:
    recorder = Recorder(project, chain, identity, settings=settings)
    for lo, hi in ranges:
        recorder.record_batch([{"header": {"height": h}} for h in range(lo, hi + 1)], now=NOW)


def test_replay_target_calls_runner_once_per_file(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    _seed(settings, "events", "arbitrum", [(20, 22), (10, 12)])
    runner = CollectingRunner()

    result = replay_target(ReplayTarget("events", "arbitrum", runner), settings)

    assert runner.calls == [("events", "arbitrum", [10, 11, 12]), ("events", "arbitrum", [20, 21, 22])]
    assert result.files == 2
    assert result.batches == 6


def test_block_range_filters_files_and_batches(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    _seed(settings, "events", "arbitrum", [(0, 9), (10, 19), (20, 29)])
    runner = CollectingRunner()

    result = replay_target(ReplayTarget("events", "arbitrum", runner), settings, from_block=15, to_block=21)

    assert [call[2] for call in runner.calls] == [[15, 16, 17, 18, 19], [20, 21]]
    assert result.skipped_files == 1


def test_target_without_cache_is_a_success(tmp_path: Path) -> None:
    runner = CollectingRunner()
    summary = run_replay([ReplayTarget("events", "base", runner)], _settings(tmp_path), concurrency=1)
    assert summary.ok
    assert summary.succeeded[0].files == 0
    assert runner.calls == []


def test_failures_are_isolated(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    _seed(settings, "events", "arbitrum", [(1, 3)])
    _seed(settings, "analytics", "arbitrum", [(1, 3)])
    good = CollectingRunner()

    summary = run_replay(
        [ReplayTarget("events", "arbitrum", FailingRunner()), ReplayTarget("analytics", "arbitrum", good)],
        settings,
        concurrency=2,
    )

    assert not summary.ok
    assert [label for label, _ in summary.failed] == ["events/arbitrum"]
    assert isinstance(summary.failed[0][1], RuntimeError)
    assert [result.target for result in summary.succeeded] == ["analytics/arbitrum"]
    assert good.calls == [("analytics", "arbitrum", [1, 2, 3])]


def test_concurrency_bound_is_respected(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    runner = SlowRunner()
    targets = []
    for idx in range(6):
        _seed(settings, f"p{idx}", "arbitrum", [(1, 1)])
        targets.append(ReplayTarget(f"p{idx}", "arbitrum", runner))

    summary = run_replay(targets, settings, concurrency=2)

    assert len(summary.succeeded) == 6
    assert runner.peak <= 2


def test_filters_and_dry_run(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    _seed(settings, "events", "arbitrum", [(1, 3)])
    runner = CollectingRunner()
    targets = [
        ReplayTarget("events", "arbitrum", runner),
        ReplayTarget("events", "base", runner),
        ReplayTarget("analytics", "arbitrum", runner),
    ]

    summary = run_replay(targets, settings, projects=["events"], chains=["arbitrum"], dry_run=True)

    assert summary.planned == ["events/arbitrum"]
    assert summary.succeeded == []
    assert runner.calls == []


def test_identity_selects_namespace(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    _seed(settings, "events", "arbitrum", [(1, 2)], identity={"version": "v1"})
    _seed(settings, "events", "arbitrum", [(5, 6)], identity={"version": "v2"})
    runner = CollectingRunner()

    replay_target(ReplayTarget("events", "arbitrum", runner, {"version": "v2"}), settings)

    assert runner.calls == [("events", "arbitrum", [5, 6])]


def test_runner_contract_is_checked_up_front() -> None:
    with pytest.raises(RunnerContractError):
        ReplayTarget("events", "arbitrum", object())


def test_invalid_block_range_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        run_replay([], _settings(tmp_path), from_block=10, to_block=1)


def test_select_targets_accepts_raw_target_records() -> None:
    records = [
        {"project": "events", "chain": "arbitrum", "runner": "a.py"},
        {"project": "events", "chain": "base", "runner": "b.py"},
        {"project": "analytics", "chain": "arbitrum", "runner": "c.py"},
    ]
    assert select_targets(records, projects=["events"]) == records[:2]
    assert select_targets(records, chains=["arbitrum"]) == [records[0], records[2]]
    assert select_targets(records) == records
