from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from click.testing import CliRunner

import blockcache.cli as cli_module
from blockcache import CacheSettings, Recorder
from blockcache.cli import cli, load_runner
from blockcache.replay import RunnerContractError

RUNNER_SOURCE = """
from pathlib import Path

CALLS = Path(__file__).with_name("calls.txt")


class Runner:
    def replay_batch(self, project, chain, batches):
        with CALLS.open("a", encoding="utf-8") as handle:
            handle.write(f"{project}/{chain}:{','.join(str(b.height) for b in batches)}\\n")


def replay_batch(project, chain, batches):
    Runner().replay_batch(project, chain, batches)


not_a_runner = 42
"""


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli_module, "configure_logging", lambda *args, **kwargs: None)


def _seed(root: Path, project: str, chain: str, heights: range, identity=None) -> None:
    recorder = Recorder(project, chain, identity, settings=CacheSettings(root=root))
    recorder.record_batch([{"header": {"height": h}} for h in heights], now=datetime(2026, 2, 5, tzinfo=timezone.utc))


def _write_targets(tmp_path: Path, targets: list[dict]) -> Path:
    (tmp_path / "my_runner.py").write_text(RUNNER_SOURCE, encoding="utf-8")
    path = tmp_path / "targets.json"
    path.write_text(json.dumps(targets), encoding="utf-8")
    return path


def test_clean_requires_a_policy(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["--root", str(tmp_path), "clean"])
    assert result.exit_code == 2
    assert "--days or --max-bytes" in result.output


def test_clean_by_days_reports_count(tmp_path: Path) -> None:
    old_day = (datetime.now(timezone.utc) - timedelta(days=30)).date().isoformat()
    partition = tmp_path / "events" / "arbitrum" / "0123456789abcdef" / old_day
    partition.mkdir(parents=True)
    (partition / "1-1.ndjson.gz").write_bytes(b"x")

    result = CliRunner().invoke(cli, ["--root", str(tmp_path), "clean", "--days", "14", "--dry-run"])
    assert result.exit_code == 0, result.output
    assert "Pruned by days: 1 folder(s)" in result.output
    assert partition.exists()

    result = CliRunner().invoke(cli, ["--root", str(tmp_path), "clean", "--days", "14"])
    assert result.exit_code == 0, result.output
    assert not partition.exists()


def test_clean_by_size_reports_estimate(tmp_path: Path) -> None:
    partition = tmp_path / "events" / "arbitrum" / "0123456789abcdef" / "2026-01-01"
    partition.mkdir(parents=True)
    (partition / "1-1.ndjson.gz").write_bytes(b"x" * 50)

    result = CliRunner().invoke(cli, ["--root", str(tmp_path), "clean", "--max-bytes", "10"])
    assert result.exit_code == 0, result.output
    assert "Pruned by size: 1 folder(s); new est. size ~0 bytes" in result.output


def test_replay_runs_targets_and_summarizes(tmp_path: Path) -> None:
    cache_root = tmp_path / "cache"
    _seed(cache_root, "events", "arbitrum", range(1, 4), identity={"v": 1})
    _seed(cache_root, "analytics", "base", range(7, 9))
    targets = _write_targets(
        tmp_path,
        [
            {"project": "events", "chain": "arbitrum", "runner": "my_runner.py:Runner", "configIdentity": {"v": 1}},
            {"project": "analytics", "chain": "base", "runner": "my_runner.py"},
        ],
    )

    result = CliRunner().invoke(cli, ["--root", str(cache_root), "replay", "--targets", str(targets), "-c", "2"])

    assert result.exit_code == 0, result.output
    assert "Replay complete: ok=2 fail=0" in result.output
    calls = sorted((tmp_path / "calls.txt").read_text(encoding="utf-8").splitlines())
    assert calls == ["analytics/base:7,8", "events/arbitrum:1,2,3"]


def test_replay_block_range_and_filters(tmp_path: Path) -> None:
    cache_root = tmp_path / "cache"
    _seed(cache_root, "events", "arbitrum", range(1, 11))
    targets = _write_targets(
        tmp_path,
        [
            {"project": "events", "chain": "arbitrum", "runner": "my_runner.py:Runner"},
            {"project": "events", "chain": "base", "runner": "my_runner.py:Runner"},
        ],
    )

    result = CliRunner().invoke(
        cli,
        ["--root", str(cache_root), "replay", "-t", str(targets), "-n", "arbitrum", "--from-block", "4", "--to-block", "6"],
    )

    assert result.exit_code == 0, result.output
    assert "ok=1 fail=0" in result.output
    assert (tmp_path / "calls.txt").read_text(encoding="utf-8").splitlines() == ["events/arbitrum:4,5,6"]


def test_replay_bad_runner_fails_only_that_target(tmp_path: Path) -> None:
    cache_root = tmp_path / "cache"
    _seed(cache_root, "events", "arbitrum", range(1, 3))
    targets = _write_targets(
        tmp_path,
        [
            {"project": "events", "chain": "arbitrum", "runner": "my_runner.py:Runner"},
            {"project": "events", "chain": "base", "runner": "my_runner.py:not_a_runner"},
        ],
    )

    result = CliRunner().invoke(cli, ["--root", str(cache_root), "replay", "-t", str(targets)])

    assert result.exit_code == 1
    assert "Replay complete: ok=1 fail=1" in result.output
    assert (tmp_path / "calls.txt").read_text(encoding="utf-8").splitlines() == ["events/arbitrum:1,2"]


def test_replay_dry_run_lists_plan(tmp_path: Path) -> None:
    targets = _write_targets(tmp_path, [{"project": "events", "chain": "arbitrum", "runner": "my_runner.py"}])
    result = CliRunner().invoke(cli, ["--root", str(tmp_path), "replay", "-t", str(targets), "--dry-run"])
    assert result.exit_code == 0, result.output
    assert "Would replay -> project=events chain=arbitrum runner=my_runner.py" in result.output
    assert not (tmp_path / "calls.txt").exists()


def test_replay_rejects_malformed_targets_file(tmp_path: Path) -> None:
    path = tmp_path / "targets.json"
    path.write_text(json.dumps({"project": "events"}), encoding="utf-8")
    result = CliRunner().invoke(cli, ["--root", str(tmp_path), "replay", "-t", str(path)])
    assert result.exit_code == 1
    assert "targets JSON must be an array" in result.output


def test_replay_requires_targets_option(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["--root", str(tmp_path), "replay"])
    assert result.exit_code == 2


def test_load_runner_rejects_missing_attribute(tmp_path: Path) -> None:
    (tmp_path / "my_runner.py").write_text(RUNNER_SOURCE, encoding="utf-8")
    with pytest.raises(RunnerContractError):
        load_runner("my_runner.py:missing", base_dir=tmp_path)
    with pytest.raises(RunnerContractError):
        load_runner("my_runner.py:not_a_runner", base_dir=tmp_path)
    assert callable(load_runner("my_runner.py", base_dir=tmp_path).replay_batch)


def test_clean_accepts_root_after_the_subcommand(tmp_path: Path) -> None:
    partition = tmp_path / "events" / "arbitrum" / "0123456789abcdef" / "2026-01-01"
    partition.mkdir(parents=True)
    (partition / "1-1.ndjson.gz").write_bytes(b"x" * 50)

    result = CliRunner().invoke(cli, ["clean", "--root", str(tmp_path), "--max-bytes", "10", "--dry-run"])

    assert result.exit_code == 0, result.output
    assert f"Root: {tmp_path}; dry-run=yes" in result.output
    assert "Pruned by size: 1 folder(s)" in result.output
    assert partition.exists()
