"""Command-line entry points: `blockcache clean` and `blockcache replay`."""

from __future__ import annotations

import importlib
import importlib.util
import inspect
import json
from pathlib import Path
from typing import Any

import click
import structlog

from blockcache.config import CacheSettings, ConfigurationError, load_settings
from blockcache.logs import configure_logging
from blockcache.replay import ReplayTarget, RunnerContractError, ensure_runner, run_replay, select_targets
from blockcache.retention import PruneFilters, prune_by_age, prune_by_size

log = structlog.get_logger(__name__)


def _split_csv(value: str | None) -> list[str] | None:
    if not value:
        return None
    items = [item.strip() for item in value.split(",") if item.strip()]
    return items or None


def _settings(ctx: click.Context) -> CacheSettings:
    return ctx.obj["settings"]


def load_runner(reference: str, *, base_dir: Path | None = None) -> Any:
    """
    Resolve a runner reference of the form `module[:attribute]`.

    `module` may be a dotted import path or a path to a `.py` file (relative
    paths resolve against `base_dir`). Without an attribute the module itself is
    the runner. A class attribute is instantiated with no arguments.
    """
    module_ref, _, attribute = reference.partition(":")
    if module_ref.endswith(".py"):
        path = Path(module_ref)
        if not path.is_absolute() and base_dir is not None:
            path = base_dir / path
        spec = importlib.util.spec_from_file_location(path.stem, path)
        if spec is None or spec.loader is None:
            raise RunnerContractError(f"Cannot load runner module from {path}")
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
    else:
        module = importlib.import_module(module_ref)

    runner: Any = module
    if attribute:
        if not hasattr(module, attribute):
            raise RunnerContractError(f"Runner {reference} has no attribute {attribute!r}")
        runner = getattr(module, attribute)
        if inspect.isclass(runner):
            runner = runner()
    return ensure_runner(runner, name=reference)


def read_targets(path: Path) -> list[dict[str, Any]]:
    with path.open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, list):
        raise ConfigurationError("targets JSON must be an array of {project, chain, runner, configIdentity}")
    for idx, item in enumerate(data):
        if not isinstance(item, dict) or not all(key in item for key in ("project", "chain", "runner")):
            raise ConfigurationError(f"target #{idx} must define project, chain and runner")
    return data


@click.group()
@click.option("--root", type=click.Path(file_okay=False, path_type=Path), help="Cache root directory.")
@click.option("--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR).")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON.")
@click.pass_context
def cli(ctx: click.Context, root: Path | None, log_level: str | None, json_logs: bool) -> None:
    """Record/replay cache for blockchain batches."""
    try:
        settings = load_settings(root=root, log_level=log_level)
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc
    configure_logging(settings.log_level, json=json_logs)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command()
@click.option("--root", "root_override", type=click.Path(file_okay=False, path_type=Path), help="Cache root directory.")
@click.option("--days", type=click.IntRange(min=0), help="Delete date partitions older than N days.")
@click.option("--max-bytes", type=click.IntRange(min=0), help="Delete oldest partitions until under N bytes.")
@click.option("-p", "--projects", help="Comma-separated project filter.")
@click.option("-n", "--chains", help="Comma-separated chain filter.")
@click.option("--dry-run", is_flag=True, help="Report deletions without performing them.")
@click.pass_context
def clean(
    ctx: click.Context,
    root_override: Path | None,
    days: int | None,
    max_bytes: int | None,
    projects: str | None,
    chains: str | None,
    dry_run: bool,
) -> None:
    """Prune the cache by age or by total size."""
    if days is None and max_bytes is None:
        raise click.UsageError("specify --days or --max-bytes")
    root = root_override or _settings(ctx).root
    filters = PruneFilters.from_lists(_split_csv(projects), _split_csv(chains))
    click.echo(f"Root: {root}; dry-run={'yes' if dry_run else 'no'}")

    failed = 0
    if days is not None:
        report = prune_by_age(root, days, filters, dry_run=dry_run)
        failed += len(report.failed)
        click.echo(f"Pruned by days: {report.count} folder(s)")
    if max_bytes is not None:
        report = prune_by_size(root, max_bytes, filters, dry_run=dry_run)
        failed += len(report.failed)
        click.echo(f"Current size: {report.bytes_before} bytes; target <= {max_bytes} bytes")
        click.echo(f"Pruned by size: {report.count} folder(s); new est. size ~{report.bytes_after} bytes")
    if failed:
        click.echo(f"Failed to delete {failed} folder(s)", err=True)
        ctx.exit(1)


@cli.command()
@click.option(
    "-t",
    "--targets",
    "targets_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON file listing replay targets.",
)
@click.option("-c", "--concurrency", type=click.IntRange(min=1), help="Max concurrent replays.")
@click.option("-p", "--projects", help="Comma-separated project filter.")
@click.option("-n", "--chains", help="Comma-separated chain filter.")
@click.option("--from-block", type=int, help="Skip batches below this height.")
@click.option("--to-block", type=int, help="Skip batches above this height.")
@click.option("--dry-run", is_flag=True, help="List what would run and exit.")
@click.pass_context
def replay(
    ctx: click.Context,
    targets_path: Path,
    concurrency: int | None,
    projects: str | None,
    chains: str | None,
    from_block: int | None,
    to_block: int | None,
    dry_run: bool,
) -> None:
    """Replay cached batches into each target's runner."""
    settings = _settings(ctx)
    if from_block is not None and to_block is not None and from_block > to_block:
        raise click.UsageError("--from-block must not exceed --to-block")
    try:
        raw_targets = read_targets(targets_path)
    except (ConfigurationError, ValueError) as exc:
        raise click.ClickException(f"Invalid targets file {targets_path}: {exc}") from exc

    selected = select_targets(raw_targets, _split_csv(projects), _split_csv(chains))
    if dry_run:
        for item in selected:
            click.echo(f"Would replay -> project={item['project']} chain={item['chain']} runner={item['runner']}")
        return

    targets: list[ReplayTarget] = []
    load_failures: list[str] = []
    for item in selected:
        label = f"{item['project']}/{item['chain']}"
        try:
            runner = load_runner(item["runner"], base_dir=targets_path.parent)
        except (ImportError, RunnerContractError, OSError) as exc:
            log.error("runner_load_failed", target=label, runner=item["runner"], error=str(exc))
            load_failures.append(label)
            continue
        targets.append(ReplayTarget(item["project"], item["chain"], runner, item.get("configIdentity")))

    workers = concurrency or settings.replay_concurrency
    click.echo(f"Starting replay for {len(targets)} target(s) with concurrency={workers}")
    summary = run_replay(
        targets,
        settings,
        concurrency=workers,
        from_block=from_block,
        to_block=to_block,
    )
    failed = len(summary.failed) + len(load_failures)
    click.echo(f"Replay complete: ok={len(summary.succeeded)} fail={failed}")
    if failed:
        ctx.exit(1)


def main() -> None:
    cli(obj={})
