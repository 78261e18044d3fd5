from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
from typing import Any, Callable, cast

from open_llm_scheduler.batch import BatchProgress, WorkItem
from open_llm_scheduler.cli_output import print_yaml, read_jsonl, write_jsonl
from open_llm_scheduler.config import load_model_catalog
from open_llm_scheduler.generation import TextGenerator
from open_llm_scheduler.scheduler import Scheduler
from open_llm_scheduler.settings import get_settings
from open_llm_scheduler.snapshot import SnapshotStore

logger = logging.getLogger("open_llm_scheduler.cli")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


async def _prompt_for_secret() -> str | None:
    return await asyncio.to_thread(
        getpass.getpass, "All credentials are exhausted. New API key (blank to wait): "
    )


def _build_scheduler(args: argparse.Namespace) -> Scheduler:
    settings = get_settings()
    if getattr(args, "catalog", None):
        settings = settings.model_copy(update={"model_catalog_path": args.catalog})
    generator: TextGenerator | None = getattr(args, "generator", None)
    return Scheduler(
        settings,
        generator=generator,
        strategy=getattr(args, "strategy", None),
        on_exhausted=_prompt_for_secret if getattr(args, "prompt_for_key", False) else None,
    )


def cmd_models(args: argparse.Namespace) -> int:
    catalog = load_model_catalog(args.catalog)
    strategies = [args.strategy] if args.strategy else sorted(catalog.strategies)
    payload: dict[str, Any] = {}
    for name in strategies:
        payload[name] = [
            {"model": profile.name, **profile.limits.model_dump()}
            for profile in catalog.profiles_for(name, get_settings().primary_model)
        ]
    print_yaml({"strategies": payload})
    return 0


def cmd_health_check(args: argparse.Namespace) -> int:
    async def _run() -> dict[str, Any]:
        scheduler = _build_scheduler(args)
        try:
            report = await scheduler.health_check()
            return report.to_dict()
        finally:
            await scheduler.aclose()

    print_yaml(asyncio.run(_run()))
    return 0


def _log_progress(progress: BatchProgress) -> None:
    logger.info(
        "progress phase=%s status=%s processed=%d/%d batch=%d/%d remaining_ms=%s",
        progress.phase,
        progress.status.value,
        progress.processed_items,
        progress.total_items,
        progress.current_batch,
        progress.total_batches,
        progress.estimated_remaining_ms,
    )


def cmd_run(args: argparse.Namespace) -> int:
    rows = read_jsonl(args.input)
    items = [
        WorkItem(
            id=str(row.get("id") or index),
            prompt=str(row["prompt"]),
            task_type=str(row.get("task_type") or "generic"),
        )
        for index, row in enumerate(rows)
    ]

    async def _run() -> dict[str, Any]:
        scheduler = _build_scheduler(args)
        try:
            results = await scheduler.run(
                items,
                phase=args.phase,
                progress_callback=_log_progress,
                skip_health_check=args.skip_health_check,
                deadline_seconds=args.deadline_seconds,
            )
            written = write_jsonl(args.output, (result.to_dict() for result in results))
            return {
                "output": args.output,
                "results": written,
                "failed": sum(1 for result in results if result.error),
                **scheduler.diagnostics(),
            }
        finally:
            await scheduler.aclose()

    summary = asyncio.run(_run())
    print_yaml(summary)
    return 0 if summary["failed"] == 0 else 1


def cmd_snapshot_show(args: argparse.Namespace) -> int:
    path = args.path or get_settings().scheduler_snapshot_path
    if not path:
        raise ValueError("No snapshot path given. Use --path or set SCHEDULER_SNAPSHOT_PATH.")
    store = SnapshotStore(path)
    if not store.exists():
        raise FileNotFoundError(f"Snapshot not found at '{path}'.")
    print_yaml(store.load())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="open-llm-scheduler",
        description="Quota-aware batch scheduler for rate-limited text generation.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    models_cmd = subparsers.add_parser("models", help="Show model chains and quota limits.")
    models_cmd.add_argument("--catalog", default=None)
    models_cmd.add_argument("--strategy", default=None)
    models_cmd.set_defaults(handler=cmd_models)

    health_cmd = subparsers.add_parser(
        "health-check", help="Probe every configured credential once."
    )
    health_cmd.add_argument("--catalog", default=None)
    health_cmd.set_defaults(handler=cmd_health_check)

    run_cmd = subparsers.add_parser(
        "run", help="Process a JSONL file of work items into a JSONL file of results."
    )
    run_cmd.add_argument("--input", required=True)
    run_cmd.add_argument("--output", required=True)
    run_cmd.add_argument("--strategy", default=None)
    run_cmd.add_argument("--phase", default="processing")
    run_cmd.add_argument("--catalog", default=None)
    run_cmd.add_argument("--skip-health-check", action="store_true")
    run_cmd.add_argument("--deadline-seconds", type=float, default=None)
    run_cmd.add_argument(
        "--prompt-for-key",
        action="store_true",
        help="Ask for a new API key on the terminal when every credential is exhausted.",
    )
    run_cmd.set_defaults(handler=cmd_run)

    snapshot_cmd = subparsers.add_parser("snapshot", help="Inspect persisted scheduler state.")
    snapshot_sub = snapshot_cmd.add_subparsers(dest="snapshot_command", required=True)
    snapshot_show = snapshot_sub.add_parser("show", help="Print the snapshot file.")
    snapshot_show.add_argument("--path", default=None)
    snapshot_show.set_defaults(handler=cmd_snapshot_show)

    return parser


def main(argv: list[str] | None = None, *, generator: TextGenerator | None = None) -> int:
    """Entry point; ``generator`` replaces the HTTP adapter for every command."""
    parser = build_parser()
    args = parser.parse_args(argv)
    args.generator = generator
    _configure_logging(get_settings().log_level)
    handler = cast(Callable[[argparse.Namespace], int], args.handler)

    try:
        return handler(args)
    except Exception as exc:  # pragma: no cover - covered via CLI tests
        parser.exit(2, f"error: {exc}\n")


if __name__ == "__main__":
    raise SystemExit(main())
