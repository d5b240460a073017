"""Command-line interface router for docflow."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from docflow.config import ConfigLoadError, ConfigValidationError, EngineConfig, load_config
from docflow.control_plane.controller import EngineController
from docflow.control_plane.dispatcher import BatchReport, ItemOutcome, ItemStatus
from docflow.control_plane.work_queue import SourceNotFound
from docflow.domain import ids
from docflow.domain.models import CompletionRecord, Provenance, to_iso8601z, utc_now
from docflow.knowledge_plane.completion_ledger import CompletionQuery, TimeRange, range_start
from docflow.observability.logging import correlation_scope, setup_logging, shutdown_logging
from docflow.recovery.engine import RecoveryReport
from docflow.ui.render import CLIRenderer, create_renderer

TIME_RANGE_CHOICES: Final[tuple[str, ...]] = tuple(item.value for item in TimeRange)


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="docflow",
        description=(
            "docflow: durable document processing pipeline.\n\n"
            "Common workflows:\n"
            "  docflow enqueue notes/a.md   Admit a document into the work queue\n"
            "  docflow process-all          Drain the queue through the pipeline\n"
            "  docflow recover              Resume failed items from their checkpoints\n"
            "  docflow overview             Show queue, ledger and history summaries\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to docflow TOML config (default: ./docflow.toml if present).",
    )
    common.add_argument(
        "--root",
        default=None,
        help="Document root directory (overrides paths.root).",
    )
    common.add_argument(
        "--state-dir",
        default=None,
        help="State directory (overrides paths.state_dir).",
    )
    common.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Emit machine-readable JSON instead of text.",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # enqueue -------------------------------------------------------------
    enqueue_parser = subparsers.add_parser(
        "enqueue",
        parents=[common],
        help="Admit a document into the work queue",
    )
    enqueue_parser.add_argument("path", help="Document path, relative to the document root.")
    enqueue_parser.add_argument(
        "--source",
        default=Provenance.UNKNOWN.value,
        choices=[item.value for item in Provenance],
        help="Producer that discovered the document.",
    )
    enqueue_parser.add_argument(
        "--context",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Free-form producer metadata; may be repeated.",
    )
    enqueue_parser.set_defaults(handler=_cmd_enqueue)

    # queue ---------------------------------------------------------------
    queue_parser = subparsers.add_parser(
        "queue",
        parents=[common],
        help="List queued items in dispatch order",
    )
    queue_parser.set_defaults(handler=_cmd_queue)

    # process-next --------------------------------------------------------
    next_parser = subparsers.add_parser(
        "process-next",
        parents=[common],
        help="Process the single most urgent queued item",
    )
    next_parser.set_defaults(handler=_cmd_process_next)

    # process-all ---------------------------------------------------------
    all_parser = subparsers.add_parser(
        "process-all",
        parents=[common],
        help="Process every item queued when the command starts",
        description=(
            "Drain the work queue.\n\n"
            "Examples:\n"
            "  docflow process-all\n"
            "  docflow process-all --parallel --max-parallel 4\n"
            "  docflow process-all --stop-on-error --save-report\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    all_parser.add_argument(
        "--parallel",
        action="store_true",
        default=None,
        help="Run items through a bounded worker pool.",
    )
    all_parser.add_argument(
        "--max-parallel",
        type=_positive_int,
        default=None,
        help="Worker pool size when --parallel is set.",
    )
    all_parser.add_argument(
        "--stop-on-error",
        action="store_true",
        default=None,
        help="Stop dispatching after the first failed item.",
    )
    all_parser.add_argument(
        "--delay",
        type=_non_negative_float,
        default=None,
        help="Seconds to wait between items in sequential mode.",
    )
    all_parser.add_argument(
        "--save-report",
        action="store_true",
        default=False,
        help="Write a batch report JSON file into the reports directory.",
    )
    all_parser.set_defaults(handler=_cmd_process_all)

    # recover -------------------------------------------------------------
    recover_parser = subparsers.add_parser(
        "recover",
        parents=[common],
        help="Resume failed in-flight items from their checkpoints",
    )
    recover_parser.add_argument(
        "--max-retries",
        type=_positive_int,
        default=None,
        help="Recovery attempts allowed per item before quarantine.",
    )
    recover_parser.add_argument(
        "--delay",
        type=_non_negative_float,
        default=None,
        help="Base delay in seconds before each recovery attempt.",
    )
    recover_parser.add_argument(
        "--no-backoff",
        action="store_true",
        default=False,
        help="Use a constant delay instead of exponential backoff.",
    )
    recover_parser.add_argument(
        "--keep-old",
        action="store_true",
        default=False,
        help="Also retry failures older than the configured maximum age.",
    )
    recover_parser.add_argument(
        "--save-report",
        action="store_true",
        default=False,
        help="Write a recovery report JSON file into the reports directory.",
    )
    recover_parser.set_defaults(handler=_cmd_recover)

    # cleanup -------------------------------------------------------------
    cleanup_parser = subparsers.add_parser(
        "cleanup",
        parents=[common],
        help="Drop recovery counters for items no longer in flight",
    )
    cleanup_parser.set_defaults(handler=_cmd_cleanup)

    # status --------------------------------------------------------------
    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="Show recovery counters and quarantined items",
    )
    status_parser.set_defaults(handler=_cmd_status)

    # overview ------------------------------------------------------------
    overview_parser = subparsers.add_parser(
        "overview",
        parents=[common],
        help="Summarize queue, processing ledger, completions and recovery state",
    )
    overview_parser.add_argument(
        "--range",
        dest="time_range",
        choices=TIME_RANGE_CHOICES,
        default=TimeRange.WEEK.value,
        help="Completion statistics window (default: week).",
    )
    overview_parser.set_defaults(handler=_cmd_overview)

    # history -------------------------------------------------------------
    history_parser = subparsers.add_parser(
        "history",
        parents=[common],
        help="Query the completion history",
    )
    history_parser.add_argument(
        "--range",
        dest="time_range",
        choices=TIME_RANGE_CHOICES,
        default=TimeRange.ALL.value,
        help="Only records completed within this window.",
    )
    history_parser.add_argument("--work-id", default=None, help="Exact work item id.")
    history_parser.add_argument(
        "--path",
        dest="path_contains",
        default=None,
        help="Substring of the original or final path.",
    )
    history_parser.add_argument(
        "--errors",
        dest="has_errors",
        action="store_true",
        default=False,
        help="Only records that logged stage errors.",
    )
    history_parser.add_argument(
        "--retries",
        dest="has_retries",
        action="store_true",
        default=False,
        help="Only records that needed local retries.",
    )
    history_parser.add_argument("--limit", type=_positive_int, default=None)
    history_parser.set_defaults(handler=_cmd_history)

    # prune-history -------------------------------------------------------
    prune_parser = subparsers.add_parser(
        "prune-history",
        parents=[common],
        help="Remove completion records older than the retention window",
    )
    prune_parser.add_argument(
        "--days",
        type=_non_negative_int,
        default=None,
        help="Retention window in days (default: completion.retention_days).",
    )
    prune_parser.set_defaults(handler=_cmd_prune_history)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_enqueue(args: argparse.Namespace) -> int:
    context = _parse_context(args.context)

    async def work(controller: EngineController) -> Any:
        try:
            return await controller.enqueue(args.path, source=args.source, context=context)
        except SourceNotFound as exc:
            raise CLIError(str(exc), exit_code=2) from exc

    result = _run(args, work)
    payload: dict[str, object] = {
        "command": "enqueue",
        "status": result.status.value,
        "work_id": result.work_id,
        "item": result.item.to_dict() if result.item is not None else None,
    }
    if _flag(args, "json"):
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    if result.item is None:
        renderer.text(f"Already queued: {args.path}")
        return 0
    renderer.kv("Queued", result.item.id)
    renderer.kv("Kind", f"{result.item.kind.value} (priority {result.item.priority})")
    renderer.kv("Stages", " -> ".join(result.item.stages))
    return 0


def _cmd_queue(args: argparse.Namespace) -> int:
    async def work(controller: EngineController) -> Any:
        return await controller.queue.list_items(), await controller.queue.stats()

    items, stats = _run(args, work)
    if _flag(args, "json"):
        _emit_json(
            {
                "command": "queue",
                "stats": stats.to_dict(),
                "items": [item.to_dict() for item in items],
            }
        )
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Queued items", stats.total_items)
    renderer.table(
        ("ID", "PRIORITY", "KIND", "PATH"),
        [(item.id, str(item.priority), item.kind.value, item.file.path) for item in items],
    )
    return 0


def _cmd_process_next(args: argparse.Namespace) -> int:
    async def work(controller: EngineController) -> Any:
        return await controller.process_next()

    outcome: ItemOutcome = _run(args, work)
    if _flag(args, "json"):
        _emit_json({"command": "process-next", "outcome": outcome.to_dict()})
    else:
        renderer = _get_renderer(args)
        if outcome.status is ItemStatus.IDLE:
            renderer.text("Queue is empty.")
        else:
            _render_outcome(renderer, outcome)
    return 1 if outcome.status is ItemStatus.FAILED else 0


def _cmd_process_all(args: argparse.Namespace) -> int:
    async def work(controller: EngineController) -> Any:
        options = controller.dispatch_options(
            parallel=args.parallel,
            max_parallel=args.max_parallel,
            stop_on_error=args.stop_on_error,
            delay_between_items_seconds=args.delay,
        )
        return await controller.process_all(options, save_report=args.save_report)

    report, saved = _run(args, work)
    if _flag(args, "json"):
        _emit_json(
            {
                "command": "process-all",
                "report": report.to_dict(),
                "report_path": str(saved) if saved is not None else None,
            }
        )
    else:
        _render_batch(_get_renderer(args), report, saved)
    return 1 if report.failed else 0


def _cmd_recover(args: argparse.Namespace) -> int:
    async def work(controller: EngineController) -> Any:
        options = controller.recovery_options(
            max_retries=args.max_retries,
            retry_delay_seconds=args.delay,
            exponential_backoff=False if args.no_backoff else None,
            cleanup_old_failures=False if args.keep_old else None,
        )
        return await controller.recover(options, save_report=args.save_report)

    report, saved = _run(args, work)
    if _flag(args, "json"):
        _emit_json(
            {
                "command": "recover",
                "report": report.to_dict(),
                "report_path": str(saved) if saved is not None else None,
            }
        )
    else:
        _render_recovery(_get_renderer(args), report, saved)
    return 1 if report.permanent_failures else 0


def _cmd_cleanup(args: argparse.Namespace) -> int:
    async def work(controller: EngineController) -> Any:
        return await controller.cleanup()

    result = _run(args, work)
    if _flag(args, "json"):
        _emit_json({"command": "cleanup", **result.to_dict()})
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Cleaned retry entries", result.cleaned)
    renderer.kv("Permanent failures", result.permanent_failures)
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    async def work(controller: EngineController) -> Any:
        return await controller.recovery_status()

    status = _run(args, work)
    if _flag(args, "json"):
        _emit_json({"command": "status", **status.to_dict()})
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Max recovery attempts", status.max_retries)
    renderer.kv("Items with retry history", len(status.retries))
    renderer.table(
        ("WORK ID", "ATTEMPTS", "LAST ATTEMPT"),
        [
            (
                work_id,
                str(count),
                to_iso8601z(status.last_retry[work_id]) if work_id in status.last_retry else "-",
            )
            for work_id, count in sorted(status.retries.items())
        ],
    )
    renderer.kv("Permanent failures", len(status.permanent_failures))
    renderer.items(list(status.permanent_failures))
    if status.retries:
        renderer.next_steps(["docflow recover"])
    return 0


def _cmd_overview(args: argparse.Namespace) -> int:
    async def work(controller: EngineController) -> Any:
        return await controller.overview(args.time_range)

    overview = _run(args, work)
    if _flag(args, "json"):
        _emit_json({"command": "overview", **overview.to_dict()})
        return 0

    renderer = _get_renderer(args)
    renderer.heading("docflow overview")
    renderer.section("Queue:")
    renderer.kv("  total", overview.queue.total_items)
    for kind, count in sorted(overview.queue.by_kind.items()):
        renderer.kv(f"  {kind}", count)
    renderer.section("Processing:")
    processing = overview.processing
    renderer.kv("  total", processing.total_processing)
    renderer.kv("  ready to complete", processing.ready_to_complete)
    renderer.kv("  in progress", processing.in_progress)
    renderer.kv("  not started", processing.not_started)
    renderer.kv("  failed", processing.failed)
    renderer.section(f"Completions ({overview.completions.time_range.value}):")
    renderer.kv("  completed", overview.completions.total_completed)
    renderer.kv("  average duration ms", overview.completions.average_duration_ms)
    renderer.kv("  success rate", f"{overview.completions.success_rate}%")
    renderer.section("Recovery:")
    renderer.kv("  retrying", len(overview.recovery.retries))
    renderer.kv("  permanent failures", len(overview.recovery.permanent_failures))
    if processing.failed:
        renderer.next_steps(["docflow recover"])
    return 0


def _cmd_history(args: argparse.Namespace) -> int:
    query = CompletionQuery(
        start=range_start(args.time_range, utc_now()),
        work_id=args.work_id,
        path_contains=args.path_contains,
        has_errors=args.has_errors,
        has_retries=args.has_retries,
        limit=args.limit,
    )

    async def work(controller: EngineController) -> Any:
        return await controller.history(query)

    records: tuple[CompletionRecord, ...] = _run(args, work)
    if _flag(args, "json"):
        _emit_json({"command": "history", "records": [record.to_dict() for record in records]})
        return 0

    renderer = _get_renderer(args)
    if not records:
        renderer.text("No matching completion records.")
        return 0
    renderer.table(
        ("COMPLETED", "WORK ID", "FINAL PATH", "MS", "RETRIES"),
        [
            (
                to_iso8601z(record.completed_at),
                record.work_id,
                record.final_path,
                str(record.total_duration_ms),
                str(record.retries),
            )
            for record in records
        ],
    )
    return 0


def _cmd_prune_history(args: argparse.Namespace) -> int:
    async def work(controller: EngineController) -> Any:
        return await controller.prune_history(args.days)

    removed = _run(args, work)
    if _flag(args, "json"):
        _emit_json({"command": "prune-history", "removed": removed})
        return 0
    _get_renderer(args).kv("Removed completion records", removed)
    return 0


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _render_outcome(renderer: CLIRenderer, outcome: ItemOutcome) -> None:
    label = f"{outcome.work_id} {outcome.file or ''}".strip()
    if outcome.status is ItemStatus.COMPLETED:
        renderer.status(f"{label} -> {outcome.final_path} ({outcome.duration_ms} ms)", ok=True)
    else:
        renderer.status(f"{label}: {outcome.error}", ok=False)


def _render_batch(renderer: CLIRenderer, report: BatchReport, saved: Path | None) -> None:
    renderer.heading("Batch processing report")
    renderer.kv("Total items", report.total_items)
    renderer.kv("Processed", report.processed)
    renderer.kv("Completed", report.completed)
    renderer.kv("Failed", report.failed)
    renderer.kv("Success rate", f"{report.success_rate:.1f}%")
    renderer.kv("Duration ms", report.total_duration_ms)
    if renderer.verbose:
        renderer.section("Items:")
        for outcome in report.outcomes:
            _render_outcome(renderer, outcome)
    failures = [outcome for outcome in report.outcomes if outcome.status is ItemStatus.FAILED]
    if failures:
        renderer.section("Errors:")
        renderer.items([f"{outcome.work_id}: {outcome.error}" for outcome in failures])
        renderer.next_steps(["docflow recover"])
    if saved is not None:
        renderer.kv("Report", saved)


def _render_recovery(renderer: CLIRenderer, report: RecoveryReport, saved: Path | None) -> None:
    renderer.heading("Recovery report")
    renderer.kv("Failures found", report.failures_found)
    renderer.kv("Recovered", report.recovered)
    renderer.kv("Still failing", report.failed)
    renderer.kv("Permanent failures", report.permanent_failures)
    renderer.kv("Skipped", report.skipped)
    renderer.kv("Recovery rate", f"{report.recovery_rate:.1f}%")
    if report.details:
        renderer.table(
            ("WORK ID", "STATUS", "CHECKPOINT", "ATTEMPTS"),
            [
                (detail.work_id, detail.status.value, detail.checkpoint, str(detail.retry_count))
                for detail in report.details
            ],
        )
    if saved is not None:
        renderer.kv("Report", saved)


# ---------------------------------------------------------------------------
# Helpers: config, event loop, argument parsing
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> EngineConfig:
    overrides: dict[str, object] = {}
    root = _optional_str(getattr(args, "root", None))
    if root is not None:
        overrides["paths.root"] = Path(root).expanduser().resolve().as_posix()
    state_dir = _optional_str(getattr(args, "state_dir", None))
    if state_dir is not None:
        overrides["paths.state_dir"] = Path(state_dir).expanduser().resolve().as_posix()

    try:
        return load_config(getattr(args, "config_path", None), cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _run(args: argparse.Namespace, work: Any) -> Any:
    """Build the controller and run ``work(controller)`` on a fresh event loop."""

    config = _load_effective_config(args)
    run_id = ids.generate_run_id()
    handle = setup_logging(config.observability, run_id=run_id)
    try:
        with correlation_scope(command=str(args.command)):
            controller = EngineController(config)
            return asyncio.run(work(controller))
    finally:
        shutdown_logging(handle)


def _parse_context(entries: Sequence[str]) -> dict[str, str]:
    context: dict[str, str] = {}
    for entry in entries:
        key, sep, value = entry.partition("=")
        if not sep or not key.strip():
            raise CLIError(f"invalid --context entry {entry!r}: expected KEY=VALUE", exit_code=2)
        context[key.strip()] = value
    return context


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise CLIError("invalid optional string argument", exit_code=2)
    normalized = value.strip()
    return normalized or None


def _positive_int(raw: str) -> int:
    value = _non_negative_int(raw)
    if value < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return value


def _non_negative_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {raw!r}") from exc
    if value < 0:
        raise argparse.ArgumentTypeError("must be >= 0")
    return value


def _non_negative_float(raw: str) -> float:
    try:
        value = float(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected a number, got {raw!r}") from exc
    if value < 0:
        raise argparse.ArgumentTypeError("must be >= 0")
    return value


__all__ = ["CLIError", "build_parser", "run_cli"]
