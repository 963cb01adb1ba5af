"""Research Report Pipeline — Entry Point.

Usage:
    # Full report (classifier → researcher → synthesizer → verifier)
    python main.py run "Analyze NVIDIA (NVDA)"

    # Pick a reasoning level, skip web search, choose the output file
    python main.py run "Analyze NVIDIA (NVDA)" --level x-light --no-search --output nvda.json

    # Classify only — print the domain profile
    python main.py classify "Pitch deck for an AI legal research startup"
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import re
import sys
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel

import config
from agents.agent_01_classifier import Agent01Classifier
from pipeline.context import RunContext
from pipeline.errors import PipelineError, user_facing_category
from pipeline.orchestrator import ReportPipeline, print_summary
from pipeline.search import BraveSearch
from schemas.events import EventKind, PipelineEvent

console = Console()

# CLI copy per error category. The pipeline itself never writes user copy.
ERROR_MESSAGES = {
    "auth": "Authentication failed — check the API keys in your .env file.",
    "rate_limit": "The model provider is rate limiting requests. Wait a minute and retry.",
    "upstream": "The model provider returned an error. Retry shortly.",
    "generic": "The report could not be generated.",
}


def setup_logging():
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _print_event(event: PipelineEvent):
    if event.kind == EventKind.STAGE_START:
        console.print(f"[cyan][{event.percent:>3}%][/cyan] {event.message}...")
    elif event.kind == EventKind.STAGE_COMPLETE:
        console.print(f"[green][{event.percent:>3}%][/green] {event.message}")
        if event.stats and event.stats.certainty_buckets:
            b = event.stats.certainty_buckets
            console.print(
                f"       [dim]high {b.high} · moderate {b.moderate} · mixed {b.mixed} · weak {b.weak}[/dim]"
            )
    else:
        console.print(f"[bold green][{event.percent:>3}%][/bold green] {event.message}")


def _default_output_path(query: str) -> Path:
    slug = re.sub(r"[^a-z0-9]+", "_", query.lower()).strip("_")[:40] or "report"
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return config.OUTPUT_DIR / f"report_{slug}_{stamp}.json"


def _report_error(exc: Exception) -> int:
    category = user_facing_category(exc)
    stage = getattr(exc, "stage", "") or "pipeline"
    console.print(f"[red]{ERROR_MESSAGES[category]}[/red] [dim]({stage}: {exc})[/dim]")
    raw = getattr(exc, "raw_output", "")
    if raw:
        console.print(Panel(raw[:2000], title=f"Raw {stage} output", border_style="red"))
    return 1


def run_report(args: argparse.Namespace) -> int:
    search = None if args.no_search else BraveSearch.from_config()
    pipeline = ReportPipeline(search=search)
    ctx = RunContext(on_event=_print_event)

    console.print(
        Panel(
            f"[bold cyan]RESEARCH REPORT[/bold cyan]\n{args.query}\n"
            f"[dim]level={args.level} · research={'grounded' if search else 'knowledge-only'}[/dim]",
            border_style="bright_blue",
        )
    )

    try:
        report = asyncio.run(pipeline.run(args.query, reasoning_level=args.level, ctx=ctx))
    except PipelineError as e:
        print_summary(ctx)
        return _report_error(e)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        return 130

    print_summary(ctx)
    if report is None:
        console.print("[yellow]Run aborted — no report written[/yellow]")
        return 1

    output_path = Path(args.output) if args.output else _default_output_path(args.query)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(report.model_dump_json(indent=2, exclude_none=True), encoding="utf-8")
    console.print(f"  [green]Report saved:[/green] {output_path}")
    return 0


def run_classify(args: argparse.Namespace) -> int:
    ctx = RunContext()
    try:
        profile = asyncio.run(Agent01Classifier().run(ctx, args.query, config.get_reasoning_config(args.level)))
    except PipelineError as e:
        return _report_error(e)
    console.print_json(json.dumps(profile.model_dump(mode="json")))
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Research Report Pipeline — evidence-linked reports with per-claim certainty",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # -- run command --
    run_cmd = subparsers.add_parser("run", help="Generate a full report")
    run_cmd.add_argument("query", help="Free-text research query")
    run_cmd.add_argument(
        "--level",
        default=config.DEFAULT_REASONING_LEVEL,
        choices=sorted(config.REASONING_LEVELS),
        help=f"Reasoning level (default: {config.DEFAULT_REASONING_LEVEL})",
    )
    run_cmd.add_argument("--no-search", action="store_true", help="Skip web search (knowledge-only research)")
    run_cmd.add_argument("--output", "-o", help="Path for the report JSON (default: outputs/report_<query>_<time>.json)")

    # -- classify command --
    cls_cmd = subparsers.add_parser("classify", help="Classify a query and print its domain profile")
    cls_cmd.add_argument("query", help="Free-text research query")
    cls_cmd.add_argument("--level", default=config.DEFAULT_REASONING_LEVEL, choices=sorted(config.REASONING_LEVELS))

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    setup_logging()

    if args.command == "run":
        sys.exit(run_report(args))
    elif args.command == "classify":
        sys.exit(run_classify(args))


if __name__ == "__main__":
    main()
