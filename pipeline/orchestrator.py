"""Pipeline orchestrator — Classifier → Researcher → Synthesizer → Verifier.

Stages run strictly in sequence; each stage's output is fully built before
the next starts. Every transition emits a PipelineEvent with a monotonic
percent. The abort predicate is polled before and after every stage and
after every emitted event; once it fires, no further stage is called and
run() returns None.

Stage failures are tagged with the stage name and re-raised. There is no
retry here: transient errors are retried inside the LLM client, and
mapping an error to user-facing copy is the caller's job.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Optional

from rich.console import Console
from rich.table import Table

import config
from agents.agent_01_classifier import Agent01Classifier
from agents.agent_02_researcher import Agent02Researcher, ResearchResult
from agents.agent_03_synthesizer import Agent03Synthesizer
from agents.agent_04_verifier import Agent04Verifier, VerificationOutcome
from pipeline.certainty import average_certainty, certainty_buckets
from pipeline.context import AbortPredicate, EventSink, RunContext
from pipeline.errors import PipelineError
from pipeline.llm import TextGenerator
from pipeline.search import SearchService
from schemas.domain import DomainProfile
from schemas.events import EventKind, StageStats
from schemas.report import FollowUpContext, Report

logger = logging.getLogger(__name__)
console = Console()

STAGES = ("classifier", "researcher", "synthesizer", "verifier")

# (start, complete) percent per stage; report_ready is 100.
STAGE_PERCENTS: dict[str, tuple[int, int]] = {
    "classifier": (5, 10),
    "researcher": (15, 40),
    "synthesizer": (50, 70),
    "verifier": (75, 95),
}


class RunAborted(Exception):
    """Internal signal: the abort predicate fired."""


@contextmanager
def _stage(name: str):
    """Tag pipeline errors raised inside a stage with the stage name."""
    try:
        yield
    except PipelineError as e:
        if not e.stage:
            e.stage = name
        logger.error("Stage %s failed: %s", name, e)
        raise
    except Exception:
        logger.exception("Stage %s failed", name)
        raise


class ReportPipeline:
    """Runs one report per call to run(). Holds no per-run state.

    ``generator`` (optional) is shared by all four agents; when omitted each
    agent builds its own client from config.AGENT_LLM_CONFIG. ``search``
    (optional) enables grounded research.
    """

    def __init__(
        self,
        generator: Optional[TextGenerator] = None,
        search: Optional[SearchService] = None,
    ):
        self.generator = generator
        self.search = search

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _check_abort(ctx: RunContext, where: str) -> None:
        if ctx.aborted():
            logger.info("Run aborted (%s)", where)
            raise RunAborted(where)

    def _emit(self, ctx: RunContext, kind: EventKind, stage: str, message: str, percent: int, **kwargs) -> None:
        ctx.emit(kind, stage, message, percent, **kwargs)
        self._check_abort(ctx, f"after {kind.value} {stage}")

    @staticmethod
    def _base_stats(ctx: RunContext, stage: str) -> StageStats:
        traces = ctx.traces_for(stage)
        input_tokens, output_tokens = ctx.stage_tokens(stage)
        return StageStats(
            model=traces[-1].model if traces else None,
            duration_ms=int(ctx.timings.get(stage, 0.0) * 1000),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            warnings=[w for t in traces for w in t.warnings],
        )

    async def _timed(self, ctx: RunContext, stage: str, coro):
        start = time.time()
        with _stage(stage):
            result = await coro
        ctx.mark_timing(stage, time.time() - start)
        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _classify(
        self,
        ctx: RunContext,
        query: str,
        reasoning: dict,
        profile: Optional[DomainProfile],
    ) -> DomainProfile:
        start, done = STAGE_PERCENTS["classifier"]
        if profile is not None:
            ctx.outputs["classifier"] = profile
            self._emit(
                ctx, EventKind.STAGE_COMPLETE, "classifier",
                f"Using provided profile: {profile.domain_label}", done,
                detail="pre-classified", payload=profile.model_dump(mode="json"),
            )
            return profile

        self._emit(ctx, EventKind.STAGE_START, "classifier", "Classifying query", start)
        self._check_abort(ctx, "before classifier")
        agent = Agent01Classifier(generator=self.generator)
        profile = await self._timed(ctx, "classifier", agent.run(ctx, query, reasoning))
        ctx.outputs["classifier"] = profile
        self._check_abort(ctx, "after classifier")

        stats = self._base_stats(ctx, "classifier")
        self._emit(
            ctx, EventKind.STAGE_COMPLETE, "classifier",
            f"Identified {profile.domain_label}: {profile.subject}", done,
            detail=profile.classification_note or "", stats=stats,
            payload=profile.model_dump(mode="json"),
        )
        return profile

    async def _research(
        self,
        ctx: RunContext,
        query: str,
        profile: DomainProfile,
        reasoning: dict,
        follow_up: Optional[FollowUpContext],
    ) -> ResearchResult:
        start, done = STAGE_PERCENTS["researcher"]
        mode = "grounded" if self.search is not None else "knowledge-only"
        self._emit(ctx, EventKind.STAGE_START, "researcher", f"Gathering evidence ({mode})", start)
        self._check_abort(ctx, "before researcher")
        agent = Agent02Researcher(generator=self.generator, search=self.search)
        result = await self._timed(ctx, "researcher", agent.run(ctx, query, profile, reasoning, follow_up))
        ctx.outputs["researcher"] = result
        self._check_abort(ctx, "after researcher")

        stats = self._base_stats(ctx, "researcher")
        stats.evidence_count = len(result.evidence)
        stats.verified_evidence_count = result.verified_count if result.mode == "grounded" else None
        stats.category_counts = result.category_counts()
        self._emit(
            ctx, EventKind.STAGE_COMPLETE, "researcher",
            f"Collected {len(result.evidence)} evidence items", done,
            detail=result.mode, stats=stats,
        )
        return result

    async def _synthesize(
        self,
        ctx: RunContext,
        query: str,
        profile: DomainProfile,
        evidence,
        reasoning: dict,
        follow_up: Optional[FollowUpContext],
    ) -> Report:
        start, done = STAGE_PERCENTS["synthesizer"]
        self._emit(ctx, EventKind.STAGE_START, "synthesizer", "Drafting report", start)
        self._check_abort(ctx, "before synthesizer")
        agent = Agent03Synthesizer(generator=self.generator)
        draft = await self._timed(ctx, "synthesizer", agent.run(ctx, query, profile, evidence, reasoning, follow_up))
        ctx.outputs["synthesizer"] = draft
        self._check_abort(ctx, "after synthesizer")

        stats = self._base_stats(ctx, "synthesizer")
        stats.findings_count = len(draft.findings)
        stats.sections_count = len(draft.sections)
        stats.section_breakdown = {s.id: len(s.finding_ids()) for s in draft.sections}
        self._emit(
            ctx, EventKind.STAGE_COMPLETE, "synthesizer",
            f"Drafted {len(draft.findings)} findings across {len(draft.sections)} sections", done,
            stats=stats,
        )
        return draft

    async def _verify(
        self,
        ctx: RunContext,
        query: str,
        profile: DomainProfile,
        draft: Report,
        evidence,
        reasoning: dict,
        follow_up: Optional[FollowUpContext],
    ) -> VerificationOutcome:
        start, done = STAGE_PERCENTS["verifier"]
        self._emit(ctx, EventKind.STAGE_START, "verifier", "Verifying findings", start)
        self._check_abort(ctx, "before verifier")
        agent = Agent04Verifier(generator=self.generator)
        outcome = await self._timed(
            ctx, "verifier",
            agent.run(ctx, query, profile, draft, reasoning, evidence=evidence, follow_up=follow_up),
        )
        ctx.outputs["verifier"] = outcome
        self._check_abort(ctx, "after verifier")

        report = outcome.report
        stats = self._base_stats(ctx, "verifier")
        stats.findings_count = len(report.findings)
        stats.sections_count = len(report.sections)
        stats.avg_certainty = average_certainty(report.findings)
        stats.removed_count = len(outcome.removed_ids)
        stats.certainty_buckets = certainty_buckets(report.findings)
        self._emit(
            ctx, EventKind.STAGE_COMPLETE, "verifier",
            f"Verified {len(report.findings)} findings "
            f"({len(outcome.removed_ids)} removed, overall certainty {report.meta.overall_certainty})",
            done, detail=outcome.path, stats=stats,
        )
        return outcome

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        query: str,
        reasoning_level: Optional[str] = None,
        on_event: Optional[EventSink] = None,
        should_abort: Optional[AbortPredicate] = None,
        profile: Optional[DomainProfile] = None,
        follow_up: Optional[FollowUpContext] = None,
        ctx: Optional[RunContext] = None,
    ) -> Optional[Report]:
        """Produce a verified report for ``query``, or None if aborted."""
        ctx = ctx or RunContext(on_event=on_event, should_abort=should_abort)
        reasoning = config.get_reasoning_config(reasoning_level)
        logger.info("Pipeline run: level=%s, query=%r", reasoning["label"], query)

        try:
            self._check_abort(ctx, "before start")
            profile = await self._classify(ctx, query, reasoning, profile)
            research = await self._research(ctx, query, profile, reasoning, follow_up)
            draft = await self._synthesize(ctx, query, profile, research.evidence, reasoning, follow_up)
            outcome = await self._verify(ctx, query, profile, draft, research.evidence, reasoning, follow_up)
            report = outcome.report
            ctx.emit(
                EventKind.REPORT_READY, "complete",
                f"Report ready: {len(report.findings)} findings, overall certainty {report.meta.overall_certainty}",
                100, payload=report,
            )
        except RunAborted:
            return None

        if ctx.aborted():
            logger.info("Run aborted after report_ready — discarding report")
            return None
        logger.info("Pipeline finished in %.1fs", ctx.elapsed)
        return report


def print_summary(ctx: RunContext) -> None:
    """Pretty-print per-stage timings, tokens and cost for a run."""
    table = Table(title="Pipeline Results")
    table.add_column("Stage", style="cyan")
    table.add_column("Time", style="green")
    table.add_column("Tokens (in/out)", style="magenta")
    table.add_column("Status", style="bold")

    for stage in STAGES:
        elapsed = ctx.timings.get(stage)
        if elapsed is None:
            table.add_row(stage, "-", "-", "[dim]skipped[/dim]")
            continue
        tokens_in, tokens_out = ctx.stage_tokens(stage)
        warnings = [w for t in ctx.traces_for(stage) for w in t.warnings]
        status = f"[yellow]{len(warnings)} warning(s)[/yellow]" if warnings else "[green]OK[/green]"
        table.add_row(stage, f"{elapsed:.1f}s", f"{tokens_in:,}/{tokens_out:,}", status)

    console.print(table)
    usage = ctx.usage.summary()
    console.print(
        f"  [bold]Total:[/bold] {usage['total_tokens']:,} tokens over {usage['calls']} call(s), "
        f"est. cost ${usage['total_cost']:.4f}"
    )
    for note in ctx.annotations:
        console.print(f"  [yellow]Note:[/yellow] {note}")
