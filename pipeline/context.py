"""Per-run state passed explicitly through the pipeline.

One RunContext per report run. It owns everything that accumulates while
the run is in flight (token usage, stage traces, annotations, timings)
and the two externally supplied hooks: the event sink and the abort
predicate. Nothing here is shared between runs.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pipeline.llm import UsageTracker
from schemas.events import EventKind, PipelineEvent, StageStats

logger = logging.getLogger(__name__)

EventSink = Callable[[PipelineEvent], None]
AbortPredicate = Callable[[], bool]


@dataclass
class StageTrace:
    """What one collaborator call looked like, kept for debugging a run."""

    stage: str
    model: str = ""
    stop_reason: str = ""
    raw_chars: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: int = 0
    repaired: bool = False
    warnings: list[str] = field(default_factory=list)


class RunContext:
    def __init__(
        self,
        on_event: Optional[EventSink] = None,
        should_abort: Optional[AbortPredicate] = None,
        usage: Optional[UsageTracker] = None,
    ):
        self._on_event = on_event
        self._should_abort = should_abort
        self.usage = usage if usage is not None else UsageTracker()
        self.traces: list[StageTrace] = []
        self.annotations: list[str] = []
        self.timings: dict[str, float] = {}
        # Stage results by stage name (profile, research, draft, verification).
        self.outputs: dict[str, Any] = {}
        self.events: list[PipelineEvent] = []
        self._last_percent = 0
        self._started = time.time()

    # -- cancellation -------------------------------------------------------

    def aborted(self) -> bool:
        if self._should_abort is None:
            return False
        return bool(self._should_abort())

    # -- events -------------------------------------------------------------

    def emit(
        self,
        kind: EventKind,
        stage: str,
        message: str,
        percent: int,
        detail: str = "",
        stats: Optional[StageStats] = None,
        payload: Any = None,
    ) -> PipelineEvent:
        # Percent never goes backwards, whatever the caller passes.
        percent = max(self._last_percent, min(100, int(percent)))
        self._last_percent = percent
        event = PipelineEvent(
            kind=kind,
            stage=stage,
            message=message,
            percent=percent,
            detail=detail,
            stats=stats,
            payload=payload,
        )
        self.events.append(event)
        logger.debug("Event %s/%s %d%%: %s", kind.value, stage, percent, message)
        if self._on_event is not None:
            self._on_event(event)
        return event

    # -- traces -------------------------------------------------------------

    def record_trace(self, trace: StageTrace) -> None:
        self.traces.append(trace)

    def annotate(self, note: str) -> None:
        logger.warning("Run annotation: %s", note)
        self.annotations.append(note)

    def traces_for(self, stage: str) -> list[StageTrace]:
        return [t for t in self.traces if t.stage == stage]

    def stage_tokens(self, stage: str) -> tuple[int, int]:
        traces = self.traces_for(stage)
        return (
            sum(t.input_tokens for t in traces),
            sum(t.output_tokens for t in traces),
        )

    def mark_timing(self, stage: str, seconds: float) -> None:
        self.timings[stage] = seconds

    @property
    def elapsed(self) -> float:
        return time.time() - self._started
