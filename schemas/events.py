"""Progress events emitted by the pipeline orchestrator."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EventKind(str, Enum):
    STAGE_START = "stage_start"
    STAGE_COMPLETE = "stage_complete"
    REPORT_READY = "report_ready"


class CertaintyBuckets(BaseModel):
    high: int = 0  # 90+
    moderate: int = 0  # 70-89
    mixed: int = 0  # 50-69
    weak: int = 0  # below 50


class StageStats(BaseModel):
    model: Optional[str] = None
    duration_ms: Optional[int] = None
    input_tokens: int = 0
    output_tokens: int = 0
    evidence_count: Optional[int] = None
    verified_evidence_count: Optional[int] = None
    category_counts: dict[str, int] = Field(default_factory=dict)
    findings_count: Optional[int] = None
    sections_count: Optional[int] = None
    section_breakdown: dict[str, int] = Field(default_factory=dict)
    avg_certainty: Optional[int] = None
    removed_count: Optional[int] = None
    certainty_buckets: Optional[CertaintyBuckets] = None
    warnings: list[str] = Field(default_factory=list)


class PipelineEvent(BaseModel):
    kind: EventKind
    stage: str
    message: str
    percent: int
    detail: str = ""
    stats: Optional[StageStats] = None
    payload: Optional[Any] = None
