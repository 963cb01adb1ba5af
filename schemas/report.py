"""Report schema — evidence, findings, sections, and the report envelope.

Stable keys (the prompts ask the model for exactly these):
  meta{}, sections[].content[], findings[].explanation{supporting_evidence[],
  contrary_evidence[]}

Content items form a tagged union on ``type``:
  {"type": "finding", "id": "f3"} | {"type": "text", "value": "..."} | {"type": "break"}
"""

from __future__ import annotations

import math
import re
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class _LenientStrEnum(str, Enum):
    """Base for string enums that tolerate LLM output quirks.

    Handles: wrong case, spaces instead of underscores, hyphens, etc.
    If no match, falls back to the first member instead of crashing.
    """

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            normalised = value.strip().lower().replace(" ", "_").replace("-", "_")
            for member in cls:
                if member.value == normalised or member.name.lower() == normalised:
                    return member
        return list(cls)[0]


class OutputFormat(_LenientStrEnum):
    WRITTEN_REPORT = "written_report"
    SLIDE_DECK = "slide_deck"


# Provenance markers allowed in place of a real URL.
URL_SENTINELS = frozenset({"general", "various", "derived", "internal"})

_CERTAINTY_RE = re.compile(r"-?\d+(?:\.\d+)?")


def coerce_certainty(value: Any) -> Optional[int]:
    """Accept 85, 85.4, "85", "85%"; clamp into 1-99; junk becomes None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        match = _CERTAINTY_RE.search(value)
        if not match:
            return None
        value = float(match.group(0))
    if not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return max(1, min(99, int(round(value))))


# ---------------------------------------------------------------------------
# Evidence
# ---------------------------------------------------------------------------

class EvidenceItem(BaseModel):
    """A sourced quote or data point. Immutable once produced."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    source: str = ""
    quote: str = ""
    url: str = "general"
    category: str = ""
    authority: str = ""
    verified: Optional[bool] = None

    @field_validator("source", "quote", "category", "authority", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("url", mode="before")
    @classmethod
    def _normalise_url(cls, value: Any) -> str:
        text = str(value or "").strip()
        if not text:
            return "general"
        if text.lower() in URL_SENTINELS:
            return text.lower()
        return text

    @property
    def is_sentinel_url(self) -> bool:
        return self.url in URL_SENTINELS


class Explanation(BaseModel):
    title: str = ""
    text: str = ""
    supporting_evidence: list[EvidenceItem] = Field(default_factory=list)
    contrary_evidence: list[EvidenceItem] = Field(default_factory=list)

    @field_validator("supporting_evidence", "contrary_evidence", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value


# ---------------------------------------------------------------------------
# Findings
# ---------------------------------------------------------------------------

class Finding(BaseModel):
    """A single verifiable claim. ``certainty`` is set only by the verifier."""

    model_config = ConfigDict(extra="ignore")

    id: str
    section: str = ""
    text: str = ""
    certainty: Optional[int] = None
    explanation: Optional[Explanation] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_str(cls, value: Any) -> str:
        return str(value).strip()

    @field_validator("certainty", mode="before")
    @classmethod
    def _coerce_certainty(cls, value: Any) -> Optional[int]:
        return coerce_certainty(value)


# ---------------------------------------------------------------------------
# Section content
# ---------------------------------------------------------------------------

class FindingRef(BaseModel):
    type: Literal["finding"] = "finding"
    id: str

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_str(cls, value: Any) -> str:
        return str(value).strip()


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    value: str = ""


class BreakContent(BaseModel):
    type: Literal["break"] = "break"


ContentItem = Annotated[
    Union[FindingRef, TextContent, BreakContent],
    Field(discriminator="type"),
]

_CONTENT_TYPES = {"finding", "text", "break"}


class Section(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    title: str = ""
    content: list[ContentItem] = Field(default_factory=list)
    # Slide-deck only; the verifier must carry these through untouched.
    subtitle: Optional[str] = None
    layout: Optional[str] = None
    speaker_notes: Optional[str] = None

    @field_validator("content", mode="before")
    @classmethod
    def _drop_unknown_items(cls, value: Any) -> Any:
        if value is None:
            return []
        if not isinstance(value, list):
            return value
        kept = []
        for item in value:
            if not isinstance(item, dict):
                continue
            kind = item.get("type")
            if kind not in _CONTENT_TYPES:
                continue
            if kind == "finding" and not item.get("id"):
                continue
            kept.append(item)
        return kept

    def finding_ids(self) -> list[str]:
        return [item.id for item in self.content if isinstance(item, FindingRef)]


# ---------------------------------------------------------------------------
# Report envelope
# ---------------------------------------------------------------------------

class KeyStat(BaseModel):
    label: str = ""
    value: str = ""

    @field_validator("label", "value", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> str:
        return "" if value is None else str(value)


class Methodology(BaseModel):
    explanation: Explanation = Field(default_factory=Explanation)


class ReportMeta(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: str = ""
    subtitle: Optional[str] = None
    date: Optional[str] = None
    rating: Optional[str] = None
    ticker: Optional[str] = None
    key_stats: list[KeyStat] = Field(default_factory=list)
    overall_certainty: Optional[int] = None
    methodology: Optional[Methodology] = None
    output_format: Optional[OutputFormat] = None

    @field_validator("key_stats", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("overall_certainty", mode="before")
    @classmethod
    def _coerce_overall(cls, value: Any) -> Optional[int]:
        return coerce_certainty(value)


class Report(BaseModel):
    meta: ReportMeta = Field(default_factory=ReportMeta)
    sections: list[Section] = Field(default_factory=list)
    findings: list[Finding] = Field(default_factory=list)

    @field_validator("meta", mode="before")
    @classmethod
    def _none_to_meta(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("sections", "findings", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value

    def finding_map(self) -> dict[str, Finding]:
        return {f.id: f for f in self.findings}


# ---------------------------------------------------------------------------
# Follow-up context
# ---------------------------------------------------------------------------

class ConversationMessage(BaseModel):
    role: str
    content: str


class FollowUpContext(BaseModel):
    """Previous report plus recent chat turns, for follow-up runs."""

    previous_report: Optional[Report] = None
    message_history: list[ConversationMessage] = Field(default_factory=list)

    def recent_messages(self, limit: int = 4) -> str:
        return "\n".join(f"{m.role}: {m.content}" for m in self.message_history[-limit:])
