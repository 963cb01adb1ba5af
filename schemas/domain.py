"""Domain profile schema — produced once by the classifier, read-only downstream."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from schemas.report import OutputFormat


class DomainProfile(BaseModel):
    """Section layout, source hierarchy and vocabulary for one report domain,
    plus the entity fields extracted from the query."""

    model_config = ConfigDict(frozen=True)

    domain: str
    domain_label: str
    output_format: OutputFormat = OutputFormat.WRITTEN_REPORT
    # Ordered most to least authoritative.
    source_hierarchy: tuple[str, ...] = ()
    certainty_rubric: str = "factual_verification"
    evidence_style: str = "quantitative"
    tone_template: str = ""
    # Ordered section ids the synthesizer must use.
    sections: tuple[str, ...] = ()
    # Section ids exempt from the "must reference a finding" rule.
    title_sections: tuple[str, ...] = ("title_slide",)
    rating_options: tuple[str, ...] = ()
    evidence_categories: tuple[str, ...] = ()

    # Extracted from the query
    ticker: str = "N/A"
    company_name: str = ""
    focus_areas: tuple[str, ...] = ()
    timeframe: str = "current"

    # Set when the classifier fell back to the default profile.
    classification_note: Optional[str] = None

    @property
    def subject(self) -> str:
        """Human label for prompts: 'NVIDIA Corporation (NVDA)' or just the name."""
        if self.ticker and self.ticker != "N/A":
            return f"{self.company_name} ({self.ticker})"
        return self.company_name


class ClassifierResponse(BaseModel):
    """Shape of the JSON the classifier asks for."""

    domain: str = "equity_research"
    ticker: Optional[str] = None
    company_name: Optional[str] = None
    focus_areas: list[str] = Field(default_factory=list)
    timeframe: Optional[str] = None
    output_format: Optional[str] = None
