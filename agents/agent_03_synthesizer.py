"""Agent 03: Synthesizer — evidence array → draft report.

The draft carries metadata, sections whose content interleaves finding
references with connecting prose, and findings with supporting evidence.
No certainty yet: any score the model volunteers is cleared, and
contrary evidence starts empty. Both belong to the verifier.

Parse ladder: fenced parse → (truncated only) repair → balanced-brace
object scan → ParseFailure. Repair goes first because a brace scan over a
truncated report finds a complete-looking inner object (one finding, one
evidence item) and would silently return the wrong thing.

Inputs: query, DomainProfile, evidence, reasoning config, optional follow-up.
Outputs: draft Report → Agent 04 (Verifier).
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Optional

from pydantic import ValidationError

from pipeline.base_agent import BaseAgent
from pipeline.context import RunContext
from pipeline.errors import ParseFailure
from pipeline.report_integrity import audit_draft
from prompts.agent_03_system import (
    FOLLOW_UP_CONTEXT_TEMPLATE,
    SLIDE_DECK_PROMPT_TEMPLATE,
    USER_PROMPT_TEMPLATE,
    WRITTEN_REPORT_PROMPT_TEMPLATE,
)
from schemas.domain import DomainProfile
from schemas.report import EvidenceItem, FollowUpContext, OutputFormat, Report

logger = logging.getLogger(__name__)


def _range_max(value: str, default: int = 30) -> int:
    """Upper bound of a "25-35" style range."""
    try:
        return int(str(value).split("-")[-1].strip())
    except ValueError:
        return default


class Agent03Synthesizer(BaseAgent):
    name = "Agent 03: Synthesizer"
    slug = "synthesizer"
    description = "Turns the evidence array into a structured draft report with linked findings."

    def build_system_prompt(self, inputs: dict[str, Any]) -> str:
        profile: DomainProfile = inputs["profile"]
        reasoning: dict = inputs.get("reasoning") or {}
        slides = profile.output_format == OutputFormat.SLIDE_DECK
        total_findings = reasoning.get("total_findings", "25-35")

        follow_up: Optional[FollowUpContext] = inputs.get("follow_up")
        context_section = ""
        if follow_up is not None and follow_up.previous_report is not None:
            context_section = FOLLOW_UP_CONTEXT_TEMPLATE.format(messages=follow_up.recent_messages())

        if profile.rating_options:
            rating_line = '"rating": ' + " | ".join(f'"{r}"' for r in profile.rating_options) + ",\n    "
        else:
            rating_line = ""

        template = SLIDE_DECK_PROMPT_TEMPLATE if slides else WRITTEN_REPORT_PROMPT_TEMPLATE
        return template.format(
            subject=profile.subject,
            context_section=context_section,
            title=profile.subject,
            subtitle="Investor Presentation" if slides else f"{profile.domain_label} — Initiating Coverage",
            date=datetime.now().strftime("%B %Y"),
            rating_line=rating_line,
            ticker=profile.ticker,
            output_format=profile.output_format.value,
            key_stats_count=reasoning.get("key_stats_count", 6),
            slide_fields=' "layout": "content", "subtitle": "...", "speaker_notes": "...",' if slides else "",
            explanation_length=reasoning.get("explanation_length", "2-4 sentences"),
            sections=", ".join(profile.sections),
            rating_options=", ".join(profile.rating_options),
            total_findings=total_findings,
            findings_per_section=reasoning.get("findings_per_section", "3-5"),
            max_finding=_range_max(total_findings),
            supporting_min=reasoning.get("supporting_evidence_min", 3),
            quote_length=reasoning.get("quote_length", "1-2 sentences with key data points"),
        )

    def build_user_prompt(self, inputs: dict[str, Any]) -> str:
        profile: DomainProfile = inputs["profile"]
        evidence: list[EvidenceItem] = inputs["evidence"]
        payload = [e.model_dump(exclude_none=True) for e in evidence]
        return USER_PROMPT_TEMPLATE.format(
            subject=profile.subject,
            report_kind="slide deck" if profile.output_format == OutputFormat.SLIDE_DECK else "research report",
            evidence_json=json.dumps(payload, indent=2, ensure_ascii=False),
        )

    @staticmethod
    def reset_verification_fields(report: Report) -> None:
        """Drafts carry no certainty and no contrary evidence."""
        for finding in report.findings:
            finding.certainty = None
            if finding.explanation is not None:
                finding.explanation.contrary_evidence = []
        report.meta.overall_certainty = None

    async def run(
        self,
        ctx: RunContext,
        query: str,
        profile: DomainProfile,
        evidence: list[EvidenceItem],
        reasoning: Optional[dict] = None,
        follow_up: Optional[FollowUpContext] = None,
    ) -> Report:
        reasoning = reasoning or {}
        inputs = {
            "query": query,
            "profile": profile,
            "evidence": evidence,
            "reasoning": reasoning,
            "follow_up": follow_up,
        }
        response, trace = await self.call(ctx, inputs, model_hint=reasoning.get("synthesizer_model"))
        data = self.recover_json(response, trace, "object")

        try:
            report = Report.model_validate(data)
        except ValidationError as e:
            raise ParseFailure(
                f"Synthesizer output does not match the report schema: {e}",
                stage=self.slug,
                raw_output=response.text,
                stop_reason=response.stop_reason,
            ) from e

        if not report.findings:
            raise ParseFailure(
                "Synthesizer produced a report with no findings",
                stage=self.slug,
                raw_output=response.text,
                stop_reason=response.stop_reason,
            )

        self.reset_verification_fields(report)
        if report.meta.output_format is None:
            report.meta.output_format = profile.output_format
        if not report.meta.ticker and profile.ticker != "N/A":
            report.meta.ticker = profile.ticker

        warnings = audit_draft(report, profile, reasoning.get("supporting_evidence_min", 3))
        for warning in warnings:
            self.logger.warning("Draft audit: %s", warning)
        trace.warnings.extend(warnings)

        self.logger.info(
            "Draft: %d findings across %d sections (%d audit warnings)",
            len(report.findings), len(report.sections), len(warnings),
        )
        return report
