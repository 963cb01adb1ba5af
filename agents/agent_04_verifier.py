"""Agent 04: Verifier — the adversarial skeptic.

Reviews every finding, adds contrary evidence, assigns certainty, removes
weak findings, then repairs cross-references. THIS AGENT'S JOB IS TO
LOWER CERTAINTY, NOT RAISE IT.

The verifier never fails on bad output. Ladder:
  1. parse the cleaned response as a JSON object
  2. balanced-brace scan, preferring an object with a "findings" key
  3. return the draft with existing-or-default certainty (terminal)
When evidence-aware verification comes back with zero findings, the
draft findings are kept at a low certainty with a "could not verify"
contrary note. Orphan cleanup runs after every outcome.

Upstream errors from the text generator still propagate.

Inputs: query, DomainProfile, draft Report, reasoning config,
        optional original evidence and follow-up context.
Outputs: VerificationOutcome.report → caller.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import ValidationError

import config
from pipeline.base_agent import BaseAgent
from pipeline.certainty import AdaptiveThresholdPolicy, apply_removal, policy_from_config
from pipeline.context import RunContext
from pipeline.json_repair import load_json_lenient, objects_with_key, strip_fences
from pipeline.report_integrity import (
    clean_orphaned_refs,
    findings_missing_contrary,
    strip_findings_without_explanations,
)
from prompts.agent_04_system import (
    EVIDENCE_INSTRUCTION,
    FOLLOW_UP_CONTEXT_TEMPLATE,
    SLIDE_FIELD_INSTRUCTION,
    SYSTEM_PROMPT_TEMPLATE,
    USER_PROMPT_TEMPLATE,
)
from schemas.domain import DomainProfile
from schemas.report import (
    EvidenceItem,
    Explanation,
    FollowUpContext,
    OutputFormat,
    Report,
)

logger = logging.getLogger(__name__)

PARSED = "parsed"
EXTRACTED = "extracted"
DRAFT_FALLBACK = "draft_fallback"
UNVERIFIED_FALLBACK = "unverified_fallback"

_SLIDE_FIELDS = ("subtitle", "layout", "speaker_notes")

UNVERIFIED_NOTE = EvidenceItem(
    source="Verification",
    quote="Could not verify this finding against the collected evidence; treat it as unconfirmed.",
    url="internal",
)


@dataclass
class VerificationOutcome:
    report: Report
    path: str
    removed_ids: list[str] = field(default_factory=list)
    threshold: Optional[int] = None
    warnings: list[str] = field(default_factory=list)


class Agent04Verifier(BaseAgent):
    name = "Agent 04: Verifier"
    slug = "verifier"
    description = "Scores every finding, attaches contrary evidence and prunes weak claims."

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    @staticmethod
    def _format_label(profile: DomainProfile) -> str:
        if profile.output_format == OutputFormat.SLIDE_DECK:
            return "slide deck"
        return f"{profile.domain_label.lower()} report"

    def build_system_prompt(self, inputs: dict[str, Any]) -> str:
        profile: DomainProfile = inputs["profile"]
        reasoning: dict = inputs.get("reasoning") or {}
        threshold = int(reasoning.get("removal_threshold", 25))
        adaptive = isinstance(policy_from_config(reasoning), AdaptiveThresholdPolicy)
        evidence_aware = bool(inputs.get("evidence"))

        follow_up: Optional[FollowUpContext] = inputs.get("follow_up")
        context_section = ""
        if follow_up is not None and follow_up.previous_report is not None:
            context_section = FOLLOW_UP_CONTEXT_TEMPLATE.format(messages=follow_up.recent_messages())

        if threshold == 0:
            removal_label = "Remove entirely (removal disabled)"
            removal_rule = "Keep all findings regardless of score"
        elif adaptive:
            removal_label = "Remove entirely (the cutoff rises when most findings already score high)"
            removal_rule = f"Remove findings with certainty < {threshold} from findings array and section content"
        else:
            removal_label = "Remove entirely"
            removal_rule = f"Remove findings with certainty < {threshold} from findings array and section content"

        return SYSTEM_PROMPT_TEMPLATE.format(
            format_label=self._format_label(profile),
            subject=profile.subject,
            context_section=context_section,
            slide_field_instruction=SLIDE_FIELD_INSTRUCTION if profile.output_format == OutputFormat.SLIDE_DECK else "",
            evidence_instruction=EVIDENCE_INSTRUCTION if evidence_aware else "",
            accuracy_basis=" against the original evidence and your knowledge" if evidence_aware else " against your knowledge",
            removal_threshold=threshold,
            removal_label=removal_label,
            removal_rule=removal_rule,
            methodology_length=reasoning.get("methodology_length", "3-5 sentences"),
            methodology_sources=reasoning.get("methodology_sources", "3-4"),
        )

    def build_user_prompt(self, inputs: dict[str, Any]) -> str:
        profile: DomainProfile = inputs["profile"]
        draft: Report = inputs["draft"]
        evidence: Optional[list[EvidenceItem]] = inputs.get("evidence")
        evidence_block = ""
        if evidence:
            payload = [e.model_dump(exclude_none=True) for e in evidence]
            evidence_block = "\n\n<evidence>\n" + json.dumps(payload, indent=2, ensure_ascii=False) + "\n</evidence>"
        return USER_PROMPT_TEMPLATE.format(
            format_label=self._format_label(profile),
            subject=profile.subject,
            draft_json=draft.model_dump_json(indent=2, exclude_none=True),
            evidence_block=evidence_block,
        )

    # ------------------------------------------------------------------
    # Parse ladder
    # ------------------------------------------------------------------

    def _validate(self, data: Any) -> Optional[Report]:
        if not isinstance(data, dict):
            return None
        try:
            return Report.model_validate(data)
        except (ValidationError, ValueError, TypeError, ArithmeticError) as e:
            self.logger.warning("Verifier JSON does not match the report schema: %s", e)
            return None

    def parse_response(self, text: str) -> tuple[Optional[Report], Optional[str]]:
        """Steps 1-2 of the ladder. Returns (report, path) or (None, None)."""
        if not text or not text.strip():
            return None, None

        try:
            report = self._validate(load_json_lenient(strip_fences(text)))
            if report is not None:
                return report, PARSED
        except json.JSONDecodeError as e:
            self.logger.warning("Verifier parse error: %s", e)

        for candidate in objects_with_key(text, "findings"):
            report = self._validate(candidate)
            if report is not None:
                self.logger.warning("Verifier output extracted via balanced-brace scan")
                return report, EXTRACTED
        return None, None

    # ------------------------------------------------------------------
    # Merging and fallbacks
    # ------------------------------------------------------------------

    def _restore_structure(self, report: Report, draft: Report) -> None:
        """Put back what the model must not drop: sections, slide fields, meta basics."""
        if not report.sections and draft.sections:
            self.logger.warning("Verifier returned no sections — restoring draft sections")
            report.sections = [s.model_copy(deep=True) for s in draft.sections]

        draft_sections = {s.id: s for s in draft.sections}
        for section in report.sections:
            original = draft_sections.get(section.id)
            if original is None:
                continue
            for name in _SLIDE_FIELDS:
                if getattr(section, name) is None and getattr(original, name) is not None:
                    setattr(section, name, getattr(original, name))

        meta, draft_meta = report.meta, draft.meta
        if not meta.title:
            meta.title = draft_meta.title
        for name in ("subtitle", "date", "rating", "ticker", "output_format"):
            if getattr(meta, name) is None and getattr(draft_meta, name) is not None:
                setattr(meta, name, getattr(draft_meta, name))
        if not meta.key_stats:
            meta.key_stats = list(draft_meta.key_stats)
        for key, value in (draft_meta.model_extra or {}).items():
            if key not in (meta.model_extra or {}):
                setattr(meta, key, value)

    def draft_fallback(self, draft: Report, title_sections) -> Report:
        """Terminal rung: the draft with existing-or-default certainty. Never raises."""
        report = draft.model_copy(deep=True)
        for finding in report.findings:
            if finding.certainty is None:
                finding.certainty = config.DEFAULT_CERTAINTY
            # Explanation always materialises contrary_evidence as a list.
            if finding.explanation is None:
                finding.explanation = Explanation()
        clean_orphaned_refs(report, title_sections)
        return report

    def unverified_fallback(self, draft: Report, title_sections) -> Report:
        """Draft findings at low certainty, each flagged as unverified."""
        report = draft.model_copy(deep=True)
        for finding in report.findings:
            finding.certainty = config.UNVERIFIED_CERTAINTY
            if finding.explanation is None:
                finding.explanation = Explanation()
            finding.explanation.contrary_evidence = [UNVERIFIED_NOTE]
        clean_orphaned_refs(report, title_sections)
        return report

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        ctx: RunContext,
        query: str,
        profile: DomainProfile,
        draft: Report,
        reasoning: Optional[dict] = None,
        evidence: Optional[list[EvidenceItem]] = None,
        follow_up: Optional[FollowUpContext] = None,
    ) -> VerificationOutcome:
        reasoning = reasoning or {}
        title_sections = profile.title_sections
        inputs = {
            "query": query,
            "profile": profile,
            "draft": draft,
            "reasoning": reasoning,
            "evidence": evidence,
            "follow_up": follow_up,
        }
        draft_ids = [f.id for f in draft.findings]

        response, trace = await self.call(ctx, inputs, model_hint=reasoning.get("verifier_model"))
        report, path = self.parse_response(response.text or "")
        threshold: Optional[int] = None
        warnings: list[str] = []

        if report is not None and not report.findings:
            report = None
            if evidence:
                warnings.append("Evidence-aware verification returned zero findings — draft findings kept as unverified")
                report = self.unverified_fallback(draft, title_sections)
                path = UNVERIFIED_FALLBACK
            else:
                warnings.append("Verifier returned zero findings — using draft with default scores")

        if report is None:
            if path is None:
                warnings.append("Verification output unusable — using draft with default scores")
            report = self.draft_fallback(draft, title_sections)
            path = DRAFT_FALLBACK
        elif path in (PARSED, EXTRACTED):
            self._restore_structure(report, draft)
            unscored = [f.id for f in report.findings if f.certainty is None]
            for finding in report.findings:
                if finding.certainty is None:
                    finding.certainty = config.DEFAULT_CERTAINTY
            if unscored:
                warnings.append(f"Unscored findings given default certainty: {', '.join(unscored)}")

            # The model may ignore the threshold; apply it here regardless.
            kept, _removed, threshold = apply_removal(report.findings, policy_from_config(reasoning))
            report.findings = kept
            stripped = strip_findings_without_explanations(report, title_sections)
            if stripped:
                warnings.append(f"Findings without explanations removed: {', '.join(stripped)}")
            clean_orphaned_refs(report, title_sections)

        missing = findings_missing_contrary(report)
        if missing and path in (PARSED, EXTRACTED):
            warnings.append(f"Findings below top tier without contrary evidence: {', '.join(missing)}")

        final_ids = {f.id for f in report.findings}
        removed = [fid for fid in draft_ids if fid not in final_ids]
        for warning in warnings:
            self.logger.warning("%s", warning)
        trace.warnings.extend(warnings)
        self.logger.info(
            "Verification via %s: %d/%d findings kept, overall certainty %s",
            path, len(report.findings), len(draft_ids), report.meta.overall_certainty,
        )
        return VerificationOutcome(
            report=report,
            path=path,
            removed_ids=removed,
            threshold=threshold,
            warnings=warnings,
        )
