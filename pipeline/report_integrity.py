"""Structural repair and checks for reports.

Orphan cleanup runs after every verification outcome, fallbacks included:

  1. collect surviving finding ids
  2. drop content items referencing a missing id
  3. coalesce text items that end up adjacent
  4. drop sections left without a finding reference (title sections exempt)
  5. recompute meta.overall_certainty

All functions mutate the report in place.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from pipeline.certainty import TOP_TIER_FLOOR, overall_certainty
from pipeline.errors import InvariantViolation
from schemas.domain import DomainProfile
from schemas.report import ContentItem, Finding, FindingRef, Report, TextContent

logger = logging.getLogger(__name__)

DEFAULT_TITLE_SECTIONS = ("title_slide",)


def _clean_content(items: list[ContentItem], valid_ids: set[str]) -> list[ContentItem]:
    cleaned: list[ContentItem] = []
    for item in items:
        if isinstance(item, FindingRef) and item.id not in valid_ids:
            continue
        if isinstance(item, TextContent) and cleaned and isinstance(cleaned[-1], TextContent):
            cleaned[-1] = TextContent(value=cleaned[-1].value + item.value)
            continue
        cleaned.append(item)
    return cleaned


def _prune_sections(report: Report, title_sections: Iterable[str]) -> list[str]:
    exempt = set(title_sections)
    kept, dropped = [], []
    for section in report.sections:
        if section.id in exempt or section.finding_ids():
            kept.append(section)
        else:
            dropped.append(section.id)
    report.sections = kept
    return dropped


def recompute_overall_certainty(report: Report) -> Optional[int]:
    report.meta.overall_certainty = overall_certainty(report.findings)
    return report.meta.overall_certainty


def clean_orphaned_refs(
    report: Report,
    title_sections: Iterable[str] = DEFAULT_TITLE_SECTIONS,
) -> list[str]:
    """Repair cross-references after findings were removed.

    Returns the ids of sections that were dropped.
    """
    valid_ids = {f.id for f in report.findings}
    for section in report.sections:
        section.content = _clean_content(section.content, valid_ids)
    dropped = _prune_sections(report, title_sections)
    if dropped:
        logger.info("Orphan cleanup dropped %d section(s): %s", len(dropped), ", ".join(dropped))
    recompute_overall_certainty(report)
    return dropped


def remove_findings(report: Report, ids: Iterable[str]) -> None:
    """Delete findings by id. Leaves dangling refs for clean_orphaned_refs."""
    doomed = set(ids)
    report.findings = [f for f in report.findings if f.id not in doomed]


def has_explanation(finding: Finding) -> bool:
    expl = finding.explanation
    return bool(expl is not None and expl.title.strip() and expl.text.strip())


def strip_findings_without_explanations(
    report: Report,
    title_sections: Iterable[str] = DEFAULT_TITLE_SECTIONS,
) -> list[str]:
    """Remove findings whose explanation lacks a title or text.

    Never empties a report: when no finding has a usable explanation the
    findings are left alone.
    """
    invalid = [f.id for f in report.findings if not has_explanation(f)]
    if not invalid:
        return []
    if len(invalid) == len(report.findings):
        logger.warning("No finding has a usable explanation — keeping all %d", len(invalid))
        return []
    logger.info("Stripping %d finding(s) without explanations: %s", len(invalid), ", ".join(invalid))
    remove_findings(report, invalid)
    clean_orphaned_refs(report, title_sections)
    return invalid


def audit_draft(
    report: Report,
    profile: DomainProfile,
    min_supporting: int = 3,
) -> list[str]:
    """List structural problems in a synthesizer draft. Read-only."""
    warnings: list[str] = []
    finding_ids = {f.id for f in report.findings}
    allowed_sections = set(profile.sections)

    for section in report.sections:
        if allowed_sections and section.id not in allowed_sections:
            warnings.append(f"section '{section.id}' is not in the {profile.domain} layout")
        for ref in section.finding_ids():
            if ref not in finding_ids:
                warnings.append(f"section '{section.id}' references missing finding {ref}")

    referenced = {ref for s in report.sections for ref in s.finding_ids()}
    for finding in report.findings:
        supporting = len(finding.explanation.supporting_evidence) if finding.explanation else 0
        if supporting < min_supporting:
            warnings.append(f"finding {finding.id} has {supporting} supporting evidence item(s), expected {min_supporting}+")
        if finding.id not in referenced:
            warnings.append(f"finding {finding.id} is not referenced from any section")

    if not report.findings:
        warnings.append("draft has no findings")
    return warnings


def findings_missing_contrary(report: Report) -> list[str]:
    """Ids of below-top-tier findings that carry no contrary evidence."""
    missing = []
    for finding in report.findings:
        if finding.certainty is None or finding.certainty >= TOP_TIER_FLOOR:
            continue
        if finding.explanation is None or not finding.explanation.contrary_evidence:
            missing.append(finding.id)
    return missing


def assert_report_invariants(
    report: Report,
    title_sections: Iterable[str] = DEFAULT_TITLE_SECTIONS,
) -> None:
    """Raise InvariantViolation if a finalized report is structurally broken."""
    exempt = set(title_sections)
    finding_ids = {f.id for f in report.findings}

    if not report.findings:
        raise InvariantViolation("report has no findings")

    for finding in report.findings:
        if finding.certainty is None or not 1 <= finding.certainty <= 99:
            raise InvariantViolation(f"finding {finding.id} has invalid certainty {finding.certainty!r}")

    for section in report.sections:
        previous = None
        for item in section.content:
            if isinstance(item, FindingRef) and item.id not in finding_ids:
                raise InvariantViolation(f"section '{section.id}' references missing finding {item.id}")
            if isinstance(item, TextContent) and isinstance(previous, TextContent):
                raise InvariantViolation(f"section '{section.id}' has adjacent text items")
            previous = item
        if section.id not in exempt and not section.finding_ids():
            raise InvariantViolation(f"section '{section.id}' has no finding references")

    expected = overall_certainty(report.findings)
    if report.meta.overall_certainty != expected:
        raise InvariantViolation(
            f"overall_certainty {report.meta.overall_certainty} != mean {expected}"
        )
