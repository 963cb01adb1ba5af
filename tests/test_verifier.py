from __future__ import annotations

import asyncio
import json
import unittest

import config
from agents.agent_04_verifier import (
    DRAFT_FALLBACK,
    EXTRACTED,
    PARSED,
    UNVERIFIED_FALLBACK,
    UNVERIFIED_NOTE,
    Agent04Verifier,
)
from pipeline.context import RunContext
from pipeline.domains import build_profile
from pipeline.llm import LLMError
from pipeline.report_integrity import assert_report_invariants
from schemas.report import EvidenceItem, Report

from report_fixtures import FakeGenerator, evidence_dict, finding_dict, report_dict

EQUITY = build_profile("Analyze NVIDIA (NVDA)", domain="equity_research", ticker="NVDA", company_name="NVIDIA Corporation")
DECK = build_profile("Pitch deck for Lexi AI", domain="pitch_deck", company_name="Lexi AI")
EVIDENCE = [EvidenceItem(**evidence_dict(i)) for i in range(4)]
LAYOUT = {"investment_thesis": ["f1", "f2"], "key_risks": ["f3"]}


def _draft(layout=LAYOUT, **meta) -> Report:
    findings = [finding_dict(fid, sid) for sid, fids in layout.items() for fid in fids]
    return Report.model_validate(report_dict(layout, findings, **meta))


def _verified(scores: dict, layout=LAYOUT) -> dict:
    """Verifier-style JSON; every finding below 95 gets one contrary item."""
    findings = []
    for sid, fids in layout.items():
        for fid in fids:
            score = scores.get(fid)
            contrary = [evidence_dict(9)] if score is not None and score < 95 else []
            findings.append(finding_dict(fid, sid, certainty=score, contrary=contrary))
    return report_dict(layout, findings)


def _verify(response, draft=None, profile=EQUITY, level="heavy", evidence=None):
    ctx = RunContext()
    generator = FakeGenerator([response])
    outcome = asyncio.run(
        Agent04Verifier(generator=generator).run(
            ctx,
            "query",
            profile,
            draft if draft is not None else _draft(),
            config.get_reasoning_config(level),
            evidence=evidence,
        )
    )
    return outcome, ctx, generator


class VerifierScoringTests(unittest.TestCase):
    def test_weak_finding_removed_and_references_repaired(self):
        outcome, ctx, _ = _verify(json.dumps(_verified({"f1": 96, "f2": 40, "f3": 10})))
        report = outcome.report

        self.assertEqual(outcome.path, PARSED)
        self.assertEqual(outcome.threshold, 25)
        self.assertEqual(outcome.removed_ids, ["f3"])
        self.assertEqual([f.id for f in report.findings], ["f1", "f2"])
        self.assertEqual([s.id for s in report.sections], ["investment_thesis"])
        self.assertEqual(report.meta.overall_certainty, 68)
        self.assertEqual(report.findings[1].explanation.contrary_evidence[0].source, "Source 9")
        assert_report_invariants(report)

    def test_zero_threshold_keeps_everything(self):
        outcome, _, generator = _verify(json.dumps(_verified({"f1": 96, "f2": 40, "f3": 10})), level="x-light")
        self.assertEqual(outcome.removed_ids, [])
        self.assertEqual(len(outcome.report.findings), 3)
        self.assertEqual(outcome.report.meta.overall_certainty, 49)
        self.assertIn("removal disabled", generator.calls[0]["system"])

    def test_adaptive_threshold_applied_locally(self):
        layout = {"investment_thesis": ["f1", "f2", "f3"], "key_risks": ["f4", "f5"]}
        response = _verified({"f1": 90, "f2": 90, "f3": 90, "f4": 90, "f5": 40}, layout)
        outcome, _, _ = _verify(json.dumps(response), draft=_draft(layout), level="x-heavy")
        self.assertEqual(outcome.threshold, 50)
        self.assertEqual(outcome.removed_ids, ["f5"])
        self.assertEqual(outcome.report.meta.overall_certainty, 90)

    def test_unscored_findings_get_default_certainty(self):
        outcome, _, _ = _verify(json.dumps(_verified({"f1": 80, "f3": 70})))
        scores = {f.id: f.certainty for f in outcome.report.findings}
        self.assertEqual(scores["f2"], config.DEFAULT_CERTAINTY)
        self.assertTrue(any("Unscored findings" in w and "f2" in w for w in outcome.warnings))

    def test_finding_without_explanation_is_stripped(self):
        data = _verified({"f1": 80, "f2": 75, "f3": 70})
        del data["findings"][1]["explanation"]
        outcome, _, _ = _verify(json.dumps(data))
        self.assertEqual([f.id for f in outcome.report.findings], ["f1", "f3"])
        self.assertEqual(outcome.removed_ids, ["f2"])
        assert_report_invariants(outcome.report)

    def test_missing_sections_restored_from_draft(self):
        data = _verified({"f1": 80, "f2": 75, "f3": 70})
        del data["sections"]
        outcome, _, _ = _verify(json.dumps(data))
        self.assertEqual([s.id for s in outcome.report.sections], ["investment_thesis", "key_risks"])
        assert_report_invariants(outcome.report)

    def test_evidence_is_sent_when_available(self):
        _, _, generator = _verify(json.dumps(_verified({"f1": 80, "f2": 75, "f3": 70})), evidence=EVIDENCE)
        self.assertIn("<evidence>", generator.calls[0]["user"])
        self.assertIn("Data point 2", generator.calls[0]["user"])


class VerifierLadderTests(unittest.TestCase):
    def test_payload_extracted_from_commentary(self):
        text = (
            'I checked everything. Summary: {"reviewed": 3}\n'
            + json.dumps(_verified({"f1": 85, "f2": 75, "f3": 70}))
            + "\nThat is all."
        )
        outcome, _, _ = _verify(text)
        self.assertEqual(outcome.path, EXTRACTED)
        self.assertEqual(len(outcome.report.findings), 3)

    def test_oversized_wrapper_does_not_hide_valid_payload(self):
        inner = _verified({"f1": 85, "f2": 75, "f3": 70})
        text = json.dumps({"findings": "see report", "report": inner, "notes": "x" * 200})
        outcome, _, _ = _verify(text)
        self.assertEqual(outcome.path, EXTRACTED)
        self.assertEqual([f.certainty for f in outcome.report.findings], [85, 75, 70])

    def test_infinite_certainty_treated_as_unscored(self):
        data = _verified({"f1": 80, "f2": 75, "f3": 70})
        text = json.dumps(data).replace('"certainty": 80', '"certainty": 1e999', 1)
        outcome, _, _ = _verify(text)
        self.assertEqual(outcome.path, PARSED)
        scores = {f.id: f.certainty for f in outcome.report.findings}
        self.assertEqual(scores["f1"], config.DEFAULT_CERTAINTY)
        assert_report_invariants(outcome.report)

    def test_garbage_falls_back_to_draft(self):
        layout = {"investment_thesis": ["f1"], "key_risks": ["f2"]}
        outcome, ctx, _ = _verify("I refuse to answer in JSON.", draft=_draft(layout))
        report = outcome.report

        self.assertEqual(outcome.path, DRAFT_FALLBACK)
        self.assertEqual([f.certainty for f in report.findings], [60, 60])
        self.assertTrue(all(f.explanation.contrary_evidence == [] for f in report.findings))
        self.assertEqual(report.meta.overall_certainty, 60)
        self.assertEqual(outcome.removed_ids, [])
        self.assertIsNone(outcome.threshold)
        self.assertEqual(len(ctx.traces_for("verifier")[0].warnings), 1)
        assert_report_invariants(report)

    def test_empty_response_falls_back_to_draft(self):
        outcome, _, _ = _verify("")
        self.assertEqual(outcome.path, DRAFT_FALLBACK)

    def test_draft_is_not_mutated(self):
        draft = _draft()
        _verify("nope", draft=draft)
        self.assertTrue(all(f.certainty is None for f in draft.findings))

    def test_zero_findings_with_evidence_marks_draft_unverified(self):
        response = json.dumps({"meta": {"title": "x"}, "sections": [], "findings": []})
        outcome, _, _ = _verify(response, evidence=EVIDENCE)
        report = outcome.report

        self.assertEqual(outcome.path, UNVERIFIED_FALLBACK)
        self.assertEqual(len(report.findings), 3)
        self.assertTrue(all(f.certainty == config.UNVERIFIED_CERTAINTY for f in report.findings))
        self.assertTrue(all(f.explanation.contrary_evidence == [UNVERIFIED_NOTE] for f in report.findings))
        self.assertEqual(report.findings[0].explanation.contrary_evidence[0].url, "internal")
        self.assertEqual(report.meta.overall_certainty, 30)

    def test_zero_findings_without_evidence_uses_draft_scores(self):
        response = json.dumps({"meta": {"title": "x"}, "sections": [], "findings": []})
        outcome, _, _ = _verify(response)
        self.assertEqual(outcome.path, DRAFT_FALLBACK)
        self.assertTrue(all(f.certainty == config.DEFAULT_CERTAINTY for f in outcome.report.findings))

    def test_upstream_errors_propagate(self):
        with self.assertRaises(LLMError):
            _verify(LLMError("overloaded", provider="anthropic", model="m"))


class VerifierSlideDeckTests(unittest.TestCase):
    def test_slide_fields_and_meta_extras_preserved(self):
        layout = {"title_slide": [], "problem": ["f1"], "traction": ["f2"]}
        draft_data = report_dict(
            layout,
            [finding_dict("f1", "problem"), finding_dict("f2", "traction")],
            company_stage="Seed",
        )
        draft_data["sections"][0].update(layout="title", subtitle="Legal research, instantly")
        draft_data["sections"][1]["speaker_notes"] = "Lead with the pain."
        draft = Report.model_validate(draft_data)

        verified = _verified({"f1": 80, "f2": 70}, layout)
        outcome, _, generator = _verify(json.dumps(verified), draft=draft, profile=DECK)
        report = outcome.report

        self.assertIn("speaker_notes", generator.calls[0]["system"])
        self.assertEqual([s.id for s in report.sections], ["title_slide", "problem", "traction"])
        self.assertEqual(report.sections[0].layout, "title")
        self.assertEqual(report.sections[0].subtitle, "Legal research, instantly")
        self.assertEqual(report.sections[1].speaker_notes, "Lead with the pain.")
        self.assertEqual(report.meta.model_extra["company_stage"], "Seed")
        assert_report_invariants(report)


if __name__ == "__main__":
    unittest.main()
