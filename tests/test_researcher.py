from __future__ import annotations

import asyncio
import json
import unittest

from agents.agent_02_researcher import GROUNDED, UNGROUNDED, Agent02Researcher
from pipeline.context import RunContext
from pipeline.domains import build_profile
from pipeline.errors import ParseFailure, TruncationFailure
from schemas.report import FollowUpContext, Report

from report_fixtures import FakeGenerator, FakeSearch, nvda_draft, truncated

QUERY = "Analyze NVIDIA (NVDA)"


def _profile():
    return build_profile(QUERY, domain="equity_research", ticker="NVDA", company_name="NVIDIA Corporation")


def _item(source, quote, url="general", category="financial_data"):
    return {"source": source, "quote": quote, "url": url, "category": category, "authority": "press_coverage"}


def _run(generator, search=None, follow_up=None, query_count=3):
    ctx = RunContext()
    agent = Agent02Researcher(generator=generator, search=search, query_count=query_count)
    result = asyncio.run(agent.run(ctx, QUERY, _profile(), {"evidence_min_items": 2}, follow_up))
    return result, ctx, agent


class UngroundedResearchTests(unittest.TestCase):
    def test_knowledge_only_evidence(self):
        payload = [
            _item("NVIDIA 10-K", "Data center revenue was $47.5B in FY2024.", url="https://sec.gov/nvda-10k"),
            _item("Analyst consensus", "Most analysts rate NVDA a buy.", url="Various", category="analyst_opinion"),
            _item("Empty", "   "),
            "not an object",
        ]
        payload[0]["verified"] = True
        generator = FakeGenerator([json.dumps(payload)])
        result, ctx, _ = _run(generator)

        self.assertEqual(result.mode, UNGROUNDED)
        self.assertEqual(len(result.evidence), 2)
        self.assertIsNone(result.evidence[0].verified)
        self.assertEqual(result.evidence[1].url, "various")
        self.assertEqual(result.category_counts(), {"financial_data": 1, "analyst_opinion": 1})
        self.assertEqual(len(generator.calls), 1)

    def test_truncated_array_is_repaired(self):
        text = (
            '[{"source": "A", "quote": "Revenue grew 122%.", "url": "general", "category": "financial_data"}, '
            '{"source": "B", "quote": "cut off mid'
        )
        result, ctx, _ = _run(FakeGenerator([truncated(text)]))
        self.assertEqual([e.source for e in result.evidence], ["A"])
        trace = ctx.traces_for("researcher")[0]
        self.assertTrue(trace.repaired)
        self.assertEqual(trace.stop_reason, "truncated")

    def test_unparseable_output_raises_with_raw_text(self):
        with self.assertRaises(ParseFailure) as cm:
            _run(FakeGenerator(["I cannot help with that."]))
        self.assertNotIsInstance(cm.exception, TruncationFailure)
        self.assertEqual(cm.exception.raw_output, "I cannot help with that.")
        self.assertEqual(cm.exception.stage, "researcher")

    def test_unrepairable_truncation_raises_truncation_failure(self):
        with self.assertRaises(TruncationFailure) as cm:
            _run(FakeGenerator([truncated('[{"source": "A", "quote": "never closed')]))
        self.assertEqual(cm.exception.stop_reason, "truncated")

    def test_no_valid_items_raises(self):
        payload = [_item("A", ""), _item("B", "  ")]
        with self.assertRaises(ParseFailure):
            _run(FakeGenerator([json.dumps(payload)]))

    def test_follow_up_context_reaches_the_prompt(self):
        previous = Report.model_validate(nvda_draft(1))
        follow_up = FollowUpContext(
            previous_report=previous,
            message_history=[{"role": "user", "content": "Dig deeper into margins"}],
        )
        generator = FakeGenerator([json.dumps([_item("A", "Gross margin was 75%.")])])
        _run(generator, follow_up=follow_up)
        system = generator.calls[0]["system"]
        self.assertIn("CONVERSATION CONTEXT", system)
        self.assertIn("Dig deeper into margins", system)


class GroundedResearchTests(unittest.TestCase):
    def test_evidence_tagged_against_returned_urls(self):
        search = FakeSearch(
            default=[
                {"title": "Q3 results", "url": "https://www.example.com/q3/", "snippet": "Revenue $35.1B"},
                {"title": "Price", "url": "https://news.example.org/nvda", "snippet": "Shares up"},
            ]
        )
        extraction = [
            _item("Example", "Revenue was $35.1B.", url="https://example.com/q3"),
            _item("Elsewhere", "Shares rose 8%.", url="https://unrelated.net/story", category="market_data"),
        ]
        generator = FakeGenerator(
            [
                '["NVIDIA Q3 earnings", "NVIDIA stock price", "NVIDIA competitors"]',
                json.dumps(extraction),
            ]
        )
        result, ctx, _ = _run(generator, search=search)

        self.assertEqual(result.mode, GROUNDED)
        self.assertEqual(search.queries, ["NVIDIA Q3 earnings", "NVIDIA stock price", "NVIDIA competitors"])
        self.assertEqual(result.result_urls, 2)
        self.assertEqual([e.verified for e in result.evidence], [True, False])
        self.assertEqual(result.verified_count, 1)
        self.assertIn("<search_results>", generator.calls[1]["user"])
        self.assertIn("Revenue $35.1B", generator.calls[1]["user"])
        self.assertEqual(len(ctx.traces_for("researcher")), 2)

    def test_query_list_capped_and_deduplicated(self):
        search = FakeSearch(default=[{"title": "t", "url": "https://a.com/1", "snippet": "s"}])
        generator = FakeGenerator(
            [
                '["q1", "q1", "q2", "q3", "q4"]',
                json.dumps([_item("A", "Quote", url="https://a.com/1")]),
            ]
        )
        _run(generator, search=search, query_count=3)
        self.assertEqual(search.queries, ["q1", "q2", "q3"])

    def test_failed_planning_uses_fallback_queries(self):
        search = FakeSearch(default=[{"title": "t", "url": "https://a.com/1", "snippet": "s"}])
        generator = FakeGenerator(
            [
                "Here are some ideas for searches!",
                json.dumps([_item("A", "Quote", url="https://a.com/1")]),
            ]
        )
        result, _, agent = _run(generator, search=search)
        self.assertEqual(search.queries, agent.fallback_queries(_profile()))
        self.assertEqual(len(search.queries), 3)
        self.assertTrue(all(q.startswith("NVIDIA Corporation NVDA") for q in search.queries))
        self.assertEqual(result.mode, GROUNDED)

    def test_failing_queries_degrade_to_empty_results(self):
        search = FakeSearch(
            results_by_query={"q2": [{"title": "t", "url": "https://a.com/1", "snippet": "s"}]},
            fail_queries={"q1"},
        )
        generator = FakeGenerator(
            ['["q1", "q2"]', json.dumps([_item("A", "Quote", url="https://a.com/1")])]
        )
        result, _, _ = _run(generator, search=search)
        self.assertEqual(result.mode, GROUNDED)
        self.assertEqual(result.result_urls, 1)

    def test_malformed_urls_are_tagged_unverified(self):
        search = FakeSearch(
            default=[
                {"title": "Broken", "url": "http://[bad-host/page", "snippet": "s"},
                {"title": "Q3", "url": "https://a.com/1", "snippet": "Revenue $35.1B"},
            ]
        )
        extraction = [
            _item("A", "Revenue was $35.1B.", url="https://a.com/1"),
            _item("B", "Shares rose 8%.", url="http://[broken", category="market_data"),
        ]
        generator = FakeGenerator(['["q1"]', json.dumps(extraction)])
        result, _, _ = _run(generator, search=search)

        self.assertEqual(result.mode, GROUNDED)
        self.assertEqual(result.result_urls, 2)
        self.assertEqual([e.verified for e in result.evidence], [True, False])

    def test_no_search_results_falls_back_to_ungrounded(self):
        search = FakeSearch()
        generator = FakeGenerator(
            ['["q1", "q2"]', json.dumps([_item("A", "From memory", url="general")])]
        )
        result, ctx, _ = _run(generator, search=search)

        self.assertEqual(result.mode, UNGROUNDED)
        self.assertIsNone(result.evidence[0].verified)
        self.assertEqual(len(generator.calls), 2)
        self.assertEqual(len(ctx.annotations), 1)


if __name__ == "__main__":
    unittest.main()
