"""Agent 02: Researcher — collects the evidence array.

Two strategies, picked by whether a search collaborator is available:

Grounded: one call plans K search queries → all K searches run
    concurrently (a failed query is just an empty result) → one call
    extracts evidence strictly from the returned pages. Items whose url
    matches a returned result are tagged verified=True, the rest False.
    If no search returns anything, the agent degrades to ungrounded.

Ungrounded: one call from the model's own knowledge, with provenance
    sentinels ("general", "various", "derived") for non-specific sources.
    verified stays None.

Never returns partial evidence silently: ladder exhaustion raises
ParseFailure / TruncationFailure carrying the raw text.

Inputs: query, DomainProfile, reasoning config, optional follow-up context.
Outputs: ResearchResult.evidence → Agent 03 (Synthesizer), Agent 04 (Verifier).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import ValidationError

import config
from agents.agent_01_classifier import wrap_user_query
from pipeline.base_agent import BaseAgent
from pipeline.context import RunContext
from pipeline.domains import AUTHORITY_LEVELS
from pipeline.errors import EmptyResponseFailure, ParseFailure, TruncationFailure
from pipeline.llm import STOP_TRUNCATED
from pipeline.search import SearchResult, SearchService, normalize_url, search_batch
from prompts.agent_02_system import (
    FOLLOW_UP_CONTEXT_TEMPLATE,
    GROUNDED_PROMPT_TEMPLATE,
    QUERY_PLANNER_PROMPT_TEMPLATE,
    UNGROUNDED_PROMPT_TEMPLATE,
)
from schemas.domain import DomainProfile
from schemas.report import EvidenceItem, FollowUpContext

logger = logging.getLogger(__name__)

GROUNDED = "grounded"
UNGROUNDED = "ungrounded"

# Per-domain wording for the prompts and the fallback search plan.
_DOMAIN_BRIEFS: dict[str, dict[str, Any]] = {
    "equity_research": {
        "analyst_role": "financial research analyst",
        "report_kind": "an equity research report",
        "default_focus": "general coverage",
        "coverage": "financials, price/valuation, products, competition, industry trends, risks, and analyst sentiment",
        "fallback_topics": (
            "latest quarterly earnings results revenue",
            "stock price performance valuation",
            "analyst rating price target consensus",
            "products technology roadmap",
            "competitors market share",
            "risks regulation outlook",
        ),
    },
    "pitch_deck": {
        "analyst_role": "market research analyst",
        "report_kind": "a pitch deck",
        "default_focus": "market opportunity, competition, traction, financials",
        "coverage": (
            "TAM/SAM/SOM, market growth rates, customer pain points, competitive landscape, "
            "traction benchmarks, revenue model benchmarks, and risk factors"
        ),
        "fallback_topics": (
            "market size TAM growth rate",
            "competitors funding landscape",
            "customer pain points survey",
            "business model pricing benchmarks",
            "startup traction benchmarks",
            "industry risks trends",
        ),
    },
}


def _brief(profile: DomainProfile) -> dict[str, Any]:
    return _DOMAIN_BRIEFS.get(profile.domain, _DOMAIN_BRIEFS["equity_research"])


def _humanize(values) -> str:
    return ", ".join(v.replace("_", " ") for v in values)


@dataclass
class ResearchResult:
    evidence: list[EvidenceItem]
    mode: str
    queries: list[str] = field(default_factory=list)
    result_urls: int = 0

    @property
    def verified_count(self) -> int:
        return sum(1 for e in self.evidence if e.verified)

    def category_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for item in self.evidence:
            key = item.category or "uncategorized"
            counts[key] = counts.get(key, 0) + 1
        return counts


class Agent02Researcher(BaseAgent):
    name = "Agent 02: Researcher"
    slug = "researcher"
    description = (
        "Collects sourced evidence against the domain's authority hierarchy, "
        "grounded in live search results when a search service is available."
    )

    def __init__(
        self,
        generator=None,
        search: Optional[SearchService] = None,
        query_count: Optional[int] = None,
        results_per_query: Optional[int] = None,
    ):
        super().__init__(generator=generator)
        self.search = search
        self.query_count = query_count or config.SEARCH_QUERY_COUNT
        self.results_per_query = results_per_query or config.SEARCH_RESULTS_PER_QUERY

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    def _prompt_fields(self, inputs: dict[str, Any]) -> dict[str, Any]:
        profile: DomainProfile = inputs["profile"]
        reasoning: dict = inputs.get("reasoning") or {}
        brief = _brief(profile)
        return {
            "analyst_role": brief["analyst_role"],
            "report_kind": brief["report_kind"],
            "subject": profile.subject,
            "focus_areas": ", ".join(profile.focus_areas) or brief["default_focus"],
            "source_hierarchy": _humanize(profile.source_hierarchy),
            "quote_length": reasoning.get("quote_length", "1-2 sentences with key data points"),
            "categories": ", ".join(profile.evidence_categories),
            "authorities": ", ".join(AUTHORITY_LEVELS),
            "evidence_min": reasoning.get("evidence_min_items", 40),
            "coverage": brief["coverage"],
            "timeframe": profile.timeframe,
            "query_count": self.query_count,
            "context_section": self._context_section(profile, inputs.get("follow_up")),
        }

    @staticmethod
    def _context_section(profile: DomainProfile, follow_up: Optional[FollowUpContext]) -> str:
        if follow_up is None or follow_up.previous_report is None:
            return ""
        previous = follow_up.previous_report
        return FOLLOW_UP_CONTEXT_TEMPLATE.format(
            rating=previous.meta.rating or "",
            title=previous.meta.title or profile.company_name,
            sections=", ".join(s.title or s.id for s in previous.sections),
            messages=follow_up.recent_messages(),
        )

    def build_system_prompt(self, inputs: dict[str, Any]) -> str:
        return UNGROUNDED_PROMPT_TEMPLATE.format(**self._prompt_fields(inputs))

    def build_user_prompt(self, inputs: dict[str, Any]) -> str:
        return wrap_user_query(inputs["query"])

    # ------------------------------------------------------------------
    # Evidence validation
    # ------------------------------------------------------------------

    def _validate_items(
        self,
        raw: list[Any],
        returned_urls: Optional[set[str]] = None,
    ) -> list[EvidenceItem]:
        items: list[EvidenceItem] = []
        dropped = 0
        for entry in raw:
            if not isinstance(entry, dict):
                dropped += 1
                continue
            entry = dict(entry)
            if returned_urls is None:
                entry.pop("verified", None)
            else:
                entry["verified"] = normalize_url(str(entry.get("url") or "")) in returned_urls
            try:
                item = EvidenceItem.model_validate(entry)
            except ValidationError as e:
                self.logger.warning("Dropping malformed evidence item: %s", e)
                dropped += 1
                continue
            if not item.quote.strip():
                dropped += 1
                continue
            items.append(item)
        if dropped:
            self.logger.warning("Dropped %d of %d evidence items", dropped, len(raw))
        return items

    def _require_evidence(self, items: list[EvidenceItem], raw_text: str, stop_reason: str) -> None:
        if not items:
            error_cls = TruncationFailure if stop_reason == STOP_TRUNCATED else ParseFailure
            raise error_cls(
                "Researcher produced no valid evidence items",
                stage=self.slug,
                raw_output=raw_text,
                stop_reason=stop_reason,
            )

    # ------------------------------------------------------------------
    # Ungrounded
    # ------------------------------------------------------------------

    async def _run_ungrounded(self, ctx: RunContext, inputs: dict[str, Any]) -> ResearchResult:
        reasoning = inputs.get("reasoning") or {}
        response, trace = await self.call(ctx, inputs, model_hint=reasoning.get("researcher_model"))
        raw = self.recover_json(response, trace, "array")
        items = self._validate_items(raw)
        self._require_evidence(items, response.text, response.stop_reason)
        return ResearchResult(evidence=items, mode=UNGROUNDED)

    # ------------------------------------------------------------------
    # Grounded
    # ------------------------------------------------------------------

    def fallback_queries(self, profile: DomainProfile) -> list[str]:
        """Deterministic search plan used when query planning fails."""
        subject = profile.company_name if profile.ticker == "N/A" else f"{profile.company_name} {profile.ticker}"
        topics = [area.replace("_", " ") for area in profile.focus_areas]
        topics += list(_brief(profile)["fallback_topics"])
        queries: list[str] = []
        for topic in topics:
            query = f"{subject} {topic}".strip()
            if query not in queries:
                queries.append(query)
            if len(queries) >= self.query_count:
                break
        return queries

    async def _plan_queries(self, ctx: RunContext, inputs: dict[str, Any]) -> list[str]:
        reasoning = inputs.get("reasoning") or {}
        fields = self._prompt_fields(inputs)
        try:
            response, trace = await self.call(
                ctx,
                inputs,
                model_hint=reasoning.get("researcher_model"),
                max_output_hint=1_024,
                system_prompt=QUERY_PLANNER_PROMPT_TEMPLATE.format(**fields),
            )
            raw = self.recover_json(response, trace, "array")
        except (ParseFailure, EmptyResponseFailure) as e:
            self.logger.warning("Query planning failed (%s) — using fallback queries", e)
            return self.fallback_queries(inputs["profile"])

        queries: list[str] = []
        for q in raw:
            if isinstance(q, str) and q.strip() and q.strip() not in queries:
                queries.append(q.strip())
        if not queries:
            self.logger.warning("Query planner returned no usable queries — using fallback queries")
            return self.fallback_queries(inputs["profile"])
        return queries[: self.query_count]

    @staticmethod
    def _format_results(results: list[SearchResult]) -> str:
        payload = [r.model_dump(exclude_none=True) for r in results]
        return json.dumps(payload, indent=2, ensure_ascii=False)

    async def _run_grounded(self, ctx: RunContext, inputs: dict[str, Any]) -> Optional[ResearchResult]:
        queries = await self._plan_queries(ctx, inputs)
        self.logger.info("Running %d searches: %s", len(queries), "; ".join(queries))
        responses = await search_batch(self.search, queries, self.results_per_query)

        unique: dict[str, SearchResult] = {}
        for resp in responses:
            for result in resp.results:
                key = normalize_url(result.url)
                if key and key not in unique:
                    unique[key] = result
        if not unique:
            ctx.annotate("Every search returned no results — falling back to knowledge-only research")
            return None
        self.logger.info("Search returned %d unique results", len(unique))

        reasoning = inputs.get("reasoning") or {}
        user_prompt = (
            self.build_user_prompt(inputs)
            + "\n\n<search_results>\n"
            + self._format_results(list(unique.values()))
            + "\n</search_results>"
        )
        response, trace = await self.call(
            ctx,
            inputs,
            model_hint=reasoning.get("researcher_model"),
            system_prompt=GROUNDED_PROMPT_TEMPLATE.format(**self._prompt_fields(inputs)),
            user_prompt=user_prompt,
        )
        raw = self.recover_json(response, trace, "array")
        items = self._validate_items(raw, returned_urls=set(unique))
        self._require_evidence(items, response.text, response.stop_reason)
        return ResearchResult(
            evidence=items,
            mode=GROUNDED,
            queries=queries,
            result_urls=len(unique),
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        ctx: RunContext,
        query: str,
        profile: DomainProfile,
        reasoning: Optional[dict] = None,
        follow_up: Optional[FollowUpContext] = None,
    ) -> ResearchResult:
        inputs = {
            "query": query,
            "profile": profile,
            "reasoning": reasoning or {},
            "follow_up": follow_up,
        }

        result: Optional[ResearchResult] = None
        if self.search is not None:
            result = await self._run_grounded(ctx, inputs)
        if result is None:
            result = await self._run_ungrounded(ctx, inputs)

        evidence_min = (reasoning or {}).get("evidence_min_items", 40)
        if len(result.evidence) < evidence_min:
            self.logger.warning(
                "Only %d evidence items (target %d)", len(result.evidence), evidence_min,
            )
        self.logger.info(
            "Collected %d evidence items (%s, %d verified)",
            len(result.evidence), result.mode, result.verified_count,
        )
        return result
