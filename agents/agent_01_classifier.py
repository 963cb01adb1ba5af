"""Agent 01: Classifier — query → DomainProfile.

The only stage allowed to fail soft: when the model's answer is empty or
unparseable, a default profile (raw query as the company placeholder) is
used and the failure is recorded as a run annotation. Upstream errors
(auth, rate limit, 5xx) still propagate.

Inputs: raw query.
Outputs: DomainProfile → every later stage (read-only).
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from pydantic import ValidationError

from pipeline.base_agent import BaseAgent
from pipeline.context import RunContext
from pipeline.domains import build_profile, default_profile
from pipeline.json_repair import find_object_with_key, load_json_lenient
from prompts.agent_01_system import SYSTEM_PROMPT
from schemas.domain import ClassifierResponse, DomainProfile

logger = logging.getLogger(__name__)


def wrap_user_query(query: str) -> str:
    """Fence the query so the model treats it as data, not directives."""
    # A query can't close the fence early.
    safe = query.replace("<user_query>", "").replace("</user_query>", "")
    return f"<user_query>\n{safe}\n</user_query>"


class Agent01Classifier(BaseAgent):
    name = "Agent 01: Classifier"
    slug = "classifier"
    description = "Maps the query onto a report domain and extracts ticker, company and focus areas."

    def build_system_prompt(self, inputs: dict[str, Any]) -> str:
        return SYSTEM_PROMPT

    def build_user_prompt(self, inputs: dict[str, Any]) -> str:
        return wrap_user_query(inputs["query"])

    def _parse(self, text: str) -> Optional[ClassifierResponse]:
        try:
            data = load_json_lenient(text)
        except json.JSONDecodeError:
            data = find_object_with_key(text, "domain")
        if not isinstance(data, dict):
            return None
        try:
            return ClassifierResponse.model_validate(data)
        except ValidationError as e:
            self.logger.warning("Classifier response failed validation: %s", e)
            return None

    async def run(
        self,
        ctx: RunContext,
        query: str,
        reasoning: Optional[dict] = None,
    ) -> DomainProfile:
        reasoning = reasoning or {}
        response, trace = await self.call(
            ctx,
            {"query": query},
            model_hint=reasoning.get("classifier_model"),
        )

        text = (response.text or "").strip()
        parsed = self._parse(text) if text else None
        if parsed is None:
            note = "Empty classifier response" if not text else "Unparseable classifier response"
            note += " — default profile used"
            trace.warnings.append(note)
            ctx.annotate(note)
            return default_profile(query, note=note)

        profile = build_profile(
            query,
            domain=parsed.domain,
            ticker=parsed.ticker,
            company_name=parsed.company_name,
            focus_areas=parsed.focus_areas,
            timeframe=parsed.timeframe,
            output_format=parsed.output_format,
        )
        self.logger.info(
            "Classified as %s: %s (%s)",
            profile.domain, profile.company_name, profile.ticker,
        )
        return profile
