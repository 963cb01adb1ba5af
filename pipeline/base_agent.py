"""Base agent class — all four report agents inherit from this.

Each agent talks to a TextGenerator. When none is injected, one is built
from config.AGENT_LLM_CONFIG for the agent's slug, recording usage on the
run's UsageTracker, so you can assign different LLMs per agent.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Literal, Optional

from pipeline.context import RunContext, StageTrace
from pipeline.errors import EmptyResponseFailure, ParseFailure, TruncationFailure
from pipeline.json_repair import (
    extract_json_array,
    extract_json_object,
    load_json_lenient,
    repair_truncated_json,
    strip_fences,
)
from pipeline.llm import LLMClient, LLMResponse, TextGenerator

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 300


class BaseAgent(ABC):
    """Base class for pipeline agents.

    Each agent must define:
      - name: human-readable identifier
      - slug: stage name (must match a key in AGENT_LLM_CONFIG)
      - build_system_prompt(): the system prompt for this call
      - build_user_prompt(): the user message for this call
    """

    name: str = "BaseAgent"
    slug: str = "base"
    description: str = ""

    def __init__(self, generator: TextGenerator | None = None):
        self.generator = generator
        self.logger = logging.getLogger(f"agent.{self.slug}")

    @abstractmethod
    def build_system_prompt(self, inputs: dict[str, Any]) -> str:
        """Return the full system prompt for this agent."""
        ...

    @abstractmethod
    def build_user_prompt(self, inputs: dict[str, Any]) -> str:
        """Build the user prompt from pipeline inputs."""
        ...

    def _generator(self, ctx: RunContext) -> TextGenerator:
        if self.generator is None:
            self.generator = LLMClient.for_agent(self.slug, usage=ctx.usage)
        return self.generator

    async def call(
        self,
        ctx: RunContext,
        inputs: dict[str, Any],
        model_hint: Optional[str] = None,
        max_output_hint: Optional[int] = None,
        system_prompt: Optional[str] = None,
        user_prompt: Optional[str] = None,
    ) -> tuple[LLMResponse, StageTrace]:
        """Build prompts → call the generator → record a trace."""
        system_prompt = system_prompt if system_prompt is not None else self.build_system_prompt(inputs)
        user_prompt = user_prompt if user_prompt is not None else self.build_user_prompt(inputs)
        self.logger.info("=== %s starting (user prompt %d chars) ===", self.name, len(user_prompt))
        start = time.time()

        response = await self._generator(ctx).invoke(
            system_prompt,
            user_prompt,
            model_hint=model_hint,
            max_output_hint=max_output_hint,
        )

        elapsed = time.time() - start
        trace = StageTrace(
            stage=self.slug,
            model=response.model or (model_hint or ""),
            stop_reason=response.stop_reason,
            raw_chars=len(response.text or ""),
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            duration_ms=response.duration_ms or int(elapsed * 1000),
        )
        ctx.record_trace(trace)
        self.logger.info(
            "=== %s finished in %.1fs (%d chars, stop=%s) ===",
            self.name, elapsed, trace.raw_chars, response.stop_reason,
        )
        return response, trace

    def require_text(self, response: LLMResponse) -> str:
        text = (response.text or "").strip()
        if not text:
            raise EmptyResponseFailure(
                f"{self.name} returned an empty response",
                stage=self.slug,
                stop_reason=response.stop_reason,
            )
        return text

    def recover_json(
        self,
        response: LLMResponse,
        trace: StageTrace,
        kind: Literal["array", "object"],
    ) -> Any:
        """Turn collaborator text into a JSON array or object, or raise.

        Ladder: fenced parse → (truncated only) closer-appending repair →
        balanced-bracket scan. Repair runs before the scan because a scan
        over a truncated document only finds complete sub-structures.
        """
        raw = self.require_text(response)
        expected = list if kind == "array" else dict
        cleaned = strip_fences(raw)

        try:
            parsed = load_json_lenient(cleaned)
            if isinstance(parsed, expected):
                return parsed
            self.logger.warning("Parsed JSON is a %s, expected %s", type(parsed).__name__, kind)
        except json.JSONDecodeError as e:
            self.logger.warning("%s parse error: %s", self.name, e)

        if response.truncated:
            self.logger.warning("%s response was truncated at the output limit, attempting repair", self.name)
            repaired = repair_truncated_json(cleaned)
            if repaired is not None:
                parsed = json.loads(repaired)
                if isinstance(parsed, expected):
                    trace.repaired = True
                    trace.warnings.append("Repaired truncated JSON")
                    return parsed
            self.logger.warning("%s truncation repair failed", self.name)

        extracted = extract_json_array(raw) if kind == "array" else extract_json_object(raw)
        if extracted is not None:
            trace.warnings.append("Extracted via balanced-bracket scan")
            return json.loads(extracted)

        preview = raw[:_PREVIEW_CHARS] + ("..." if len(raw) > _PREVIEW_CHARS else "")
        error_cls = TruncationFailure if response.truncated else ParseFailure
        raise error_cls(
            f"{self.name} failed to produce a valid JSON {kind}. "
            f"Stop reason: {response.stop_reason}. Response preview: {preview}",
            stage=self.slug,
            raw_output=raw,
            stop_reason=response.stop_reason,
        )
