"""LLM client — multi-provider text generation (Anthropic, OpenAI, Google).

Every agent talks to the model through the TextGenerator protocol:

    response = await generator.invoke(system_prompt, user_message,
                                      model_hint=None, max_output_hint=None)
    response.text, response.stop_reason, response.usage

``stop_reason`` is normalised across providers to "complete" or
"truncated" (output hit the length ceiling), so agents can decide when to
run truncation repair without knowing which provider answered.

Includes cost tracking: each call records token usage on the UsageTracker
owned by the current run. Nothing here is module-global state.

Error handling:
  - 400-level errors (bad request, auth) are NOT retried — they won't fix themselves.
  - 429 (rate limit) and 5xx (server errors) ARE retried with exponential backoff.
  - All errors surface as LLMError with a clean message and a category.
"""

from __future__ import annotations

import logging
import socket
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

import anthropic
import openai
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

import config
from pipeline.errors import UpstreamFailure

logger = logging.getLogger(__name__)

STOP_COMPLETE = "complete"
STOP_TRUNCATED = "truncated"

# Provider stop reasons that mean "hit the output ceiling".
_TRUNCATION_REASONS = {"max_tokens", "length", "MAX_TOKENS", "FinishReason.MAX_TOKENS"}

# Transient SDK errors worth retrying (429, 5xx, connection, timeout).
_RETRYABLE_SDK_ERRORS = (
    anthropic.RateLimitError,
    anthropic.InternalServerError,
    anthropic.APIConnectionError,
    anthropic.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
    openai.APIConnectionError,
    openai.APITimeoutError,
)


def normalize_stop_reason(raw: Any) -> str:
    """Map a provider stop/finish reason onto complete|truncated."""
    if raw is None:
        return STOP_COMPLETE
    name = getattr(raw, "name", None) or str(raw)
    return STOP_TRUNCATED if name in _TRUNCATION_REASONS else STOP_COMPLETE


# ---------------------------------------------------------------------------
# Cost tracking
# ---------------------------------------------------------------------------

# Pricing per 1M tokens: { model_prefix: (input_$/1M, output_$/1M) }
# Models are matched longest-prefix-first, so "claude-haiku-4-5" matches before "claude-haiku".
MODEL_PRICING: dict[str, tuple[float, float]] = {
    # Anthropic
    "claude-opus-4":    (15.00,  75.00),
    "claude-sonnet-4":  (3.00,   15.00),
    "claude-haiku-4-5": (1.00,    5.00),
    "claude-haiku":     (0.25,    1.25),
    # OpenAI
    "gpt-5.2-mini":     (0.30,   1.25),
    "gpt-5.2":          (2.50,  10.00),
    "gpt-4o-mini":      (0.15,   0.60),
    "gpt-4o":           (2.50,  10.00),
    "gpt-4.1":          (2.00,   8.00),
    # Google
    "gemini-2.5-pro":   (1.25,  10.00),
    "gemini-2.5-flash": (0.15,   0.60),
}

# Fallback pricing if a model isn't in the table (conservative estimate)
_FALLBACK_PRICING = (2.50, 10.00)


def _get_pricing(model: str) -> tuple[float, float]:
    """Find pricing for a model by longest-prefix match."""
    best_match = ""
    for prefix in MODEL_PRICING:
        if model.startswith(prefix) and len(prefix) > len(best_match):
            best_match = prefix
    if best_match:
        return MODEL_PRICING[best_match]
    logger.warning("No pricing found for model '%s' — using fallback $%.2f/$%.2f per 1M", model, *_FALLBACK_PRICING)
    return _FALLBACK_PRICING


@dataclass
class LLMUsage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class LLMResponse:
    text: str
    stop_reason: str = STOP_COMPLETE
    usage: LLMUsage = field(default_factory=LLMUsage)
    model: str = ""
    duration_ms: int = 0

    @property
    def truncated(self) -> bool:
        return self.stop_reason == STOP_TRUNCATED


class UsageTracker:
    """Token usage and estimated cost for one pipeline run."""

    def __init__(self):
        self._entries: list[dict[str, Any]] = []

    def record(self, provider: str, model: str, input_tokens: int, output_tokens: int) -> dict[str, Any]:
        in_price, out_price = _get_pricing(model)
        cost = (input_tokens * in_price + output_tokens * out_price) / 1_000_000
        entry = {
            "provider": provider,
            "model": model,
            "input_tokens": int(input_tokens or 0),
            "output_tokens": int(output_tokens or 0),
            "cost": cost,
            "timestamp": time.time(),
        }
        self._entries.append(entry)
        logger.info(
            "Token usage: %s/%s — in=%d out=%d cost=$%.4f",
            provider, model, entry["input_tokens"], entry["output_tokens"], cost,
        )
        return entry

    @property
    def entries(self) -> list[dict[str, Any]]:
        return list(self._entries)

    def summary(self) -> dict[str, Any]:
        """Return aggregated cost and token totals."""
        total_input = sum(e["input_tokens"] for e in self._entries)
        total_output = sum(e["output_tokens"] for e in self._entries)
        total_cost = sum(e["cost"] for e in self._entries)
        return {
            "total_input_tokens": total_input,
            "total_output_tokens": total_output,
            "total_tokens": total_input + total_output,
            "total_cost": round(total_cost, 4),
            "calls": len(self._entries),
        }


# ---------------------------------------------------------------------------
# Collaborator protocol
# ---------------------------------------------------------------------------

class TextGenerator(Protocol):
    """Anything that can turn a system prompt + user message into text."""

    async def invoke(
        self,
        system_prompt: str,
        user_message: str,
        model_hint: str | None = None,
        max_output_hint: int | None = None,
    ) -> LLMResponse:
        ...


# ---------------------------------------------------------------------------
# Error helpers
# ---------------------------------------------------------------------------

class LLMError(UpstreamFailure):
    """Clean error from an LLM call with a human-readable message."""

    def __init__(
        self,
        message: str,
        provider: str = "",
        model: str = "",
        cause: Exception | None = None,
        category: str = "upstream",
    ):
        self.provider = provider
        self.model = model
        self.cause = cause
        self.category = category
        super().__init__(message)


def _is_retryable(exc: BaseException) -> bool:
    """Return True if the error is transient and worth retrying.

    We retry on:
      - Rate limits (429)
      - Server errors (500, 502, 503, 529)
      - Connection / timeout errors
    We do NOT retry on:
      - 400 Bad Request (invalid params, won't fix itself)
      - 401/403 Auth errors (key is wrong)
      - 404 (model doesn't exist)
    """
    if isinstance(exc, _RETRYABLE_SDK_ERRORS):
        return True

    if isinstance(exc, (ConnectionError, TimeoutError, socket.timeout)):
        return True

    return False


def _status_code(exc: BaseException) -> int | None:
    status = getattr(exc, "status_code", None) or getattr(exc, "status", None) or getattr(exc, "code", None)
    return status if isinstance(status, int) else None


def _error_category(exc: BaseException) -> str:
    """Bucket an SDK exception into auth | rate_limit | bad_request | upstream | generic."""
    status = _status_code(exc)
    if status in (401, 403):
        return "auth"
    if status == 429:
        return "rate_limit"
    if status in (400, 404, 422):
        return "bad_request"
    if status is not None and status >= 500:
        return "upstream"
    if isinstance(exc, (ConnectionError, TimeoutError, socket.timeout)):
        return "upstream"
    if _is_retryable(exc):
        return "upstream"
    return "generic"


def _extract_error_message(exc: Exception, provider: str, model: str) -> str:
    """Pull out a clean, human-readable error message from an API exception."""
    msg = str(exc)
    category = _error_category(exc)

    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        inner = body.get("error", {})
        if isinstance(inner, dict):
            msg = inner.get("message", msg)

    if category == "auth":
        return f"[{provider}] Authentication failed — check your {provider.upper()}_API_KEY."
    if category == "rate_limit":
        return f"[{provider}/{model}] Rate limited: {msg}"
    if category == "bad_request":
        return f"[{provider}/{model}] Bad request: {msg}"

    # Generic fallback — truncate very long messages
    if len(msg) > 300:
        msg = msg[:300] + "..."
    return f"[{provider}/{model}] {msg}"


def _is_model_not_found(exc: BaseException) -> bool:
    return _status_code(exc) == 404 and "model" in str(exc).lower()


# ---------------------------------------------------------------------------
# Provider clients (lazy-init singletons)
# ---------------------------------------------------------------------------

_anthropic_client = None
_openai_client = None
_google_client = None

# Max output tokens per model family. The API rejects requests above these.
_MAX_OUTPUT_TOKENS: dict[str, int] = {
    "claude-haiku": 8_192,
    "claude-sonnet": 16_384,
    "claude-opus": 16_384,
    "gpt-": 16_384,
    "gemini-": 32_768,
}


def max_output_tokens(model: str, requested: int | None = None) -> int:
    """Clamp the requested output budget to what the model family accepts."""
    ceiling = 8_192
    for prefix, limit in _MAX_OUTPUT_TOKENS.items():
        if (model or "").startswith(prefix):
            ceiling = limit
            break
    if requested is None:
        return ceiling
    return max(1, min(int(requested), ceiling))


def _get_anthropic():
    global _anthropic_client
    if _anthropic_client is None:
        if not config.ANTHROPIC_API_KEY:
            raise LLMError(
                "ANTHROPIC_API_KEY is not set. Add it to your .env file.",
                provider="anthropic",
                category="auth",
            )
        _anthropic_client = anthropic.AsyncAnthropic(
            api_key=config.ANTHROPIC_API_KEY,
            timeout=120.0,
            max_retries=0,
        )
    return _anthropic_client


def _get_openai():
    global _openai_client
    if _openai_client is None:
        if not config.OPENAI_API_KEY:
            raise LLMError(
                "OPENAI_API_KEY is not set. Add it to your .env file.",
                provider="openai",
                category="auth",
            )
        _openai_client = openai.AsyncOpenAI(api_key=config.OPENAI_API_KEY, max_retries=0)
    return _openai_client


def _get_google():
    global _google_client
    if _google_client is None:
        if not config.GOOGLE_API_KEY:
            raise LLMError(
                "GOOGLE_API_KEY is not set. Add it to your .env file.",
                provider="google",
                category="auth",
            )
        from google import genai
        _google_client = genai.Client(api_key=config.GOOGLE_API_KEY)
    return _google_client


# ---------------------------------------------------------------------------
# Provider-specific call implementations
# ---------------------------------------------------------------------------

_PROGRESS_LOG_SECONDS = 15


async def _call_anthropic(
    system_prompt: str,
    user_message: str,
    model: str,
    temperature: float,
    max_tokens: int,
) -> tuple[str, Any, LLMUsage]:
    client = _get_anthropic()

    # Stream so long generations don't trip the non-streaming timeout
    stream_start = time.time()
    last_progress = stream_start
    chunk_count = 0

    async with client.messages.stream(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        system=system_prompt,
        messages=[{"role": "user", "content": user_message}],
    ) as stream:
        async for _text in stream.text_stream:
            chunk_count += 1
            now = time.time()
            if now - last_progress >= _PROGRESS_LOG_SECONDS:
                logger.info(
                    "Anthropic [%s]: streaming... ~%d chunks, %ds elapsed",
                    model, chunk_count, round(now - stream_start),
                )
                last_progress = now
        response = await stream.get_final_message()

    text = "".join(block.text for block in response.content if getattr(block, "type", "") == "text")
    usage = LLMUsage(
        input_tokens=response.usage.input_tokens or 0,
        output_tokens=response.usage.output_tokens or 0,
    )
    return text, response.stop_reason, usage


async def _call_openai(
    system_prompt: str,
    user_message: str,
    model: str,
    temperature: float,
    max_tokens: int,
) -> tuple[str, Any, LLMUsage]:
    client = _get_openai()

    stream = await client.chat.completions.create(
        model=model,
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message},
        ],
        temperature=temperature,
        max_completion_tokens=max_tokens,
        stream=True,
        stream_options={"include_usage": True},
    )
    chunks: list[str] = []
    finish_reason = None
    usage = LLMUsage()
    async for chunk in stream:
        if chunk.usage:
            usage = LLMUsage(
                input_tokens=chunk.usage.prompt_tokens or 0,
                output_tokens=chunk.usage.completion_tokens or 0,
            )
        if not chunk.choices:
            continue
        choice = chunk.choices[0]
        if choice.delta and choice.delta.content:
            chunks.append(choice.delta.content)
        if choice.finish_reason:
            finish_reason = choice.finish_reason
    return "".join(chunks), finish_reason, usage


async def _call_google(
    system_prompt: str,
    user_message: str,
    model: str,
    temperature: float,
    max_tokens: int,
) -> tuple[str, Any, LLMUsage]:
    from google.genai import types

    client = _get_google()
    cfg = types.GenerateContentConfig(
        system_instruction=system_prompt,
        temperature=temperature,
        max_output_tokens=max_tokens,
    )

    chunks: list[str] = []
    finish_reason = None
    last_chunk = None
    async for last_chunk in await client.aio.models.generate_content_stream(
        model=model,
        contents=user_message,
        config=cfg,
    ):
        if last_chunk.text:
            chunks.append(last_chunk.text)
        candidates = getattr(last_chunk, "candidates", None) or []
        if candidates and getattr(candidates[0], "finish_reason", None):
            finish_reason = candidates[0].finish_reason

    usage = LLMUsage()
    meta = getattr(last_chunk, "usage_metadata", None) if last_chunk is not None else None
    if meta:
        usage = LLMUsage(
            input_tokens=getattr(meta, "prompt_token_count", 0) or 0,
            output_tokens=getattr(meta, "candidates_token_count", 0) or 0,
        )
    return "".join(chunks), finish_reason, usage


# Provider dispatch
_PROVIDERS = {
    "anthropic": _call_anthropic,
    "openai": _call_openai,
    "google": _call_google,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

class LLMClient:
    """TextGenerator backed by one of the provider SDKs.

    ``model_hint`` overrides the configured model for a single call; when a
    model is rejected as not found, the next entry in config.MODEL_FALLBACKS
    is tried.
    """

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        temperature: float = 0.3,
        max_tokens: int | None = None,
        usage: UsageTracker | None = None,
    ):
        self.provider = provider or config.DEFAULT_PROVIDER
        if self.provider not in _PROVIDERS:
            raise LLMError(
                f"Unknown provider: '{self.provider}'. Available: {list(_PROVIDERS.keys())}",
                provider=self.provider,
                category="generic",
            )
        self.model = model or config.DEFAULT_MODEL
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.usage = usage if usage is not None else UsageTracker()

    @classmethod
    def for_agent(cls, agent_slug: str, usage: UsageTracker | None = None) -> "LLMClient":
        conf = config.get_agent_llm_config(agent_slug)
        return cls(
            provider=conf["provider"],
            model=conf["model"],
            temperature=conf["temperature"],
            max_tokens=conf["max_tokens"],
            usage=usage,
        )

    def _candidate_models(self, model_hint: str | None) -> list[str]:
        requested = model_hint or self.model
        if self.provider != "anthropic":
            return [requested]
        ordered: list[str] = []
        for name in [requested, *config.MODEL_FALLBACKS]:
            if name and name not in ordered:
                ordered.append(name)
        return ordered

    async def invoke(
        self,
        system_prompt: str,
        user_message: str,
        model_hint: str | None = None,
        max_output_hint: int | None = None,
    ) -> LLMResponse:
        candidates = self._candidate_models(model_hint)
        for index, model in enumerate(candidates):
            try:
                return await self._invoke_model(system_prompt, user_message, model, max_output_hint)
            except LLMError as exc:
                last_model = index == len(candidates) - 1
                if not last_model and exc.cause is not None and _is_model_not_found(exc.cause):
                    logger.warning("Model %s not found, trying next fallback", model)
                    continue
                raise
            except Exception as exc:
                # Transient errors that outlived every retry attempt
                if not _is_retryable(exc):
                    raise
                clean_msg = _extract_error_message(exc, self.provider, model)
                logger.error("LLM call gave up after retries: %s", clean_msg)
                raise LLMError(
                    clean_msg,
                    provider=self.provider,
                    model=model,
                    cause=exc,
                    category=_error_category(exc),
                ) from exc
        raise LLMError(
            "No model candidates configured",
            provider=self.provider,
            category="generic",
        )

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        reraise=True,
    )
    async def _invoke_model(
        self,
        system_prompt: str,
        user_message: str,
        model: str,
        max_output_hint: int | None,
    ) -> LLMResponse:
        call_fn = _PROVIDERS[self.provider]
        max_tokens = max_output_tokens(model, max_output_hint or self.max_tokens)

        logger.info(
            "LLM call: provider=%s, model=%s, temp=%.1f, max_tokens=%d",
            self.provider, model, self.temperature, max_tokens,
        )
        start = time.time()
        try:
            text, raw_stop, usage = await call_fn(
                system_prompt, user_message, model, self.temperature, max_tokens,
            )
        except LLMError:
            raise
        except Exception as exc:
            clean_msg = _extract_error_message(exc, self.provider, model)
            logger.error("LLM call failed: %s", clean_msg)
            if _is_retryable(exc):
                raise  # let tenacity retry
            raise LLMError(
                clean_msg,
                provider=self.provider,
                model=model,
                cause=exc,
                category=_error_category(exc),
            ) from exc

        duration_ms = int((time.time() - start) * 1000)
        stop_reason = normalize_stop_reason(raw_stop)
        self.usage.record(self.provider, model, usage.input_tokens, usage.output_tokens)
        logger.info(
            "LLM [%s/%s]: %d chars in %.1fs, stop=%s",
            self.provider, model, len(text), duration_ms / 1000, stop_reason,
        )
        return LLMResponse(
            text=text,
            stop_reason=stop_reason,
            usage=usage,
            model=model,
            duration_ms=duration_ms,
        )
