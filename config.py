"""Pipeline configuration — LLM providers, per-agent model assignments, reasoning levels, paths."""

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
ROOT_DIR = Path(__file__).parent
OUTPUT_DIR = ROOT_DIR / os.getenv("OUTPUT_DIR", "outputs")

# ---------------------------------------------------------------------------
# LLM Provider API Keys
# ---------------------------------------------------------------------------
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY", "")

# Optional — when unset the researcher uses the ungrounded (knowledge-only) strategy.
BRAVE_API_KEY = os.getenv("BRAVE_API_KEY", "")

# ---------------------------------------------------------------------------
# Model names (centralized so they're easy to update)
# ---------------------------------------------------------------------------
ANTHROPIC_FAST = "claude-haiku-4-5"
ANTHROPIC_FRONTIER = "claude-sonnet-4-5"
ANTHROPIC_MAX = "claude-opus-4-6"
OPENAI_FRONTIER = "gpt-5.2"
GOOGLE_FRONTIER = "gemini-2.5-pro"

DEFAULT_PROVIDER = os.getenv("DEFAULT_PROVIDER", "anthropic")
DEFAULT_MODEL = os.getenv("DEFAULT_MODEL", ANTHROPIC_FAST)

# Tried in order when the requested model is rejected as not found.
MODEL_FALLBACKS: list[str] = [
    DEFAULT_MODEL,
    ANTHROPIC_FAST,
    ANTHROPIC_MAX,
    ANTHROPIC_FRONTIER,
]

# ---------------------------------------------------------------------------
# Per-Agent Model Assignments
#
# Override any agent via env: RESEARCHER_PROVIDER=openai
#                             RESEARCHER_MODEL=gpt-5.2
# A reasoning level may still pin a model hint per stage (see below).
# ---------------------------------------------------------------------------

AGENT_LLM_CONFIG: dict[str, dict] = {
    # Classifier — tiny JSON, deterministic
    "classifier": {
        "provider": os.getenv("CLASSIFIER_PROVIDER", DEFAULT_PROVIDER),
        "model": os.getenv("CLASSIFIER_MODEL", DEFAULT_MODEL),
        "temperature": 0.0,
        "max_tokens": 1_024,
    },
    # Researcher — long evidence arrays, most likely to hit the output ceiling
    "researcher": {
        "provider": os.getenv("RESEARCHER_PROVIDER", DEFAULT_PROVIDER),
        "model": os.getenv("RESEARCHER_MODEL", DEFAULT_MODEL),
        "temperature": 0.3,
        "max_tokens": 16_384,
    },
    # Synthesizer — the whole draft report in one object
    "synthesizer": {
        "provider": os.getenv("SYNTHESIZER_PROVIDER", DEFAULT_PROVIDER),
        "model": os.getenv("SYNTHESIZER_MODEL", DEFAULT_MODEL),
        "temperature": 0.4,
        "max_tokens": 16_384,
    },
    # Verifier — adversarial, low temperature
    "verifier": {
        "provider": os.getenv("VERIFIER_PROVIDER", DEFAULT_PROVIDER),
        "model": os.getenv("VERIFIER_MODEL", DEFAULT_MODEL),
        "temperature": 0.2,
        "max_tokens": 16_384,
    },
}


def get_agent_llm_config(agent_slug: str) -> dict:
    """Return the LLM config for a specific agent, with defaults."""
    defaults = {
        "provider": DEFAULT_PROVIDER,
        "model": DEFAULT_MODEL,
        "temperature": 0.3,
        "max_tokens": 8_192,
    }
    agent_conf = AGENT_LLM_CONFIG.get(agent_slug, {})
    return {**defaults, **agent_conf}


# ---------------------------------------------------------------------------
# Grounded research (web search fan-out)
# ---------------------------------------------------------------------------
SEARCH_QUERY_COUNT = int(os.getenv("SEARCH_QUERY_COUNT", "6"))
SEARCH_RESULTS_PER_QUERY = int(os.getenv("SEARCH_RESULTS_PER_QUERY", "5"))
SEARCH_TIMEOUT_SECONDS = float(os.getenv("SEARCH_TIMEOUT_SECONDS", "10"))

# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

# Certainty assigned to findings the verifier could not score.
DEFAULT_CERTAINTY = 60
# Used in place of a missing score when averaging overall certainty.
MISSING_CERTAINTY = 50
# Certainty given to draft findings when evidence-aware verification returns nothing.
UNVERIFIED_CERTAINTY = 30

# ---------------------------------------------------------------------------
# Reasoning levels
#
# Every tunable parameter of a run. Model hints of None mean "use the
# per-agent assignment above".
# ---------------------------------------------------------------------------

REASONING_LEVELS: dict[str, dict] = {
    # X-Light: minimum everything — for fast testing
    "x-light": {
        "label": "X-Light",
        "description": "Fastest — minimal output for testing",
        "classifier_model": None,
        "researcher_model": None,
        "synthesizer_model": None,
        "verifier_model": None,
        "evidence_min_items": 2,
        "total_findings": "3-5",
        "findings_per_section": "1",
        "supporting_evidence_min": 1,
        "explanation_length": "1 sentence",
        "quote_length": "1-2 sentences — brief and factual",
        "key_stats_count": 2,
        "methodology_length": "1 sentence",
        "methodology_sources": "1",
        "removal_threshold": 0,  # keep all findings regardless of certainty
        "removal_policy": "fixed",
    },
    "light": {
        "label": "Light",
        "description": "Faster — reduced scope, lower cost",
        "classifier_model": None,
        "researcher_model": None,
        "synthesizer_model": None,
        "verifier_model": None,
        "evidence_min_items": 20,
        "total_findings": "12-18",
        "findings_per_section": "2-3",
        "supporting_evidence_min": 2,
        "explanation_length": "1-2 sentences",
        "quote_length": "1-2 sentences with key data points",
        "key_stats_count": 4,
        "methodology_length": "2-3 sentences",
        "methodology_sources": "2-3",
        "removal_threshold": 25,
        "removal_policy": "fixed",
    },
    "heavy": {
        "label": "Heavy",
        "description": "Full quality — production grade",
        "classifier_model": None,
        "researcher_model": None,
        "synthesizer_model": ANTHROPIC_FRONTIER,
        "verifier_model": ANTHROPIC_FRONTIER,
        "evidence_min_items": 40,
        "total_findings": "25-35",
        "findings_per_section": "3-5",
        "supporting_evidence_min": 3,
        "explanation_length": "2-4 sentences",
        "quote_length": (
            "2-4 sentences — include full context, surrounding data points, "
            "and methodology details when available"
        ),
        "key_stats_count": 6,
        "methodology_length": "3-5 sentences",
        "methodology_sources": "3-4",
        "removal_threshold": 25,
        "removal_policy": "fixed",
    },
    "x-heavy": {
        "label": "X-Heavy",
        "description": "Maximum reasoning — opus, most thorough, adaptive pruning",
        "classifier_model": ANTHROPIC_FRONTIER,
        "researcher_model": ANTHROPIC_MAX,
        "synthesizer_model": ANTHROPIC_MAX,
        "verifier_model": ANTHROPIC_MAX,
        "evidence_min_items": 60,
        "total_findings": "35-50",
        "findings_per_section": "4-7",
        "supporting_evidence_min": 5,
        "explanation_length": "3-6 sentences",
        "quote_length": (
            "3-6 sentences — provide extensive verbatim quotes with full surrounding "
            "context and detailed methodology descriptions"
        ),
        "key_stats_count": 8,
        "methodology_length": "5-8 sentences",
        "methodology_sources": "4-6",
        "removal_threshold": 25,
        "removal_policy": "adaptive",
    },
}

DEFAULT_REASONING_LEVEL = os.getenv("DEFAULT_REASONING_LEVEL", "heavy")


def get_reasoning_config(level: str | None = None) -> dict:
    """Return a copy of the reasoning preset for ``level`` (unknown -> default)."""
    preset = REASONING_LEVELS.get(level or DEFAULT_REASONING_LEVEL)
    if preset is None:
        preset = REASONING_LEVELS[DEFAULT_REASONING_LEVEL]
    return dict(preset)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Ensure output dir exists
OUTPUT_DIR.mkdir(exist_ok=True)
