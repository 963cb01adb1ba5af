"""Domain profile table and profile construction.

Each entry holds the static half of a DomainProfile (sections, authority
hierarchy, vocabulary). ``build_profile`` merges in the entity fields the
classifier extracted from the query.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from schemas.domain import DomainProfile
from schemas.report import OutputFormat

logger = logging.getLogger(__name__)

DEFAULT_DOMAIN = "equity_research"

DOMAIN_PROFILES: dict[str, dict[str, Any]] = {
    "equity_research": {
        "domain": "equity_research",
        "domain_label": "Equity Research",
        "output_format": OutputFormat.WRITTEN_REPORT,
        "source_hierarchy": (
            "sec_filings",
            "earnings_calls",
            "official_press_releases",
            "analyst_consensus",
            "market_data_providers",
            "industry_press",
        ),
        "certainty_rubric": "factual_verification",
        "evidence_style": "quantitative",
        "tone_template": "investment_bank_equity_research",
        "sections": (
            "investment_thesis",
            "recent_price_action",
            "financial_performance",
            "product_and_technology",
            "competitive_landscape",
            "industry_and_macro",
            "key_risks",
            "analyst_consensus",
        ),
        "rating_options": ("Overweight", "Equal-Weight", "Underweight"),
        "evidence_categories": (
            "financial_data",
            "market_data",
            "analyst_opinion",
            "product_news",
            "competitive_intel",
            "risk_factor",
            "macro_trend",
        ),
    },
    "pitch_deck": {
        "domain": "pitch_deck",
        "domain_label": "Pitch Deck",
        "output_format": OutputFormat.SLIDE_DECK,
        "source_hierarchy": (
            "market_research_reports",
            "industry_analysis",
            "company_data",
            "competitive_intelligence",
            "news_and_press",
            "academic_research",
        ),
        "certainty_rubric": "market_evidence",
        "evidence_style": "quantitative",
        "tone_template": "investor_presentation",
        "sections": (
            "title_slide",
            "problem",
            "solution",
            "market_opportunity",
            "business_model",
            "traction",
            "competition",
            "financials",
            "risks",
            "the_ask",
        ),
        "rating_options": (),
        "evidence_categories": (
            "market_data",
            "competitive_intel",
            "product_news",
            "financial_data",
            "risk_factor",
            "macro_trend",
            "customer_data",
        ),
    },
}

AUTHORITY_LEVELS = (
    "official_filing",
    "company_announcement",
    "analyst_estimate",
    "industry_report",
    "press_coverage",
)


def _clean_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def build_profile(
    query: str,
    domain: Optional[str] = None,
    ticker: Optional[str] = None,
    company_name: Optional[str] = None,
    focus_areas: Optional[list[str]] = None,
    timeframe: Optional[str] = None,
    output_format: Optional[str] = None,
    classification_note: Optional[str] = None,
) -> DomainProfile:
    """Merge extracted entity fields into the static profile for ``domain``.

    Unknown domains map to the default (closest supported) domain. Missing
    entity fields fall back to placeholders built from the raw query.
    """
    key = (domain or "").strip().lower()
    if key not in DOMAIN_PROFILES:
        if key:
            logger.info("Unsupported domain '%s' — using %s", key, DEFAULT_DOMAIN)
        key = DEFAULT_DOMAIN
    base = dict(DOMAIN_PROFILES[key])

    # Only an exact format name overrides the domain default.
    fmt = (output_format or "").strip().lower()
    if fmt in {f.value for f in OutputFormat} and fmt != base["output_format"].value:
        logger.info("Output format overridden: %s -> %s", base["output_format"].value, fmt)
        base["output_format"] = OutputFormat(fmt)

    areas = tuple(a.strip() for a in (focus_areas or []) if isinstance(a, str) and a.strip())
    return DomainProfile(
        **base,
        ticker=(_clean_str(ticker) or "N/A").upper(),
        company_name=_clean_str(company_name) or query,
        focus_areas=areas,
        timeframe=_clean_str(timeframe) or "current",
        classification_note=classification_note,
    )


def default_profile(query: str, note: Optional[str] = None) -> DomainProfile:
    """Profile used when classification fails: the query stands in for the company."""
    return build_profile(query, classification_note=note)
