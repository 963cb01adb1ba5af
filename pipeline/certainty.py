"""Certainty tiers, removal policies and certainty aggregates.

Tiers (what the verifier prompt asks the model to apply):

    95-99  factual   3+ corroborating sources, 0 contradictions
    85-94  strong    2+ corroborating sources
    70-84  moderate  caveated or forward-looking
    50-69  mixed     meaningful uncertainty or conflict
    25-49  weak      thin or contradicted
    < threshold      removed

The model is not trusted to honour the threshold, so the removal policy is
re-applied locally to whatever it returns.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol, Sequence

import config
from schemas.events import CertaintyBuckets
from schemas.report import Finding

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CertaintyTier:
    name: str
    low: int
    high: int
    requirement: str


TIERS: tuple[CertaintyTier, ...] = (
    CertaintyTier("factual", 95, 99, "3+ corroborating sources, 0 contradictions"),
    CertaintyTier("strong", 85, 94, "2+ corroborating sources agree"),
    CertaintyTier("moderate", 70, 84, "credible with caveats or forward-looking"),
    CertaintyTier("mixed", 50, 69, "meaningful uncertainty or conflicting sources"),
    CertaintyTier("weak", 25, 49, "thin, speculative or contradicted"),
)

REMOVE = "remove"
TOP_TIER_FLOOR = TIERS[0].low


def tier_for(certainty: int, threshold: int = 25) -> str:
    """Tier name for a score; anything below ``threshold`` is "remove"."""
    if certainty < threshold:
        return REMOVE
    for tier in TIERS:
        if certainty >= tier.low:
            return tier.name
    # Between the threshold and the weak floor (threshold < 25).
    return TIERS[-1].name


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# ---------------------------------------------------------------------------
# Removal policies
# ---------------------------------------------------------------------------

class RemovalPolicy(Protocol):
    def threshold_for(self, scores: Sequence[int]) -> int:
        ...


@dataclass(frozen=True)
class FixedThresholdPolicy:
    """Remove everything below a constant. ``threshold=0`` disables removal."""

    threshold: int = 25

    def threshold_for(self, scores: Sequence[int]) -> int:
        return self.threshold


def _percentile(sorted_scores: Sequence[int], pct: float) -> int:
    """Nearest-rank percentile of an already-sorted, non-empty sequence."""
    rank = max(1, math.ceil(pct / 100 * len(sorted_scores)))
    return sorted_scores[rank - 1]


@dataclass(frozen=True)
class AdaptiveThresholdPolicy:
    """Threshold that rises with the score distribution of the same report.

    threshold = clamp(P<percentile>(scores) - margin, floor, ceiling)

    When most findings already score high the lower quartile is high, so
    stragglers well below the pack are cut more aggressively. A report of
    mostly weak scores falls back to ``floor``, the fixed policy's cutoff.
    """

    floor: int = 25
    ceiling: int = 50
    percentile: float = 25.0
    margin: int = 20

    def threshold_for(self, scores: Sequence[int]) -> int:
        if not scores:
            return self.floor
        anchor = _percentile(sorted(scores), self.percentile)
        return max(self.floor, min(self.ceiling, anchor - self.margin))


def policy_from_config(reasoning: dict) -> RemovalPolicy:
    threshold = int(reasoning.get("removal_threshold", 25))
    if reasoning.get("removal_policy") == "adaptive" and threshold > 0:
        return AdaptiveThresholdPolicy(floor=threshold)
    return FixedThresholdPolicy(threshold)


def apply_removal(
    findings: list[Finding],
    policy: RemovalPolicy,
) -> tuple[list[Finding], list[str], int]:
    """Split findings into (kept, removed_ids, threshold_used).

    Unscored findings are never removed. If every finding falls below the
    threshold, the highest-scoring one is kept so a report always has at
    least one finding.
    """
    scores = [f.certainty for f in findings if f.certainty is not None]
    threshold = policy.threshold_for(scores)
    kept = [f for f in findings if f.certainty is None or f.certainty >= threshold]
    if not kept and findings:
        best = max(findings, key=lambda f: f.certainty or 0)
        logger.warning(
            "All %d findings fell below threshold %d — keeping best (%s at %s)",
            len(findings), threshold, best.id, best.certainty,
        )
        kept = [best]
    kept_ids = {f.id for f in kept}
    removed = [f.id for f in findings if f.id not in kept_ids]
    if removed:
        logger.info("Removed %d finding(s) below %d: %s", len(removed), threshold, ", ".join(removed))
    return kept, removed, threshold


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------

def overall_certainty(findings: Iterable[Finding]) -> Optional[int]:
    """Rounded (half-up) mean certainty; a missing score counts as MISSING_CERTAINTY."""
    values = [
        f.certainty if f.certainty is not None else config.MISSING_CERTAINTY
        for f in findings
    ]
    if not values:
        return None
    return round_half_up(sum(values) / len(values))


def average_certainty(findings: Iterable[Finding]) -> Optional[int]:
    """Mean over scored findings only (stats; unscored findings are skipped)."""
    values = [f.certainty for f in findings if f.certainty is not None]
    if not values:
        return None
    return round_half_up(sum(values) / len(values))


def certainty_buckets(findings: Iterable[Finding]) -> CertaintyBuckets:
    buckets = CertaintyBuckets()
    for finding in findings:
        score = finding.certainty
        if score is None:
            continue
        if score >= 90:
            buckets.high += 1
        elif score >= 70:
            buckets.moderate += 1
        elif score >= 50:
            buckets.mixed += 1
        else:
            buckets.weak += 1
    return buckets
