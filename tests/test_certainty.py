from __future__ import annotations

import unittest

import config
from pipeline.certainty import (
    AdaptiveThresholdPolicy,
    FixedThresholdPolicy,
    REMOVE,
    apply_removal,
    average_certainty,
    certainty_buckets,
    overall_certainty,
    policy_from_config,
    round_half_up,
    tier_for,
)
from schemas.report import Finding


def _findings(*scores):
    return [Finding(id=f"f{i + 1}", certainty=score) for i, score in enumerate(scores)]


class TierTests(unittest.TestCase):
    def test_tier_boundaries(self):
        self.assertEqual(tier_for(99), "factual")
        self.assertEqual(tier_for(95), "factual")
        self.assertEqual(tier_for(94), "strong")
        self.assertEqual(tier_for(85), "strong")
        self.assertEqual(tier_for(84), "moderate")
        self.assertEqual(tier_for(70), "moderate")
        self.assertEqual(tier_for(69), "mixed")
        self.assertEqual(tier_for(50), "mixed")
        self.assertEqual(tier_for(49), "weak")
        self.assertEqual(tier_for(25), "weak")
        self.assertEqual(tier_for(24), REMOVE)

    def test_zero_threshold_never_removes(self):
        self.assertEqual(tier_for(3, threshold=0), "weak")


class RoundingTests(unittest.TestCase):
    def test_half_rounds_up(self):
        self.assertEqual(round_half_up(68.5), 69)
        self.assertEqual(round_half_up(72.5), 73)
        self.assertEqual(round_half_up(72.49), 72)


class FixedPolicyTests(unittest.TestCase):
    def test_removes_below_threshold(self):
        kept, removed, threshold = apply_removal(_findings(96, 40, 10), FixedThresholdPolicy(25))
        self.assertEqual([f.id for f in kept], ["f1", "f2"])
        self.assertEqual(removed, ["f3"])
        self.assertEqual(threshold, 25)

    def test_threshold_exactly_kept(self):
        kept, removed, _ = apply_removal(_findings(25, 24), FixedThresholdPolicy(25))
        self.assertEqual([f.id for f in kept], ["f1"])
        self.assertEqual(removed, ["f2"])

    def test_zero_threshold_keeps_everything(self):
        kept, removed, _ = apply_removal(_findings(1, 5, 10), FixedThresholdPolicy(0))
        self.assertEqual(len(kept), 3)
        self.assertEqual(removed, [])

    def test_never_empties_the_report(self):
        kept, removed, _ = apply_removal(_findings(10, 20, 5), FixedThresholdPolicy(25))
        self.assertEqual([f.id for f in kept], ["f2"])
        self.assertEqual(removed, ["f1", "f3"])

    def test_unscored_findings_are_not_removed(self):
        kept, removed, _ = apply_removal(_findings(None, 10, 80), FixedThresholdPolicy(25))
        self.assertEqual([f.id for f in kept], ["f1", "f3"])
        self.assertEqual(removed, ["f2"])

    def test_empty_input(self):
        self.assertEqual(apply_removal([], FixedThresholdPolicy(25)), ([], [], 25))


class AdaptivePolicyTests(unittest.TestCase):
    def test_high_distribution_raises_threshold_to_ceiling(self):
        policy = AdaptiveThresholdPolicy()
        self.assertEqual(policy.threshold_for([90, 90, 90, 90, 40]), 50)
        kept, removed, threshold = apply_removal(_findings(90, 90, 90, 90, 40), policy)
        self.assertEqual(threshold, 50)
        self.assertEqual(removed, ["f5"])
        self.assertEqual(len(kept), 4)

    def test_same_scores_survive_fixed_policy(self):
        _, removed, _ = apply_removal(_findings(90, 90, 90, 90, 40), FixedThresholdPolicy(25))
        self.assertEqual(removed, [])

    def test_weak_distribution_falls_back_to_floor(self):
        self.assertEqual(AdaptiveThresholdPolicy().threshold_for([30, 35, 40, 45]), 25)

    def test_mid_distribution_uses_lower_quartile_minus_margin(self):
        # sorted [50, 60, 70, 80]; P25 -> 50; 50 - 20 = 30
        self.assertEqual(AdaptiveThresholdPolicy().threshold_for([80, 60, 50, 70]), 30)

    def test_no_scores_uses_floor(self):
        self.assertEqual(AdaptiveThresholdPolicy(floor=25).threshold_for([]), 25)


class PolicyFromConfigTests(unittest.TestCase):
    def test_levels_map_to_policies(self):
        self.assertEqual(policy_from_config(config.get_reasoning_config("x-light")), FixedThresholdPolicy(0))
        self.assertEqual(policy_from_config(config.get_reasoning_config("heavy")), FixedThresholdPolicy(25))
        self.assertIsInstance(policy_from_config(config.get_reasoning_config("x-heavy")), AdaptiveThresholdPolicy)

    def test_adaptive_with_zero_threshold_disables_removal(self):
        policy = policy_from_config({"removal_threshold": 0, "removal_policy": "adaptive"})
        self.assertEqual(policy, FixedThresholdPolicy(0))


class AggregateTests(unittest.TestCase):
    def test_overall_certainty_is_rounded_mean(self):
        self.assertEqual(overall_certainty(_findings(96, 40)), 68)
        self.assertEqual(overall_certainty(_findings(96, 41)), 69)

    def test_missing_scores_count_as_fifty(self):
        self.assertEqual(overall_certainty(_findings(90, None)), 70)

    def test_overall_of_nothing_is_none(self):
        self.assertIsNone(overall_certainty([]))

    def test_average_skips_unscored(self):
        self.assertEqual(average_certainty(_findings(90, None)), 90)
        self.assertIsNone(average_certainty(_findings(None)))

    def test_buckets(self):
        buckets = certainty_buckets(_findings(95, 90, 75, 55, 30, None))
        self.assertEqual((buckets.high, buckets.moderate, buckets.mixed, buckets.weak), (2, 1, 1, 1))


if __name__ == "__main__":
    unittest.main()
