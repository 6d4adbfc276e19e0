from __future__ import annotations

import math
import unittest
from decimal import Decimal

from settlements.errors import InvalidSpecialRulesError
from settlements.models import PlanRuleSet, RuleType, SpecialRule
from settlements.rules import quantity_range, ranges_overlap, rule_matches, validate_rule_sets


def rule(rule_type: RuleType, amount: str = "1000", **quantities: int) -> SpecialRule:
    return SpecialRule(type=rule_type, amount=Decimal(amount), **quantities)


class QuantityRangeTests(unittest.TestCase):
    def test_ranges_per_rule_type(self) -> None:
        self.assertEqual(quantity_range(rule(RuleType.EQUALS, equal_quantity=3)), (3, 3))
        self.assertEqual(quantity_range(rule(RuleType.BETWEEN, min_quantity=2, max_quantity=5)), (2, 5))
        self.assertEqual(quantity_range(rule(RuleType.GREATER_THAN, min_quantity=4)), (5, math.inf))
        self.assertEqual(quantity_range(rule(RuleType.LESS_THAN, max_quantity=3)), (0, 2))
        self.assertIsNone(quantity_range(rule(RuleType.FIXED_AMOUNT)))

    def test_overlap_is_inclusive(self) -> None:
        between = rule(RuleType.BETWEEN, min_quantity=2, max_quantity=5)
        self.assertTrue(ranges_overlap(between, rule(RuleType.EQUALS, equal_quantity=5)))
        self.assertFalse(ranges_overlap(between, rule(RuleType.GREATER_THAN, min_quantity=5)))
        self.assertTrue(ranges_overlap(between, rule(RuleType.GREATER_THAN, min_quantity=4)))
        self.assertFalse(ranges_overlap(between, rule(RuleType.LESS_THAN, max_quantity=2)))
        self.assertFalse(ranges_overlap(between, rule(RuleType.FIXED_AMOUNT)))


class ValidateRuleSetsTests(unittest.TestCase):
    def test_accepts_disjoint_rules_and_fills_equals_bounds(self) -> None:
        result = validate_rule_sets(
            [
                PlanRuleSet(
                    plan_id=10,
                    rules=(
                        rule(RuleType.LESS_THAN, max_quantity=2),
                        rule(RuleType.EQUALS, equal_quantity=2),
                        rule(RuleType.BETWEEN, min_quantity=3, max_quantity=6),
                        rule(RuleType.GREATER_THAN, min_quantity=6),
                        rule(RuleType.FIXED_AMOUNT),
                    ),
                )
            ]
        )
        equals = result[0].rules[1]
        self.assertEqual((equals.min_quantity, equals.max_quantity), (2, 2))

    def test_rejects_overlapping_ranges(self) -> None:
        with self.assertRaises(InvalidSpecialRulesError) as ctx:
            validate_rule_sets(
                [
                    PlanRuleSet(
                        plan_id=7,
                        rules=(
                            rule(RuleType.BETWEEN, min_quantity=1, max_quantity=4),
                            rule(RuleType.EQUALS, equal_quantity=4),
                        ),
                    )
                ]
            )
        self.assertEqual(ctx.exception.plan_id, 7)

    def test_same_range_on_different_plans_is_fine(self) -> None:
        sets = [
            PlanRuleSet(plan_id=1, rules=(rule(RuleType.EQUALS, equal_quantity=1),)),
            PlanRuleSet(plan_id=2, rules=(rule(RuleType.EQUALS, equal_quantity=1),)),
        ]
        self.assertEqual(len(validate_rule_sets(sets)), 2)

    def test_rejects_plan_in_two_rule_sets(self) -> None:
        sets = [
            PlanRuleSet(plan_id=1, rules=(rule(RuleType.EQUALS, equal_quantity=1),)),
            PlanRuleSet(plan_id=1, rules=(rule(RuleType.EQUALS, equal_quantity=2),)),
        ]
        with self.assertRaises(InvalidSpecialRulesError):
            validate_rule_sets(sets)

    def test_rejects_rule_set_without_plan(self) -> None:
        for plan_id in (0, -3):
            with self.subTest(plan_id=plan_id):
                with self.assertRaises(InvalidSpecialRulesError):
                    validate_rule_sets([PlanRuleSet(plan_id=plan_id, rules=(rule(RuleType.FIXED_AMOUNT),))])

    def test_rejects_bad_rules(self) -> None:
        bad = [
            rule(RuleType.FIXED_AMOUNT, amount="0"),
            rule(RuleType.FIXED_AMOUNT, amount="-5"),
            rule(RuleType.BETWEEN, min_quantity=4, max_quantity=4),
            rule(RuleType.BETWEEN, min_quantity=5, max_quantity=2),
            rule(RuleType.BETWEEN, min_quantity=2),
            rule(RuleType.EQUALS),
            rule(RuleType.GREATER_THAN),
            rule(RuleType.LESS_THAN, max_quantity=0),
        ]
        for candidate in bad:
            with self.subTest(rule=candidate):
                with self.assertRaises(InvalidSpecialRulesError):
                    validate_rule_sets([PlanRuleSet(plan_id=1, rules=(candidate,))])


class RuleMatchTests(unittest.TestCase):
    def test_matches(self) -> None:
        self.assertTrue(rule_matches(rule(RuleType.FIXED_AMOUNT), 17))
        self.assertTrue(rule_matches(rule(RuleType.GREATER_THAN, min_quantity=3), 4))
        self.assertFalse(rule_matches(rule(RuleType.GREATER_THAN, min_quantity=3), 3))
        self.assertTrue(rule_matches(rule(RuleType.LESS_THAN, max_quantity=3), 2))
        self.assertFalse(rule_matches(rule(RuleType.LESS_THAN, max_quantity=3), 3))
        self.assertTrue(rule_matches(rule(RuleType.BETWEEN, min_quantity=2, max_quantity=4), 4))


if __name__ == "__main__":
    unittest.main()
