from __future__ import annotations

import math
from decimal import Decimal
from typing import Iterable

from settlements.errors import InvalidSpecialRulesError
from settlements.models import PlanRuleSet, RuleType, SpecialRule


def quantity_range(rule: SpecialRule) -> tuple[float, float] | None:
    """Inclusive quantity range covered by ``rule``; None for FIXED_AMOUNT."""
    if rule.type == RuleType.EQUALS:
        return (rule.equal_quantity, rule.equal_quantity)  # type: ignore[return-value]
    if rule.type == RuleType.BETWEEN:
        return (rule.min_quantity, rule.max_quantity)  # type: ignore[return-value]
    if rule.type == RuleType.GREATER_THAN:
        return (rule.min_quantity + 1, math.inf)  # type: ignore[operator]
    if rule.type == RuleType.LESS_THAN:
        return (0, rule.max_quantity - 1)  # type: ignore[operator]
    return None


def ranges_overlap(left: SpecialRule, right: SpecialRule) -> bool:
    a = quantity_range(left)
    b = quantity_range(right)
    if a is None or b is None:
        return False
    return a[1] >= b[0] and a[0] <= b[1]


def normalize_rule(rule: SpecialRule, plan_id: int | None = None) -> SpecialRule:
    """Check a single rule and return it with EQUALS bounds filled in."""
    if rule.amount is None or Decimal(rule.amount) <= 0:
        raise InvalidSpecialRulesError("rule amount must be greater than zero", plan_id)

    if rule.type == RuleType.BETWEEN:
        if not rule.min_quantity or not rule.max_quantity:
            raise InvalidSpecialRulesError("BETWEEN rules need min and max quantity", plan_id)
        if rule.min_quantity >= rule.max_quantity:
            raise InvalidSpecialRulesError("min quantity must be lower than max quantity", plan_id)
    elif rule.type == RuleType.EQUALS:
        if not rule.equal_quantity:
            raise InvalidSpecialRulesError("EQUALS rules need an exact quantity", plan_id)
        return SpecialRule(
            type=rule.type,
            amount=rule.amount,
            description=rule.description,
            analysis_id=rule.analysis_id,
            min_quantity=rule.equal_quantity,
            max_quantity=rule.equal_quantity,
            equal_quantity=rule.equal_quantity,
        )
    elif rule.type == RuleType.GREATER_THAN:
        if rule.min_quantity is None or rule.min_quantity < 0:
            raise InvalidSpecialRulesError("GREATER_THAN rules need a min quantity", plan_id)
    elif rule.type == RuleType.LESS_THAN:
        if not rule.max_quantity or rule.max_quantity < 1:
            raise InvalidSpecialRulesError("LESS_THAN rules need a max quantity", plan_id)
    return rule


def validate_rule_sets(rule_sets: Iterable[PlanRuleSet]) -> tuple[PlanRuleSet, ...]:
    """Validate every rule and reject overlapping ranges within a plan.

    Returns the normalized rule sets. Raises InvalidSpecialRulesError naming
    the first offending plan.
    """
    validated: list[PlanRuleSet] = []
    seen_plans: set[int] = set()
    for rule_set in rule_sets:
        if rule_set.plan_id is None or rule_set.plan_id <= 0:
            raise InvalidSpecialRulesError("special rules must target a plan", None)
        if rule_set.plan_id in seen_plans:
            raise InvalidSpecialRulesError(f"plan {rule_set.plan_id} has more than one rule set", rule_set.plan_id)
        seen_plans.add(rule_set.plan_id)

        accepted: list[SpecialRule] = []
        for raw in rule_set.rules:
            rule = normalize_rule(raw, rule_set.plan_id)
            for existing in accepted:
                if ranges_overlap(rule, existing):
                    raise InvalidSpecialRulesError(
                        f"rule {rule.type.value} overlaps an existing rule for plan {rule_set.plan_id}",
                        rule_set.plan_id,
                    )
            accepted.append(rule)
        validated.append(PlanRuleSet(plan_id=rule_set.plan_id, rules=tuple(accepted)))
    return tuple(validated)


def rule_matches(rule: SpecialRule, quantity: int) -> bool:
    if rule.type == RuleType.FIXED_AMOUNT:
        return True
    bounds = quantity_range(rule)
    return bounds is not None and bounds[0] <= quantity <= bounds[1]
