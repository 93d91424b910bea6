"""
Rule group evaluation.

A promotion's rules are partitioned by ``rule_group``. Inside a group every
required rule must hold and, if the group has optional rules, at least one of
them must hold. All groups must pass. Rules are always visited in
(sort_order, id) order so the first failure reported is stable.
"""

from __future__ import annotations

from collections.abc import Iterable

from .conditions import evaluate
from .domain import PricingContext, Rule


def ordered_groups(rules: Iterable[Rule]) -> list[tuple[str, list[Rule]]]:
    """Group rules by rule_group, groups in order of their first rule."""
    groups: dict[str, list[Rule]] = {}
    for rule in sorted(rules, key=lambda r: (r.sort_order, r.id)):
        groups.setdefault(rule.rule_group, []).append(rule)
    return list(groups.items())


def _holds(rule: Rule, context: PricingContext) -> bool:
    return evaluate(rule.condition_type, rule.operator, rule.value, context)


def first_failure(rules: Iterable[Rule], context: PricingContext) -> Rule | None:
    """
    Return the rule that makes the set fail, or None when eligible.

    For a group whose optional rules all fail, the first optional rule of
    that group is returned.
    """
    for _group, group_rules in ordered_groups(rules):
        optional: list[Rule] = []
        for rule in group_rules:
            if not rule.is_required:
                optional.append(rule)
            elif not _holds(rule, context):
                return rule
        if optional and not any(_holds(rule, context) for rule in optional):
            return optional[0]
    return None


def is_eligible(rules: Iterable[Rule], context: PricingContext) -> bool:
    """True when every rule group passes. No rules means eligible."""
    return first_failure(rules, context) is None
