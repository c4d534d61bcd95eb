"""Pure matching of entries against conditions, rules and rule sets."""

from __future__ import annotations

import logging
from typing import Optional

from .models import Condition, Entry, Field, Operator, Rule, RuleSet

logger = logging.getLogger(__name__)


def _test_value(condition: Condition, value: str) -> bool:
    operator = condition.operator

    if operator is Operator.MATCHES:
        # Case-sensitive, against the raw value.
        if condition.pattern is None:
            return False
        return condition.pattern.search(value) is not None

    haystack = value.lower()
    needle = condition.value.lower()

    if operator is Operator.CONTAINS:
        return needle in haystack
    if operator is Operator.NOT_CONTAINS:
        return needle not in haystack
    if operator is Operator.EQUALS:
        return haystack == needle
    if operator is Operator.NOT_EQUALS:
        return haystack != needle
    if operator is Operator.STARTS_WITH:
        return haystack.startswith(needle)
    if operator is Operator.ENDS_WITH:
        return haystack.endswith(needle)
    raise AssertionError(f"unhandled operator {operator!r}")


def evaluate(condition: Condition, entry: Entry) -> bool:
    """Return True when ``entry`` satisfies ``condition``."""
    field = condition.field

    if field is Field.TAG:
        # Any single tag satisfying the operator is enough.
        return any(_test_value(condition, tag) for tag in entry.tags)
    if field is Field.TITLE:
        value = entry.title
    elif field is Field.CONTENT:
        value = entry.content
    elif field is Field.AUTHOR:
        value = entry.author
    elif field is Field.URL:
        value = entry.url
    else:
        raise AssertionError(f"unhandled field {field!r}")
    return _test_value(condition, value or "")


def rule_matches(rule: Rule, entry: Entry) -> bool:
    """A rule matches when every one of its conditions matches."""
    if rule.invalid_reason:
        return False
    return all(evaluate(condition, entry) for condition in rule.conditions)


def match_rule_set(rule_set: RuleSet, entry: Entry) -> Optional[int]:
    """Return the index of the first matching rule, or None.

    Later rules are not evaluated once one has matched.
    """
    for index, rule in enumerate(rule_set.rules):
        if rule_matches(rule, entry):
            logger.debug("Entry %d matches rule %d", entry.id, index + 1)
            return index
    return None
