"""Rule document parsing, validation and TOML serialisation."""

from __future__ import annotations

import logging
import re
import tomllib
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

import tomli_w

from .errors import ValidationError
from .models import Action, Condition, Field, Operator, Rule, RuleSet

logger = logging.getLogger(__name__)

RULE_FILE_SUFFIX = ".toml"
_RULE_FILE_RE = re.compile(r"^feed_(\d+)\.toml$")

E = TypeVar("E", bound=Enum)


def rule_file_name(feed_id: int) -> str:
    return f"feed_{feed_id}{RULE_FILE_SUFFIX}"


def feed_id_from_filename(name: str) -> Optional[int]:
    """Return the feed id encoded in a ``feed_<id>.toml`` name, if any."""
    match = _RULE_FILE_RE.match(name)
    if not match:
        return None
    return int(match.group(1))


def _parse_enum(enum_cls: Type[E], raw: Any, what: str) -> E:
    if isinstance(raw, enum_cls):
        return raw
    if not isinstance(raw, str):
        raise ValidationError(f"{what} must be a string, got {raw!r}")
    # Accept "not_contains", "Not-Contains" and friends.
    key = raw.strip().lower().replace("_", "").replace("-", "")
    for member in enum_cls:
        if member.value == key:
            return member
    allowed = ", ".join(member.value for member in enum_cls)
    raise ValidationError(f"unknown {what} {raw!r} (expected one of: {allowed})")


def _parse_condition(data: Any, rule_no: int, cond_no: int) -> Condition:
    where = f"rule {rule_no} condition {cond_no}"
    if not isinstance(data, dict):
        raise ValidationError(f"{where} must be a table")
    for key in ("field", "operator", "value"):
        if key not in data:
            raise ValidationError(f"{where} is missing '{key}'")

    value = data["value"]
    if not isinstance(value, str):
        raise ValidationError(f"{where} value must be a string")
    if not value.strip():
        raise ValidationError(f"{where} has an empty value")

    return Condition(
        field=_parse_enum(Field, data["field"], f"field in {where}"),
        operator=_parse_enum(Operator, data["operator"], f"operator in {where}"),
        value=value,
    )


def _parse_rule(data: Any, rule_no: int, strict: bool) -> Rule:
    if not isinstance(data, dict):
        raise ValidationError(f"rule {rule_no} must be a table")
    action = _parse_enum(Action, data.get("action"), f"action in rule {rule_no}")

    raw_conditions = data.get("conditions")
    if not isinstance(raw_conditions, list):
        raise ValidationError(f"rule {rule_no} conditions must be an array")
    if not raw_conditions:
        raise ValidationError(f"rule {rule_no} has no conditions")

    rule = Rule(
        action=action,
        conditions=tuple(
            _parse_condition(item, rule_no, index)
            for index, item in enumerate(raw_conditions, start=1)
        ),
    )

    reason = rule.invalid_reason
    if reason:
        if strict:
            raise ValidationError(f"rule {rule_no} has an {reason}")
        logger.warning("Rule %d disabled: %s", rule_no, reason)
    return rule


def parse_rule_set(
    data: Any, path: Optional[str] = None, strict: bool = True
) -> RuleSet:
    """Build a validated ``RuleSet`` from a decoded document.

    With ``strict=False`` a rule whose regex cannot be compiled is kept but
    will never match; every other problem still rejects the whole document.
    """
    try:
        if not isinstance(data, dict):
            raise ValidationError("rule set must be a table")

        feed_id = data.get("feed_id")
        # bool is an int subclass; reject it explicitly.
        if not isinstance(feed_id, int) or isinstance(feed_id, bool):
            raise ValidationError("feed_id must be an integer")
        if feed_id <= 0:
            raise ValidationError("feed_id must be positive")

        enabled = data.get("enabled", True)
        if not isinstance(enabled, bool):
            raise ValidationError("enabled must be a boolean")

        feed_name = data.get("feed_name")
        if feed_name is not None and not isinstance(feed_name, str):
            raise ValidationError("feed_name must be a string")

        raw_rules = data.get("rules", [])
        if not isinstance(raw_rules, list):
            raise ValidationError("rules must be an array")

        rules = tuple(
            _parse_rule(item, index, strict)
            for index, item in enumerate(raw_rules, start=1)
        )
    except ValidationError as exc:
        if path and exc.path is None:
            exc.path = path
        raise

    if not rules:
        logger.warning(
            "Rule set for feed %d has no rules", feed_id, extra={"feed_id": feed_id}
        )

    return RuleSet(feed_id=feed_id, rules=rules, enabled=enabled, feed_name=feed_name)


def rule_set_to_dict(rule_set: RuleSet) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"feed_id": rule_set.feed_id}
    if rule_set.feed_name is not None:
        payload["feed_name"] = rule_set.feed_name
    payload["enabled"] = rule_set.enabled
    payload["rules"] = [
        {
            "action": rule.action.value,
            "conditions": [
                {
                    "field": condition.field.value,
                    "operator": condition.operator.value,
                    "value": condition.value,
                }
                for condition in rule.conditions
            ],
        }
        for rule in rule_set.rules
    ]
    return payload


def dumps_rule_set(rule_set: RuleSet) -> str:
    return tomli_w.dumps(rule_set_to_dict(rule_set))


def loads_rule_set(
    text: str, path: Optional[str] = None, strict: bool = True
) -> RuleSet:
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ValidationError(f"invalid TOML: {exc}", path=path) from exc
    return parse_rule_set(data, path=path, strict=strict)


def load_rule_file(path: Path) -> RuleSet:
    """Read and validate one rule file.

    Regex errors only disable the offending rule. A ``feed_<id>.toml`` name
    that disagrees with the ``feed_id`` inside the file is rejected.
    """
    logger.debug("Loading rule set from %s", path)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ValidationError(f"cannot read rule file: {exc}", path=str(path)) from exc

    rule_set = loads_rule_set(text, path=str(path), strict=False)

    named_id = feed_id_from_filename(path.name)
    if named_id is not None and named_id != rule_set.feed_id:
        raise ValidationError(
            f"file name says feed {named_id} but feed_id is {rule_set.feed_id}",
            path=str(path),
        )

    logger.info(
        "Loaded rule set for feed %d with %d rules",
        rule_set.feed_id,
        len(rule_set.rules),
    )
    return rule_set


def example_rule_set(feed_id: int, feed_name: Optional[str] = None) -> RuleSet:
    """Return a starter rule set showing the supported rule shapes."""
    rules: List[Rule] = [
        Rule(
            action=Action.MARK_READ,
            conditions=(
                Condition(Field.TITLE, Operator.CONTAINS, "ad"),
                Condition(Field.TITLE, Operator.CONTAINS, "advertisement"),
            ),
        ),
        Rule(
            action=Action.MARK_READ,
            conditions=(Condition(Field.CONTENT, Operator.CONTAINS, "promotional"),),
        ),
        Rule(
            action=Action.MARK_READ,
            conditions=(Condition(Field.AUTHOR, Operator.EQUALS, "spam-author"),),
        ),
    ]
    return RuleSet(feed_id=feed_id, rules=tuple(rules), feed_name=feed_name)
