"""Shared data models for miniflux_filter."""

from __future__ import annotations

import re
import dataclasses
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, List, Optional, Pattern, Tuple


class Field(str, Enum):
    TITLE = "title"
    CONTENT = "content"
    AUTHOR = "author"
    URL = "url"
    TAG = "tag"


class Operator(str, Enum):
    CONTAINS = "contains"
    NOT_CONTAINS = "notcontains"
    EQUALS = "equals"
    NOT_EQUALS = "notequals"
    STARTS_WITH = "startswith"
    ENDS_WITH = "endswith"
    MATCHES = "matches"


class Action(str, Enum):
    MARK_READ = "markread"


@dataclass(frozen=True)
class Condition:
    """A single field/operator/value test.

    For ``Operator.MATCHES`` the pattern is compiled once on construction.
    A bad pattern does not raise here: it is kept in ``pattern_error`` so the
    owning rule can be disabled without rejecting the whole rule set.
    """

    field: Field
    operator: Operator
    value: str
    pattern: Optional[Pattern[str]] = dataclasses.field(
        default=None, init=False, repr=False, compare=False
    )
    pattern_error: Optional[str] = dataclasses.field(
        default=None, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if self.operator is not Operator.MATCHES:
            return
        try:
            object.__setattr__(self, "pattern", re.compile(self.value))
        except re.error as exc:
            object.__setattr__(self, "pattern_error", str(exc))


@dataclass(frozen=True)
class Rule:
    """An AND-group of conditions paired with an action."""

    action: Action
    conditions: Tuple[Condition, ...]

    @property
    def invalid_reason(self) -> Optional[str]:
        for condition in self.conditions:
            if condition.pattern_error:
                return (
                    f"invalid regex {condition.value!r}: {condition.pattern_error}"
                )
        return None


@dataclass(frozen=True)
class RuleSet:
    """All filtering rules for one feed."""

    feed_id: int
    rules: Tuple[Rule, ...] = ()
    enabled: bool = True
    feed_name: Optional[str] = None


@dataclass(frozen=True)
class Entry:
    """An item reported by Miniflux. Read-only to this application."""

    id: int
    feed_id: int
    title: str = ""
    content: str = ""
    author: str = ""
    url: str = ""
    tags: FrozenSet[str] = frozenset()
    status: str = "unread"


@dataclass(frozen=True)
class FeedInfo:
    id: int
    title: str
    site_url: str = ""
    feed_url: str = ""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LogEntry:
    """One recorded evaluation outcome."""

    level: str
    target: str
    message: str
    feed_id: Optional[int] = None
    entry_id: Optional[int] = None
    entry_title: Optional[str] = None
    timestamp: datetime = dataclasses.field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level,
            "target": self.target,
            "feed_id": self.feed_id,
            "entry_id": self.entry_id,
            "entry_title": self.entry_title,
            "message": self.message,
        }


@dataclass(frozen=True)
class Stats:
    total_rule_sets: int
    enabled_rule_sets: int
    total_rules: int
    feeds_with_rules: Tuple[int, ...] = ()


@dataclass
class ExecutionResult:
    """Outcome of one fetch-evaluate-mark-read pass over a feed."""

    feed_id: int
    processed: int = 0
    marked: int = 0
    errors: int = 0
    skipped: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class AlreadyRunning:
    """Returned when a run is requested for a feed that is already running."""

    feed_id: int


@dataclass
class LoadReport:
    """Summary of a rules directory load."""

    loaded: int = 0
    errors: List[Tuple[str, str]] = dataclasses.field(default_factory=list)
