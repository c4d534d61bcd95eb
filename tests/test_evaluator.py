import itertools

import pytest

from miniflux_filter.evaluator import evaluate, match_rule_set, rule_matches
from miniflux_filter.models import Action, Condition, Field, Operator, Rule, RuleSet


def _rule(*conditions):
    return Rule(action=Action.MARK_READ, conditions=tuple(conditions))


def test_contains_is_case_insensitive(make_entry):
    condition = Condition(Field.TITLE, Operator.CONTAINS, "sponsored")

    assert evaluate(condition, make_entry(1, title="Sponsored Deal"))
    assert not evaluate(condition, make_entry(2, title="Normal post"))


def test_matches_is_case_sensitive(make_entry):
    condition = Condition(Field.TITLE, Operator.MATCHES, "^AD")

    assert evaluate(condition, make_entry(1, title="AD Block"))
    assert not evaluate(condition, make_entry(2, title="ad block"))


def test_matches_searches_anywhere_in_value(make_entry):
    condition = Condition(Field.URL, Operator.MATCHES, r"/promo/\d+")

    assert evaluate(condition, make_entry(1, url="https://example.com/promo/42"))


@pytest.mark.parametrize(
    "operator,value,title,expected",
    [
        (Operator.NOT_CONTAINS, "sponsored", "Sponsored Deal", False),
        (Operator.NOT_CONTAINS, "sponsored", "Release notes", True),
        (Operator.EQUALS, "weekly digest", "Weekly Digest", True),
        (Operator.EQUALS, "weekly digest", " Weekly Digest", False),
        (Operator.NOT_EQUALS, "weekly digest", "WEEKLY DIGEST", False),
        (Operator.NOT_EQUALS, "weekly digest", "Daily Digest", True),
        (Operator.STARTS_WITH, "[ad]", "[AD] Buy now", True),
        (Operator.STARTS_WITH, "[ad]", "Buy now [AD]", False),
        (Operator.ENDS_WITH, "(video)", "Keynote (Video)", True),
        (Operator.ENDS_WITH, "(video)", "(Video) Keynote", False),
    ],
)
def test_string_operators(make_entry, operator, value, title, expected):
    condition = Condition(Field.TITLE, operator, value)

    assert evaluate(condition, make_entry(1, title=title)) is expected


def test_fields_map_to_entry_attributes(make_entry):
    entry = make_entry(
        1,
        title="Title",
        content="<p>Promotional offer</p>",
        author="Spam-Author",
        url="https://ads.example.com/x",
    )

    assert evaluate(Condition(Field.CONTENT, Operator.CONTAINS, "promotional"), entry)
    assert evaluate(Condition(Field.AUTHOR, Operator.EQUALS, "spam-author"), entry)
    assert evaluate(Condition(Field.URL, Operator.STARTS_WITH, "https://ads."), entry)


def test_tag_matches_when_any_tag_satisfies(make_entry):
    entry = make_entry(1, tags={"News", "Sports"})

    assert evaluate(Condition(Field.TAG, Operator.EQUALS, "sports"), entry)
    assert evaluate(Condition(Field.TAG, Operator.MATCHES, "(?i)^sport"), entry)
    assert not evaluate(Condition(Field.TAG, Operator.EQUALS, "politics"), entry)


def test_tag_conditions_never_match_without_tags(make_entry):
    entry = make_entry(1)

    for operator in Operator:
        assert not evaluate(Condition(Field.TAG, operator, "x"), entry)


def test_tag_negated_operators_match_when_any_tag_differs(make_entry):
    entry = make_entry(1, tags={"News", "Sports"})

    assert evaluate(Condition(Field.TAG, Operator.NOT_EQUALS, "news"), entry)
    assert evaluate(Condition(Field.TAG, Operator.NOT_CONTAINS, "new"), entry)
    assert not evaluate(
        Condition(Field.TAG, Operator.NOT_EQUALS, "news"), make_entry(2, tags={"News"})
    )


def test_condition_order_does_not_change_rule_result(make_entry):
    conditions = [
        Condition(Field.TITLE, Operator.CONTAINS, "deal"),
        Condition(Field.AUTHOR, Operator.NOT_EQUALS, "trusted"),
        Condition(Field.URL, Operator.ENDS_WITH, ".html"),
    ]
    entries = [
        make_entry(1, title="Big deal", author="bot", url="a.html"),
        make_entry(2, title="Big deal", author="trusted", url="a.html"),
        make_entry(3, title="Nothing", author="bot", url="a.html"),
    ]

    for entry in entries:
        results = {
            rule_matches(_rule(*order), entry)
            for order in itertools.permutations(conditions)
        }
        assert len(results) == 1


def test_first_matching_rule_wins(make_entry):
    rule_set = RuleSet(
        feed_id=1,
        rules=(
            _rule(Condition(Field.TITLE, Operator.CONTAINS, "nothing-matches")),
            _rule(Condition(Field.TITLE, Operator.CONTAINS, "deal")),
            _rule(Condition(Field.TITLE, Operator.CONTAINS, "big")),
        ),
    )

    assert match_rule_set(rule_set, make_entry(1, title="Big deal")) == 1
    assert match_rule_set(rule_set, make_entry(2, title="Big news")) == 2
    assert match_rule_set(rule_set, make_entry(3, title="Other")) is None


def test_invalid_regex_only_disables_its_rule(make_entry):
    broken = _rule(
        Condition(Field.TITLE, Operator.MATCHES, "(unclosed"),
        Condition(Field.TITLE, Operator.CONTAINS, "deal"),
    )
    working = _rule(Condition(Field.TITLE, Operator.CONTAINS, "deal"))
    rule_set = RuleSet(feed_id=1, rules=(broken, working))

    assert broken.invalid_reason is not None
    assert not rule_matches(broken, make_entry(1, title="deal"))
    assert match_rule_set(rule_set, make_entry(1, title="deal")) == 1


def test_empty_rule_set_never_matches(make_entry):
    assert match_rule_set(RuleSet(feed_id=1), make_entry(1, title="x")) is None
