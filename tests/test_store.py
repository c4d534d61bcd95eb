import os
import threading

import pytest

from miniflux_filter.errors import PersistenceError, ValidationError
from miniflux_filter.models import Action, Condition, Field, Operator, Rule, RuleSet
from miniflux_filter.rules import example_rule_set, loads_rule_set

RULE_BODY = """\
feed_id = {feed_id}
enabled = {enabled}

[[rules]]
action = "markread"

[[rules.conditions]]
field = "title"
operator = "contains"
value = "{value}"
"""


def _body(feed_id, value="ad", enabled="true"):
    return RULE_BODY.format(feed_id=feed_id, value=value, enabled=enabled)


def _rule_set(feed_id, value="ad"):
    return RuleSet(
        feed_id=feed_id,
        rules=(
            Rule(
                action=Action.MARK_READ,
                conditions=(Condition(Field.TITLE, Operator.CONTAINS, value),),
            ),
        ),
    )


def test_reload_all_loads_valid_files_and_skips_invalid(store, write_rule_file):
    write_rule_file("feed_2.toml", _body(2))
    write_rule_file("feed_1.toml", _body(1, enabled="false"))
    write_rule_file("feed_3.toml", "feed_id = 3\n[[rules]]\naction = 'markread'\n")
    write_rule_file("notes.txt", "ignored")

    report = store.reload_all()

    assert report.loaded == 2
    assert [path for path, _ in report.errors] == [str(store.directory / "feed_3.toml")]
    assert [rule_set.feed_id for rule_set in store.list()] == [1, 2]
    assert store.get(1).enabled is False
    assert store.get(3) is None


def test_reload_all_creates_missing_directory(tmp_path):
    from miniflux_filter.store import RuleStore

    store = RuleStore(tmp_path / "missing" / "rules")

    report = store.reload_all()

    assert report.loaded == 0
    assert store.directory.is_dir()


def test_duplicate_feed_id_first_loaded_wins(store, write_rule_file):
    write_rule_file("feed_4.toml", _body(4, value="canonical"))
    write_rule_file("aaa.toml", _body(4, value="stray"))

    report = store.reload_all()

    assert report.loaded == 1
    assert store.get(4).rules[0].conditions[0].value == "canonical"
    assert "duplicate feed_id 4" in report.errors[0][1]


def test_invalid_regex_in_file_disables_only_that_rule(store, write_rule_file):
    write_rule_file(
        "feed_8.toml",
        _body(8)
        + """
[[rules]]
action = "markread"

[[rules.conditions]]
field = "title"
operator = "matches"
value = "(broken"
""",
    )

    store.reload_all()

    rules = store.get(8).rules
    assert len(rules) == 2
    assert rules[0].invalid_reason is None
    assert rules[1].invalid_reason


def test_upsert_writes_file_and_updates_cache(store):
    saved = store.upsert(example_rule_set(10, "Ten"))

    path = store.directory / "feed_10.toml"
    assert path.exists()
    assert loads_rule_set(path.read_text(encoding="utf-8")) == saved
    assert store.get(10) == saved
    assert not [name for name in os.listdir(store.directory) if name.endswith(".tmp")]


def test_upsert_rewrites_existing_free_form_file(store, write_rule_file):
    path = write_rule_file("my-rules.toml", _body(11))
    store.reload_all()

    store.upsert(_rule_set(11, value="updated"))

    assert "updated" in path.read_text(encoding="utf-8")
    assert not (store.directory / "feed_11.toml").exists()


def test_upsert_rejects_invalid_rule_set_and_keeps_cache(store):
    store.upsert(_rule_set(12))
    invalid = RuleSet(feed_id=12, rules=(Rule(action=Action.MARK_READ, conditions=()),))

    with pytest.raises(ValidationError):
        store.upsert(invalid)

    assert store.get(12) == _rule_set(12)


def test_upsert_write_failure_keeps_previous_state(store, monkeypatch):
    store.upsert(_rule_set(13, value="before"))

    def failing_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", failing_replace)

    with pytest.raises(PersistenceError, match="disk full"):
        store.upsert(_rule_set(13, value="after"))

    assert store.get(13).rules[0].conditions[0].value == "before"
    assert "before" in (store.directory / "feed_13.toml").read_text(encoding="utf-8")
    assert not [name for name in os.listdir(store.directory) if name.endswith(".tmp")]


def test_delete_removes_file_and_cache(store):
    store.upsert(_rule_set(14))

    assert store.delete(14) is True
    assert store.get(14) is None
    assert not (store.directory / "feed_14.toml").exists()
    assert store.delete(14) is False


def test_delete_failure_leaves_cache_untouched(store, monkeypatch):
    store.upsert(_rule_set(15))
    path = store.directory / "feed_15.toml"
    original_unlink = type(path).unlink

    def failing_unlink(self, *args, **kwargs):
        if self == path:
            raise PermissionError("read-only")
        return original_unlink(self, *args, **kwargs)

    monkeypatch.setattr(type(path), "unlink", failing_unlink)

    with pytest.raises(PersistenceError):
        store.delete(15)

    assert store.get(15) is not None
    assert path.exists()


def test_delete_tolerates_manually_removed_file(store):
    store.upsert(_rule_set(16))
    (store.directory / "feed_16.toml").unlink()

    assert store.delete(16) is True
    assert store.get(16) is None


def test_delete_removes_ignored_duplicate_files(store, write_rule_file):
    write_rule_file("feed_5.toml", _body(5, value="canonical"))
    stray = write_rule_file("extra.toml", _body(5, value="stray"))
    store.reload_all()

    assert store.delete(5) is True
    assert not stray.exists()

    report = store.reload_all()

    assert store.get(5) is None
    assert report.loaded == 0
    assert report.errors == []


def test_delete_keeps_cache_when_duplicate_cannot_be_removed(
    store, write_rule_file, monkeypatch
):
    write_rule_file("feed_6.toml", _body(6))
    stray = write_rule_file("zzz.toml", _body(6))
    store.reload_all()
    original_unlink = type(stray).unlink

    def failing_unlink(self, *args, **kwargs):
        if self == stray:
            raise PermissionError("read-only")
        return original_unlink(self, *args, **kwargs)

    monkeypatch.setattr(type(stray), "unlink", failing_unlink)

    with pytest.raises(PersistenceError):
        store.delete(6)

    assert store.get(6) is not None
    assert stray.exists()


def test_stats_are_derived_from_current_rule_sets(store):
    store.upsert(example_rule_set(1))
    store.upsert(_rule_set(2))
    store.upsert(RuleSet(feed_id=3, enabled=False))

    stats = store.stats()

    assert stats.total_rule_sets == 3
    assert stats.enabled_rule_sets == 2
    assert stats.total_rules == 4
    assert stats.feeds_with_rules == (1, 2, 3)


def test_readers_never_see_partial_rule_sets(store):
    store.upsert(_rule_set(20, value="v0"))
    stop = threading.Event()
    seen = []

    def reader():
        while not stop.is_set():
            rule_set = store.get(20)
            seen.append(len(rule_set.rules[0].conditions))

    thread = threading.Thread(target=reader)
    thread.start()
    try:
        for index in range(1, 30):
            store.upsert(_rule_set(20, value=f"v{index}"))
    finally:
        stop.set()
        thread.join()

    assert seen and set(seen) == {1}
    assert store.get(20).rules[0].conditions[0].value == "v29"
