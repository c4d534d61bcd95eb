import logging
import textwrap

import pytest

from miniflux_filter.activity import (
    PACKAGE_LOGGER,
    ActivityLog,
    attach_activity_log,
    detach_activity_log,
)
from miniflux_filter.errors import UpstreamError
from miniflux_filter.models import Entry, FeedInfo
from miniflux_filter.orchestrator import SyncOrchestrator
from miniflux_filter.store import RuleStore


class FakeClient:
    """In-memory stand-in for MinifluxClient.

    Marked entries stop being reported as unread, like the real service.
    """

    def __init__(self):
        self.entries = {}
        self.feeds = []
        self.fetch_calls = []
        self.marked = []
        self.fail_fetch = set()
        self.fail_mark = set()

    def fetch_unread(self, feed_id):
        self.fetch_calls.append(feed_id)
        if feed_id in self.fail_fetch:
            raise UpstreamError(f"feed {feed_id} unavailable", status_code=503)
        return [
            entry
            for entry in self.entries.get(feed_id, [])
            if entry.id not in self.marked
        ]

    def mark_read(self, entry_id):
        if entry_id in self.fail_mark:
            raise UpstreamError(f"cannot mark {entry_id}", status_code=500)
        self.marked.append(entry_id)

    def get_feeds(self):
        return list(self.feeds)


@pytest.fixture
def make_entry():
    def factory(entry_id, feed_id=123, **kwargs):
        tags = kwargs.pop("tags", ())
        return Entry(id=entry_id, feed_id=feed_id, tags=frozenset(tags), **kwargs)

    return factory


@pytest.fixture
def write_rule_file(tmp_path):
    def writer(name, body, directory=None):
        target = (directory or tmp_path / "rules") / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(textwrap.dedent(body), encoding="utf-8")
        return target

    return writer


@pytest.fixture
def rules_dir(tmp_path):
    path = tmp_path / "rules"
    path.mkdir()
    return path


@pytest.fixture
def store(rules_dir):
    return RuleStore(rules_dir)


@pytest.fixture
def fake_client():
    client = FakeClient()
    client.feeds = [FeedInfo(id=123, title="Tech"), FeedInfo(id=7, title="News")]
    return client


@pytest.fixture
def activity_log():
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    original_level = package_logger.level
    package_logger.setLevel(logging.INFO)
    log = ActivityLog(capacity=20)
    handler = attach_activity_log(log)
    yield log
    detach_activity_log(handler)
    package_logger.setLevel(original_level)


@pytest.fixture
def orchestrator(store, fake_client, activity_log):
    instance = SyncOrchestrator(store, fake_client, concurrency=4)
    yield instance
    instance.shutdown()
