"""Management operations exposed to the web layer.

Every method returns an ``ApiResponse`` envelope; errors are reported in the
envelope instead of being raised.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .activity import ActivityLog
from .errors import FilterError, PersistenceError, UpstreamError, ValidationError
from .models import AlreadyRunning
from .orchestrator import SyncOrchestrator
from .rules import parse_rule_set, rule_set_to_dict
from .store import RuleStore

logger = logging.getLogger(__name__)


@dataclass
class ApiResponse:
    success: bool
    data: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "ApiResponse":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> "ApiResponse":
        return cls(success=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "data": self.data, "error": self.error}


class ManagementApi:
    def __init__(
        self,
        store: RuleStore,
        orchestrator: SyncOrchestrator,
        activity_log: ActivityLog,
        client=None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.activity_log = activity_log
        self.client = client if client is not None else orchestrator.client

    def list_rule_sets(self) -> ApiResponse:
        return ApiResponse.ok([rule_set_to_dict(rs) for rs in self.store.list()])

    def get_rule_set(self, feed_id: int) -> ApiResponse:
        rule_set = self.store.get(feed_id)
        if rule_set is None:
            return ApiResponse.fail(f"Rule set for feed {feed_id} not found")
        return ApiResponse.ok(rule_set_to_dict(rule_set))

    def create_rule_set(self, payload: Dict[str, Any]) -> ApiResponse:
        feed_id = payload.get("feed_id") if isinstance(payload, dict) else None
        if isinstance(feed_id, int) and feed_id in self.store:
            return ApiResponse.fail(f"Rule set for feed {feed_id} already exists")
        return self._save(payload, "created")

    def update_rule_set(self, feed_id: int, payload: Dict[str, Any]) -> ApiResponse:
        if not isinstance(payload, dict) or payload.get("feed_id") != feed_id:
            return ApiResponse.fail("Feed ID mismatch")
        return self._save(payload, "updated")

    def _save(self, payload: Dict[str, Any], verb: str) -> ApiResponse:
        try:
            saved = self.store.upsert(parse_rule_set(payload, strict=True))
        except ValidationError as exc:
            logger.warning("Rejected rule set: %s", exc)
            return ApiResponse.fail(f"Invalid rule set: {exc}")
        except PersistenceError as exc:
            logger.error("Failed to save rule set: %s", exc)
            return ApiResponse.fail(str(exc))
        logger.info("Rule set %s for feed %d", verb, saved.feed_id)
        return ApiResponse.ok(rule_set_to_dict(saved))

    def delete_rule_set(self, feed_id: int) -> ApiResponse:
        try:
            deleted = self.store.delete(feed_id)
        except PersistenceError as exc:
            logger.error("Failed to delete rule set: %s", exc)
            return ApiResponse.fail(str(exc))
        if not deleted:
            return ApiResponse.fail(f"Rule set for feed {feed_id} not found")
        return ApiResponse.ok(f"Rule set deleted for feed {feed_id}")

    def reload_rules(self) -> ApiResponse:
        try:
            report = self.store.reload_all()
        except FilterError as exc:
            return ApiResponse.fail(str(exc))
        return ApiResponse.ok(
            {
                "loaded": report.loaded,
                "errors": [
                    {"path": path, "error": message} for path, message in report.errors
                ],
            }
        )

    def execute_now(self, feed_id: int) -> ApiResponse:
        rule_set = self.store.get(feed_id)
        if rule_set is None:
            return ApiResponse.fail(f"Rule set for feed {feed_id} not found")
        if not rule_set.enabled:
            return ApiResponse.fail(f"Rule set for feed {feed_id} is disabled")

        outcome = self.orchestrator.run_feed_now(feed_id)
        if isinstance(outcome, AlreadyRunning):
            return ApiResponse.ok({"feed_id": feed_id, "status": "already_running"})

        data = dataclasses.asdict(outcome)
        data["status"] = "completed"
        if outcome.error:
            return ApiResponse(success=False, data=data, error=outcome.error)
        return ApiResponse.ok(data)

    def get_logs(
        self, limit: Optional[int] = None, feed_id: Optional[int] = None
    ) -> ApiResponse:
        entries = self.activity_log.recent(limit=limit, feed_id=feed_id)
        return ApiResponse.ok([entry.to_dict() for entry in entries])

    def clear_logs(self) -> ApiResponse:
        self.activity_log.clear()
        return ApiResponse.ok("Logs cleared")

    def get_stats(self) -> ApiResponse:
        stats = self.store.stats()
        return ApiResponse.ok(
            {
                "total_rule_sets": stats.total_rule_sets,
                "enabled_rule_sets": stats.enabled_rule_sets,
                "total_rules": stats.total_rules,
                "feeds_with_rules": list(stats.feeds_with_rules),
            }
        )

    def list_feeds(self) -> ApiResponse:
        if self.client is None or not hasattr(self.client, "get_feeds"):
            return ApiResponse.fail("Feed listing is not available")
        try:
            feeds = self.client.get_feeds()
        except UpstreamError as exc:
            logger.error("Failed to fetch feeds from Miniflux: %s", exc)
            return ApiResponse.fail(f"Failed to fetch feeds: {exc}")
        return ApiResponse.ok(
            [
                {
                    "id": feed.id,
                    "title": feed.title,
                    "site_url": feed.site_url,
                    "feed_url": feed.feed_url,
                    "has_rules": feed.id in self.store,
                }
                for feed in feeds
            ]
        )
