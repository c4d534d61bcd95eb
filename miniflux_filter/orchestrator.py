"""Scheduling and execution of per-feed filtering runs.

Activity worth showing to users is logged with ``feed_id`` (and, where there
is one, ``entry_id`` and ``entry_title``) passed through ``extra`` so the
activity log can attribute it.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from typing import Any, Dict, List, Optional, Protocol, Set, Union

from .errors import UpstreamError
from .evaluator import match_rule_set
from .models import Action, AlreadyRunning, Entry, ExecutionResult, RuleSet
from .store import RuleStore

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 4


def _context(feed_id: int, entry: Optional[Entry] = None) -> Dict[str, Any]:
    context: Dict[str, Any] = {"feed_id": feed_id}
    if entry is not None:
        context["entry_id"] = entry.id
        context["entry_title"] = entry.title
    return context


class UpstreamClient(Protocol):
    def fetch_unread(self, feed_id: int) -> List[Entry]: ...

    def mark_read(self, entry_id: int) -> None: ...


class SyncOrchestrator:
    """Runs rule sets against unread entries, one run per feed at a time.

    Distinct feeds run concurrently, at most ``concurrency`` at once.
    """

    def __init__(
        self,
        store: RuleStore,
        client: UpstreamClient,
        concurrency: int = DEFAULT_CONCURRENCY,
    ):
        if concurrency <= 0:
            raise ValueError("concurrency must be positive.")
        self.store = store
        self.client = client
        self.concurrency = concurrency
        self._running: Set[int] = set()
        self._running_lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(concurrency)
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=concurrency, thread_name_prefix="feed-sync"
        )

    def _claim(self, feed_id: int) -> bool:
        with self._running_lock:
            if feed_id in self._running:
                return False
            self._running.add(feed_id)
            return True

    def _release(self, feed_id: int) -> None:
        with self._running_lock:
            self._running.discard(feed_id)

    def is_running(self, feed_id: int) -> bool:
        with self._running_lock:
            return feed_id in self._running

    def run_feed_now(self, feed_id: int) -> Union[ExecutionResult, AlreadyRunning]:
        """Run ``feed_id`` immediately in the calling thread.

        Returns ``AlreadyRunning`` without waiting if a run for the same feed
        is in progress.
        """
        if not self._claim(feed_id):
            logger.info(
                "Feed %d is already being processed",
                feed_id,
                extra=_context(feed_id),
            )
            return AlreadyRunning(feed_id=feed_id)
        return self._execute_claimed(feed_id)

    def run_tick(self) -> List[ExecutionResult]:
        """Run every enabled rule set once, skipping feeds already running."""
        rule_sets = [rule_set for rule_set in self.store.list() if rule_set.enabled]
        if not rule_sets:
            logger.debug("No enabled rule sets, skipping cycle")
            return []

        future_to_feed = {}
        for rule_set in rule_sets:
            if not self._claim(rule_set.feed_id):
                logger.info(
                    "Feed %d is still being processed, skipping this cycle",
                    rule_set.feed_id,
                    extra=_context(rule_set.feed_id),
                )
                continue
            try:
                future = self._executor.submit(
                    self._execute_claimed, rule_set.feed_id
                )
            except RuntimeError:
                # Executor already shut down.
                self._release(rule_set.feed_id)
                raise
            future_to_feed[future] = rule_set.feed_id

        results: List[ExecutionResult] = []
        for future in concurrent.futures.as_completed(future_to_feed):
            results.append(future.result())

        logger.info(
            "Filtering cycle complete: %d feeds, processed %d entries, "
            "marked %d, errors %d",
            len(results),
            sum(result.processed for result in results),
            sum(result.marked for result in results),
            sum(result.errors for result in results),
        )
        return results

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _execute_claimed(self, feed_id: int) -> ExecutionResult:
        try:
            with self._slots:
                return self._run_feed(feed_id)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "Processing feed %d failed: %s",
                feed_id,
                exc,
                extra=_context(feed_id),
            )
            return ExecutionResult(feed_id=feed_id, errors=1, error=str(exc))
        finally:
            self._release(feed_id)

    def _run_feed(self, feed_id: int) -> ExecutionResult:
        rule_set = self.store.get(feed_id)
        if rule_set is None or not rule_set.enabled:
            logger.debug("No enabled rule set for feed %d, skipping", feed_id)
            return ExecutionResult(feed_id=feed_id, skipped=True)

        self._report_invalid_rules(rule_set)

        try:
            entries = self.client.fetch_unread(feed_id)
        except UpstreamError as exc:
            logger.error(
                "Failed to fetch unread entries for feed %d: %s",
                feed_id,
                exc,
                extra=_context(feed_id),
            )
            return ExecutionResult(feed_id=feed_id, errors=1, error=str(exc))

        result = ExecutionResult(feed_id=feed_id, processed=len(entries))
        if not entries:
            logger.debug("No unread entries for feed %d", feed_id)
            return result

        for entry in entries:
            index = match_rule_set(rule_set, entry)
            if index is None:
                continue
            try:
                self._apply(rule_set.rules[index].action, entry)
            except UpstreamError as exc:
                result.errors += 1
                logger.error(
                    "Failed to mark entry %d as read (rule %d): %s",
                    entry.id,
                    index + 1,
                    exc,
                    extra=_context(feed_id, entry),
                )
                continue
            result.marked += 1
            logger.info(
                "Marked entry %d as read (rule %d)",
                entry.id,
                index + 1,
                extra=_context(feed_id, entry),
            )

        logger.info(
            "Feed %d: processed %d entries, marked %d, errors %d",
            feed_id,
            result.processed,
            result.marked,
            result.errors,
            extra=_context(feed_id),
        )
        return result

    def _apply(self, action: Action, entry: Entry) -> None:
        if action is Action.MARK_READ:
            self.client.mark_read(entry.id)
            return
        raise AssertionError(f"unhandled action {action!r}")

    def _report_invalid_rules(self, rule_set: RuleSet) -> None:
        for index, rule in enumerate(rule_set.rules):
            reason = rule.invalid_reason
            if reason:
                logger.warning(
                    "Rule %d of feed %d disabled: %s",
                    index + 1,
                    rule_set.feed_id,
                    reason,
                    extra=_context(rule_set.feed_id),
                )


class Scheduler:
    """Background thread calling ``run_tick`` every ``interval`` seconds."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        interval: float,
        reload_rules: bool = True,
    ):
        self.orchestrator = orchestrator
        self.interval = interval
        self.reload_rules = reload_rules
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_cycle(self) -> List[ExecutionResult]:
        if self.reload_rules:
            # Picks up rule files edited by hand.
            self.orchestrator.store.reload_all()
        return self.orchestrator.run_tick()

    def run_forever(self) -> None:
        logger.info("Starting filtering loop with %s second intervals", self.interval)
        while not self._stop.is_set():
            try:
                self.run_cycle()
            except Exception:  # noqa: BLE001
                logger.exception("Error during filtering cycle")
            logger.debug("Sleeping for %s seconds", self.interval)
            self._stop.wait(self.interval)
        logger.info("Filtering loop stopped")

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Scheduler already started.")
        self._stop.clear()
        self._thread = threading.Thread(
            target=self.run_forever, name="scheduler", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the loop and let in-flight feed runs finish."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self.orchestrator.shutdown(wait=True)
