"""Authoritative rule sets, backed by a directory of TOML files."""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .errors import PersistenceError, ValidationError
from .models import LoadReport, RuleSet, Stats
from .rules import (
    RULE_FILE_SUFFIX,
    dumps_rule_set,
    feed_id_from_filename,
    load_rule_file,
    parse_rule_set,
    rule_file_name,
    rule_set_to_dict,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Snapshot:
    rule_sets: Dict[int, RuleSet]
    paths: Dict[int, Path]
    # Files skipped at load because an earlier file had the same feed id.
    shadowed: Dict[int, Tuple[Path, ...]]


def _load_order(path: Path):
    # feed_<id>.toml files first (by id), then any other names alphabetically.
    feed_id = feed_id_from_filename(path.name)
    if feed_id is not None:
        return (0, feed_id, path.name)
    return (1, 0, path.name)


def _atomic_write(path: Path, content: str) -> None:
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise


class RuleStore:
    """In-memory cache of validated rule sets mirrored to ``directory``.

    Readers get the currently published snapshot without locking; snapshots
    are never mutated once published. Writers are serialised and publish a
    new snapshot only after the file operation has succeeded.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self._write_lock = threading.Lock()
        self._snapshot = _Snapshot(rule_sets={}, paths={}, shadowed={})

    def get(self, feed_id: int) -> Optional[RuleSet]:
        return self._snapshot.rule_sets.get(feed_id)

    def list(self) -> List[RuleSet]:
        rule_sets = self._snapshot.rule_sets
        return [rule_sets[feed_id] for feed_id in sorted(rule_sets)]

    def __contains__(self, feed_id: int) -> bool:
        return feed_id in self._snapshot.rule_sets

    def stats(self) -> Stats:
        rule_sets = self.list()
        return Stats(
            total_rule_sets=len(rule_sets),
            enabled_rule_sets=sum(1 for rule_set in rule_sets if rule_set.enabled),
            total_rules=sum(len(rule_set.rules) for rule_set in rule_sets),
            feeds_with_rules=tuple(rule_set.feed_id for rule_set in rule_sets),
        )

    def reload_all(self) -> LoadReport:
        """Re-read every rule file and replace the cache.

        Invalid files are skipped and reported. When two files carry the same
        feed id, the one loaded first wins.
        """
        report = LoadReport()
        with self._write_lock:
            if not self.directory.exists():
                logger.info(
                    "Rules directory %s does not exist, creating it", self.directory
                )
                try:
                    self.directory.mkdir(parents=True, exist_ok=True)
                except OSError as exc:
                    raise PersistenceError(
                        f"Failed to create rules directory {self.directory}: {exc}"
                    ) from exc

            try:
                candidates = sorted(
                    (
                        path
                        for path in self.directory.iterdir()
                        if path.suffix == RULE_FILE_SUFFIX and path.is_file()
                    ),
                    key=_load_order,
                )
            except OSError as exc:
                raise PersistenceError(
                    f"Failed to read rules directory {self.directory}: {exc}"
                ) from exc

            rule_sets: Dict[int, RuleSet] = {}
            paths: Dict[int, Path] = {}
            shadowed: Dict[int, Tuple[Path, ...]] = {}
            for path in candidates:
                try:
                    rule_set = load_rule_file(path)
                except ValidationError as exc:
                    logger.warning("Failed to load rule file %s", exc)
                    report.errors.append((str(path), str(exc)))
                    continue

                feed_id = rule_set.feed_id
                if feed_id in rule_sets:
                    message = (
                        f"duplicate feed_id {feed_id}, "
                        f"already loaded from {paths[feed_id].name}"
                    )
                    logger.warning(
                        "Ignoring rule file %s: %s",
                        path,
                        message,
                        extra={"feed_id": feed_id},
                    )
                    report.errors.append((str(path), message))
                    shadowed[feed_id] = shadowed.get(feed_id, ()) + (path,)
                    continue

                rule_sets[feed_id] = rule_set
                paths[feed_id] = path

            self._snapshot = _Snapshot(
                rule_sets=rule_sets, paths=paths, shadowed=shadowed
            )

        report.loaded = len(rule_sets)
        logger.info("Loaded %d rule sets from %s", report.loaded, self.directory)
        return report

    def upsert(self, rule_set: RuleSet) -> RuleSet:
        """Validate, persist and publish ``rule_set``.

        Raises ``ValidationError`` for an invalid rule set and
        ``PersistenceError`` when the file cannot be written; in both cases
        the cache is left as it was.
        """
        validated = parse_rule_set(rule_set_to_dict(rule_set), strict=True)
        content = dumps_rule_set(validated)

        with self._write_lock:
            current = self._snapshot
            path = current.paths.get(validated.feed_id) or (
                self.directory / rule_file_name(validated.feed_id)
            )
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                _atomic_write(path, content)
            except OSError as exc:
                raise PersistenceError(
                    f"Failed to write rule file {path}: {exc}"
                ) from exc

            rule_sets = dict(current.rule_sets)
            paths = dict(current.paths)
            rule_sets[validated.feed_id] = validated
            paths[validated.feed_id] = path
            self._snapshot = _Snapshot(
                rule_sets=rule_sets, paths=paths, shadowed=current.shadowed
            )

        logger.info(
            "Saved rule set for feed %d to %s",
            validated.feed_id,
            path,
            extra={"feed_id": validated.feed_id},
        )
        return validated

    def delete(self, feed_id: int) -> bool:
        """Remove the rule set for ``feed_id``; False if there was none.

        Duplicate files that were ignored at load time are removed as well,
        so the rule set does not come back on the next reload.
        """
        with self._write_lock:
            current = self._snapshot
            if feed_id not in current.rule_sets:
                return False

            targets = (current.paths[feed_id],) + current.shadowed.get(feed_id, ())
            for path in targets:
                try:
                    path.unlink()
                except FileNotFoundError:
                    logger.info("Rule file %s was already removed", path)
                except OSError as exc:
                    raise PersistenceError(
                        f"Failed to delete rule file {path}: {exc}"
                    ) from exc

            rule_sets = dict(current.rule_sets)
            paths = dict(current.paths)
            shadowed = dict(current.shadowed)
            del rule_sets[feed_id]
            del paths[feed_id]
            shadowed.pop(feed_id, None)
            self._snapshot = _Snapshot(
                rule_sets=rule_sets, paths=paths, shadowed=shadowed
            )

        logger.info(
            "Deleted rule set for feed %d (%s)",
            feed_id,
            ", ".join(path.name for path in targets),
            extra={"feed_id": feed_id},
        )
        return True
