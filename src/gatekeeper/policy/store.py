"""
Rule Store.

Owns the ordered rule list. Writers are serialized, within the process and
across processes sharing the rule file, and every change to the persisted
rules is written to disk before it becomes visible; readers take immutable,
versioned snapshots without locking.
"""

from __future__ import annotations

import fcntl
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator

import yaml

from gatekeeper.errors import InvalidPattern, NotFound, PersistenceError
from gatekeeper.policy.engine import PolicyEvaluator
from gatekeeper.policy.models import Action, Decision, MatchPattern, Rule
from gatekeeper.policy.parser import parse_action, parse_pattern, parse_rule

if TYPE_CHECKING:
    from gatekeeper.interceptor.descriptors import DeviceDescriptor, DeviceKey


logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


@dataclass(frozen=True)
class RuleSnapshot:
    """Immutable view of the rule list at one version."""

    version: int
    rules: tuple[Rule, ...]


def scoped_pattern(key: DeviceKey) -> MatchPattern:
    """Build the pattern that matches exactly one device identity."""
    return MatchPattern(vid=key.vid, pid=key.pid, serial=key.serial, port=key.port)


class RuleStore:
    """
    Persisted, ordered rule list.

    Evaluation order is: temporary override rules (newest first), then
    persisted rules in insertion order.
    """

    def __init__(
        self,
        path: str | Path,
        evaluator: PolicyEvaluator | None = None,
    ) -> None:
        """
        Initialize the store and load the rule file if present.

        Args:
            path: Rule file location
            evaluator: Evaluator holding the default action

        Raises:
            PersistenceError: If an existing rule file cannot be read
        """
        self.path = Path(path)
        self.evaluator = evaluator or PolicyEvaluator()
        self._write_lock = threading.Lock()
        self._persisted: tuple[Rule, ...] = ()
        self._temporary: tuple[Rule, ...] = ()
        self._next_id = 1
        self._snapshot = RuleSnapshot(0, ())
        self.reload()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> RuleSnapshot:
        """Get the current immutable snapshot."""
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    def list_rules(self) -> tuple[Rule, ...]:
        """Get all rules in evaluation order."""
        return self._snapshot.rules

    def get_rule(self, rule_id: int) -> Rule:
        """
        Get a rule by id.

        Raises:
            NotFound: If no rule has that id
        """
        for rule in self._snapshot.rules:
            if rule.id == rule_id:
                return rule
        raise NotFound(f"Rule not found: {rule_id}", rule_id=rule_id)

    def evaluate(self, device: DeviceDescriptor) -> Decision:
        """Evaluate a device against the current snapshot."""
        snapshot = self._snapshot
        return self.evaluator.evaluate(device, snapshot.rules, snapshot.version)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add_rule(self, pattern: Any, action: Any, insert_first: bool = False) -> int:
        """
        Append a persisted rule.

        The rule file is re-read under an exclusive lock first, so rules
        written by another process since the last load are kept.

        Args:
            pattern: MatchPattern, "field=value,..." string, mapping or "*"
            action: Action or action name
            insert_first: Put the rule ahead of the persisted rules instead

        Returns:
            Id of the new rule

        Raises:
            InvalidPattern: If pattern or action is malformed (store unchanged)
            PersistenceError: If the rule file cannot be written (store unchanged)
        """
        match = parse_pattern(pattern)
        verdict = parse_action(action)

        with self._exclusive():
            persisted, next_id = self._read()
            rule = self._insert(persisted, next_id, match, verdict, insert_first)

        logger.info("Rule %d added: %s %s", rule.id, verdict.value, match)
        return rule.id

    def ensure_first_rule(self, pattern: Any, action: Any) -> int:
        """
        Make a rule the first persisted rule unless it already is.

        Returns:
            Id of the rule heading the rule file

        Raises:
            InvalidPattern: If pattern or action is malformed (store unchanged)
            PersistenceError: If the rule file cannot be written (store unchanged)
        """
        match = parse_pattern(pattern)
        verdict = parse_action(action)

        with self._exclusive():
            persisted, next_id = self._read()
            if persisted and persisted[0].pattern == match and persisted[0].action == verdict:
                if persisted != self._persisted:
                    self._next_id = max(next_id, self._next_id)
                    self._publish(persisted, self._temporary)
                return persisted[0].id
            rule = self._insert(persisted, next_id, match, verdict, insert_first=True)

        logger.info("Rule %d added first: %s %s", rule.id, verdict.value, match)
        return rule.id

    def add_temporary_rule(self, key: DeviceKey, action: Any) -> Rule:
        """
        Add an in-memory rule scoped to one device, ahead of all other rules.

        Temporary rules are never written to the rule file.
        """
        verdict = parse_action(action)
        with self._write_lock:
            rule = Rule(
                id=self._next_id,
                pattern=scoped_pattern(key),
                action=verdict,
                temporary=True,
            )
            self._next_id += 1
            self._publish(self._persisted, (rule,) + self._temporary)

        logger.info("Temporary rule %d added: %s %s", rule.id, verdict.value, key)
        return rule

    def drop_temporary_rules(self, key: DeviceKey) -> int:
        """Remove the temporary rules scoped to a device. Returns the count."""
        pattern = scoped_pattern(key)
        with self._write_lock:
            kept = tuple(r for r in self._temporary if r.pattern != pattern)
            dropped = len(self._temporary) - len(kept)
            if dropped:
                self._publish(self._persisted, kept)
        if dropped:
            logger.debug("Dropped %d temporary rule(s) for %s", dropped, key)
        return dropped

    def remove_rule(self, rule_id: int) -> Rule:
        """
        Remove a rule by id.

        Raises:
            NotFound: If no rule has that id
            PersistenceError: If the rule file cannot be written (store unchanged)
        """
        with self._write_lock:
            rule = next((r for r in self._temporary if r.id == rule_id), None)
            if rule is not None:
                self._publish(
                    self._persisted,
                    tuple(r for r in self._temporary if r.id != rule_id),
                )

        if rule is None:
            with self._exclusive():
                persisted, next_id = self._read()
                rule = next((r for r in persisted if r.id == rule_id), None)
                if rule is None:
                    raise NotFound(f"Rule not found: {rule_id}", rule_id=rule_id)
                remaining = tuple(r for r in persisted if r.id != rule_id)
                next_id = max(next_id, self._next_id)
                self._write(remaining, next_id)
                self._next_id = next_id
                self._publish(remaining, self._temporary)

        logger.info("Rule %d removed", rule_id)
        return rule

    def reload(self) -> None:
        """
        Re-read persisted rules from disk, keeping temporary rules.

        Raises:
            PersistenceError: If the file exists but cannot be parsed
        """
        with self._write_lock:
            persisted, next_id = self._read()
            self._next_id = max(next_id, self._next_id)
            self._publish(persisted, self._temporary)
        logger.debug("Loaded %d rule(s) from %s", len(persisted), self.path)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        """
        Serialize writers in this process and across processes.

        Holds the write lock and an advisory flock on the rule file's
        directory for the read-modify-write of the file.
        """
        with self._write_lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(self.path.parent, os.O_RDONLY)
            except OSError as e:
                raise PersistenceError(
                    f"Cannot open rule directory {self.path.parent}: {e}",
                    path=str(self.path),
                ) from e
            try:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX)
                except OSError as e:
                    raise PersistenceError(
                        f"Cannot lock rule file {self.path}: {e}", path=str(self.path)
                    ) from e
                yield
            finally:
                # Closing the descriptor releases the flock
                os.close(fd)

    def _insert(
        self,
        persisted: tuple[Rule, ...],
        next_id: int,
        match: MatchPattern,
        verdict: Action,
        insert_first: bool,
    ) -> Rule:
        """Write a new rule on top of the on-disk rules. Caller holds _exclusive."""
        rule = Rule(id=max(next_id, self._next_id), pattern=match, action=verdict)
        if insert_first:
            persisted = (rule,) + persisted
        else:
            persisted = persisted + (rule,)
        self._write(persisted, rule.id + 1)
        self._next_id = rule.id + 1
        self._publish(persisted, self._temporary)
        return rule

    def _publish(self, persisted: tuple[Rule, ...], temporary: tuple[Rule, ...]) -> None:
        """Swap in a new snapshot. Caller holds the write lock."""
        self._persisted = persisted
        self._temporary = temporary
        self._snapshot = RuleSnapshot(self._snapshot.version + 1, temporary + persisted)

    def _read(self) -> tuple[tuple[Rule, ...], int]:
        if not self.path.exists():
            return (), 1

        try:
            with open(self.path) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise PersistenceError(
                f"Cannot read rule file {self.path}: {e}", path=str(self.path)
            ) from e

        if data is None:
            return (), 1
        if not isinstance(data, dict) or not isinstance(data.get("rules", []), list):
            raise PersistenceError(
                f"Rule file {self.path} must be a mapping with a 'rules' list",
                path=str(self.path),
            )

        rules: list[Rule] = []
        for i, record in enumerate(data.get("rules") or []):
            try:
                rules.append(parse_rule(record))
            except InvalidPattern as e:
                raise PersistenceError(
                    f"Error parsing rule {i} in {self.path}: {e}", path=str(self.path)
                ) from e

        ids = [rule.id for rule in rules]
        if len(set(ids)) != len(ids):
            raise PersistenceError(
                f"Duplicate rule ids in {self.path}", path=str(self.path)
            )

        next_id = data.get("next_id", 1)
        if not isinstance(next_id, int):
            next_id = 1
        return tuple(rules), max([next_id, *[i + 1 for i in ids]])

    def _write(self, rules: tuple[Rule, ...], next_id: int) -> None:
        """Atomically replace the rule file. Caller holds the write lock."""
        data = {
            "version": FORMAT_VERSION,
            "next_id": next_id,
            "rules": [
                {
                    "id": rule.id,
                    "pattern": rule.pattern.to_dict(),
                    "action": rule.action.value,
                    "created_at": rule.created_at.isoformat(),
                }
                for rule in rules
            ],
        }

        tmp_name: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as f:
                tmp_name = f.name
                yaml.safe_dump(data, f, sort_keys=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except (OSError, yaml.YAMLError) as e:
            raise PersistenceError(
                f"Cannot write rule file {self.path}: {e}", path=str(self.path)
            ) from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.warning("Could not remove temporary file %s", tmp_name)
