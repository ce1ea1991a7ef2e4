"""
Rule file watcher.

Reloads the rule store when the rule file is rewritten by another process,
such as the CLI adding a rule while the daemon runs.
"""

from __future__ import annotations

import asyncio
import logging

from gatekeeper.errors import PersistenceError
from gatekeeper.policy.store import RuleStore

logger = logging.getLogger(__name__)


class RuleFileWatcher:
    """
    Watches the rule file for changes and hot-reloads the store.
    """

    def __init__(self, store: RuleStore, check_interval: float = 5.0) -> None:
        """
        Initialize the rule file watcher.

        Args:
            store: Rule store to reload
            check_interval: Interval in seconds between checks
        """
        self.store = store
        self.check_interval = check_interval
        self._last_signature = self._signature()
        self._running = False

    async def watch(self) -> None:
        """
        Start watching for rule file changes.

        Runs until stopped.
        """
        self._running = True

        logger.info("Rule watcher started: %s", self.store.path)

        while self._running:
            await asyncio.sleep(self.check_interval)
            await self.check()

    def stop(self) -> None:
        """Stop watching."""
        self._running = False

    async def check(self) -> bool:
        """
        Reload the store if the file changed since the last check.

        A file that fails to parse is reported and the current rules are
        kept until the file changes again.

        Returns:
            True if the store was reloaded
        """
        signature = self._signature()
        if signature == self._last_signature:
            return False
        self._last_signature = signature

        try:
            await asyncio.to_thread(self.store.reload)
        except PersistenceError as e:
            logger.error(
                "Rule file reload failed, keeping %d rule(s): %s",
                len(self.store.list_rules()), e,
            )
            return False

        logger.info(
            "Rule file changed, reloaded: %d rule(s), version %d",
            len(self.store.list_rules()), self.store.version,
        )
        return True

    def _signature(self) -> tuple[int, int, int] | None:
        """Identify the current file contents (replaced files get a new inode)."""
        try:
            st = self.store.path.stat()
        except OSError:
            return None
        return (st.st_ino, st.st_mtime_ns, st.st_size)
