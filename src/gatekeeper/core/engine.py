"""
Authorization Engine.

Consumes device events, evaluates each device against the rule store and
enforces the decision. Transitions for one device are serialized; different
devices are processed concurrently, with enforcement running in threads so a
slow sysfs write never stalls the event stream.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Iterable

from gatekeeper.errors import EnforcementError, GatekeeperError, NotFound
from gatekeeper.interceptor.base import (
    Authorizer,
    DeviceEvent,
    EnforcementOutcome,
    EventKind,
    EventSource,
)
from gatekeeper.interceptor.descriptors import DeviceDescriptor, DeviceKey
from gatekeeper.policy.models import Action, Decision, Rule
from gatekeeper.policy.parser import parse_action
from gatekeeper.policy.store import RuleStore, scoped_pattern


logger = logging.getLogger(__name__)


class DeviceState(Enum):
    """Enforcement state of a tracked device."""

    EVALUATING = "evaluating"
    ALLOWED = "allowed"
    BLOCKED = "blocked"
    REMOVED = "removed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TrackedDevice:
    """A connected device and its current enforcement state."""

    descriptor: DeviceDescriptor
    state: DeviceState = DeviceState.EVALUATING
    decision: Decision | None = None
    retry_needed: bool = False
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def key(self) -> DeviceKey:
        return self.descriptor.key

    def transition(self, state: DeviceState) -> None:
        self.state = state
        self.updated_at = _utcnow()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            **self.descriptor.to_dict(),
            "state": self.state.value,
            "decision": self.decision.to_dict() if self.decision else None,
            "retry_needed": self.retry_needed,
            "updated_at": self.updated_at.isoformat(),
        }


def _as_key(key: DeviceKey | str) -> DeviceKey:
    return key if isinstance(key, DeviceKey) else DeviceKey.parse(key)


class AuthorizationEngine:
    """
    Orchestrates event source, rule store and authorizer.

    Per-device state machine:
    unknown -> evaluating -> {allowed, blocked} -> removed
    """

    def __init__(
        self,
        store: RuleStore,
        authorizer: Authorizer,
        source: EventSource | None = None,
        max_concurrent: int = 8,
    ) -> None:
        """
        Initialize the engine.

        Args:
            store: Rule store owned by this engine
            authorizer: Enforcement backend
            source: Event source consumed by run()
            max_concurrent: Maximum concurrent enforcement calls
        """
        self.store = store
        self.authorizer = authorizer
        self.source = source
        self.running = False

        self._devices: dict[DeviceKey, TrackedDevice] = {}
        self._locks: dict[DeviceKey, asyncio.Lock] = {}
        self._lock_users: dict[DeviceKey, int] = {}
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._tasks: set[asyncio.Task] = set()
        self._worker: asyncio.Task | None = None

        self._stats = {
            "events": 0,
            "allowed": 0,
            "blocked": 0,
            "devices_gone": 0,
            "enforcement_errors": 0,
            "overrides": 0,
            "start_time": None,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def worker(self) -> asyncio.Task | None:
        """Task consuming the event source, once started."""
        return self._worker

    async def start(self) -> None:
        """Start consuming events from the source."""
        if self.source is None:
            raise RuntimeError("Engine has no event source")
        if self.running:
            return
        self.running = True
        self._stats["start_time"] = _utcnow()
        self._worker = asyncio.create_task(self._consume(), name="gatekeeper-events")
        logger.info("Authorization engine started")

    async def run(self) -> None:
        """Consume events until stop() is called or the source ends."""
        await self.start()
        try:
            await self._worker
        finally:
            await self.stop()

    async def stop(self) -> None:
        """
        Stop consuming events and drain in-flight work.

        Decisions already enforced are left in place.
        """
        self.running = False
        if self.source is not None:
            self.source.stop()

        worker = self._worker
        if worker is not None and not worker.done() and worker is not asyncio.current_task():
            await asyncio.gather(worker, return_exceptions=True)

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

        logger.info("Authorization engine stopped")

    async def _consume(self) -> None:
        iterator = self.source.subscribe()
        try:
            while self.running:
                # The udev poll blocks, keep it off the event loop
                event = await asyncio.to_thread(next, iterator, None)
                if event is None:
                    break
                self.submit(event)
        except Exception:
            logger.exception("Device event source failed")
            raise
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()

    def submit(self, event: DeviceEvent) -> asyncio.Task:
        """Schedule handling of an event; events for one device keep their order."""
        task = asyncio.create_task(self._handle_logged(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _handle_logged(self, event: DeviceEvent) -> None:
        try:
            await self.handle_event(event)
        except GatekeeperError as e:
            logger.error("%s while handling %s of %s: %s", e.kind, event.kind.value, event.key, e)
        except Exception:
            logger.exception("Unexpected error handling %s of %s", event.kind.value, event.key)

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _device_lock(self, key: DeviceKey) -> AsyncIterator[None]:
        """Serialize all transitions of one device, in arrival order."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def handle_event(self, event: DeviceEvent) -> TrackedDevice | None:
        """
        Apply one attach or detach event.

        Returns:
            The device record after the transition.

        Raises:
            EnforcementError: If enforcing an attached device failed
        """
        self._stats["events"] += 1
        async with self._device_lock(event.key):
            if event.kind == EventKind.ATTACH:
                record = self._devices.get(event.key)
                if record is None:
                    record = TrackedDevice(event.descriptor)
                    self._devices[event.key] = record
                    logger.info(
                        "Device attached: %s (%s)",
                        event.key, event.descriptor.name or "Unknown",
                    )
                return await self._evaluate_and_enforce(record)

            logger.info("Device detached: %s", event.key)
            return self._remove(event.key)

    async def _evaluate_and_enforce(self, record: TrackedDevice) -> TrackedDevice:
        """Evaluate and enforce a device. Caller holds its lock."""
        record.transition(DeviceState.EVALUATING)
        decision = self.store.evaluate(record.descriptor)
        record.decision = decision

        async with self._semaphore:
            try:
                outcome = await asyncio.to_thread(
                    self.authorizer.apply, record.descriptor, decision
                )
            except Exception as e:
                record.retry_needed = True
                record.updated_at = _utcnow()
                self._stats["enforcement_errors"] += 1
                if isinstance(e, EnforcementError):
                    raise
                raise EnforcementError(
                    f"Failed to {decision.action.value} device {record.key}: {e}",
                    device=str(record.key),
                    action=decision.action.value,
                ) from e

        if outcome == EnforcementOutcome.DEVICE_GONE:
            logger.info("Device %s disappeared before enforcement", record.key)
            self._stats["devices_gone"] += 1
            self._remove(record.key)
            return record

        record.retry_needed = False
        if decision.action == Action.ALLOW:
            record.transition(DeviceState.ALLOWED)
            self._stats["allowed"] += 1
            logger.info("Device allowed: %s (rule: %s)", record.key, decision.matched)
        else:
            record.transition(DeviceState.BLOCKED)
            self._stats["blocked"] += 1
            logger.warning("Device blocked: %s (rule: %s)", record.key, decision.matched)
        return record

    def _remove(self, key: DeviceKey) -> TrackedDevice | None:
        """Drop a device record and its temporary rules. Caller holds its lock."""
        record = self._devices.pop(key, None)
        if record is not None:
            record.transition(DeviceState.REMOVED)
        self.store.drop_temporary_rules(key)
        return record

    # ------------------------------------------------------------------
    # Queries and commands
    # ------------------------------------------------------------------

    def list_connected(self) -> list[tuple[DeviceDescriptor, DeviceState]]:
        """List tracked devices and their states, by port."""
        records = sorted(self._devices.values(), key=lambda r: r.descriptor.port)
        return [(r.descriptor, r.state) for r in records]

    def list_devices(self) -> list[TrackedDevice]:
        """List tracked device records, by port."""
        return sorted(self._devices.values(), key=lambda r: r.descriptor.port)

    def get_device(self, key: DeviceKey | str) -> TrackedDevice:
        """
        Get a tracked device.

        Raises:
            NotFound: If the device is not tracked
        """
        key = _as_key(key)
        record = self._devices.get(key)
        if record is None:
            raise NotFound(f"Device not found: {key}", device=str(key))
        return record

    async def manual_override(
        self,
        key: DeviceKey | str,
        action: Action | str,
        permanent: bool = False,
    ) -> TrackedDevice:
        """
        Allow or block one device ahead of all other rules.

        Adds a temporary rule scoped to the device and re-evaluates it
        immediately. With ``permanent`` the scoped rule is also persisted
        at the head of the rule file, unless it already heads it.

        Raises:
            NotFound: If the device is not tracked
            InvalidPattern: If the key or action is malformed
            EnforcementError: If enforcing failed
            PersistenceError: If a permanent rule cannot be written
        """
        key = _as_key(key)
        verdict = parse_action(action)

        async with self._device_lock(key):
            record = self._devices.get(key)
            if record is None:
                raise NotFound(f"Device not found: {key}", device=str(key))

            if permanent:
                await asyncio.to_thread(
                    self.store.ensure_first_rule, scoped_pattern(key), verdict
                )
            # A newer override replaces the previous one for this device
            self.store.drop_temporary_rules(key)
            self.store.add_temporary_rule(key, verdict)
            self._stats["overrides"] += 1
            logger.info("Manual override: %s %s", verdict.value, key)
            return await self._evaluate_and_enforce(record)

    async def retry_pending(self) -> list[TrackedDevice]:
        """
        Re-enforce devices whose enforcement failed.

        Returns:
            Records that still need a retry.
        """
        pending = [r.key for r in self._devices.values() if r.retry_needed]
        still_pending: list[TrackedDevice] = []
        for key in pending:
            async with self._device_lock(key):
                record = self._devices.get(key)
                if record is None or not record.retry_needed:
                    continue
                try:
                    await self._evaluate_and_enforce(record)
                except EnforcementError as e:
                    logger.error("Retry failed for %s: %s", key, e)
                    still_pending.append(record)
        return still_pending

    def observe(self, descriptors: Iterable[DeviceDescriptor]) -> list[TrackedDevice]:
        """
        Track present devices using their observed state, without enforcing.

        Devices whose state cannot be read are skipped.
        """
        observed = []
        for descriptor in descriptors:
            if descriptor.key in self._devices:
                continue
            authorized = self.authorizer.is_authorized(descriptor)
            if authorized is None:
                continue
            record = TrackedDevice(
                descriptor,
                state=DeviceState.ALLOWED if authorized else DeviceState.BLOCKED,
            )
            self._devices[descriptor.key] = record
            observed.append(record)
        return observed

    def list_rules(self) -> tuple[Rule, ...]:
        """List rules in evaluation order."""
        return self.store.list_rules()

    def add_rule(self, pattern: Any, action: Action | str) -> Rule:
        """Append a persisted rule and return it."""
        rule_id = self.store.add_rule(pattern, action)
        return self.store.get_rule(rule_id)

    def remove_rule(self, rule_id: int) -> Rule:
        """Remove a rule by id."""
        return self.store.remove_rule(rule_id)

    def get_statistics(self) -> dict[str, Any]:
        """Get engine statistics."""
        states = [r.state for r in self._devices.values()]
        return {
            **self._stats,
            "running": self.running,
            "connected": len(states),
            "pending_retry": sum(1 for r in self._devices.values() if r.retry_needed),
            "rules": len(self.store.list_rules()),
            "rules_version": self.store.version,
        }
