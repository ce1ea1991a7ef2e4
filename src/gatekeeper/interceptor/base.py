"""
Platform interfaces for device events and enforcement.

Platform adapters implement EventSource (a pull-based stream of attach and
detach events) and Authorizer (applies decisions at the OS device layer).
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Iterator, Mapping

from gatekeeper.interceptor.descriptors import DeviceDescriptor, DeviceKey
from gatekeeper.policy.models import Decision


class EventKind(Enum):
    """USB device event kinds."""

    ATTACH = "attach"
    DETACH = "detach"


@dataclass(frozen=True)
class DeviceEvent:
    """Attach or detach of one device."""

    kind: EventKind
    descriptor: DeviceDescriptor
    synthetic: bool = False  # Produced by reconciliation, not by the kernel
    timestamp: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc), compare=False
    )

    @property
    def key(self) -> DeviceKey:
        return self.descriptor.key


class EnforcementOutcome(Enum):
    """Result of applying a decision to a device."""

    APPLIED = "applied"
    UNCHANGED = "unchanged"
    DEVICE_GONE = "device_gone"


class EventSource(abc.ABC):
    """Source of device attach/detach events."""

    @abc.abstractmethod
    def enumerate(self) -> list[DeviceDescriptor]:
        """List devices currently present."""

    @abc.abstractmethod
    def subscribe(self) -> Iterator[DeviceEvent]:
        """
        Start a fresh event stream.

        The stream first reconciles tracked devices against the devices
        present, then yields kernel events until stop() is called.
        """

    @abc.abstractmethod
    def stop(self) -> None:
        """Make running streams finish."""


class Authorizer(abc.ABC):
    """Applies allow/block decisions at the OS device layer."""

    @abc.abstractmethod
    def apply(self, device: DeviceDescriptor, decision: Decision) -> EnforcementOutcome:
        """
        Apply a decision to a device.

        Applying the state a device already has is a no-op returning
        UNCHANGED. A device that vanished returns DEVICE_GONE.

        Raises:
            EnforcementError: If the OS rejects the change
        """

    @abc.abstractmethod
    def is_authorized(self, device: DeviceDescriptor) -> bool | None:
        """Observe the current state, None if it cannot be determined."""


def reconcile(
    tracked: Mapping[DeviceKey, DeviceDescriptor],
    present: Iterable[DeviceDescriptor],
) -> list[DeviceEvent]:
    """
    Compute the events that bring a tracked device set in line with reality.

    Args:
        tracked: Devices the consumer believes are attached, by key
        present: Devices actually present

    Returns:
        Synthetic DETACH events for tracked devices no longer present,
        followed by synthetic ATTACH events for untracked present devices.
    """
    present_by_key = {device.key: device for device in present}

    events = [
        DeviceEvent(EventKind.DETACH, descriptor, synthetic=True)
        for key, descriptor in tracked.items()
        if key not in present_by_key
    ]
    events.extend(
        DeviceEvent(EventKind.ATTACH, descriptor, synthetic=True)
        for key, descriptor in sorted(present_by_key.items(), key=lambda kv: kv[0].port)
        if key not in tracked
    )
    return events
