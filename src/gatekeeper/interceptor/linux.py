"""
Linux USB event source and enforcement.

Watches USB device events with pyudev and controls device use through
the kernel's sysfs ``authorized`` attribute.
"""

from __future__ import annotations

import errno
import logging
import os
from pathlib import Path
from typing import Any, Iterator

from gatekeeper.config import DEFAULT_SYSFS_PATH, InterceptorConfig
from gatekeeper.errors import EnforcementError, PrivilegeError
from gatekeeper.interceptor.base import (
    Authorizer,
    DeviceEvent,
    EnforcementOutcome,
    EventKind,
    EventSource,
    reconcile,
)
from gatekeeper.interceptor.descriptors import (
    DeviceDescriptor,
    DeviceKey,
    descriptor_from_udev,
    normalize_id,
)
from gatekeeper.policy.models import Action, Decision


logger = logging.getLogger(__name__)


def require_privileges(enabled: bool = True) -> None:
    """
    Fail fast unless running with the privilege to watch and enforce devices.

    Raises:
        PrivilegeError: If not running as root
    """
    if enabled and os.geteuid() != 0:
        raise PrivilegeError(
            "Root privileges are required to watch and authorize USB devices",
            euid=os.geteuid(),
        )


class UdevEventSource(EventSource):
    """
    USB device event source using pyudev.

    Tracks the devices it has reported so that lost events can be
    recovered by re-enumeration.
    """

    def __init__(
        self,
        poll_interval: float = 0.5,
        receive_buffer_size: int = 4 * 1024 * 1024,
        context: Any = None,
    ) -> None:
        """
        Initialize the source.

        Args:
            poll_interval: Seconds between checks of the stop flag
            receive_buffer_size: Netlink socket buffer size in bytes
            context: Existing pyudev.Context to use
        """
        self.poll_interval = poll_interval
        self.receive_buffer_size = receive_buffer_size
        self._context = context
        self._monitor = None
        self._running = False
        self._tracked: dict[DeviceKey, DeviceDescriptor] = {}
        self._by_port: dict[str, DeviceKey] = {}

    def _ensure_context(self) -> None:
        """Initialize pyudev context if needed."""
        if self._context is None:
            import pyudev
            self._context = pyudev.Context()

    def _ensure_monitor(self) -> None:
        """Initialize pyudev monitor if needed."""
        if self._monitor is None:
            import pyudev
            self._ensure_context()
            self._monitor = pyudev.Monitor.from_netlink(self._context)
            self._monitor.filter_by(subsystem="usb", device_type="usb_device")
            try:
                self._monitor.set_receive_buffer_size(self.receive_buffer_size)
            except OSError as e:
                logger.warning("Could not enlarge udev receive buffer: %s", e)

    @property
    def tracked(self) -> dict[DeviceKey, DeviceDescriptor]:
        """Devices reported as attached and not yet detached."""
        return dict(self._tracked)

    def enumerate(self) -> list[DeviceDescriptor]:
        """
        Enumerate all currently connected USB devices.

        Returns:
            Descriptors sorted by port, root hubs excluded.
        """
        self._ensure_context()
        devices = []
        for device in self._context.list_devices(subsystem="usb", DEVTYPE="usb_device"):
            descriptor = descriptor_from_udev(device)
            if descriptor is not None:
                devices.append(descriptor)
        return sorted(devices, key=lambda d: d.port)

    def subscribe(self) -> Iterator[DeviceEvent]:
        """Start a fresh event stream."""
        return self._stream()

    def stop(self) -> None:
        """Stop monitoring."""
        self._running = False

    def _stream(self) -> Iterator[DeviceEvent]:
        # Start listening before enumerating so nothing falls in between
        self._ensure_monitor()
        self._monitor.start()
        self._running = True
        logger.info("Starting USB event monitor")

        try:
            yield from self._reconcile()
            while self._running:
                try:
                    device = self._monitor.poll(timeout=self.poll_interval)
                except OSError as e:
                    if e.errno != errno.ENOBUFS:
                        raise
                    logger.warning("udev event buffer overflowed, re-enumerating devices")
                    yield from self._reconcile()
                    continue

                if device is None:
                    continue
                for event in self._parse_udev_event(device):
                    yield event
        finally:
            self._running = False
            logger.info("USB event monitor stopped")

    def _reconcile(self) -> Iterator[DeviceEvent]:
        for event in reconcile(self._tracked, self.enumerate()):
            logger.info(
                "Reconciled %s %s", event.kind.value, event.key,
            )
            self._track(event)
            yield event

    def _track(self, event: DeviceEvent) -> None:
        descriptor = event.descriptor
        if event.kind == EventKind.ATTACH:
            self._tracked[descriptor.key] = descriptor
            self._by_port[descriptor.port] = descriptor.key
        else:
            self._tracked.pop(descriptor.key, None)
            if self._by_port.get(descriptor.port) == descriptor.key:
                del self._by_port[descriptor.port]

    def _parse_udev_event(self, device: Any) -> list[DeviceEvent]:
        """
        Turn a pyudev device into events.

        A kernel add on a port that still has a tracked device means its
        remove was lost; a synthetic DETACH for the old device comes first.

        Args:
            device: pyudev.Device object

        Returns:
            Events to deliver, possibly empty.
        """
        action = device.action
        events: list[DeviceEvent] = []

        if action == "add":
            descriptor = descriptor_from_udev(device)
            if descriptor is None:
                return events
            stale_key = self._by_port.get(descriptor.port)
            if stale_key is not None:
                events.append(
                    DeviceEvent(EventKind.DETACH, self._tracked[stale_key], synthetic=True)
                )
            events.append(DeviceEvent(EventKind.ATTACH, descriptor))

        elif action == "remove":
            key = self._by_port.get(device.sys_name)
            if key is not None:
                descriptor = self._tracked[key]
            else:
                descriptor = descriptor_from_udev(device)
                if descriptor is None:
                    return events
            events.append(DeviceEvent(EventKind.DETACH, descriptor))

        for event in events:
            logger.debug("USB event: %s %s", event.kind.value, event.key)
            self._track(event)
        return events


class SysfsAuthorizer(Authorizer):
    """
    USB device authorization controller.

    Controls whether devices are allowed to bind to drivers
    using the sysfs authorized attribute.
    """

    def __init__(self, sysfs_path: str | Path = DEFAULT_SYSFS_PATH) -> None:
        self.sysfs_path = Path(sysfs_path)

    def _read(self, path: Path) -> str | None:
        """Read a sysfs attribute; bytes that are not UTF-8 become U+FFFD."""
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        return raw.decode("utf-8", errors="replace").strip()

    def _device_dir(self, device: DeviceDescriptor) -> Path | None:
        """
        Find the sysfs directory of a device.

        Returns:
            Path to the device, or None if the port is empty or now holds a
            different device.
        """
        path = self.sysfs_path / device.port
        try:
            vid = self._read(path / "idVendor")
            pid = self._read(path / "idProduct")
        except OSError as e:
            logger.debug("Cannot read identity of %s: %s", path, e)
            return None
        if vid is None or pid is None:
            return None

        try:
            if normalize_id(vid) != device.vid or normalize_id(pid) != device.pid:
                return None
        except ValueError:
            return None

        if device.serial is not None:
            try:
                serial = self._read(path / "serial")
            except OSError:
                serial = None
            if serial is not None and "\ufffd" in serial:
                # descriptor_from_udev treats an undecodable serial as absent;
                # identity rests on vid, pid and port as for serial-less devices
                logger.debug("Serial of %s is not UTF-8, not compared", path)
            elif serial != device.serial:
                return None
        return path

    def is_authorized(self, device: DeviceDescriptor) -> bool | None:
        """
        Check if a device is authorized.

        Returns:
            True if authorized, False if not, None if unable to determine.
        """
        path = self._device_dir(device)
        if path is None:
            return None
        try:
            value = self._read(path / "authorized")
        except OSError:
            return None
        if value is None:
            return None
        return value != "0"

    def apply(self, device: DeviceDescriptor, decision: Decision) -> EnforcementOutcome:
        """
        Write the decision to the device's authorized attribute.

        Args:
            device: Device to enforce on
            decision: Decision to apply

        Returns:
            APPLIED, UNCHANGED when already in that state, or DEVICE_GONE.

        Raises:
            EnforcementError: If the kernel rejects the write
        """
        desired = "1" if decision.action == Action.ALLOW else "0"
        path = self._device_dir(device)
        if path is None:
            logger.info("Device %s is gone, nothing to enforce", device.key)
            return EnforcementOutcome.DEVICE_GONE

        auth_file = path / "authorized"
        try:
            current = self._read(auth_file)
        except OSError as e:
            raise self._error(device, decision, e) from e
        if current is None:
            return EnforcementOutcome.DEVICE_GONE
        if current == desired:
            return EnforcementOutcome.UNCHANGED

        try:
            auth_file.write_text(desired)
        except OSError as e:
            if e.errno in (errno.ENOENT, errno.ENODEV):
                logger.info("Device %s vanished during enforcement", device.key)
                return EnforcementOutcome.DEVICE_GONE
            raise self._error(device, decision, e) from e

        logger.info(
            "Device %s %s",
            device.key,
            "authorized" if desired == "1" else "deauthorized",
        )
        return EnforcementOutcome.APPLIED

    def _error(
        self,
        device: DeviceDescriptor,
        decision: Decision,
        exc: OSError,
    ) -> EnforcementError:
        return EnforcementError(
            f"Failed to {decision.action.value} device {device.key}: {exc}",
            device=str(device.key),
            action=decision.action.value,
            errno=exc.errno,
        )


def check_environment(config: InterceptorConfig | None = None) -> list[str]:
    """
    Check that the host exposes what the engine needs.

    Returns:
        List of problems. Empty list if usable.
    """
    config = config or InterceptorConfig()
    problems: list[str] = []

    if not Path(config.sysfs_path).is_dir():
        problems.append(f"USB sysfs directory not found: {config.sysfs_path}")

    try:
        import pyudev
        pyudev.Context()
    except ImportError:
        problems.append("pyudev is not installed")
    except Exception as e:
        problems.append(f"udev is not available: {e}")

    return problems


def get_platform_event_source(config: InterceptorConfig | None = None) -> EventSource:
    """
    Get the event source for the current platform.

    Raises:
        RuntimeError: If platform is not supported
    """
    import platform

    config = config or InterceptorConfig()
    system = platform.system().lower() if config.platform == "auto" else config.platform
    if system == "linux":
        return UdevEventSource(
            poll_interval=config.poll_interval,
            receive_buffer_size=config.receive_buffer_size,
        )
    elif system == "windows":
        raise NotImplementedError("Windows event source not yet implemented")
    elif system == "darwin":
        raise NotImplementedError("macOS event source not yet implemented")
    else:
        raise RuntimeError(f"Unsupported platform: {system}")


def get_platform_authorizer(config: InterceptorConfig | None = None) -> Authorizer:
    """Get the enforcement backend for the current platform."""
    config = config or InterceptorConfig()
    return SysfsAuthorizer(config.sysfs_path)
