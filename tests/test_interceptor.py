"""
Tests for USB Interceptor module.
"""

from __future__ import annotations

import errno
import os
from pathlib import Path
from typing import Callable
from unittest.mock import MagicMock

import pytest

from gatekeeper.config import InterceptorConfig
from gatekeeper.errors import EnforcementError, InvalidPattern, PrivilegeError
from gatekeeper.interceptor.base import (
    DeviceEvent,
    EnforcementOutcome,
    EventKind,
    reconcile,
)
from gatekeeper.interceptor.descriptors import (
    DeviceKey,
    create_test_descriptor,
    descriptor_from_udev,
    is_port_path,
    normalize_id,
)
from gatekeeper.interceptor.linux import (
    SysfsAuthorizer,
    UdevEventSource,
    check_environment,
    get_platform_authorizer,
    get_platform_event_source,
    require_privileges,
)
from gatekeeper.policy.models import Action, Decision


ALLOW = Decision(Action.ALLOW)
BLOCK = Decision(Action.BLOCK)


def udev_device(
    port: str = "1-1",
    vid: str = "1234",
    pid: str = "0001",
    serial: str | None = None,
    action: str | None = "add",
    product: str | None = "Test Device",
    interfaces: str = ":080650:",
    present: bool = True,
) -> MagicMock:
    """Mock pyudev.Device; attributes are unreadable when not present."""
    attrs = {"idVendor": vid, "idProduct": pid, "bDeviceClass": "00"}
    if product:
        attrs["product"] = product
    if serial:
        attrs["serial"] = serial

    def asstring(name: str) -> str:
        if not present or name not in attrs:
            raise KeyError(name)
        return attrs[name]

    device = MagicMock()
    device.sys_name = port
    device.sys_path = f"/sys/devices/pci0000:00/0000:00:14.0/usb1/{port}"
    device.action = action
    device.attributes.asstring.side_effect = asstring
    device.properties = {
        "ID_VENDOR_ID": vid,
        "ID_MODEL_ID": pid,
        "ID_USB_INTERFACES": interfaces,
    }
    if serial:
        device.properties["ID_SERIAL_SHORT"] = serial
    if product:
        device.properties["ID_MODEL"] = product
    return device


class TestDeviceKey:
    """Tests for DeviceKey."""

    def test_str(self) -> None:
        assert str(DeviceKey("1234", "0001", "ABC", "1-1.2")) == "1234:0001:ABC@1-1.2"
        assert str(DeviceKey("1234", "0001", None, "1-1")) == "1234:0001:@1-1"

    def test_parse(self) -> None:
        assert DeviceKey.parse("1234:0001:ABC@1-1.2") == DeviceKey("1234", "0001", "ABC", "1-1.2")
        assert DeviceKey.parse("1D6B:2:@2-1") == DeviceKey("1d6b", "0002", None, "2-1")

    def test_parse_serial_with_colons(self) -> None:
        key = DeviceKey.parse("1234:0001:AA:BB@1-1")
        assert key.serial == "AA:BB"

    def test_round_trip(self) -> None:
        key = create_test_descriptor(serial="X1", port="3-2.1").key
        assert DeviceKey.parse(str(key)) == key

    @pytest.mark.parametrize(
        "text",
        ["", "1234:0001", "1234:0001:ABC", "1234@1-1", "zzzz:0001:@1-1", "1234:0001:@usb1"],
    )
    def test_parse_malformed(self, text: str) -> None:
        with pytest.raises(InvalidPattern):
            DeviceKey.parse(text)


class TestDescriptors:
    """Tests for descriptor helpers."""

    def test_normalize_id(self) -> None:
        assert normalize_id("046D") == "046d"
        assert normalize_id("0x1d6b") == "1d6b"
        assert normalize_id("2") == "0002"
        assert normalize_id(0x8087) == "8087"

    @pytest.mark.parametrize("value", ["", "12345", "xyz", 0x10000, -1])
    def test_normalize_id_invalid(self, value) -> None:
        with pytest.raises(ValueError):
            normalize_id(value)

    def test_is_port_path(self) -> None:
        assert is_port_path("1-1")
        assert is_port_path("2-1.4.3")
        assert not is_port_path("usb1")
        assert not is_port_path("1-1:1.0")

    def test_descriptor_key_and_dict(self) -> None:
        desc = create_test_descriptor(serial="S", interface_classes=(0x03, 0x08))

        assert desc.key == DeviceKey("1234", "0001", "S", "1-1")
        data = desc.to_dict()
        assert data["key"] == "1234:0001:S@1-1"
        assert data["class_names"] == ["HID", "Mass Storage"]
        assert desc.has_class(0x08)
        assert not desc.has_class(0x0E)

    def test_from_udev(self) -> None:
        desc = descriptor_from_udev(
            udev_device(port="1-2", vid="046D", pid="C534", serial="ABC",
                        interfaces=":030101:030102:")
        )

        assert desc is not None
        assert desc.vid == "046d"
        assert desc.pid == "c534"
        assert desc.port == "1-2"
        assert desc.serial == "ABC"
        assert desc.name == "Test Device"
        assert desc.interface_classes == (0x03,)

    def test_from_udev_properties_fallback(self) -> None:
        desc = descriptor_from_udev(udev_device(serial="ABC", present=False))

        assert desc is not None
        assert desc.key == DeviceKey("1234", "0001", "ABC", "1-1")

    def test_from_udev_root_hub(self) -> None:
        assert descriptor_from_udev(udev_device(port="usb1")) is None

    def test_from_udev_without_ids(self) -> None:
        device = udev_device(present=False)
        device.properties = {}
        assert descriptor_from_udev(device) is None


class TestReconcile:
    """Tests for reconcile."""

    def test_detach_missing_attach_new(self) -> None:
        a = create_test_descriptor(port="1-1")
        b = create_test_descriptor(port="1-2", vid="046d")
        c = create_test_descriptor(port="1-3", vid="8087")

        events = reconcile({a.key: a, b.key: b}, [b, c])

        assert [(e.kind, e.key) for e in events] == [
            (EventKind.DETACH, a.key),
            (EventKind.ATTACH, c.key),
        ]
        assert all(e.synthetic for e in events)

    def test_in_sync(self) -> None:
        a = create_test_descriptor()
        assert reconcile({a.key: a}, [a]) == []

    def test_attach_sorted_by_port(self) -> None:
        devices = [create_test_descriptor(port=p) for p in ("2-1", "1-3", "1-1")]
        events = reconcile({}, devices)
        assert [e.descriptor.port for e in events] == ["1-1", "1-3", "2-1"]


class TestUdevEventSource:
    """Tests for UdevEventSource with a mocked pyudev context and monitor."""

    def make_source(self, present: list, polls: list) -> UdevEventSource:
        context = MagicMock()
        context.list_devices.return_value = present
        source = UdevEventSource(poll_interval=0.01, context=context)
        source._monitor = MagicMock()

        queue = list(polls)

        def poll(timeout=None):
            if not queue:
                source.stop()
                return None
            item = queue.pop(0)
            if isinstance(item, BaseException):
                raise item
            if callable(item) and not isinstance(item, MagicMock):
                return item()
            return item

        source._monitor.poll.side_effect = poll
        return source

    def test_enumerate(self) -> None:
        source = self.make_source(
            [udev_device(port="1-2"), udev_device(port="usb1"), udev_device(port="1-1")],
            [],
        )
        ports = [d.port for d in source.enumerate()]
        assert ports == ["1-1", "1-2"]

    def test_stream_reconciles_then_follows_kernel(self) -> None:
        source = self.make_source(
            [udev_device(port="1-1")],
            [
                udev_device(port="1-2", vid="046d"),
                None,
                udev_device(port="1-1", action="remove", present=False),
            ],
        )

        events = list(source.subscribe())

        assert [(e.kind, e.descriptor.port, e.synthetic) for e in events] == [
            (EventKind.ATTACH, "1-1", True),
            (EventKind.ATTACH, "1-2", False),
            (EventKind.DETACH, "1-1", False),
        ]
        source._monitor.start.assert_called_once()
        assert list(source.tracked) == [events[1].key]

    def test_buffer_overflow_re_enumerates(self) -> None:
        a = udev_device(port="1-1")
        b = udev_device(port="1-2", vid="046d")
        source = self.make_source([a], [])

        def overflow():
            # Devices changed while events were being dropped
            source._context.list_devices.return_value = [b]
            raise OSError(errno.ENOBUFS, "No buffer space available")

        source._monitor.poll.side_effect = None
        calls = iter([overflow, lambda: source.stop()])
        source._monitor.poll.side_effect = lambda timeout=None: next(calls)()

        events = list(source.subscribe())

        assert [(e.kind, e.descriptor.port) for e in events] == [
            (EventKind.ATTACH, "1-1"),
            (EventKind.DETACH, "1-1"),
            (EventKind.ATTACH, "1-2"),
        ]
        assert all(e.synthetic for e in events)

    def test_other_os_errors_propagate(self) -> None:
        source = self.make_source([], [OSError(errno.EBADF, "Bad file descriptor")])
        with pytest.raises(OSError):
            list(source.subscribe())

    def test_add_on_occupied_port_detaches_stale_device(self) -> None:
        source = self.make_source(
            [udev_device(port="1-1", serial="OLD")],
            [udev_device(port="1-1", serial="NEW")],
        )

        events = list(source.subscribe())

        assert [(e.kind, e.descriptor.serial, e.synthetic) for e in events] == [
            (EventKind.ATTACH, "OLD", True),
            (EventKind.DETACH, "OLD", True),
            (EventKind.ATTACH, "NEW", False),
        ]

    def test_remove_uses_tracked_descriptor(self) -> None:
        source = self.make_source(
            [udev_device(port="1-1", serial="S1", product="Stick")],
            [udev_device(port="1-1", action="remove", present=False, serial=None)],
        )

        events = list(source.subscribe())

        assert events[-1].kind == EventKind.DETACH
        assert events[-1].key == events[0].key
        assert events[-1].descriptor.name == "Stick"

    def test_remove_of_untracked_device(self) -> None:
        source = self.make_source(
            [],
            [udev_device(port="1-4", action="remove", present=False, serial="Z")],
        )

        events = list(source.subscribe())

        assert [(e.kind, str(e.key)) for e in events] == [(EventKind.DETACH, "1234:0001:Z@1-4")]

    def test_other_actions_ignored(self) -> None:
        source = self.make_source([], [udev_device(action="bind"), udev_device(action="change")])
        assert list(source.subscribe()) == []


class TestSysfsAuthorizer:
    """Tests for SysfsAuthorizer against a fake sysfs tree."""

    def test_allow_writes_one(
        self, sysfs_root: Path, make_sysfs_device: Callable[..., Path]
    ) -> None:
        path = make_sysfs_device(authorized="0")
        authorizer = SysfsAuthorizer(sysfs_root)

        outcome = authorizer.apply(create_test_descriptor(), ALLOW)

        assert outcome == EnforcementOutcome.APPLIED
        assert (path / "authorized").read_text() == "1"

    def test_block_writes_zero(
        self, sysfs_root: Path, make_sysfs_device: Callable[..., Path]
    ) -> None:
        path = make_sysfs_device(authorized="1")

        outcome = SysfsAuthorizer(sysfs_root).apply(create_test_descriptor(), BLOCK)

        assert outcome == EnforcementOutcome.APPLIED
        assert (path / "authorized").read_text() == "0"

    def test_apply_is_idempotent(
        self, sysfs_root: Path, make_sysfs_device: Callable[..., Path]
    ) -> None:
        path = make_sysfs_device(authorized="1")
        authorizer = SysfsAuthorizer(sysfs_root)
        device = create_test_descriptor()

        assert authorizer.apply(device, BLOCK) == EnforcementOutcome.APPLIED
        assert authorizer.apply(device, BLOCK) == EnforcementOutcome.UNCHANGED
        assert (path / "authorized").read_text() == "0"

    def test_missing_device_is_gone(self, sysfs_root: Path) -> None:
        outcome = SysfsAuthorizer(sysfs_root).apply(create_test_descriptor(), ALLOW)
        assert outcome == EnforcementOutcome.DEVICE_GONE

    def test_different_device_on_port_is_gone(
        self, sysfs_root: Path, make_sysfs_device: Callable[..., Path]
    ) -> None:
        path = make_sysfs_device(vid="046d", serial="OTHER", authorized="0")
        authorizer = SysfsAuthorizer(sysfs_root)

        assert authorizer.apply(create_test_descriptor(), ALLOW) == EnforcementOutcome.DEVICE_GONE
        assert (
            authorizer.apply(create_test_descriptor(vid="046d", serial="MINE"), ALLOW)
            == EnforcementOutcome.DEVICE_GONE
        )
        assert (path / "authorized").read_text().strip() == "0"

    def test_serial_checked(
        self, sysfs_root: Path, make_sysfs_device: Callable[..., Path]
    ) -> None:
        make_sysfs_device(serial="ABC", authorized="0")
        outcome = SysfsAuthorizer(sysfs_root).apply(create_test_descriptor(serial="ABC"), ALLOW)
        assert outcome == EnforcementOutcome.APPLIED

    def test_write_failure_raises(
        self,
        sysfs_root: Path,
        make_sysfs_device: Callable[..., Path],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        make_sysfs_device(authorized="0")

        def denied(self, data, *args, **kwargs):
            raise PermissionError(errno.EACCES, "Permission denied")

        monkeypatch.setattr(Path, "write_text", denied)

        with pytest.raises(EnforcementError) as exc_info:
            SysfsAuthorizer(sysfs_root).apply(create_test_descriptor(), ALLOW)

        error = exc_info.value
        assert error.exit_code == 2
        assert error.identity["device"] == "1234:0001:@1-1"
        assert error.identity["action"] == "allow"
        assert error.identity["errno"] == errno.EACCES

    def test_device_vanishing_during_write_is_gone(
        self,
        sysfs_root: Path,
        make_sysfs_device: Callable[..., Path],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        make_sysfs_device(authorized="0")

        def vanished(self, data, *args, **kwargs):
            raise OSError(errno.ENODEV, "No such device")

        monkeypatch.setattr(Path, "write_text", vanished)

        outcome = SysfsAuthorizer(sysfs_root).apply(create_test_descriptor(), ALLOW)
        assert outcome == EnforcementOutcome.DEVICE_GONE

    def test_is_authorized(
        self, sysfs_root: Path, make_sysfs_device: Callable[..., Path]
    ) -> None:
        make_sysfs_device(port="1-1", authorized="1")
        make_sysfs_device(port="1-2", authorized="0")
        authorizer = SysfsAuthorizer(sysfs_root)

        assert authorizer.is_authorized(create_test_descriptor(port="1-1")) is True
        assert authorizer.is_authorized(create_test_descriptor(port="1-2")) is False
        assert authorizer.is_authorized(create_test_descriptor(port="1-3")) is None

    def test_undecodable_serial_does_not_raise(
        self, sysfs_root: Path, make_sysfs_device: Callable[..., Path]
    ) -> None:
        path = make_sysfs_device(authorized="1")
        (path / "serial").write_bytes(b"\xff\xfe\n")
        authorizer = SysfsAuthorizer(sysfs_root)
        device = create_test_descriptor(serial="ABC")

        assert authorizer.is_authorized(device) is True
        assert authorizer.apply(device, BLOCK) == EnforcementOutcome.APPLIED
        assert (path / "authorized").read_text() == "0"


class TestPlatform:
    """Tests for privilege and platform helpers."""

    def test_require_privileges_as_user(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(os, "geteuid", lambda: 1000)

        with pytest.raises(PrivilegeError) as exc_info:
            require_privileges()
        assert exc_info.value.exit_code == 3

        require_privileges(enabled=False)

    def test_require_privileges_as_root(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(os, "geteuid", lambda: 0)
        require_privileges()

    def test_check_environment_reports_missing_sysfs(self, temp_dir: Path) -> None:
        config = InterceptorConfig(sysfs_path=str(temp_dir / "nope"))
        problems = check_environment(config)
        assert any("sysfs" in p for p in problems)

    def test_platform_factories(self, sysfs_root: Path) -> None:
        config = InterceptorConfig(platform="linux", sysfs_path=str(sysfs_root), poll_interval=0.2)

        source = get_platform_event_source(config)
        authorizer = get_platform_authorizer(config)

        assert isinstance(source, UdevEventSource)
        assert source.poll_interval == 0.2
        assert isinstance(authorizer, SysfsAuthorizer)
        assert authorizer.sysfs_path == sysfs_root

    def test_unsupported_platform(self) -> None:
        with pytest.raises(RuntimeError):
            get_platform_event_source(InterceptorConfig(platform="plan9"))


def test_device_event_key() -> None:
    desc = create_test_descriptor(serial="K")
    event = DeviceEvent(EventKind.ATTACH, desc)
    assert event.key == desc.key
    assert not event.synthetic
