"""
Pytest configuration and shared fixtures for USB Gatekeeper tests.
"""

from __future__ import annotations

import tempfile
import threading
from pathlib import Path
from typing import Callable, Generator, Iterator

import pytest
import yaml

from gatekeeper.errors import EnforcementError
from gatekeeper.interceptor.base import (
    Authorizer,
    DeviceEvent,
    EnforcementOutcome,
    EventSource,
)
from gatekeeper.interceptor.descriptors import DeviceDescriptor, DeviceKey
from gatekeeper.policy.models import Action, Decision
from gatekeeper.policy.store import RuleStore


class FakeEventSource(EventSource):
    """Event source replaying a fixed list of events."""

    def __init__(
        self,
        events: list[DeviceEvent] | None = None,
        present: list[DeviceDescriptor] | None = None,
    ) -> None:
        self.events = list(events or [])
        self.present = list(present or [])
        self.stopped = False

    def enumerate(self) -> list[DeviceDescriptor]:
        return list(self.present)

    def subscribe(self) -> Iterator[DeviceEvent]:
        yield from list(self.events)

    def stop(self) -> None:
        self.stopped = True


class FakeAuthorizer(Authorizer):
    """
    In-memory authorizer.

    ``fail`` keys raise EnforcementError, ``gone`` keys report DEVICE_GONE.
    hold() makes apply() block until release().
    """

    def __init__(self) -> None:
        self.state: dict[DeviceKey, bool] = {}
        self.applied: list[tuple[DeviceKey, Action]] = []
        self.fail: set[DeviceKey] = set()
        self.gone: set[DeviceKey] = set()
        self.entered = threading.Event()
        self._gate = threading.Event()
        self._gate.set()

    def hold(self) -> None:
        self._gate.clear()

    def release(self) -> None:
        self._gate.set()

    def apply(self, device: DeviceDescriptor, decision: Decision) -> EnforcementOutcome:
        self.entered.set()
        self._gate.wait(timeout=5)
        key = device.key
        if key in self.gone:
            return EnforcementOutcome.DEVICE_GONE
        if key in self.fail:
            raise EnforcementError(
                f"Failed to {decision.action.value} device {key}",
                device=str(key),
                action=decision.action.value,
            )
        desired = decision.action == Action.ALLOW
        self.applied.append((key, decision.action))
        if self.state.get(key) == desired:
            return EnforcementOutcome.UNCHANGED
        self.state[key] = desired
        return EnforcementOutcome.APPLIED

    def is_authorized(self, device: DeviceDescriptor) -> bool | None:
        if device.key in self.gone:
            return None
        return self.state.get(device.key, True)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def rules_path(temp_dir: Path) -> Path:
    """Location of the rule file (not created)."""
    return temp_dir / "rules.yaml"


@pytest.fixture
def store(rules_path: Path) -> RuleStore:
    """Empty rule store with the default block policy."""
    return RuleStore(rules_path)


@pytest.fixture
def fake_authorizer() -> FakeAuthorizer:
    return FakeAuthorizer()


@pytest.fixture
def sample_rules(rules_path: Path) -> Path:
    """Create a sample rule file."""
    data = {
        "version": 1,
        "next_id": 4,
        "rules": [
            {
                "id": 1,
                "pattern": {"vid": "046d", "pid": "c534"},
                "action": "allow",
                "created_at": "2026-01-01T00:00:00+00:00",
            },
            {
                "id": 2,
                "pattern": {"interface_class": 8},
                "action": "block",
                "created_at": "2026-01-02T00:00:00+00:00",
            },
            {
                "id": 3,
                "pattern": {"vid": "1d6b"},
                "action": "allow",
                "created_at": "2026-01-03T00:00:00+00:00",
            },
        ],
    }
    with open(rules_path, "w") as f:
        yaml.safe_dump(data, f, sort_keys=False)
    return rules_path


@pytest.fixture
def sysfs_root(temp_dir: Path) -> Path:
    """Empty fake /sys/bus/usb/devices."""
    root = temp_dir / "sys"
    root.mkdir()
    return root


@pytest.fixture
def make_sysfs_device(sysfs_root: Path) -> Callable[..., Path]:
    """Factory creating a device directory in the fake sysfs tree."""

    def _make(
        port: str = "1-1",
        vid: str = "1234",
        pid: str = "0001",
        serial: str | None = None,
        authorized: str = "1",
    ) -> Path:
        path = sysfs_root / port
        path.mkdir()
        (path / "idVendor").write_text(f"{vid}\n")
        (path / "idProduct").write_text(f"{pid}\n")
        if serial is not None:
            (path / "serial").write_text(f"{serial}\n")
        (path / "authorized").write_text(f"{authorized}\n")
        return path

    return _make


@pytest.fixture
def sample_config(temp_dir: Path, rules_path: Path, sysfs_root: Path) -> Path:
    """Create a sample configuration file."""
    config_path = temp_dir / "gatekeeper.yaml"
    config_data = {
        "daemon": {
            "log_level": "debug",
            "require_root": False,
        },
        "policy": {
            "rules_file": str(rules_path),
            "default_action": "block",
        },
        "interceptor": {
            "sysfs_path": str(sysfs_root),
            "poll_interval": 0.1,
        },
        "api": {
            "enabled": False,
            "port": 8080,
        },
    }
    with open(config_path, "w") as f:
        yaml.dump(config_data, f)
    return config_path
