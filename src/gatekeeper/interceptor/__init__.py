"""
USB device layer.

Device descriptors, the udev event source, and sysfs enforcement.
"""

from gatekeeper.interceptor.descriptors import (
    DeviceDescriptor,
    DeviceKey,
    create_test_descriptor,
    descriptor_from_udev,
)
from gatekeeper.interceptor.base import (
    Authorizer,
    DeviceEvent,
    EnforcementOutcome,
    EventKind,
    EventSource,
    reconcile,
)
from gatekeeper.interceptor.linux import (
    SysfsAuthorizer,
    UdevEventSource,
    check_environment,
    get_platform_authorizer,
    get_platform_event_source,
    require_privileges,
)

__all__ = [
    # Descriptors
    "DeviceDescriptor",
    "DeviceKey",
    "create_test_descriptor",
    "descriptor_from_udev",
    # Interfaces
    "Authorizer",
    "DeviceEvent",
    "EnforcementOutcome",
    "EventKind",
    "EventSource",
    "reconcile",
    # Linux
    "SysfsAuthorizer",
    "UdevEventSource",
    "check_environment",
    "get_platform_authorizer",
    "get_platform_event_source",
    "require_privileges",
]
