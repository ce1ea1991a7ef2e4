"""
USB Gatekeeper Core - Authorization Engine.

Ties the event source, rule store and authorizer together.
"""

from gatekeeper.core.engine import (
    AuthorizationEngine,
    DeviceState,
    TrackedDevice,
)

__all__ = [
    "AuthorizationEngine",
    "DeviceState",
    "TrackedDevice",
]
