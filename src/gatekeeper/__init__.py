"""
USB Gatekeeper - USB device authorization engine.

Enumerates attached USB devices, evaluates them against a persisted,
ordered rule set, and enforces allow/block decisions through the kernel's
sysfs authorization interface.
"""

__version__ = "0.1.0"
__author__ = "USB Gatekeeper Contributors"

from gatekeeper.config import GatekeeperConfig, load_config

__all__ = ["GatekeeperConfig", "load_config", "__version__"]
