"""
Error taxonomy for USB Gatekeeper.

Every error carries a machine-readable kind and the identity of the rule or
device involved so that scripted callers can retry by kind.
"""

from __future__ import annotations

from typing import Any


# Process exit statuses shared by the CLI
EXIT_OK = 0
EXIT_USAGE = 1
EXIT_ENFORCEMENT = 2
EXIT_PRIVILEGE = 3


class GatekeeperError(Exception):
    """Base error for USB Gatekeeper."""

    kind = "error"
    exit_code = EXIT_USAGE

    def __init__(self, message: str, **identity: Any) -> None:
        super().__init__(message)
        self.message = message
        self.identity = {k: v for k, v in identity.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {"kind": self.kind, "message": self.message, **self.identity}


class ConfigError(GatekeeperError):
    """Configuration file is missing or invalid."""

    kind = "config_error"


class InvalidPattern(GatekeeperError):
    """Rule pattern or action could not be parsed."""

    kind = "invalid_pattern"


class NotFound(GatekeeperError):
    """Unknown rule id or device key."""

    kind = "not_found"


class EnforcementError(GatekeeperError):
    """The OS device layer rejected an allow/block request."""

    kind = "enforcement_error"
    exit_code = EXIT_ENFORCEMENT


class PersistenceError(GatekeeperError):
    """The rule file could not be durably written or read back."""

    kind = "persistence_error"
    exit_code = EXIT_ENFORCEMENT


class PrivilegeError(GatekeeperError):
    """The process lacks the privilege needed to watch or enforce devices."""

    kind = "privilege_error"
    exit_code = EXIT_PRIVILEGE
