"""
Policy data models.

Defines rules, their match patterns, and evaluation decisions.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any


DEFAULT_RULE = "default"


class Action(Enum):
    """Policy action to take on a device."""

    ALLOW = "allow"
    BLOCK = "block"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class MatchPattern:
    """
    Fields a device must have for a rule to match.

    All specified fields must match exactly (AND logic).
    None values are wildcards.
    """

    vid: str | None = None  # Vendor ID (hex string)
    pid: str | None = None  # Product ID (hex string)
    serial: str | None = None
    port: str | None = None
    name: str | None = None
    interface_class: int | None = None  # Declared interface class code

    # Wildcard match
    match_all: bool = False

    def is_wildcard(self) -> bool:
        """Check if this is a wildcard (match-all) pattern."""
        return self.match_all

    def to_dict(self) -> dict[str, Any] | str:
        """Convert to persisted form, excluding wildcard fields."""
        if self.match_all:
            return "*"
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "match_all" and getattr(self, f.name) is not None
        }

    def __str__(self) -> str:
        if self.match_all:
            return "*"
        return ",".join(f"{k}={v}" for k, v in self.to_dict().items())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Rule:
    """
    A single policy rule.

    Rules are evaluated in order; first match determines the action.
    """

    id: int
    pattern: MatchPattern
    action: Action
    created_at: datetime = field(default_factory=_utcnow)
    temporary: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "pattern": self.pattern.to_dict(),
            "action": str(self.action),
            "created_at": self.created_at.isoformat(),
            "temporary": self.temporary,
        }


@dataclass(frozen=True)
class Decision:
    """
    Result of evaluating a device against the rule set.

    ``rule`` is None when the default policy produced the action.
    """

    action: Action
    rule: Rule | None = None
    rules_version: int | None = None

    @property
    def matched(self) -> int | str:
        """Rule id that produced the decision, or "default"."""
        return self.rule.id if self.rule is not None else DEFAULT_RULE

    @property
    def is_default(self) -> bool:
        return self.rule is None

    @property
    def should_allow(self) -> bool:
        """Check if device should be allowed."""
        return self.action == Action.ALLOW

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "action": self.action.value,
            "matched": self.matched,
            "pattern": str(self.rule.pattern) if self.rule else None,
            "rules_version": self.rules_version,
        }


class USBClass:
    """USB device/interface class codes."""

    INTERFACE_DEFINED = 0x00
    AUDIO = 0x01
    CDC = 0x02
    HID = 0x03
    PHYSICAL = 0x05
    IMAGE = 0x06
    PRINTER = 0x07
    MASS_STORAGE = 0x08
    HUB = 0x09
    CDC_DATA = 0x0A
    SMART_CARD = 0x0B
    VIDEO = 0x0E
    WIRELESS = 0xE0
    MISCELLANEOUS = 0xEF
    APPLICATION_SPECIFIC = 0xFE
    VENDOR_SPECIFIC = 0xFF

    @classmethod
    def from_name(cls, name: str) -> int | None:
        """Convert class name to code."""
        name_map = {
            "audio": cls.AUDIO,
            "cdc": cls.CDC,
            "communications": cls.CDC,
            "hid": cls.HID,
            "physical": cls.PHYSICAL,
            "image": cls.IMAGE,
            "printer": cls.PRINTER,
            "mass_storage": cls.MASS_STORAGE,
            "storage": cls.MASS_STORAGE,
            "hub": cls.HUB,
            "cdc_data": cls.CDC_DATA,
            "smart_card": cls.SMART_CARD,
            "video": cls.VIDEO,
            "wireless": cls.WIRELESS,
            "miscellaneous": cls.MISCELLANEOUS,
            "application_specific": cls.APPLICATION_SPECIFIC,
            "vendor_specific": cls.VENDOR_SPECIFIC,
        }
        return name_map.get(name.lower().replace(" ", "_").replace("-", "_"))
