"""
Rule pattern and rule file parser.

Parses textual patterns (``vid=1234,pid=0001``) and persisted YAML rule
records into policy models.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from gatekeeper.errors import InvalidPattern
from gatekeeper.interceptor.descriptors import is_port_path, normalize_id
from gatekeeper.policy.models import Action, MatchPattern, Rule, USBClass


PATTERN_FIELDS = ("vid", "pid", "serial", "port", "name", "interface_class")


def parse_action(value: Any) -> Action:
    """Parse an action name ("allow" or "block")."""
    if isinstance(value, Action):
        return value
    try:
        return Action(str(value).strip().lower())
    except ValueError:
        raise InvalidPattern(f"Invalid action: {value!r}", action=str(value))


def parse_class(value: Any) -> int:
    """Parse an interface class given by name, number, or hex string."""
    if isinstance(value, bool):
        raise InvalidPattern(f"Invalid interface class: {value!r}")
    if isinstance(value, int):
        code = value
    else:
        text = str(value).strip()
        code = USBClass.from_name(text)
        if code is None:
            try:
                code = int(text, 16) if text.lower().startswith("0x") else int(text)
            except ValueError:
                raise InvalidPattern(f"Unknown interface class: {value!r}")
    if not 0 <= code <= 0xFF:
        raise InvalidPattern(f"Interface class out of range: {value!r}")
    return code


def _field_value(name: str, value: Any) -> str | int:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise InvalidPattern(f"Empty value for pattern field '{name}'")
    if name in ("vid", "pid"):
        try:
            return normalize_id(value if isinstance(value, int) else str(value))
        except ValueError as e:
            raise InvalidPattern(f"Invalid {name}: {e}") from e
    if name == "interface_class":
        return parse_class(value)
    text = str(value).strip()
    if name == "port" and not is_port_path(text):
        raise InvalidPattern(f"Invalid port path: {text!r}")
    return text


def pattern_from_mapping(data: dict[str, Any]) -> MatchPattern:
    """
    Build a pattern from a field mapping.

    Fields set to "*" are treated as wildcards.
    """
    unknown = sorted(set(data) - set(PATTERN_FIELDS))
    if unknown:
        raise InvalidPattern(f"Unknown pattern field(s): {', '.join(unknown)}")

    values = {
        name: _field_value(name, value)
        for name, value in data.items()
        if value != "*"
    }
    if not values:
        raise InvalidPattern("Pattern must name at least one field, or be '*'")
    return MatchPattern(**values)


def parse_pattern(data: Any) -> MatchPattern:
    """
    Parse a match pattern.

    Args:
        data: '*' for wildcard, a "field=value,..." string, or a mapping

    Returns:
        MatchPattern object

    Raises:
        InvalidPattern: If the pattern is malformed
    """
    if isinstance(data, MatchPattern):
        return data
    if isinstance(data, dict):
        return pattern_from_mapping(data)
    if not isinstance(data, str):
        raise InvalidPattern("Pattern must be '*', 'field=value,...' or a mapping")

    text = data.strip()
    if text == "*":
        return MatchPattern(match_all=True)
    if not text:
        raise InvalidPattern("Empty pattern")

    mapping: dict[str, str] = {}
    for item in text.split(","):
        name, sep, value = item.partition("=")
        name = name.strip().lower()
        if not sep or not name:
            raise InvalidPattern(f"Malformed pattern term: {item.strip()!r}")
        if name in mapping:
            raise InvalidPattern(f"Duplicate pattern field: {name}")
        mapping[name] = value.strip()
    return pattern_from_mapping(mapping)


def parse_timestamp(value: Any) -> datetime:
    """Parse a persisted ISO 8601 creation timestamp."""
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError:
            raise InvalidPattern(f"Invalid created_at: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_rule(data: dict[str, Any]) -> Rule:
    """
    Parse a single persisted rule record.

    Args:
        data: Mapping with id, pattern, action, created_at

    Returns:
        Rule object
    """
    if not isinstance(data, dict):
        raise InvalidPattern("Rule must be a mapping")

    for key in ("id", "pattern", "action", "created_at"):
        if key not in data:
            raise InvalidPattern(f"Rule must have '{key}' field")

    rule_id = data["id"]
    if not isinstance(rule_id, int) or isinstance(rule_id, bool) or rule_id < 1:
        raise InvalidPattern(f"Invalid rule id: {rule_id!r}")

    return Rule(
        id=rule_id,
        pattern=parse_pattern(data["pattern"]),
        action=parse_action(data["action"]),
        created_at=parse_timestamp(data["created_at"]),
    )


def validate_rules(rules: list[Rule] | tuple[Rule, ...]) -> list[str]:
    """
    Check a rule list for unreachable or duplicated rules.

    Args:
        rules: Rules in evaluation order

    Returns:
        List of warning messages
    """
    warnings: list[str] = []

    seen: dict[MatchPattern, int] = {}
    for rule in rules:
        if rule.pattern in seen:
            warnings.append(
                f"Rule {rule.id} has the same pattern as rule {seen[rule.pattern]}"
                " and is unreachable"
            )
        else:
            seen[rule.pattern] = rule.id

    for i, rule in enumerate(rules):
        if rule.pattern.is_wildcard() and i < len(rules) - 1:
            warnings.append(
                f"Wildcard rule {rule.id} makes subsequent rules unreachable"
            )

    return warnings
