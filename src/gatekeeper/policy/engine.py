"""
Policy Evaluator.

Evaluates USB devices against an ordered rule list and determines the
decision. Evaluation is pure: it reads only its arguments and never fails.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable

from gatekeeper.errors import ConfigError
from gatekeeper.policy.models import Action, Decision, MatchPattern, Rule

if TYPE_CHECKING:
    from gatekeeper.interceptor.descriptors import DeviceDescriptor


logger = logging.getLogger(__name__)


class RuleMatcher:
    """
    Matches devices against rule patterns.

    Only exact comparisons are made; there is no substring or regex matching.
    """

    def matches(self, pattern: MatchPattern, device: DeviceDescriptor) -> bool:
        """
        Check if a device matches a pattern.

        Args:
            pattern: Match pattern to check
            device: Device descriptor to match

        Returns:
            True if device matches all specified fields
        """
        if pattern.is_wildcard():
            return True

        if pattern.vid is not None and device.vid != pattern.vid:
            return False

        if pattern.pid is not None and device.pid != pattern.pid:
            return False

        if pattern.serial is not None and device.serial != pattern.serial:
            return False

        if pattern.port is not None and device.port != pattern.port:
            return False

        if pattern.name is not None and device.name != pattern.name:
            return False

        if (
            pattern.interface_class is not None
            and pattern.interface_class not in device.interface_classes
        ):
            return False

        return True


class PolicyEvaluator:
    """
    First-match-wins rule evaluation with a configured default.

    The default action behaves as an implicit last rule, so evaluation
    always resolves to ALLOW or BLOCK.
    """

    def __init__(
        self,
        default_action: Action = Action.BLOCK,
        permit_default_allow: bool = False,
    ) -> None:
        """
        Initialize the evaluator.

        Args:
            default_action: Action when no rule matches
            permit_default_allow: Deployment opt-in required for a default ALLOW

        Raises:
            ConfigError: If default ALLOW is requested without the opt-in
        """
        if default_action == Action.ALLOW:
            if not permit_default_allow:
                raise ConfigError(
                    "Default action 'allow' requires permit_default_allow",
                    action="allow",
                )
            logger.warning(
                "Default policy is ALLOW: devices matching no rule will be authorized"
            )
        self.default_action = default_action
        self.matcher = RuleMatcher()

    def evaluate(
        self,
        device: DeviceDescriptor,
        rules: Iterable[Rule],
        rules_version: int | None = None,
    ) -> Decision:
        """
        Evaluate a device against rules in order.

        Args:
            device: Device descriptor to evaluate
            rules: Rules in evaluation order
            rules_version: Version of the snapshot the rules came from

        Returns:
            Decision with the action and the rule that produced it
        """
        for rule in rules:
            if self.matcher.matches(rule.pattern, device):
                logger.debug(
                    "Device %s: %s (rule %d: %s)",
                    device.key, rule.action.value, rule.id, rule.pattern,
                )
                return Decision(rule.action, rule, rules_version)

        if self.default_action == Action.ALLOW:
            logger.warning("Device %s allowed by default policy", device.key)
        else:
            logger.debug("Device %s: %s (default)", device.key, self.default_action.value)
        return Decision(self.default_action, None, rules_version)
