"""
Policy layer.

Ordered allow/block rules, first-match-wins evaluation, and the
persisted rule store.
"""

from gatekeeper.policy.models import Action, Decision, MatchPattern, Rule, USBClass
from gatekeeper.policy.parser import parse_action, parse_pattern, parse_rule, validate_rules
from gatekeeper.policy.engine import PolicyEvaluator, RuleMatcher
from gatekeeper.policy.store import RuleSnapshot, RuleStore
from gatekeeper.policy.watcher import RuleFileWatcher

__all__ = [
    # Models
    "Action",
    "Decision",
    "MatchPattern",
    "Rule",
    "USBClass",
    # Parser
    "parse_action",
    "parse_pattern",
    "parse_rule",
    "validate_rules",
    # Evaluation
    "PolicyEvaluator",
    "RuleMatcher",
    # Store
    "RuleSnapshot",
    "RuleStore",
    "RuleFileWatcher",
]
