"""
Ruleflow Governance Module

Checks that sit around the runtime rather than inside it:
- Bundle validation: structural invariants a flow, rule set and API mappings must hold
- Replay verification: re-running a recorded step must reproduce its digest
"""

from ruleflow.governance.validator import (
    ValidationIssue,
    ValidationReport,
    collect_issues,
    validate_api_mappings,
    validate_bundle,
    validate_flow,
    validate_rule_set,
)
from ruleflow.governance.replay import ReplayReport, ReplayVerifier, first_difference, recorded_transport

__all__ = [
    "ValidationIssue",
    "ValidationReport",
    "collect_issues",
    "validate_api_mappings",
    "validate_bundle",
    "validate_flow",
    "validate_rule_set",
    "ReplayReport",
    "ReplayVerifier",
    "first_difference",
    "recorded_transport",
]
