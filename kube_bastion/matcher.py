"""
Matching of admission requests against constraint targets.

Matching never runs rule code: it only compares the request's group, kind and
namespace with the constraint's target.
"""

from __future__ import annotations

from .constraint import WILDCARD, Constraint, MatchRule
from .review import AdmissionRequest


def field_matches(expected: str, actual: str) -> bool:
    """Case-sensitive comparison where ``*`` accepts any value, the empty core group included."""
    return expected == WILDCARD or expected == actual


def rule_matches(rule: MatchRule, api_group: str, kind: str) -> bool:
    return field_matches(rule.api_group, api_group) and field_matches(rule.kind, kind)


def namespace_matches(constraint: Constraint, namespace: str | None) -> bool:
    # cluster-scoped objects are not subject to namespace filters
    if not namespace:
        return True
    if constraint.namespaces is not None and namespace not in constraint.namespaces:
        return False
    if constraint.excluded_namespaces is not None and namespace in constraint.excluded_namespaces:
        return False
    return True


def matches(request: AdmissionRequest, constraint: Constraint) -> bool:
    """Check whether a constraint applies to a request."""
    if not any(rule_matches(rule, request.api_group, request.kind) for rule in constraint.matches):
        return False
    return namespace_matches(constraint, request.namespace)
