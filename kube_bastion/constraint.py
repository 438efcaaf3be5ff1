"""Constraint custom resource model and ingestion-time validation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from .errors import ValidationError

CRD_GROUP = "bastion.dev"
CRD_VERSION = "v1alpha1"
CRD_KIND = "Constraint"
CRD_PLURAL = "constraints"

RULE_LANGUAGE = "python"
RULE_FILENAME = "rule.py"
WILDCARD = "*"


@dataclass(frozen=True)
class MatchRule:
    api_group: str
    kind: str


@dataclass(frozen=True)
class Constraint:
    name: str
    matches: tuple[MatchRule, ...]
    rule: str
    namespaces: Optional[frozenset[str]] = None
    excluded_namespaces: Optional[frozenset[str]] = None
    enforce: bool = True
    uid: Optional[str] = None
    resource_version: Optional[str] = None

    @classmethod
    def from_resource(cls, resource: dict[str, Any], check_rule: bool = True) -> "Constraint":
        """Build a constraint from a custom resource, raising ValidationError if malformed."""
        if not isinstance(resource, dict):
            raise ValidationError("Constraint must be a dictionary")

        metadata = resource.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValidationError("Constraint 'metadata' field must be a dictionary")
        name = metadata.get("name")
        if not isinstance(name, str) or not name:
            raise ValidationError("Constraint must have a 'metadata.name'")

        spec = resource.get("spec")
        if not isinstance(spec, dict):
            raise ValidationError("Constraint must contain a 'spec' dictionary", name)

        target = spec.get("target")
        if not isinstance(target, dict):
            raise ValidationError("Constraint spec must contain a 'target' dictionary", name)

        matches = _parse_matches(target.get("matches"), name)
        namespaces = _parse_namespace_list(target, "namespaces", name)
        excluded = _parse_namespace_list(target, "excludedNamespaces", name)
        if namespaces is not None and excluded is not None:
            raise ValidationError(
                "'target.namespaces' and 'target.excludedNamespaces' are mutually exclusive", name
            )

        rule = spec.get("rule")
        source = rule.get(RULE_LANGUAGE) if isinstance(rule, dict) else None
        if not isinstance(source, str) or not source.strip():
            raise ValidationError(f"Constraint must contain a non-empty 'rule.{RULE_LANGUAGE}'", name)
        if check_rule:
            check_rule_syntax(source, name)

        enforce = spec.get("enforce", True)
        if not isinstance(enforce, bool):
            raise ValidationError("'enforce' must be a boolean", name)

        return cls(
            name=name,
            matches=matches,
            rule=source,
            namespaces=namespaces,
            excluded_namespaces=excluded,
            enforce=enforce,
            uid=metadata.get("uid"),
            resource_version=metadata.get("resourceVersion"),
        )

    def object_reference(self) -> dict[str, Optional[str]]:
        """Reference used as the involved object of events about this constraint."""
        return {
            "apiVersion": f"{CRD_GROUP}/{CRD_VERSION}",
            "kind": CRD_KIND,
            "name": self.name,
            "uid": self.uid,
            "resourceVersion": self.resource_version,
        }


def _parse_matches(value: Any, name: str) -> tuple[MatchRule, ...]:
    if not isinstance(value, list) or not value:
        raise ValidationError("'target.matches' must be a non-empty list", name)

    rules = []
    for index, entry in enumerate(value):
        if not isinstance(entry, dict):
            raise ValidationError(f"'target.matches[{index}]' must be a dictionary", name)
        api_group = entry.get("apiGroup", "")
        kind = entry.get("kind")
        if not isinstance(api_group, str):
            raise ValidationError(f"'target.matches[{index}].apiGroup' must be a string", name)
        if not isinstance(kind, str) or not kind:
            raise ValidationError(f"'target.matches[{index}].kind' must be a non-empty string", name)
        rules.append(MatchRule(api_group=api_group, kind=kind))
    return tuple(rules)


def _parse_namespace_list(target: dict[str, Any], field: str, name: str) -> Optional[frozenset[str]]:
    value = target.get(field)
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(ns, str) for ns in value):
        raise ValidationError(f"'target.{field}' must be a list of strings", name)
    # an empty list is the same as leaving the field out
    return frozenset(value) or None


def check_rule_syntax(source: str, name: Optional[str] = None) -> None:
    """Compile the rule without running it."""
    try:
        compile(source, RULE_FILENAME, "exec")
    except (SyntaxError, ValueError, RecursionError, MemoryError) as exc:
        raise ValidationError(f"Python compile error: {type(exc).__name__}: {exc}", name) from exc


def resource_name(resource: Any) -> Optional[str]:
    if isinstance(resource, dict):
        metadata = resource.get("metadata")
        if isinstance(metadata, dict) and isinstance(metadata.get("name"), str):
            return metadata["name"]
    return None
