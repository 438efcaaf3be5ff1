"""
In-memory caches of cluster state read on the admission hot path.

Both caches follow the same discipline: one writer at a time rebuilds an
immutable value and swaps the reference, readers just read the reference and
never take a lock.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Optional, Protocol

from .constraint import Constraint, resource_name
from .errors import ValidationError

logger = logging.getLogger(__name__)


class Recorder(Protocol):
    def record(self, involved_object: dict[str, Any], reason: str, message: str, event_type: str = ...) -> None:
        ...


@dataclass(frozen=True)
class Snapshot:
    """Point-in-time view of all valid constraints, ordered by name."""

    version: int
    constraints: tuple[Constraint, ...] = ()

    def __iter__(self) -> Iterator[Constraint]:
        return iter(self.constraints)

    def __len__(self) -> int:
        return len(self.constraints)

    def get(self, name: str) -> Optional[Constraint]:
        for constraint in self.constraints:
            if constraint.name == name:
                return constraint
        return None


class ConstraintStore:
    def __init__(self, recorder: Optional[Recorder] = None):
        self.recorder = recorder
        self._write_lock = threading.Lock()
        self._constraints: dict[str, Constraint] = {}
        self._snapshot = Snapshot(version=0)

    def current_snapshot(self) -> Snapshot:
        return self._snapshot

    def _publish(self):
        # caller holds the write lock
        ordered = tuple(self._constraints[name] for name in sorted(self._constraints))
        self._snapshot = Snapshot(version=self._snapshot.version + 1, constraints=ordered)

    def _parse(self, resource: dict[str, Any]) -> Optional[Constraint]:
        try:
            return Constraint.from_resource(resource)
        except ValidationError as e:
            name = e.constraint_name or resource_name(resource) or "<unnamed>"
            logger.warning(f"Constraint {name} rejected: {e}")
            if self.recorder is not None and e.constraint_name:
                metadata = resource.get("metadata", {})
                self.recorder.record(
                    {
                        "apiVersion": resource.get("apiVersion"),
                        "kind": resource.get("kind"),
                        "name": name,
                        "uid": metadata.get("uid"),
                        "resourceVersion": metadata.get("resourceVersion"),
                    },
                    "InvalidConstraint",
                    str(e),
                    "Warning",
                )
            return None

    def upsert(self, resource: dict[str, Any]) -> Optional[Constraint]:
        """Add or replace a constraint; invalid constraints are reported and dropped."""
        constraint = self._parse(resource)
        name = constraint.name if constraint else resource_name(resource)
        with self._write_lock:
            if constraint is not None:
                self._constraints[constraint.name] = constraint
                logger.info(f"Constraint {constraint.name} loaded")
            elif name is None or self._constraints.pop(name, None) is None:
                return None
            else:
                logger.info(f"Constraint {name} removed after failing validation")
            self._publish()
        return constraint

    def remove(self, resource: dict[str, Any] | str):
        name = resource if isinstance(resource, str) else resource_name(resource)
        with self._write_lock:
            if name is None or self._constraints.pop(name, None) is None:
                return
            logger.info(f"Constraint {name} removed")
            self._publish()

    def replace_all(self, resources: Iterable[dict[str, Any]]):
        """Replace the whole content with the result of a full list."""
        parsed = [self._parse(resource) for resource in resources]
        with self._write_lock:
            self._constraints = {c.name: c for c in parsed if c is not None}
            self._publish()
            logger.info(f"Constraint store resynced with {len(self._constraints)} constraints")

    def handle_event(self, event_type: str, resource: dict[str, Any]):
        if event_type in ("ADDED", "MODIFIED"):
            self.upsert(resource)
        elif event_type == "DELETED":
            self.remove(resource)
        else:
            logger.debug(f"Ignoring constraint event {event_type}")


class NamespaceIndex:
    """Names of namespaces carrying the ignore label."""

    def __init__(self):
        self._write_lock = threading.Lock()
        self._ignored: frozenset[str] = frozenset()

    def is_ignored(self, namespace: Optional[str]) -> bool:
        return namespace is not None and namespace in self._ignored

    @property
    def ignored(self) -> frozenset[str]:
        return self._ignored

    def replace_all(self, resources: Iterable[dict[str, Any]]):
        names = frozenset(n for n in (resource_name(r) for r in resources) if n)
        with self._write_lock:
            self._ignored = names

    def handle_event(self, event_type: str, resource: dict[str, Any]):
        name = resource_name(resource)
        if name is None:
            return
        with self._write_lock:
            if event_type in ("ADDED", "MODIFIED"):
                self._ignored = self._ignored | {name}
            elif event_type == "DELETED":
                self._ignored = self._ignored - {name}
