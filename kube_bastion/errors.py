"""Exception types raised by kube-bastion components."""

from __future__ import annotations


class BastionError(Exception):
    """Base class for all kube-bastion errors."""


class ValidationError(BastionError):
    """A constraint resource is malformed and was not admitted to the store."""

    def __init__(self, message: str, constraint_name: str | None = None):
        super().__init__(message)
        self.constraint_name = constraint_name


class WatchError(BastionError):
    """Listing or watching a resource type failed."""


class EvaluationError(BastionError):
    """A rule script could not produce a verdict.

    ``kind`` is one of ``compile``, ``runtime``, ``timeout``, ``result`` or
    ``crashed``.
    """

    KINDS = ("compile", "runtime", "timeout", "result", "crashed")

    def __init__(self, kind: str, message: str):
        if kind not in self.KINDS:
            raise ValueError(f"unknown evaluation error kind: {kind}")
        super().__init__(message)
        self.kind = kind
        self.message = message


class InterpreterFaultError(BastionError):
    """The interpreter pool itself is broken; the process must not keep serving."""


class CertificateError(BastionError):
    """TLS material could not be generated, loaded or persisted."""


class RegistrationError(BastionError):
    """The webhook configuration could not be created, updated or removed."""
