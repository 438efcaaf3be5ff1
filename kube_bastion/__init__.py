"""
Kubernetes Admission Policy Package

This package provides a validating admission webhook that enforces Constraint
custom resources, each pairing a resource target with a Python rule script.
"""

from .constraint import Constraint, MatchRule
from .errors import (
    BastionError,
    CertificateError,
    EvaluationError,
    InterpreterFaultError,
    RegistrationError,
    ValidationError,
    WatchError,
)

__all__ = [
    'BastionError',
    'CertificateError',
    'Constraint',
    'EvaluationError',
    'InterpreterFaultError',
    'MatchRule',
    'RegistrationError',
    'ValidationError',
    'WatchError',
]
