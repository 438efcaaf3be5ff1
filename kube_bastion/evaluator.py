"""Rule evaluation on top of the interpreter pool."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from .constraint import Constraint
from .errors import EvaluationError
from .sandbox import InterpreterPool

logger = logging.getLogger(__name__)

ENTRYPOINT = "validate"


@dataclass(frozen=True)
class EvaluationOutcome:
    allowed: bool
    reason: Optional[str] = None


class RuleEvaluator:
    def __init__(self, pool: InterpreterPool, timeout: float = 2.0, entrypoint: str = ENTRYPOINT):
        self.pool = pool
        self.timeout = timeout
        self.entrypoint = entrypoint

    def evaluate(self, script_source: str, request: dict[str, Any], timeout: Optional[float] = None) -> EvaluationOutcome:
        """
        Run ``validate(request)`` from ``script_source`` in an isolated interpreter.

        The request is handed to the script as plain dicts, lists and scalars,
        exactly as decoded from the admission review. The script may return
        ``True``/``False`` or an ``(allowed, reason)`` pair.

        Raises:
            EvaluationError: compile error, exception in the script, timeout,
                unexpected return value or a crashed worker.
            InterpreterFaultError: the pool can no longer provide interpreters.
        """
        status, first, second = self.pool.execute(
            script_source,
            self.entrypoint,
            request,
            self.timeout if timeout is None else timeout,
        )
        if status == "error":
            raise EvaluationError(first, second)
        return EvaluationOutcome(allowed=first, reason=second)

    def evaluate_constraint(
        self, constraint: Constraint, request: dict[str, Any], timeout: Optional[float] = None
    ) -> EvaluationOutcome:
        """Evaluate a constraint; evaluation errors become a rejection with the error as reason."""
        try:
            outcome = self.evaluate(constraint.rule, request, timeout)
        except EvaluationError as e:
            logger.warning(f"Constraint {constraint.name} could not be evaluated ({e.kind}): {e.message}")
            return EvaluationOutcome(allowed=False, reason=e.message)
        logger.info(f"Constraint {constraint.name} evaluates to {outcome.allowed}")
        if not outcome.allowed and outcome.reason is None:
            return EvaluationOutcome(allowed=False, reason=f"Rejected by constraint {constraint.name}")
        return outcome
