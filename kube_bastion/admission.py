"""
Admission decisions.

``AdmissionController.review`` is the only entry point used by the HTTP
server. It always returns a well-formed AdmissionReview: internal failures are
turned into rejections (fail closed) unless the namespace is listed as fail
open, and a broken interpreter pool stops the process.
"""

from __future__ import annotations

import logging
import os
import time
from concurrent.futures import FIRST_EXCEPTION, Executor, Future, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from .constraint import Constraint
from .errors import InterpreterFaultError, ValidationError
from .evaluator import EvaluationOutcome, RuleEvaluator
from .matcher import matches
from .review import AdmissionRequest, build_response, request_uid
from .settings import BastionSettings
from .store import ConstraintStore, NamespaceIndex, Recorder

logger = logging.getLogger(__name__)


class DeadlineExceeded(Exception):
    """Evaluations of a request did not finish before the request deadline."""


class FaultHandler(Protocol):
    def __call__(self, error: InterpreterFaultError) -> None:
        ...


def abort_on_interpreter_fault(error: InterpreterFaultError) -> None:
    """Stop the process so that Kubernetes restarts it with fresh interpreters."""
    logger.critical(f"Interpreter pool is broken, aborting: {error}")
    logging.shutdown()
    os.abort()


@dataclass
class Decision:
    allowed: bool
    reason: Optional[str] = None
    warnings: list[str] = field(default_factory=list)


class AdmissionController:
    def __init__(
        self,
        store: ConstraintStore,
        evaluator: RuleEvaluator,
        executor: Executor,
        settings: BastionSettings,
        namespaces: Optional[NamespaceIndex] = None,
        recorder: Optional[Recorder] = None,
        on_fault: FaultHandler = abort_on_interpreter_fault,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.evaluator = evaluator
        self.executor = executor
        self.settings = settings
        self.namespaces = namespaces or NamespaceIndex()
        self.recorder = recorder
        self.on_fault = on_fault
        self.clock = clock

    def is_bypassed(self, request: AdmissionRequest) -> bool:
        if request.cluster_scoped:
            return self.settings.ignore_cluster_scoped
        return self.namespaces.is_ignored(request.namespace)

    def _evaluate_all(self, request: AdmissionRequest, constraints: list[Constraint], deadline: float) -> list[EvaluationOutcome]:
        timeout = min(self.settings.evaluation_timeout, max(deadline - self.clock(), 0))
        futures: list[Future] = [
            self.executor.submit(self.evaluator.evaluate_constraint, constraint, request.payload, timeout)
            for constraint in constraints
        ]
        done, pending = wait(futures, timeout=max(deadline - self.clock(), 0), return_when=FIRST_EXCEPTION)
        for future in done:
            error = future.exception()
            if error is not None:
                for other in pending:
                    other.cancel()
                raise error
        if pending:
            for future in pending:
                future.cancel()
            raise DeadlineExceeded(
                f"{len(pending)} of {len(constraints)} constraints did not finish before the deadline"
            )
        return [future.result() for future in futures]

    def decide(self, request: AdmissionRequest, deadline: Optional[float] = None) -> Decision:
        """
        Evaluate all matching constraints of one snapshot against a request.

        A rejection from an enforced constraint rejects the request; the
        reason of the first one in snapshot order is returned. Rejections of
        constraints with ``enforce: false`` and reasons attached to an accept
        are returned as warnings.
        """
        if deadline is None:
            deadline = self.clock() + self.settings.request_deadline

        if self.is_bypassed(request):
            logger.debug(f"Request {request.uid} for {request.describe()} bypasses evaluation")
            return Decision(allowed=True)

        if request.object is None:
            return Decision(allowed=True, reason="no object in request")

        snapshot = self.store.current_snapshot()
        matching = [constraint for constraint in snapshot if matches(request, constraint)]
        if not matching:
            return Decision(allowed=True)

        for constraint in matching:
            logger.info(f"Object {request.describe()} matches constraint {constraint.name}")

        outcomes = self._evaluate_all(request, matching, deadline)

        decision = Decision(allowed=True)
        for constraint, outcome in zip(matching, outcomes):
            if outcome.allowed:
                if outcome.reason:
                    decision.warnings.append(f"{constraint.name}: {outcome.reason}")
                continue
            self._record_rejection(constraint, request, outcome)
            if not constraint.enforce:
                decision.warnings.append(f"{constraint.name}: {outcome.reason}")
            elif decision.allowed:
                decision.allowed = False
                decision.reason = outcome.reason
        return decision

    def _record_rejection(self, constraint: Constraint, request: AdmissionRequest, outcome: EvaluationOutcome):
        if self.recorder is None:
            return
        self.recorder.record(
            constraint.object_reference(),
            "Rejected",
            f"{request.describe()}: {outcome.reason}",
            "Warning" if constraint.enforce else "Normal",
        )

    def _fail(self, uid: str, namespace: Optional[str], message: str) -> dict[str, Any]:
        if self.settings.is_fail_open(namespace):
            logger.warning(f"Admitting {uid} in fail-open namespace {namespace}: {message}")
            return build_response(uid, True, warnings=[message])
        return build_response(uid, False, message)

    def review(self, review: Any) -> dict[str, Any]:
        """Answer an AdmissionReview for a regular resource."""
        started = self.clock()
        try:
            request = AdmissionRequest.from_review(review)
        except ValueError as e:
            logger.warning(f"Malformed admission review: {e}")
            return build_response(request_uid(review), False, f"Malformed admission review: {e}")

        try:
            decision = self.decide(request, deadline=started + self.settings.request_deadline)
        except InterpreterFaultError as e:
            self.on_fault(e)
            return self._fail(request.uid, request.namespace, "Internal error: rule interpreter unavailable")
        except DeadlineExceeded as e:
            logger.warning(f"Request {request.uid} for {request.describe()} timed out: {e}")
            return self._fail(request.uid, request.namespace, f"Admission timed out: {e}")
        except Exception:
            logger.exception(f"Internal error while evaluating request {request.uid}")
            return self._fail(request.uid, request.namespace, "Internal error while evaluating constraints")

        logger.info(
            f"Request {request.uid} for {request.describe()} allowed={decision.allowed} "
            f"in {self.clock() - started:.3f}s"
        )
        return build_response(request.uid, decision.allowed, decision.reason, decision.warnings)

    def review_constraint(self, review: Any) -> dict[str, Any]:
        """Answer an AdmissionReview for a Constraint object by validating it."""
        try:
            request = AdmissionRequest.from_review(review)
        except ValueError as e:
            return build_response(request_uid(review), False, f"Malformed admission review: {e}")

        if request.object is None:
            return build_response(request.uid, True)
        try:
            Constraint.from_resource(request.object)
        except ValidationError as e:
            logger.info(f"Rejecting invalid constraint {request.name}: {e}")
            return build_response(request.uid, False, str(e))
        return build_response(request.uid, True)
