"""
Isolated interpreters for running rule scripts.

Each worker is a separate Python process started with the ``spawn`` context,
so it has its own interpreter and its own global interpreter lock. A worker is
checked out by exactly one evaluation at a time. A script that runs past its
deadline is stopped by killing its worker, which is then replaced in the
background; nothing a script does can block the host's own interpreter.

Messages on the pipe (all picklable builtins):

    host -> worker   ("eval", source, entrypoint, payload) | ("stop",)
    worker -> host   ("ready", pid)
                     ("ok", allowed, reason)
                     ("error", kind, message)
"""

from __future__ import annotations

import builtins
import logging
import multiprocessing
import os
import pickle
import signal
import threading
import time
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from .constraint import RULE_FILENAME
from .errors import EvaluationError, InterpreterFaultError

logger = logging.getLogger(__name__)


TEARDOWN_TIMEOUT = 2.0


def _apply_memory_limit(limit_bytes: int):
    if not limit_bytes:
        return
    try:
        import resource
    except ImportError:
        # platforms without rlimits run unbounded
        return
    resource.setrlimit(resource.RLIMIT_AS, (limit_bytes, limit_bytes))


def coerce_result(result: Any) -> tuple:
    """Turn whatever the entry point returned into a protocol message."""
    if isinstance(result, bool):
        return ("ok", result, None)
    if isinstance(result, (tuple, list)) and len(result) == 2:
        allowed, reason = result
        if not isinstance(allowed, bool):
            return ("error", "result", f"Validation function returned non-boolean verdict {type(allowed).__name__}")
        if reason is not None and not isinstance(reason, str):
            return ("error", "result", f"Validation function returned non-string reason {type(reason).__name__}")
        return ("ok", allowed, reason)
    return ("error", "result", "Validation function did not return expected types")


def run_rule(source: str, entrypoint: str, payload: Any) -> tuple:
    """Compile and run one rule. Executed inside the worker process."""
    try:
        code = compile(source, RULE_FILENAME, "exec")
    except (SyntaxError, ValueError, RecursionError, MemoryError) as exc:
        return ("error", "compile", f"Validation function could not be compiled: {type(exc).__name__}: {exc}")

    namespace: dict[str, Any] = {"__name__": "rule", "__builtins__": builtins}
    try:
        exec(code, namespace)
    except (Exception, SystemExit) as exc:
        return ("error", "compile", f"Rule module failed to load: {type(exc).__name__}: {exc}")

    function = namespace.get(entrypoint)
    if not callable(function):
        return ("error", "compile", "Validation function not found in code")

    try:
        result = function(payload)
    except (Exception, SystemExit) as exc:
        return ("error", "runtime", f"Validation function failed: {type(exc).__name__}: {exc}")

    try:
        return coerce_result(result)
    except (Exception, SystemExit) as exc:
        # a hostile sequence type can still raise while being unpacked
        return ("error", "result", f"Validation function returned an unusable value: {type(exc).__name__}: {exc}")


def worker_main(conn, memory_limit: int):
    """Entry point of a worker process."""
    # shutdown is driven by the host, not by terminal signals
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    _apply_memory_limit(memory_limit)
    conn.send(("ready", os.getpid()))
    while True:
        try:
            message = conn.recv()
        except (EOFError, OSError):
            return
        if not isinstance(message, tuple) or not message or message[0] == "stop":
            return
        _, source, entrypoint, payload = message
        reply = run_rule(source, entrypoint, payload)
        try:
            conn.send(reply)
        except (pickle.PicklingError, TypeError, AttributeError) as exc:
            conn.send(("error", "result", f"Validation function returned an unusable value: {type(exc).__name__}"))


class InterpreterWorker:
    def __init__(self, context, memory_limit: int, startup_timeout: float):
        self.conn, child_conn = context.Pipe()
        self.process = context.Process(
            target=worker_main,
            args=(child_conn, memory_limit),
            name="bastion-interpreter",
            daemon=True,
        )
        try:
            self.process.start()
        except OSError as e:
            raise InterpreterFaultError(f"Could not start interpreter worker: {e}") from e
        finally:
            child_conn.close()

        if not self.conn.poll(startup_timeout):
            self.kill()
            raise InterpreterFaultError(f"Interpreter worker did not start within {startup_timeout}s")
        try:
            message = self.conn.recv()
        except (EOFError, OSError) as e:
            self.kill()
            raise InterpreterFaultError("Interpreter worker exited during start-up") from e
        if not (isinstance(message, tuple) and message[0] == "ready"):
            self.kill()
            raise InterpreterFaultError(f"Interpreter worker sent unexpected handshake {message!r}")
        self.pid = message[1]
        self.evaluations = 0

    @property
    def alive(self) -> bool:
        return self.process.is_alive()

    def run(self, source: str, entrypoint: str, payload: Any, timeout: float) -> tuple:
        """Run a rule; raises EvaluationError on timeout or worker death."""
        self.evaluations += 1
        try:
            self.conn.send(("eval", source, entrypoint, payload))
        except (OSError, ValueError) as e:
            raise EvaluationError("crashed", f"Interpreter worker is gone: {e}") from e

        if not self.conn.poll(max(timeout, 0)):
            raise EvaluationError("timeout", f"Validation function did not finish within {timeout:.2f}s")
        try:
            message = self.conn.recv()
        except (EOFError, OSError) as e:
            raise EvaluationError("crashed", f"Interpreter worker exited with code {self.process.exitcode}") from e

        if not isinstance(message, tuple) or len(message) != 3 or message[0] not in ("ok", "error"):
            raise InterpreterFaultError(f"Interpreter worker sent malformed reply {message!r}")
        return message

    def stop(self):
        try:
            self.conn.send(("stop",))
        except (OSError, ValueError):
            pass
        self.process.join(TEARDOWN_TIMEOUT)
        if self.process.is_alive():
            self.kill()
        else:
            self.conn.close()

    def kill(self):
        self.process.kill()
        self.process.join(TEARDOWN_TIMEOUT)
        self.conn.close()


class InterpreterPool:
    """
    Fixed number of interpreter workers handed out one evaluation at a time.

    Workers that time out or crash are killed and replaced from a background
    thread, so the next checkout does not pay the start-up cost.

    Rules share a worker's ``sys.modules`` and builtins, so a rule can leave
    process-level changes behind for later rules on the same worker. Workers
    are therefore retired after ``max_evaluations`` runs (0 keeps them
    forever), which bounds how long such changes survive.
    """

    def __init__(
        self,
        size: int,
        memory_limit_mb: int = 512,
        startup_timeout: float = 10.0,
        start_method: str = "spawn",
        max_evaluations: int = 0,
    ):
        if size < 1:
            raise ValueError("interpreter pool needs at least one worker")
        self.size = size
        self.memory_limit = memory_limit_mb * 1024 * 1024
        self.startup_timeout = startup_timeout
        self.max_evaluations = max_evaluations
        self._context = multiprocessing.get_context(start_method)
        self._condition = threading.Condition()
        self._idle: list[InterpreterWorker] = []
        self._live = 0
        self._closed = False
        self._fault: Optional[InterpreterFaultError] = None

    def _spawn(self) -> InterpreterWorker:
        return InterpreterWorker(self._context, self.memory_limit, self.startup_timeout)

    def start(self):
        """Start all workers up front; raises InterpreterFaultError if one fails."""
        workers = [self._spawn() for _ in range(self.size - self._live)]
        with self._condition:
            self._idle.extend(workers)
            self._live += len(workers)
            self._condition.notify_all()
        logger.info(f"Started {len(workers)} interpreter workers")

    def close(self):
        with self._condition:
            self._closed = True
            idle, self._idle = self._idle, []
            self._condition.notify_all()
        for worker in idle:
            worker.stop()

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    def _acquire(self, timeout: float) -> InterpreterWorker:
        deadline = time.monotonic() + timeout
        with self._condition:
            while self._live >= self.size or self._idle:
                if self._fault is not None:
                    raise self._fault
                if self._closed:
                    raise EvaluationError("crashed", "Interpreter pool is closed")
                if self._idle:
                    return self._idle.pop()
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise EvaluationError("timeout", "No interpreter became available before the deadline")
                self._condition.wait(remaining)
            if self._closed:
                raise EvaluationError("crashed", "Interpreter pool is closed")
            self._live += 1

        try:
            return self._spawn()
        except InterpreterFaultError:
            with self._condition:
                self._live -= 1
                self._condition.notify()
            raise

    def _release(self, worker: InterpreterWorker):
        with self._condition:
            if not self._closed:
                self._idle.append(worker)
                self._condition.notify()
                return
        worker.stop()

    def _discard(self, worker: InterpreterWorker):
        worker.kill()
        with self._condition:
            self._live -= 1
            closed = self._closed
        if not closed:
            threading.Thread(target=self._replenish, name="interpreter-replenish", daemon=True).start()

    def _retire(self, worker: InterpreterWorker):
        with self._condition:
            self._live -= 1
            self._condition.notify()
        threading.Thread(target=self._recycle, args=(worker,), name="interpreter-recycle", daemon=True).start()

    def _recycle(self, worker: InterpreterWorker):
        logger.debug(f"Retiring interpreter worker {worker.pid} after {worker.evaluations} evaluations")
        worker.stop()
        self._replenish()

    def _replenish(self):
        with self._condition:
            if self._closed or self._live >= self.size:
                return
            self._live += 1
        try:
            worker = self._spawn()
        except InterpreterFaultError as e:
            logger.critical(f"Could not replace interpreter worker: {e}")
            with self._condition:
                self._live -= 1
                self._fault = e
                self._condition.notify_all()
            return
        self._release(worker)

    @contextmanager
    def checkout(self, timeout: float) -> Iterator[InterpreterWorker]:
        worker = self._acquire(timeout)
        healthy = False
        try:
            yield worker
            healthy = worker.alive
        finally:
            if not healthy:
                self._discard(worker)
            elif self.max_evaluations and worker.evaluations >= self.max_evaluations:
                self._retire(worker)
            else:
                self._release(worker)

    def execute(self, source: str, entrypoint: str, payload: Any, timeout: float) -> tuple:
        """Run a rule on a free worker within ``timeout`` seconds, checkout included."""
        deadline = time.monotonic() + timeout
        with self.checkout(timeout) as worker:
            return worker.run(source, entrypoint, payload, deadline - time.monotonic())
