import threading
import time
from unittest.mock import Mock

import pytest

from kube_bastion.errors import EvaluationError, InterpreterFaultError
from kube_bastion.sandbox import InterpreterPool, coerce_result, run_rule

try:
    import resource
except ImportError:
    resource = None

BUSY_LOOP = "def validate(request):\n    while True:\n        pass\n"


@pytest.fixture
def single_pool():
    """Pool with a single worker, closed after the test"""
    pool = InterpreterPool(size=1, memory_limit_mb=0, startup_timeout=30.0)
    pool.start()
    yield pool
    pool.close()


@pytest.mark.parametrize(
    "result, expected",
    [
        (True, ("ok", True, None)),
        (False, ("ok", False, None)),
        ((False, "no"), ("ok", False, "no")),
        ([True, None], ("ok", True, None)),
    ],
)
def test_coerce_result_accepts_supported_shapes(result, expected):
    assert coerce_result(result) == expected


@pytest.mark.parametrize("result", [None, 1, "yes", (1, "x"), (True, 5), (True, "a", "b"), {"allowed": True}])
def test_coerce_result_rejects_other_values(result):
    """Test that anything but a bool or an (allowed, reason) pair is a result error"""
    status, kind, _ = coerce_result(result)

    assert (status, kind) == ("error", "result")


def test_run_rule_reports_missing_entrypoint():
    assert run_rule("x = 1\n", "validate", {}) == (
        "error",
        "compile",
        "Validation function not found in code",
    )


def test_run_rule_reports_syntax_error():
    status, kind, message = run_rule("def validate(:\n", "validate", {})

    assert (status, kind) == ("error", "compile")
    assert "SyntaxError" in message


def test_run_rule_reports_module_level_failure():
    status, kind, message = run_rule("raise RuntimeError('boom')\n", "validate", {})

    assert (status, kind) == ("error", "compile")
    assert "RuntimeError: boom" in message


def test_run_rule_reports_exception_in_script():
    """Test that the exception type and message reach the reason"""
    status, kind, message = run_rule("def validate(request):\n    return request['x']\n", "validate", {})

    assert (status, kind) == ("error", "runtime")
    assert message == "Validation function failed: KeyError: 'x'"


def test_pool_needs_a_worker():
    with pytest.raises(ValueError):
        InterpreterPool(size=0)


def test_execute_returns_verdict(interpreter_pool):
    source = "def validate(request):\n    return False, 'nope'\n"

    assert interpreter_pool.execute(source, "validate", {}, 5.0) == ("ok", False, "nope")


def test_script_exit_does_not_kill_worker(interpreter_pool):
    """Test that SystemExit inside a script is reported like any other exception"""
    source = "import sys\ndef validate(request):\n    sys.exit(1)\n"

    status, kind, message = interpreter_pool.execute(source, "validate", {}, 5.0)

    assert (status, kind) == ("error", "runtime")
    assert "SystemExit" in message
    assert interpreter_pool.execute("def validate(r):\n    return True\n", "validate", {}, 5.0)[1] is True


def test_unpicklable_result_is_reported(interpreter_pool):
    """Test that a reason the host cannot receive becomes a result error"""
    source = (
        "class Reason(str):\n"
        "    pass\n"
        "def validate(request):\n"
        "    return False, Reason('custom')\n"
    )

    status, kind, _ = interpreter_pool.execute(source, "validate", {}, 5.0)

    assert (status, kind) == ("error", "result")


def test_runaway_script_times_out(single_pool):
    """Test that a script exceeding its timeout is stopped and its worker replaced"""
    started = time.monotonic()

    with pytest.raises(EvaluationError) as exc_info:
        single_pool.execute(BUSY_LOOP, "validate", {}, 0.5)

    assert exc_info.value.kind == "timeout"
    assert time.monotonic() - started < 5
    assert single_pool.execute("def validate(r):\n    return True\n", "validate", {}, 30.0) == ("ok", True, None)


def test_timeout_does_not_block_concurrent_evaluation(interpreter_pool):
    """Test that a runaway script does not hold up a well-behaved one"""
    results = {}

    def _runaway():
        try:
            interpreter_pool.execute(BUSY_LOOP, "validate", {}, 3.0)
        except EvaluationError as e:
            results["runaway"] = e.kind

    thread = threading.Thread(target=_runaway)
    thread.start()
    time.sleep(0.2)
    started = time.monotonic()
    results["quick"] = interpreter_pool.execute("def validate(r):\n    return True\n", "validate", {}, 30.0)
    elapsed = time.monotonic() - started
    thread.join()

    assert results["quick"] == ("ok", True, None)
    assert elapsed < 2.5
    assert results["runaway"] == "timeout"


def test_crashed_worker_is_reported_and_replaced(single_pool):
    source = "import os\ndef validate(request):\n    os._exit(3)\n"

    with pytest.raises(EvaluationError) as exc_info:
        single_pool.execute(source, "validate", {}, 5.0)

    assert exc_info.value.kind == "crashed"
    assert single_pool.execute("def validate(r):\n    return True\n", "validate", {}, 30.0)[0] == "ok"


def test_checkout_waits_for_free_worker(single_pool):
    """Test that an exhausted pool times out instead of queueing forever"""
    def _occupy():
        try:
            single_pool.execute(BUSY_LOOP, "validate", {}, 1.5)
        except EvaluationError:
            pass

    thread = threading.Thread(target=_occupy)
    thread.start()
    time.sleep(0.3)

    with pytest.raises(EvaluationError) as exc_info:
        single_pool.execute("def validate(r):\n    return True\n", "validate", {}, 0.2)
    thread.join()

    assert exc_info.value.kind == "timeout"


def test_failed_replacement_faults_the_pool(single_pool):
    """Test that a pool unable to start workers reports an interpreter fault"""
    single_pool._spawn = Mock(side_effect=InterpreterFaultError("cannot start"))

    with pytest.raises(EvaluationError):
        single_pool.execute(BUSY_LOOP, "validate", {}, 0.3)

    with pytest.raises(InterpreterFaultError):
        single_pool.execute("def validate(r):\n    return True\n", "validate", {}, 5.0)


def test_worker_is_retired_after_max_evaluations():
    """Test that process-level changes left by a rule end with the worker"""
    pool = InterpreterPool(size=1, memory_limit_mb=0, startup_timeout=30.0, max_evaluations=2)
    pool.start()
    source = (
        "import builtins, os\n"
        "def validate(request):\n"
        "    builtins.leftover = getattr(builtins, 'leftover', 0) + 1\n"
        "    return True, f'{os.getpid()}:{builtins.leftover}'\n"
    )
    try:
        reasons = [pool.execute(source, "validate", {}, 30.0)[2] for _ in range(3)]
    finally:
        pool.close()

    first_pid, first_count = reasons[0].split(":")
    second_pid, second_count = reasons[1].split(":")
    third_pid, third_count = reasons[2].split(":")
    assert first_pid == second_pid != third_pid
    assert (first_count, second_count, third_count) == ("1", "2", "1")


def test_closed_pool_rejects_work():
    pool = InterpreterPool(size=1, memory_limit_mb=0, startup_timeout=30.0)
    pool.start()
    pool.close()

    with pytest.raises(EvaluationError) as exc_info:
        pool.execute("def validate(r):\n    return True\n", "validate", {}, 1.0)

    assert exc_info.value.kind == "crashed"
    assert pool.idle_count == 0


@pytest.mark.skipif(resource is None, reason="resource limits not available on this platform")
def test_memory_ceiling_stops_large_allocations():
    """Test that a script cannot allocate past the configured ceiling"""
    pool = InterpreterPool(size=1, memory_limit_mb=512, startup_timeout=30.0)
    pool.start()
    try:
        source = "def validate(request):\n    data = bytearray(4 * 1024 ** 3)\n    return True\n"
        status, kind, message = pool.execute(source, "validate", {}, 10.0)
    finally:
        pool.close()

    assert (status, kind) == ("error", "runtime")
    assert "MemoryError" in message
