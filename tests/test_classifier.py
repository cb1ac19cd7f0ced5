from __future__ import annotations

import signal

import pytest

from execengine.models.schemas import ExecutionStatus, Language
from execengine.services.classifier import (
    OUTPUT_LIMIT_ERROR,
    PRECEDENCE,
    classify,
    describe_exit,
    pick_status,
    system_error,
)
from execengine.services.languages import PROFILES
from execengine.services.pipeline import PipelineOutcome
from execengine.services.sandbox import ProcessOutcome
from execengine.services.scanner import scan


def _step(**fields: object) -> ProcessOutcome:
    values: dict[str, object] = {
        "stdout": "",
        "stderr": "",
        "exit_code": 0,
        "timed_out": False,
        "duration_ms": 12,
    }
    values.update(fields)
    return ProcessOutcome(**values)


PYTHON = PROFILES[Language.PYTHON]
JAVA = PROFILES[Language.JAVA]
CPP = PROFILES[Language.CPP]


def test_precedence_order() -> None:
    assert PRECEDENCE[0] is ExecutionStatus.SECURITY_VIOLATION
    assert pick_status([ExecutionStatus.RUNTIME_ERROR, ExecutionStatus.TIMEOUT]) is ExecutionStatus.TIMEOUT
    assert (
        pick_status([ExecutionStatus.RUNTIME_ERROR, ExecutionStatus.MEMORY_LIMIT_EXCEEDED])
        is ExecutionStatus.MEMORY_LIMIT_EXCEEDED
    )
    assert pick_status([]) is ExecutionStatus.SUCCESS


def test_success_carries_exact_output() -> None:
    response = classify(PipelineOutcome(compile=None, run=_step(stdout="Hello World\n")), PYTHON)
    assert response.status is ExecutionStatus.SUCCESS
    assert response.success is True
    assert response.output == "Hello World\n"
    assert response.error is None
    assert response.language == "python"
    assert response.execution_time_ms == 12


def test_empty_output_is_still_success() -> None:
    response = classify(PipelineOutcome(compile=None, run=_step()), PYTHON)
    assert response.status is ExecutionStatus.SUCCESS
    assert response.output == ""


def test_compile_failure_returns_compiler_text() -> None:
    compiled = _step(exit_code=1, stderr="Main.java:3: error: ';' expected\n")
    response = classify(PipelineOutcome(compile=compiled, run=None), JAVA)
    assert response.status is ExecutionStatus.COMPILATION_ERROR
    assert response.success is False
    assert "expected" in response.compilation_error
    assert response.error is None
    assert response.output is None


def test_compile_timeout_is_timeout() -> None:
    compiled = _step(exit_code=None, timed_out=True)
    response = classify(PipelineOutcome(compile=compiled, run=None), CPP)
    assert response.status is ExecutionStatus.TIMEOUT
    assert response.error == "Compilation timed out"


def test_run_timeout_beats_everything_else() -> None:
    ran = _step(exit_code=None, timed_out=True, memory_exceeded=True, stderr="MemoryError")
    response = classify(PipelineOutcome(compile=None, run=ran), PYTHON)
    assert response.status is ExecutionStatus.TIMEOUT
    assert response.error == "Code execution timed out"


def test_memory_breach_is_memory_limit() -> None:
    ran = _step(exit_code=-signal.SIGKILL, memory_exceeded=True, peak_memory_mb=257.2)
    response = classify(PipelineOutcome(compile=None, run=ran), PYTHON)
    assert response.status is ExecutionStatus.MEMORY_LIMIT_EXCEEDED
    assert response.error == "Memory limit exceeded"
    assert response.memory_usage_mb == 258


def test_runtime_oom_marker_is_memory_limit() -> None:
    ran = _step(exit_code=1, stderr='Exception in thread "main" java.lang.OutOfMemoryError: Java heap space')
    response = classify(PipelineOutcome(compile=_step(), run=ran), JAVA)
    assert response.status is ExecutionStatus.MEMORY_LIMIT_EXCEEDED


def test_oom_marker_in_output_of_clean_exit_is_ignored() -> None:
    ran = _step(stdout="MemoryError is a builtin\n", stderr="MemoryError")
    response = classify(PipelineOutcome(compile=None, run=ran), PYTHON)
    assert response.status is ExecutionStatus.SUCCESS


def test_runtime_error_keeps_stderr() -> None:
    stderr = "Traceback (most recent call last):\nZeroDivisionError: division by zero\n"
    ran = _step(exit_code=1, stdout="partial\n", stderr=stderr)
    response = classify(PipelineOutcome(compile=None, run=ran), PYTHON)
    assert response.status is ExecutionStatus.RUNTIME_ERROR
    assert "ZeroDivisionError" in response.error
    assert response.output is None


def test_signal_death_is_described() -> None:
    ran = _step(exit_code=-signal.SIGFPE)
    response = classify(PipelineOutcome(compile=_step(), run=ran), CPP)
    assert response.status is ExecutionStatus.RUNTIME_ERROR
    assert "SIGFPE" in response.error
    assert "division by zero" in response.error


@pytest.mark.parametrize(
    "code, expected",
    [
        (0, "Process exited with code 0"),
        (3, "Process exited with code 3"),
        (None, "Process did not exit normally"),
    ],
)
def test_describe_exit(code, expected: str) -> None:
    assert describe_exit(code) == expected


def test_describe_exit_maps_shell_signal_codes() -> None:
    assert "SIGSEGV" in describe_exit(128 + signal.SIGSEGV)


def test_security_finding_short_circuits() -> None:
    finding = scan("import os", Language.PYTHON)
    response = classify(PipelineOutcome(compile=None, run=_step(stdout="ok")), PYTHON, finding)
    assert response.status is ExecutionStatus.SECURITY_VIOLATION
    assert response.error.startswith("Security violation: ")
    assert response.execution_time_ms == 0
    assert response.memory_usage_mb == 0


def test_system_error_message() -> None:
    response = system_error("Docker is not available", Language.CPP)
    assert response.status is ExecutionStatus.SYSTEM_ERROR
    assert response.error == "System error: Docker is not available"
    assert response.success is False


def test_memory_error_mentioned_in_message_is_runtime_error() -> None:
    stderr = (
        "Traceback (most recent call last):\n"
        '  File "main.py", line 1, in <module>\n'
        "ValueError: MemoryError in my text\n"
    )
    ran = _step(exit_code=1, stderr=stderr)
    response = classify(PipelineOutcome(compile=None, run=ran), PYTHON)
    assert response.status is ExecutionStatus.RUNTIME_ERROR
    assert "ValueError" in response.error


def test_memory_error_raised_by_interpreter_is_memory_limit() -> None:
    stderr = (
        "Traceback (most recent call last):\n"
        '  File "main.py", line 1, in <module>\n'
        "MemoryError\n"
    )
    ran = _step(exit_code=1, stderr=stderr)
    response = classify(PipelineOutcome(compile=None, run=ran), PYTHON)
    assert response.status is ExecutionStatus.MEMORY_LIMIT_EXCEEDED


def test_java_oom_text_in_exception_message_is_runtime_error() -> None:
    stderr = 'Exception in thread "main" java.lang.IllegalStateException: java.lang.OutOfMemoryError expected\n'
    ran = _step(exit_code=1, stderr=stderr)
    response = classify(PipelineOutcome(compile=_step(), run=ran), JAVA)
    assert response.status is ExecutionStatus.RUNTIME_ERROR


def test_cpp_bad_alloc_termination_is_memory_limit() -> None:
    stderr = "terminate called after throwing an instance of 'std::bad_alloc'\n  what():  std::bad_alloc\n"
    ran = _step(exit_code=-signal.SIGABRT, stderr=stderr)
    response = classify(PipelineOutcome(compile=_step(), run=ran), CPP)
    assert response.status is ExecutionStatus.MEMORY_LIMIT_EXCEEDED


def test_truncated_output_is_runtime_error() -> None:
    ran = _step(exit_code=-signal.SIGKILL, stdout="x" * 100 + "\n...[truncated]", output_truncated=True)
    response = classify(PipelineOutcome(compile=None, run=ran), PYTHON)
    assert response.status is ExecutionStatus.RUNTIME_ERROR
    assert response.error == OUTPUT_LIMIT_ERROR
    assert response.output is None


def test_timeout_outranks_truncated_output() -> None:
    ran = _step(exit_code=None, timed_out=True, output_truncated=True)
    response = classify(PipelineOutcome(compile=None, run=ran), PYTHON)
    assert response.status is ExecutionStatus.TIMEOUT


def test_memory_usage_reports_the_run_step() -> None:
    compiled = _step(peak_memory_mb=410.3)
    ran = _step(stdout="ok\n", peak_memory_mb=3.2)
    response = classify(PipelineOutcome(compile=compiled, run=ran), CPP)
    assert response.memory_usage_mb == 4


def test_memory_usage_falls_back_to_the_compile_step() -> None:
    compiled = _step(exit_code=1, stderr="main.cpp:1: error", peak_memory_mb=120.5)
    response = classify(PipelineOutcome(compile=compiled, run=None), CPP)
    assert response.memory_usage_mb == 121
