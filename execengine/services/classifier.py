"""Turn raw sandbox signals into exactly one ExecutionStatus and response body."""
from __future__ import annotations

import signal
from typing import Iterable

from execengine.models.schemas import ExecuteResponse, ExecutionStatus, Language
from execengine.services.languages import LanguageProfile
from execengine.services.pipeline import PipelineOutcome
from execengine.services.scanner import SecurityFinding

# Highest first.
PRECEDENCE: tuple[ExecutionStatus, ...] = (
    ExecutionStatus.SECURITY_VIOLATION,
    ExecutionStatus.TIMEOUT,
    ExecutionStatus.MEMORY_LIMIT_EXCEEDED,
    ExecutionStatus.COMPILATION_ERROR,
    ExecutionStatus.RUNTIME_ERROR,
    ExecutionStatus.SUCCESS,
)

_SIGNAL_DESCRIPTIONS = {
    signal.SIGFPE: "arithmetic error (for example integer division by zero)",
    signal.SIGSEGV: "segmentation fault (invalid memory access)",
    signal.SIGBUS: "bus error (misaligned or invalid memory access)",
    signal.SIGABRT: "aborted",
    signal.SIGILL: "illegal instruction",
    signal.SIGKILL: "killed",
}

OUTPUT_LIMIT_ERROR = "Output limit exceeded: the program was stopped after writing too much output"


def pick_status(candidates: Iterable[ExecutionStatus]) -> ExecutionStatus:
    found = set(candidates)
    for status in PRECEDENCE:
        if status in found:
            return status
    return ExecutionStatus.SUCCESS


def describe_exit(exit_code: int | None) -> str:
    if exit_code is None:
        return "Process did not exit normally"
    if exit_code < 0:
        try:
            sig = signal.Signals(-exit_code)
        except ValueError:
            return f"Process terminated by signal {-exit_code}"
        detail = _SIGNAL_DESCRIPTIONS.get(sig)
        if detail:
            return f"Process terminated by signal {sig.name}: {detail}"
        return f"Process terminated by signal {sig.name}"
    if exit_code > 128 and exit_code - 128 in _SIGNAL_DESCRIPTIONS:
        # shells and container runtimes report signal deaths as 128 + signo
        return describe_exit(-(exit_code - 128))
    return f"Process exited with code {exit_code}"


def _runtime_error_text(stdout: str, stderr: str, exit_code: int | None) -> str:
    exit_text = describe_exit(exit_code)
    body = stderr.strip("\n") or stdout.strip("\n")
    if not body:
        return exit_text
    if exit_code is not None and (exit_code < 0 or exit_code > 128):
        return f"{body}\n{exit_text}"
    return body


def _base(language: Language | None, status: ExecutionStatus, **fields: object) -> ExecuteResponse:
    return ExecuteResponse(
        success=status is ExecutionStatus.SUCCESS,
        status=status,
        language=language.slug if language is not None else None,
        **fields,
    )


def security_violation(finding: SecurityFinding, language: Language) -> ExecuteResponse:
    return _base(
        language,
        ExecutionStatus.SECURITY_VIOLATION,
        error=f"Security violation: {finding.rule} ({finding.matched})",
        execution_time_ms=0,
        memory_usage_mb=0,
    )


def system_error(message: str, language: Language | None) -> ExecuteResponse:
    return _base(language, ExecutionStatus.SYSTEM_ERROR, error=f"System error: {message}")


def classify(
    outcome: PipelineOutcome,
    profile: LanguageProfile,
    finding: SecurityFinding | None = None,
) -> ExecuteResponse:
    """Pick the final status by strict precedence and fill the matching body."""
    if finding is not None:
        return security_violation(finding, profile.language)

    step = outcome.last_step
    candidates: set[ExecutionStatus] = set()
    if step.timed_out:
        candidates.add(ExecutionStatus.TIMEOUT)
    failed_exit = step.exit_code not in (0, None)
    if step.memory_exceeded or (failed_exit and profile.is_out_of_memory(step.stderr)):
        candidates.add(ExecutionStatus.MEMORY_LIMIT_EXCEEDED)
    if outcome.compile_failed:
        candidates.add(ExecutionStatus.COMPILATION_ERROR)
    elif failed_exit or step.output_truncated:
        candidates.add(ExecutionStatus.RUNTIME_ERROR)
    status = pick_status(candidates)

    timing = {
        "execution_time_ms": outcome.duration_ms,
        "memory_usage_mb": outcome.peak_memory_mb,
    }
    if status is ExecutionStatus.TIMEOUT:
        what = "Compilation" if outcome.compile_failed else "Code execution"
        return _base(profile.language, status, error=f"{what} timed out", **timing)
    if status is ExecutionStatus.MEMORY_LIMIT_EXCEEDED:
        return _base(profile.language, status, error="Memory limit exceeded", **timing)
    if status is ExecutionStatus.COMPILATION_ERROR:
        text = step.stderr or step.stdout or describe_exit(step.exit_code)
        return _base(profile.language, status, compilation_error=text, **timing)
    if status is ExecutionStatus.RUNTIME_ERROR and step.output_truncated:
        return _base(profile.language, status, error=OUTPUT_LIMIT_ERROR, **timing)
    if status is ExecutionStatus.RUNTIME_ERROR:
        text = _runtime_error_text(step.stdout, step.stderr, step.exit_code)
        return _base(profile.language, status, error=text, **timing)
    return _base(profile.language, status, output=step.stdout, **timing)
