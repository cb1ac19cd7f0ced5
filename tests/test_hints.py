from __future__ import annotations

from execengine.models.schemas import ExecutionStatus, Language
from execengine.services.classifier import OUTPUT_LIMIT_ERROR
from execengine.services.hints import NO_HINTS_NEEDED, generate_hint


def test_success_needs_no_hint() -> None:
    assert generate_hint(ExecutionStatus.SUCCESS, None, Language.PYTHON) == NO_HINTS_NEEDED


def test_status_hints() -> None:
    assert "infinite loops" in generate_hint(ExecutionStatus.TIMEOUT, "Code execution timed out", Language.JAVA)
    assert "memory" in generate_hint(ExecutionStatus.MEMORY_LIMIT_EXCEEDED, None, Language.CPP)
    assert "unsafe" in generate_hint(ExecutionStatus.SECURITY_VIOLATION, "Security violation: x", Language.PYTHON)


def test_compile_error_signatures() -> None:
    missing = "Main.java:3: error: cannot find symbol\n  symbol: variable x"
    assert "declared" in generate_hint(ExecutionStatus.COMPILATION_ERROR, missing, Language.JAVA)

    brace = "Main.java:5: error: reached end of file while parsing"
    assert "brace" in generate_hint(ExecutionStatus.COMPILATION_ERROR, brace, Language.JAVA)

    semicolon = "main.cpp:4:5: error: expected ';' before 'return'"
    assert "semicolons" in generate_hint(ExecutionStatus.COMPILATION_ERROR, semicolon, Language.CPP)


def test_java_only_signature_is_not_used_for_cpp() -> None:
    text = "main.cpp:1:1: error: 'class' got confused"
    hint = generate_hint(ExecutionStatus.COMPILATION_ERROR, text, Language.CPP)
    assert hint.startswith("Compilation error: ")


def test_runtime_error_signatures() -> None:
    assert "Division by zero" in generate_hint(
        ExecutionStatus.RUNTIME_ERROR, "ZeroDivisionError: division by zero", Language.PYTHON
    )
    assert "Null pointer" in generate_hint(
        ExecutionStatus.RUNTIME_ERROR, "java.lang.NullPointerException", Language.JAVA
    )
    assert "index" in generate_hint(
        ExecutionStatus.RUNTIME_ERROR, "java.lang.ArrayIndexOutOfBoundsException: 5", Language.JAVA
    ).lower()
    assert "Division by zero" in generate_hint(
        ExecutionStatus.RUNTIME_ERROR, "Process terminated by signal SIGFPE", Language.CPP
    )


def test_unknown_error_falls_back_to_excerpt() -> None:
    error = "x" * 300
    hint = generate_hint(ExecutionStatus.RUNTIME_ERROR, error, Language.PYTHON)
    assert hint == f"Runtime error: {'x' * 100}..."


def test_hints_are_deterministic() -> None:
    error = "TypeError: 'NoneType' object is not subscriptable"
    first = generate_hint(ExecutionStatus.RUNTIME_ERROR, error, Language.PYTHON)
    assert all(generate_hint(ExecutionStatus.RUNTIME_ERROR, error, Language.PYTHON) == first for _ in range(5))


def test_output_limit_hint() -> None:
    hint = generate_hint(ExecutionStatus.RUNTIME_ERROR, OUTPUT_LIMIT_ERROR, Language.JAVASCRIPT)
    assert "printed too much" in hint
