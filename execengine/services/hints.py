from __future__ import annotations

from execengine.models.schemas import ExecutionStatus, Language

NO_HINTS_NEEDED = "Code executed successfully! No hints needed."

_STATUS_HINTS = {
    ExecutionStatus.TIMEOUT: (
        "Your code is taking too long to execute. Check for infinite loops or optimize your algorithm."
    ),
    ExecutionStatus.MEMORY_LIMIT_EXCEEDED: (
        "Your code is using too much memory. Consider using more efficient data structures."
    ),
    ExecutionStatus.SECURITY_VIOLATION: (
        "Your code contains potentially unsafe operations. Stick to basic programming constructs for learning."
    ),
    ExecutionStatus.SYSTEM_ERROR: (
        "The code runner had a problem that is not caused by your code. Please try again in a moment."
    ),
}

# (needle, hint, languages or None for all); first match wins, so more
# specific signatures come before generic ones.
_COMPILE_SIGNATURES: tuple[tuple[str, str, frozenset[Language] | None], ...] = (
    (
        "cannot find symbol",
        "Variable or method not found. Check spelling and make sure you've declared all variables.",
        None,
    ),
    (
        "was not declared in this scope",
        "Variable or function not found. Check spelling and make sure everything is declared before use.",
        None,
    ),
    (
        "reached end of file while parsing",
        "Your code ends too early. Check that every opening brace '{' has a matching closing brace '}'.",
        None,
    ),
    (
        "should be declared in a file named",
        "Java class issues. Make sure your class name matches the filename and is properly structured.",
        frozenset({Language.JAVA}),
    ),
    (
        "incompatible types",
        "Type mismatch. Check that the value you assign or return has the type the variable or method expects.",
        None,
    ),
    (
        "expected",
        "Syntax error detected. Check for missing semicolons, brackets, or parentheses.",
        None,
    ),
    (
        "class",
        "Java class issues. Make sure your class name matches the filename and is properly structured.",
        frozenset({Language.JAVA}),
    ),
)

_RUNTIME_SIGNATURES: tuple[tuple[str, str, frozenset[Language] | None], ...] = (
    (
        "nullpointerexception",
        "Null pointer error. Make sure you initialize your variables before using them.",
        None,
    ),
    (
        "cannot read properties of undefined",
        "You are using a value that is undefined or null. Make sure you initialize your variables before using them.",
        None,
    ),
    (
        "cannot read properties of null",
        "You are using a value that is undefined or null. Make sure you initialize your variables before using them.",
        None,
    ),
    (
        "nonetype",
        "You are using a value that is None. Make sure your variables and function results are set before use.",
        None,
    ),
    (
        "arrayindexoutofbounds",
        "Array index error. Check that your array indices are within valid bounds.",
        None,
    ),
    (
        "stringindexoutofbounds",
        "String index error. Check that your indices are between 0 and the string length minus one.",
        None,
    ),
    (
        "indexerror",
        "Index error. Check that your list indices are within valid bounds.",
        None,
    ),
    (
        "rangeerror",
        "Range error. Check array sizes, indices and recursion depth.",
        None,
    ),
    (
        "arithmeticexception",
        "Division by zero error. Make sure you're not dividing by zero in your calculations.",
        None,
    ),
    (
        "dividebyzero",
        "Division by zero error. Make sure you're not dividing by zero in your calculations.",
        None,
    ),
    (
        "division by zero",
        "Division by zero error. Make sure you're not dividing by zero in your calculations.",
        None,
    ),
    (
        "/ by zero",
        "Division by zero error. Make sure you're not dividing by zero in your calculations.",
        None,
    ),
    (
        "sigfpe",
        "Division by zero error. Make sure you're not dividing by zero in your calculations.",
        None,
    ),
    (
        "output limit exceeded",
        "Your program printed too much. Check for loops that print on every iteration or never stop.",
        None,
    ),
    (
        "stackoverflowerror",
        "Stack overflow. Check that your recursion has a base case that is always reached.",
        None,
    ),
    (
        "recursionerror",
        "Recursion too deep. Check that your recursion has a base case that is always reached.",
        None,
    ),
    (
        "maximum call stack size exceeded",
        "Recursion too deep. Check that your recursion has a base case that is always reached.",
        None,
    ),
    (
        "sigsegv",
        "Segmentation fault. Check array bounds, pointer use and uninitialized variables.",
        None,
    ),
    (
        "nameerror",
        "Name not defined. Check spelling and make sure you've assigned the variable before using it.",
        None,
    ),
    (
        "is not defined",
        "Name not defined. Check spelling and make sure you've declared the variable before using it.",
        None,
    ),
    (
        "indentationerror",
        "Indentation error. Make sure blocks are indented consistently with spaces.",
        frozenset({Language.PYTHON}),
    ),
    (
        "syntaxerror",
        "Syntax error detected. Check for missing colons, brackets, quotes or parentheses.",
        None,
    ),
    (
        "numberformatexception",
        "Number format error. Check that the input you convert to a number really is a number.",
        None,
    ),
    (
        "valueerror",
        "Value error. Check that the input you convert has the format you expect.",
        None,
    ),
    (
        "nosuchelementexception",
        "Your program tried to read more input than was provided. Check the stdin you supplied.",
        None,
    ),
    (
        "eoferror",
        "Your program tried to read more input than was provided. Check the stdin you supplied.",
        None,
    ),
)


def _match(
    text: str,
    language: Language | None,
    signatures: tuple[tuple[str, str, frozenset[Language] | None], ...],
) -> str | None:
    lowered = text.lower()
    for needle, hint, languages in signatures:
        if languages is not None and language not in languages:
            continue
        if needle in lowered:
            return hint
    return None


def _excerpt(prefix: str, error: str) -> str:
    return f"{prefix}: {error[:100]}..."


def generate_hint(status: ExecutionStatus, error: str | None, language: Language | None) -> str:
    """Deterministic guidance for a classified result. No external calls."""
    if status is ExecutionStatus.SUCCESS:
        return NO_HINTS_NEEDED
    if status is ExecutionStatus.COMPILATION_ERROR:
        if not error:
            return "Check your code syntax."
        return _match(error, language, _COMPILE_SIGNATURES) or _excerpt("Compilation error", error)
    if status is ExecutionStatus.RUNTIME_ERROR:
        if not error:
            return "Runtime error occurred. Check your program logic."
        # Python reports syntax problems at run time.
        return _match(error, language, _RUNTIME_SIGNATURES) or _excerpt("Runtime error", error)
    return _STATUS_HINTS.get(status, "Something went wrong. Check your code syntax and logic.")
