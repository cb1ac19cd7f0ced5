"""Pattern-based deny-list applied before any sandbox is provisioned.

This is a heuristic. It catches the obvious ways student code reaches for
processes, files, sockets, reflection or the host environment, and it will
both miss obfuscated variants and occasionally flag harmless code. The
sandbox limits are what actually contain a submission.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from execengine.models.schemas import Language


class Severity(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"


@dataclass(frozen=True, slots=True)
class SecurityRule:
    category: str
    description: str
    pattern: re.Pattern[str]
    severity: Severity


@dataclass(frozen=True, slots=True)
class SecurityFinding:
    rule: str
    category: str
    matched: str
    severity: Severity
    offset: int


def _rule(category: str, description: str, pattern: str, severity: Severity, flags: int = 0) -> SecurityRule:
    return SecurityRule(category, description, re.compile(pattern, flags), severity)


_H = Severity.HIGH
_M = Severity.MEDIUM

_PY_BLOCKED_MODULES = (
    "os|subprocess|shutil|socket|ctypes|cffi|multiprocessing|signal|pty|importlib|"
    "urllib|urllib3|requests|http|httpx|ftplib|telnetlib|smtplib|socketserver|pathlib|"
    "tempfile|glob|resource|mmap|_thread|threading|asyncio"
)

_JS_BLOCKED_MODULES = (
    "child_process|fs|fs/promises|net|http|https|http2|dgram|cluster|worker_threads|"
    "os|vm|dns|tls|v8|inspector|module|process|perf_hooks"
)

RULES: dict[Language, tuple[SecurityRule, ...]] = {
    Language.PYTHON: (
        _rule(
            "process",
            "import of a process, filesystem, network or low-level system module",
            rf"(?:^|(?<=[;:]))\s*(?:import\s+(?:[\w.]+\s*(?:as\s+\w+\s*)?,\s*)*|from\s+)(?:{_PY_BLOCKED_MODULES})\b",
            _H,
            re.MULTILINE,
        ),
        _rule("reflection", "dynamic import via __import__", r"\b__import__\b", _H),
        _rule("reflection", "dynamic code execution", r"(?<![.\w])(?:exec|eval|compile)\s*\(", _H),
        _rule(
            "reflection",
            "access to interpreter internals",
            r"__(?:builtins|subclasses|globals|code|loader|spec)__|\bsys\s*\.\s*(?:modules|_getframe)\b",
            _H,
        ),
        _rule(
            "filesystem",
            "file access outside the working directory",
            r"\bopen\s*\(\s*[rRbBuUfF]*['\"](?:/|~|\.\.)",
            _M,
        ),
        _rule("system", "environment or interpreter exit access", r"\bsys\s*\.\s*exit\b|\benviron\b", _M),
    ),
    Language.JAVA: (
        _rule(
            "process",
            "process spawning",
            r"\bRuntime\s*\.\s*getRuntime\b|\bProcessBuilder\b|\bProcessHandle\b",
            _H,
        ),
        _rule(
            "reflection",
            "reflection or dynamic class loading",
            r"\bClass\s*\.\s*forName\b|\bClassLoader\b|\bjava\.lang\.reflect\b|\bMethodHandles?\b"
            r"|\.getDeclared(?:Method|Field|Constructor)s?\s*\(|\.setAccessible\s*\(|\bsun\.misc\.Unsafe\b",
            _H,
        ),
        _rule(
            "network",
            "network access",
            r"\bjava\.net\b|\b(?:Server)?Socket\b|\bHttp(?:URL)?Connection\b|\bHttpClient\b|\bnew\s+URL\s*\(",
            _M,
        ),
        _rule(
            "filesystem",
            "file system access",
            r"\bjava\.nio\.file\b|\bnew\s+(?:File|FileReader|FileWriter|FileInputStream|FileOutputStream"
            r"|RandomAccessFile)\s*\(|\b(?:Files|Paths)\s*\.",
            _M,
        ),
        _rule(
            "system",
            "system property, environment or JVM control",
            r"\bSystem\s*\.\s*(?:exit|getenv|getProperty|setProperty|getProperties|setProperties|load"
            r"|loadLibrary|setSecurityManager)\b",
            _M,
        ),
    ),
    Language.JAVASCRIPT: (
        _rule(
            "process",
            "require of a process, filesystem or network module",
            rf"\brequire\s*\(\s*['\"`](?:node:)?(?:{_JS_BLOCKED_MODULES})['\"`]\s*\)",
            _H,
        ),
        _rule(
            "process",
            "import of a process, filesystem or network module",
            rf"\bimport\b[^;\n]*?['\"](?:node:)?(?:{_JS_BLOCKED_MODULES})['\"]|\bimport\s*\(",
            _H,
        ),
        _rule(
            "reflection",
            "dynamic code execution",
            r"\beval\s*\(|\bnew\s+Function\s*\(|\bFunction\s*\(|\bconstructor\s*\.\s*constructor\b",
            _H,
        ),
        _rule(
            "system",
            "process control or environment access",
            r"\bprocess\s*\.\s*(?:binding|dlopen|env|exit|kill|abort|chdir|setuid|setgid|mainModule)\b",
            _M,
        ),
        _rule("network", "network access", r"\bfetch\s*\(|\bWebSocket\b|\bXMLHttpRequest\b", _M),
    ),
    Language.CPP: (
        _rule(
            "process",
            "process spawning",
            r"(?<![:.\w])(?:system|popen|execl|execlp|execle|execv|execvp|execvpe|fork|vfork"
            r"|posix_spawnp?)\s*\(",
            _H,
        ),
        _rule(
            "reflection",
            "inline assembly, raw syscalls or dynamic loading",
            r"\b(?:__asm__|asm)\b|\bsyscall\s*\(|\bdlopen\s*\(|\bdlsym\s*\(",
            _H,
        ),
        _rule(
            "network",
            "system, network or process headers",
            r"#\s*include\s*<\s*(?:sys/socket\.h|netinet/[^>]*|arpa/[^>]*|netdb\.h|unistd\.h|sys/ptrace\.h"
            r"|dlfcn\.h|spawn\.h|sys/mman\.h|sys/wait\.h)\s*>",
            _M,
        ),
        _rule(
            "network",
            "socket calls",
            r"(?<![:.\w])(?:socket|connect|bind|listen|accept)\s*\(",
            _M,
        ),
        _rule(
            "filesystem",
            "file system access",
            r"#\s*include\s*<\s*(?:filesystem|fstream)\s*>|\bstd::filesystem\b"
            r"|\b(?:fopen|freopen|open)\s*\(\s*\"(?:/|\.\.)",
            _M,
        ),
        _rule("system", "environment access", r"\bgetenv\s*\(|\benviron\b", _M),
    ),
}


def scan_all(code: str, language: Language) -> list[SecurityFinding]:
    findings: list[SecurityFinding] = []
    for rule in RULES.get(language, ()):
        for match in rule.pattern.finditer(code):
            findings.append(
                SecurityFinding(
                    rule=rule.description,
                    category=rule.category,
                    matched=match.group(0).strip(),
                    severity=rule.severity,
                    offset=match.start(),
                )
            )
    findings.sort(key=lambda f: (f.severity is not Severity.HIGH, f.offset))
    return findings


def scan(code: str, language: Language) -> SecurityFinding | None:
    """Return the most severe, earliest finding, or ``None`` when the code is clean."""
    findings = scan_all(code, language)
    return findings[0] if findings else None
