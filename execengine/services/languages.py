from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Mapping

from execengine.models.schemas import Language


_JAVA_PUBLIC_CLASS = re.compile(r"\bpublic\s+(?:(?:final|abstract|strictfp)\s+)*class\s+([A-Za-z_$][\w$]*)")
_JAVA_CLASS = re.compile(r"\bclass\s+([A-Za-z_$][\w$]*)")
_JAVA_MAIN = re.compile(r"\bstatic\s+void\s+main\s*\(")

# Last line of a traceback, i.e. the exception that actually ended the run.
_PYTHON_OOM = re.compile(r"(?:\A|\n)MemoryError\b[^\n]*\s*\Z")
_JAVA_OOM = re.compile(
    r"^(?:Exception in thread \"[^\"]*\" |Terminating due to )java\.lang\.OutOfMemoryError\b", re.MULTILINE
)
_NODE_OOM = re.compile(r"^FATAL ERROR: .*JavaScript heap out of memory", re.MULTILINE)
_CPP_OOM = re.compile(r"^terminate called after throwing an instance of 'std::bad_alloc'", re.MULTILINE)


def _java_entry_class(code: str) -> str:
    """Pick the class javac/java must be pointed at.

    A public class dictates the file name. Without one, the class declared
    closest before ``main`` is used, then the first class, then ``Main``.
    """
    public = _JAVA_PUBLIC_CLASS.search(code)
    if public:
        return public.group(1)
    classes = list(_JAVA_CLASS.finditer(code))
    if not classes:
        return "Main"
    main = _JAVA_MAIN.search(code)
    if main:
        before = [m for m in classes if m.start() < main.start()]
        if before:
            return before[-1].group(1)
    return classes[0].group(1)


@dataclass(frozen=True, slots=True)
class LanguageProfile:
    language: Language
    source_file: str
    run_argv: tuple[str, ...]
    image: str
    compile_argv: tuple[str, ...] | None = None
    default_memory_mb: int = 256
    cpu_share: float = 0.5
    # JVM and V8 reserve far more address space than they use; they are bounded
    # by heap flags plus RSS accounting instead of RLIMIT_AS.
    managed_heap: bool = False
    # matched against stderr of a failed step; each anchors on the line the
    # runtime itself prints, not on text the program may echo
    oom_markers: tuple[re.Pattern[str], ...] = ()
    entry_resolver: Callable[[str], str] | None = None

    @property
    def compiled(self) -> bool:
        return self.compile_argv is not None

    def entry_name(self, code: str) -> str:
        if self.entry_resolver is None:
            return "main"
        return self.entry_resolver(code)

    def source_filename(self, code: str) -> str:
        return self.source_file.format(main=self.entry_name(code))

    def _render(self, argv: tuple[str, ...], code: str, memory_mb: int) -> list[str]:
        values = {
            "source": self.source_filename(code),
            "main": self.entry_name(code),
            "heap_mb": max(32, memory_mb // 2),
            "old_space_mb": max(32, int(memory_mb * 0.75)),
        }
        return [part.format(**values) for part in argv]

    def compile_command(self, code: str, memory_mb: int) -> list[str] | None:
        if self.compile_argv is None:
            return None
        return self._render(self.compile_argv, code, memory_mb)

    def run_command(self, code: str, memory_mb: int) -> list[str]:
        return self._render(self.run_argv, code, memory_mb)

    def is_out_of_memory(self, stderr: str) -> bool:
        return any(marker.search(stderr) for marker in self.oom_markers)


PROFILES: Mapping[Language, LanguageProfile] = MappingProxyType(
    {
        Language.JAVA: LanguageProfile(
            language=Language.JAVA,
            source_file="{main}.java",
            compile_argv=(
                "javac",
                "-J-Xmx{heap_mb}m",
                "-J-XX:+UseSerialGC",
                "-J-XX:TieredStopAtLevel=1",
                "-encoding",
                "UTF-8",
                "{source}",
            ),
            run_argv=(
                "java",
                "-Xmx{heap_mb}m",
                "-XX:+UseSerialGC",
                "-XX:TieredStopAtLevel=1",
                "-cp",
                ".",
                "{main}",
            ),
            image="eclipse-temurin:21-jdk",
            default_memory_mb=256,
            managed_heap=True,
            oom_markers=(_JAVA_OOM,),
            entry_resolver=_java_entry_class,
        ),
        Language.PYTHON: LanguageProfile(
            language=Language.PYTHON,
            source_file="main.py",
            run_argv=("python3", "-B", "-I", "{source}"),
            image="python:3.12-slim",
            default_memory_mb=256,
            oom_markers=(_PYTHON_OOM,),
        ),
        Language.JAVASCRIPT: LanguageProfile(
            language=Language.JAVASCRIPT,
            source_file="main.js",
            run_argv=("node", "--max-old-space-size={old_space_mb}", "{source}"),
            image="node:20-slim",
            default_memory_mb=256,
            managed_heap=True,
            oom_markers=(_NODE_OOM,),
        ),
        Language.CPP: LanguageProfile(
            language=Language.CPP,
            source_file="main.cpp",
            compile_argv=("g++", "-std=c++17", "-O2", "-pipe", "-o", "main", "{source}"),
            run_argv=("./main",),
            image="gcc:13",
            default_memory_mb=256,
            oom_markers=(_CPP_OOM,),
        ),
    }
)


def get_profile(language: Language) -> LanguageProfile:
    try:
        return PROFILES[language]
    except KeyError:
        raise ValueError(f"Unsupported language: {language}") from None
