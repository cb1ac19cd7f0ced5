from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from functools import lru_cache


def _int_from_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_from_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _bool_from_env(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    return default


def _str_from_env(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


@dataclass(frozen=True, slots=True)
class Settings:
    execution_enabled: bool = True
    backend: str = "process"           # "process" or "docker"
    sandbox_isolation: str = "required"  # process backend: "required" or "off"

    default_timeout_sec: int = 10
    min_timeout_sec: int = 1
    max_timeout_sec: int = 30
    compile_timeout_sec: int = 20
    watchdog_grace_sec: float = 1.0    # added on top of the run timeout before the hard kill

    max_code_chars: int = 10_000
    max_stdin_chars: int = 1_000
    max_output_bytes: int = 1_000_000  # 1MB cap per stream after execution

    memory_limit_mb: int = 256         # per-run ceiling unless a profile asks for less
    memory_hard_limit_mb: int = 512    # never exceeded, whatever the profile says
    compile_memory_limit_mb: int = 1024
    cpu_share: float = 0.5             # fraction of one CPU (docker backend)

    sandbox_slots: int = 4
    slot_acquire_timeout_ms: int = 500

    scratch_root: str = tempfile.gettempdir()
    docker_user: str = "nobody"
    log_level: str = "INFO"

    def run_memory_limit_mb(self, profile_default_mb: int | None = None) -> int:
        requested = profile_default_mb if profile_default_mb is not None else self.memory_limit_mb
        return max(1, min(requested, self.memory_limit_mb, self.memory_hard_limit_mb))

    @staticmethod
    def from_env() -> "Settings":
        return Settings(
            execution_enabled=_bool_from_env("EXECUTION_ENABLED", True),
            backend=_str_from_env("SANDBOX_BACKEND", "process").lower(),
            sandbox_isolation=_str_from_env("SANDBOX_ISOLATION", "required").lower(),
            default_timeout_sec=_int_from_env("DEFAULT_TIMEOUT_SEC", 10),
            min_timeout_sec=_int_from_env("MIN_TIMEOUT_SEC", 1),
            max_timeout_sec=_int_from_env("MAX_TIMEOUT_SEC", 30),
            compile_timeout_sec=_int_from_env("COMPILE_TIMEOUT_SEC", 20),
            watchdog_grace_sec=_float_from_env("WATCHDOG_GRACE_SEC", 1.0),
            max_code_chars=_int_from_env("MAX_CODE_CHARS", 10_000),
            max_stdin_chars=_int_from_env("MAX_STDIN_CHARS", 1_000),
            max_output_bytes=_int_from_env("MAX_OUTPUT_BYTES", 1_000_000),
            memory_limit_mb=_int_from_env("MEMORY_LIMIT_MB", 256),
            memory_hard_limit_mb=_int_from_env("MEMORY_HARD_LIMIT_MB", 512),
            compile_memory_limit_mb=_int_from_env("COMPILE_MEMORY_LIMIT_MB", 1024),
            cpu_share=_float_from_env("CPU_SHARE", 0.5),
            sandbox_slots=_int_from_env("SANDBOX_SLOTS", 4),
            slot_acquire_timeout_ms=_int_from_env("SLOT_ACQUIRE_TIMEOUT_MS", 500),
            scratch_root=_str_from_env("SCRATCH_ROOT", tempfile.gettempdir()),
            docker_user=_str_from_env("DOCKER_USER", "nobody"),
            log_level=_str_from_env("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
