from __future__ import annotations

import logging
import shutil
import tempfile
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Protocol

from execengine.core.errors import SandboxClosedError, SandboxUnavailableError
from execengine.models.schemas import Language
from execengine.services.languages import LanguageProfile

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StepLimits:
    memory_mb: int
    wall_timeout_sec: float        # watchdog deadline, grace included
    cpu_time_sec: int
    cpu_share: float = 0.5
    cap_address_space: bool = True
    cap_processes: bool = True


@dataclass(frozen=True, slots=True)
class ProcessOutcome:
    stdout: str
    stderr: str
    exit_code: int | None
    timed_out: bool
    duration_ms: int
    memory_exceeded: bool = False
    peak_memory_mb: float = 0.0
    output_truncated: bool = False

    @property
    def succeeded(self) -> bool:
        return (
            self.exit_code == 0
            and not self.timed_out
            and not self.memory_exceeded
            and not self.output_truncated
        )


class SandboxBackend(Protocol):
    name: str

    def check_available(self) -> tuple[bool, str]: ...

    def missing_toolchains(self, profiles: Mapping[Language, LanguageProfile]) -> dict[Language, str]: ...

    def limitations(self) -> dict[str, str]: ...

    def prepare(self, sandbox: "Sandbox") -> None: ...

    def run(
        self,
        sandbox: "Sandbox",
        argv: list[str],
        *,
        stdin: str | None,
        limits: StepLimits,
        image: str,
        max_output_bytes: int,
    ) -> ProcessOutcome: ...

    def cleanup(self, sandbox: "Sandbox") -> None: ...

    def close(self) -> None: ...


class Sandbox:
    """One request's private execution environment.

    Owns a scratch directory and every process or container started for the
    request. ``destroy`` is idempotent; after it, ``run`` raises.
    """

    def __init__(self, sandbox_id: str, scratch_dir: Path, backend: SandboxBackend, max_output_bytes: int) -> None:
        self.id = sandbox_id
        self.scratch_dir = scratch_dir
        self._backend = backend
        self._max_output_bytes = max_output_bytes
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write_file(self, name: str, content: str) -> Path:
        if self._closed:
            raise SandboxClosedError(f"sandbox {self.id} is destroyed")
        target = (self.scratch_dir / name).resolve()
        if target.parent != self.scratch_dir.resolve():
            raise ValueError(f"refusing to write outside the scratch directory: {name!r}")
        target.write_text(content, encoding="utf-8")
        return target

    def run(self, argv: list[str], *, stdin: str | None, limits: StepLimits, image: str) -> ProcessOutcome:
        if self._closed:
            raise SandboxClosedError(f"sandbox {self.id} is destroyed")
        return self._backend.run(
            self,
            argv,
            stdin=stdin,
            limits=limits,
            image=image,
            max_output_bytes=self._max_output_bytes,
        )

    def destroy(self) -> bool:
        """Tear the sandbox down. Returns False if it was already destroyed."""
        with self._lock:
            if self._closed:
                return False
            self._closed = True
        try:
            self._backend.cleanup(self)
        except Exception:
            logger.exception("backend cleanup failed for sandbox %s", self.id)
        shutil.rmtree(self.scratch_dir, ignore_errors=True)
        logger.debug("destroyed sandbox %s", self.id)
        return True


class NoSlotAvailableError(SandboxUnavailableError):
    """Every sandbox slot stayed busy for the whole acquisition window."""


class SandboxProvisioner:
    """Bounded pool of sandbox slots in front of a backend."""

    def __init__(
        self,
        backend: SandboxBackend,
        *,
        slots: int,
        acquire_timeout_ms: int,
        scratch_root: str,
        max_output_bytes: int,
    ) -> None:
        self.backend = backend
        self.slots = max(1, slots)
        self._acquire_timeout = max(0, acquire_timeout_ms) / 1000.0
        self._scratch_root = Path(scratch_root)
        self._max_output_bytes = max_output_bytes
        self._semaphore = threading.BoundedSemaphore(self.slots)
        self._lock = threading.Lock()
        self._in_use = 0
        self._live: set[str] = set()

    @property
    def in_use(self) -> int:
        with self._lock:
            return self._in_use

    @property
    def live_sandboxes(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._live)

    def acquire_slot(self) -> None:
        if not self._semaphore.acquire(timeout=self._acquire_timeout):
            raise NoSlotAvailableError(
                f"no sandbox slot became free within {self._acquire_timeout * 1000:.0f} ms"
            )
        with self._lock:
            self._in_use += 1

    def release_slot(self) -> None:
        with self._lock:
            self._in_use -= 1
        self._semaphore.release()

    def create(self) -> Sandbox:
        try:
            self._scratch_root.mkdir(parents=True, exist_ok=True)
            scratch = Path(tempfile.mkdtemp(prefix="exec-", dir=self._scratch_root))
        except OSError as exc:
            raise SandboxUnavailableError(f"cannot create scratch directory: {exc}") from exc

        sandbox_id = uuid.uuid4().hex
        with self._lock:
            self._live.add(sandbox_id)

        sandbox = Sandbox(sandbox_id, scratch, self.backend, self._max_output_bytes)
        try:
            self.backend.prepare(sandbox)
        except Exception:
            self.destroy(sandbox)
            raise
        logger.debug("created sandbox %s in %s", sandbox_id, scratch)
        return sandbox

    def destroy(self, sandbox: Sandbox) -> None:
        sandbox.destroy()
        with self._lock:
            self._live.discard(sandbox.id)
