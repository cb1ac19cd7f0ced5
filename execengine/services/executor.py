from __future__ import annotations

import logging
import os
import signal
import subprocess
import tempfile
import threading
import time
from shutil import which
from typing import IO, Callable, Iterable, Mapping

import psutil

from execengine.core.errors import SandboxUnavailableError, ToolchainMissingError
from execengine.models.schemas import Language
from execengine.services.isolation import NamespaceJail
from execengine.services.languages import PROFILES, LanguageProfile
from execengine.services.sandbox import ProcessOutcome, Sandbox, StepLimits
from execengine.services.watchdog import Watchdog


try:  # POSIX resource limits (best-effort)
    import resource  # type: ignore
except Exception:  # pragma: no cover - non-POSIX
    resource = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

ISOLATION_MODES = ("required", "off")

_MEMORY_POLL_SEC = 0.02
_REAP_SLACK_SEC = 2.0
_READ_CHUNK = 64 * 1024
_TRUNCATED_SUFFIX = b"\n...[truncated]"


def _limit_preexec(
    cpu_time_sec: int,
    memory_limit_mb: int | None,
    limit_processes: bool,
) -> Callable[[], None]:
    def _apply() -> None:  # executed in child before exec
        if resource is not None:
            try:
                # CPU time: SIGXCPU at the soft limit, SIGKILL one second later
                resource.setrlimit(resource.RLIMIT_CPU, (cpu_time_sec, cpu_time_sec + 1))
            except Exception:
                pass
            if memory_limit_mb is not None:
                try:
                    # Address space / virtual memory limit
                    bytes_limit = memory_limit_mb * 1024 * 1024
                    resource.setrlimit(resource.RLIMIT_AS, (bytes_limit, bytes_limit))
                except Exception:
                    pass
            try:
                # Prevent creating files larger than ~16MB
                resource.setrlimit(resource.RLIMIT_FSIZE, (16 * 1024 * 1024, 16 * 1024 * 1024))
            except Exception:
                pass
            try:
                # Limit open files
                resource.setrlimit(resource.RLIMIT_NOFILE, (64, 64))
            except Exception:
                pass
            if limit_processes:
                try:
                    # Limit number of processes; best-effort, may be ignored on some OSes
                    resource.setrlimit(resource.RLIMIT_NPROC, (64, 64))
                except Exception:
                    pass
        # New session so the whole tree can be killed as one process group
        os.setsid()
    return _apply


def truncate_output(s: bytes, max_bytes: int) -> str:
    if len(s) <= max_bytes:
        return s.decode("utf-8", errors="replace")
    head = s[: max(0, max_bytes - 32)]
    return (head + _TRUNCATED_SUFFIX).decode("utf-8", errors="replace")


def read_capped(chunks: Iterable[bytes], limit: int) -> tuple[bytes, bool]:
    """Collect output chunks, keeping at most ``limit + 1`` bytes.

    Stops consuming as soon as the cap is passed. The flag tells whether it was.
    """
    buffer = bytearray()
    for chunk in chunks:
        buffer += chunk[: limit + 1 - len(buffer)]
        if len(buffer) > limit:
            return bytes(buffer), True
    return bytes(buffer), False


class _CappedReader:
    """Drains one pipe of a sandboxed process on its own thread.

    Keeps the first ``limit + 1`` bytes and calls ``on_overflow`` once when the
    process writes more than that. Keeps draining after the overflow so a
    writer that survives the kill never blocks on a full pipe.
    """

    def __init__(self, stream: IO[bytes], limit: int, on_overflow: Callable[[], None], *, name: str) -> None:
        self._stream = stream
        self._limit = limit
        self._on_overflow = on_overflow
        self._buffer = bytearray()
        self.overflowed = False
        self._thread = threading.Thread(target=self._drain, name=name, daemon=True)

    @property
    def data(self) -> bytes:
        return bytes(self._buffer)

    def _drain(self) -> None:
        try:
            while True:
                chunk = self._stream.read1(_READ_CHUNK)  # type: ignore[attr-defined]
                if not chunk:
                    return
                room = self._limit + 1 - len(self._buffer)
                if room > 0:
                    self._buffer += chunk[:room]
                if not self.overflowed and len(self._buffer) > self._limit:
                    self.overflowed = True
                    self._on_overflow()
        except (OSError, ValueError):
            # the pipe was closed under us
            return

    def start(self) -> None:
        self._thread.start()

    def join(self, timeout: float) -> bool:
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def close(self) -> None:
        try:
            self._stream.close()
        except OSError:
            pass


def _sandbox_env(scratch_dir: str) -> dict[str, str]:
    env = {
        "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
        "HOME": scratch_dir,
        "TMPDIR": scratch_dir,
        "LANG": "C.UTF-8",
        "LC_ALL": "C.UTF-8",
        "PYTHONIOENCODING": "utf-8",
    }
    java_home = os.environ.get("JAVA_HOME")
    if java_home:
        env["JAVA_HOME"] = java_home
    return env


def _kill_group(proc: subprocess.Popen[bytes]) -> None:
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
    try:
        proc.kill()
    except ProcessLookupError:
        pass


def _feed_stdin(proc: subprocess.Popen[bytes], data: bytes | None) -> None:
    if proc.stdin is None:
        return
    try:
        if data:
            proc.stdin.write(data)
        proc.stdin.close()
    except OSError:
        # the program exited or closed stdin without reading all of it
        pass


def _toolchain_paths(profiles: Mapping[Language, LanguageProfile]) -> list[str]:
    paths: list[str] = []
    for profile in profiles.values():
        tools = [profile.run_argv[0]]
        if profile.compile_argv is not None:
            tools.append(profile.compile_argv[0])
        for tool in tools:
            found = None if tool.startswith("./") else which(tool)
            if found:
                paths.append(os.path.realpath(found))
    return paths


class _MemoryMonitor:
    """Samples the RSS of a process tree and kills it past the ceiling.

    Every process seen in the tree is remembered in ``processes`` so stragglers
    can be killed when the sandbox is torn down.
    """

    def __init__(self, pid: int, limit_mb: int, on_breach: Callable[[], None]) -> None:
        self._pid = pid
        self._limit_mb = limit_mb
        self._on_breach = on_breach
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._poll, name=f"memmon-{pid}", daemon=True)
        self.peak_mb = 0.0
        self.breached = False
        self.processes: dict[int, psutil.Process] = {}

    def _tree_rss_mb(self, root: psutil.Process) -> float:
        total = root.memory_info().rss
        for child in root.children(recursive=True):
            self.processes.setdefault(child.pid, child)
            try:
                total += child.memory_info().rss
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return total / (1024 * 1024)

    def _poll(self) -> None:
        try:
            root = psutil.Process(self._pid)
        except psutil.NoSuchProcess:
            return
        self.processes[root.pid] = root
        while not self._stop.is_set():
            try:
                rss_mb = self._tree_rss_mb(root)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                return
            self.peak_mb = max(self.peak_mb, rss_mb)
            if rss_mb > self._limit_mb:
                self.breached = True
                logger.info("pid %s exceeded %s MB (rss %.1f MB)", self._pid, self._limit_mb, rss_mb)
                self._on_breach()
                return
            self._stop.wait(_MEMORY_POLL_SEC)

    def __enter__(self) -> "_MemoryMonitor":
        self._thread.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._stop.set()
        self._thread.join(timeout=1.0)


class ProcessBackend:
    """Runs each step as a child process of the engine.

    With ``isolation="required"`` (the default) every step runs inside a
    :class:`NamespaceJail`: no network, a read-only view of the host, and the
    sandbox's scratch dir as the only writable host path. On top of that each
    step gets a fresh session, POSIX rlimits, a scrubbed environment, RSS
    accounting, capped output pipes and the watchdog. ``isolation="off"``
    keeps everything but the jail and is reported as a limitation.
    """

    name = "process"

    def __init__(
        self,
        *,
        scratch_root: str | None = None,
        isolation: str = "required",
        jail: NamespaceJail | None = None,
    ) -> None:
        if isolation not in ISOLATION_MODES:
            raise ValueError(f"unknown sandbox isolation mode: {isolation!r}")
        self.isolation = isolation
        if isolation == "required" and jail is None:
            jail = NamespaceJail(scratch_root or tempfile.gettempdir(), visible=_toolchain_paths(PROFILES))
        self._jail = jail if isolation == "required" else None
        self._lock = threading.Lock()
        self._spawned: dict[str, list[psutil.Process]] = {}

    def check_available(self) -> tuple[bool, str]:
        if os.name != "posix":
            return False, "process backend requires a POSIX host"
        if self._jail is None:
            return True, "process backend ready"
        available, reason = self._jail.available()
        if not available:
            return False, f"namespace isolation unavailable: {reason}"
        return True, "process backend ready with namespace isolation"

    def limitations(self) -> dict[str, str]:
        if self._jail is not None:
            return {}
        return {
            "isolation": (
                "namespace isolation is off (SANDBOX_ISOLATION=off): programs share the host user, "
                "network and filesystem"
            )
        }

    def missing_toolchains(self, profiles: Mapping[Language, LanguageProfile]) -> dict[Language, str]:
        missing: dict[Language, str] = {}
        for language, profile in profiles.items():
            tools = [profile.run_argv[0]]
            if profile.compile_argv is not None:
                tools.insert(0, profile.compile_argv[0])
            for tool in tools:
                if tool.startswith("./"):
                    continue
                if which(tool) is None:
                    missing[language] = f"{tool} not found on PATH"
                    break
        return missing

    def prepare(self, sandbox: Sandbox) -> None:
        os.chmod(sandbox.scratch_dir, 0o700)

    def _command(self, sandbox: Sandbox, argv: list[str], env: Mapping[str, str]) -> list[str]:
        if self._jail is None:
            return argv
        available, reason = self._jail.available()
        if not available:
            raise SandboxUnavailableError(f"namespace isolation unavailable: {reason}")
        # inside the jail a missing binary only shows up as a bwrap exit code
        if not argv[0].startswith("./") and which(argv[0], path=env.get("PATH")) is None:
            raise ToolchainMissingError(f"{argv[0]} is not installed on this host")
        return self._jail.wrap(argv, sandbox.scratch_dir)

    def run(
        self,
        sandbox: Sandbox,
        argv: list[str],
        *,
        stdin: str | None,
        limits: StepLimits,
        image: str,
        max_output_bytes: int,
    ) -> ProcessOutcome:
        env = _sandbox_env(str(sandbox.scratch_dir))
        command = self._command(sandbox, argv, env)
        preexec = _limit_preexec(
            cpu_time_sec=limits.cpu_time_sec,
            memory_limit_mb=limits.memory_mb if limits.cap_address_space else None,
            limit_processes=limits.cap_processes,
        )

        start = time.perf_counter()
        try:
            proc = subprocess.Popen(  # nosec: B603 (argv comes from the language profile)
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=sandbox.scratch_dir,
                env=env,
                text=False,
                preexec_fn=preexec if os.name == "posix" else None,
            )
        except FileNotFoundError as exc:
            raise ToolchainMissingError(f"{command[0]} is not installed on this host") from exc

        kill = lambda: _kill_group(proc)  # noqa: E731
        assert proc.stdout is not None and proc.stderr is not None
        readers = (
            _CappedReader(proc.stdout, max_output_bytes, kill, name=f"stdout-{proc.pid}"),
            _CappedReader(proc.stderr, max_output_bytes, kill, name=f"stderr-{proc.pid}"),
        )
        monitor = _MemoryMonitor(proc.pid, limits.memory_mb, on_breach=kill)
        watchdog = Watchdog(limits.wall_timeout_sec, kill, label=f"sandbox {sandbox.id}")

        try:
            with watchdog, monitor:
                for reader in readers:
                    reader.start()
                _feed_stdin(proc, stdin.encode("utf-8") if stdin is not None else None)
                try:
                    proc.wait(timeout=limits.wall_timeout_sec + _REAP_SLACK_SEC)
                except subprocess.TimeoutExpired:
                    # The watchdog should already have killed the group; make sure.
                    kill()
                    proc.wait(timeout=_REAP_SLACK_SEC)
        finally:
            # background children left in the group still hold the pipes
            kill()
            with self._lock:
                self._spawned.setdefault(sandbox.id, []).extend(monitor.processes.values())

        for reader in readers:
            if reader.join(_REAP_SLACK_SEC):
                reader.close()
            else:
                logger.error("sandbox %s: output pipe still open after kill, keeping partial output", sandbox.id)

        duration_ms = int((time.perf_counter() - start) * 1000)

        # the jail reports a signal death of the program as 128 + signo
        cpu_killed = proc.returncode in (-signal.SIGXCPU, 128 + signal.SIGXCPU)
        timed_out = watchdog.fired or cpu_killed
        stdout, stderr = readers
        return ProcessOutcome(
            stdout=truncate_output(stdout.data, max_output_bytes),
            stderr=truncate_output(stderr.data, max_output_bytes),
            exit_code=None if timed_out else proc.returncode,
            timed_out=timed_out,
            duration_ms=duration_ms,
            memory_exceeded=monitor.breached,
            peak_memory_mb=monitor.peak_mb,
            output_truncated=stdout.overflowed or stderr.overflowed,
        )

    def cleanup(self, sandbox: Sandbox) -> None:
        # Every step's group is killed in run(); anything still alive here left
        # its group with setsid, so kill it by the handle recorded at spawn.
        with self._lock:
            spawned = self._spawned.pop(sandbox.id, [])
        for proc in spawned:
            try:
                if proc.is_running():
                    proc.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue

    def close(self) -> None:
        pass
