"""Namespace jail for the process backend, built on bubblewrap (``bwrap``)."""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import threading
from shutil import which
from typing import Iterable

logger = logging.getLogger(__name__)

# Host directories replaced by an empty tmpfs inside the jail, unless a
# toolchain or the scratch root lives below them.
_HIDDEN_DIRS = ("/home", "/root", "/run", "/srv", "/mnt", "/media")
_TRIAL_TIMEOUT_SEC = 10.0


def _within(path: str, parent: str) -> bool:
    return path == parent or path.startswith(parent.rstrip(os.sep) + os.sep)


class NamespaceJail:
    """Wraps a command so it runs in fresh user, mount, pid, ipc, uts and network namespaces.

    Inside the jail the host root is mounted read-only, ``/tmp`` and the
    scratch root are private tmpfs mounts, the sandbox's own scratch dir is
    the only writable host path, ``/proc`` shows only the jail's processes and
    the network namespace has nothing but an unconfigured loopback.
    """

    def __init__(
        self,
        scratch_root: str,
        *,
        executable: str = "bwrap",
        visible: Iterable[str] = (),
    ) -> None:
        self.scratch_root = os.path.realpath(scratch_root)
        self.executable = executable
        self._visible = [os.path.realpath(p) for p in visible if p]
        self._lock = threading.Lock()
        self._status: tuple[bool, str] | None = None

    def _keep(self) -> list[str]:
        keep = [p for p in os.environ.get("PATH", "").split(os.pathsep) if p]
        java_home = os.environ.get("JAVA_HOME")
        if java_home:
            keep.append(java_home)
        keep = [os.path.realpath(p) for p in keep]
        keep.extend(self._visible)
        keep.append(self.scratch_root)
        return keep

    def hidden_dirs(self) -> list[str]:
        keep = self._keep()
        hidden: list[str] = []
        for path in _HIDDEN_DIRS:
            if os.path.islink(path) or not os.path.isdir(path):
                continue
            if any(_within(k, path) for k in keep):
                continue
            hidden.append(path)
        return hidden

    def wrap(self, argv: list[str], scratch_dir: str | os.PathLike[str]) -> list[str]:
        scratch = os.path.realpath(scratch_dir)
        command = [
            self.executable,
            "--die-with-parent",
            "--unshare-all",
            "--ro-bind", "/", "/",
            "--dev", "/dev",
            "--proc", "/proc",
        ]
        for path in self.hidden_dirs():
            command += ["--tmpfs", path]
        command += ["--tmpfs", "/tmp"]
        if not _within(self.scratch_root, "/tmp") and self.scratch_root != os.sep:
            # hides every other request's scratch dir
            command += ["--tmpfs", self.scratch_root]
        command += ["--bind", scratch, scratch, "--chdir", scratch, "--", *argv]
        return command

    def available(self) -> tuple[bool, str]:
        """Whether the host can build the jail. The first call runs a trial and caches it."""
        with self._lock:
            if self._status is None:
                self._status = self._trial()
                if self._status[0]:
                    logger.info("namespace jail ready (%s)", self.executable)
                else:
                    logger.warning("namespace jail unavailable: %s", self._status[1])
            return self._status

    def _trial(self) -> tuple[bool, str]:
        if which(self.executable) is None:
            return False, f"{self.executable} not found on PATH"
        try:
            os.makedirs(self.scratch_root, exist_ok=True)
            trial_dir = tempfile.mkdtemp(prefix="jail-", dir=self.scratch_root)
        except OSError as exc:
            return False, f"cannot create trial directory: {exc}"
        try:
            result = subprocess.run(  # nosec: B603
                self.wrap(["true"], trial_dir),
                stdin=subprocess.DEVNULL,
                capture_output=True,
                timeout=_TRIAL_TIMEOUT_SEC,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            return False, f"cannot start {self.executable}: {exc}"
        finally:
            shutil.rmtree(trial_dir, ignore_errors=True)
        if result.returncode != 0:
            detail = result.stderr.decode("utf-8", errors="replace").strip()
            return False, f"cannot create namespaces: {detail or f'exit code {result.returncode}'}"
        return True, "namespace isolation ready"
