from __future__ import annotations

import logging
import os
import threading
import time
from typing import Any, Mapping

import docker
import requests
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from execengine.core.errors import SandboxUnavailableError, ToolchainMissingError
from execengine.models.schemas import Language
from execengine.services.executor import read_capped, truncate_output
from execengine.services.languages import LanguageProfile
from execengine.services.sandbox import ProcessOutcome, Sandbox, StepLimits
from execengine.services.watchdog import Watchdog

logger = logging.getLogger(__name__)

SANDBOX_LABEL = "execengine.sandbox"
WORKSPACE = "/workspace"
_STDIN_FILE = ".stdin"
_WAIT_SLACK_SEC = 5.0
_PIDS_LIMIT = 64


class _StatsMonitor:
    """Follows the container stats stream and remembers peak memory usage."""

    def __init__(self, container: Any) -> None:
        self._container = container
        self.peak_mb = 0.0
        self._thread = threading.Thread(target=self._follow, name=f"stats-{container.id[:12]}", daemon=True)

    def _follow(self) -> None:
        try:
            for stats in self._container.stats(stream=True, decode=True):
                memory = stats.get("memory_stats") or {}
                usage = memory.get("max_usage") or memory.get("usage") or 0
                self.peak_mb = max(self.peak_mb, usage / (1024 * 1024))
        except (DockerException, requests.exceptions.RequestException, ValueError):
            # The stream ends or breaks when the container goes away.
            return

    def __enter__(self) -> "_StatsMonitor":
        self._thread.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._thread.join(timeout=1.0)


class DockerBackend:
    """Runs each step in a throwaway container that shares the sandbox's scratch dir.

    Containers get no network, a read-only root filesystem, a small tmpfs,
    no capabilities, a pids cap, a memory cap without swap and a CPU quota.
    """

    name = "docker"

    def __init__(self, *, user: str = "nobody", client: Any | None = None) -> None:
        self._user = user
        self._client = client
        self._client_lock = threading.Lock()

    def _get_client(self) -> Any:
        with self._client_lock:
            if self._client is None:
                try:
                    self._client = docker.from_env()
                except DockerException as exc:
                    raise SandboxUnavailableError(f"docker daemon unreachable: {exc}") from exc
            return self._client

    def check_available(self) -> tuple[bool, str]:
        try:
            self._get_client().ping()
        except (SandboxUnavailableError, DockerException, requests.exceptions.RequestException) as exc:
            return False, f"docker daemon unreachable: {exc}"
        return True, "docker daemon reachable"

    def limitations(self) -> dict[str, str]:
        return {}

    def missing_toolchains(self, profiles: Mapping[Language, LanguageProfile]) -> dict[Language, str]:
        missing: dict[Language, str] = {}
        try:
            client = self._get_client()
        except SandboxUnavailableError as exc:
            return {language: str(exc) for language in profiles}
        for language, profile in profiles.items():
            try:
                client.images.get(profile.image)
            except ImageNotFound:
                missing[language] = f"image {profile.image} is not present"
            except (DockerException, requests.exceptions.RequestException) as exc:
                missing[language] = f"cannot inspect image {profile.image}: {exc}"
        return missing

    def prepare(self, sandbox: Sandbox) -> None:
        # The container user is unprivileged and must be able to write build output.
        os.chmod(sandbox.scratch_dir, 0o777)

    def _write_stdin(self, sandbox: Sandbox, stdin: str | None) -> None:
        path = sandbox.scratch_dir / _STDIN_FILE
        path.write_text(stdin or "", encoding="utf-8")
        os.chmod(path, 0o644)

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
        client = self._get_client()
        self._write_stdin(sandbox, stdin)
        memory = f"{limits.memory_mb}m"

        start = time.perf_counter()
        try:
            container = client.containers.run(
                image=image,
                command=["sh", "-c", f'exec "$@" < {WORKSPACE}/{_STDIN_FILE}', "sh", *argv],
                volumes={str(sandbox.scratch_dir): {"bind": WORKSPACE, "mode": "rw"}},
                working_dir=WORKSPACE,
                environment={"HOME": WORKSPACE, "TMPDIR": "/tmp", "LANG": "C.UTF-8"},
                mem_limit=memory,
                memswap_limit=memory,
                nano_cpus=int(limits.cpu_share * 1_000_000_000),
                pids_limit=_PIDS_LIMIT if limits.cap_processes else None,
                network_disabled=True,
                detach=True,
                user=self._user,
                read_only=True,
                cap_drop=["ALL"],
                security_opt=["no-new-privileges"],
                tmpfs={"/tmp": "size=64m,nosuid"},
                labels={SANDBOX_LABEL: sandbox.id},
            )
        except ImageNotFound as exc:
            raise ToolchainMissingError(f"image {image} is not present") from exc
        except (APIError, DockerException, requests.exceptions.RequestException) as exc:
            raise SandboxUnavailableError(f"cannot start container: {exc}") from exc

        exit_code: int | None = None
        try:
            watchdog = Watchdog(limits.wall_timeout_sec, container.kill, label=f"sandbox {sandbox.id}")
            with watchdog, _StatsMonitor(container) as stats:
                try:
                    result = container.wait(timeout=limits.wall_timeout_sec + _WAIT_SLACK_SEC)
                    exit_code = result.get("StatusCode")
                except (requests.exceptions.RequestException, DockerException):
                    logger.warning("sandbox %s: wait on container %s failed, killing", sandbox.id, container.short_id)
                    try:
                        container.kill()
                    except (NotFound, APIError):
                        pass
            duration_ms = int((time.perf_counter() - start) * 1000)

            out, out_truncated = read_capped(
                container.logs(stdout=True, stderr=False, stream=True, follow=False), max_output_bytes
            )
            err, err_truncated = read_capped(
                container.logs(stdout=False, stderr=True, stream=True, follow=False), max_output_bytes
            )
            container.reload()
            oom_killed = bool(container.attrs.get("State", {}).get("OOMKilled"))
        finally:
            try:
                container.remove(force=True)
            except (NotFound, APIError):
                pass

        timed_out = watchdog.fired or exit_code is None
        return ProcessOutcome(
            stdout=truncate_output(out or b"", max_output_bytes),
            stderr=truncate_output(err or b"", max_output_bytes),
            exit_code=None if timed_out else exit_code,
            timed_out=timed_out,
            duration_ms=duration_ms,
            memory_exceeded=oom_killed,
            peak_memory_mb=stats.peak_mb,
            output_truncated=out_truncated or err_truncated,
        )

    def cleanup(self, sandbox: Sandbox) -> None:
        try:
            client = self._get_client()
            leftovers = client.containers.list(all=True, filters={"label": f"{SANDBOX_LABEL}={sandbox.id}"})
        except (SandboxUnavailableError, DockerException, requests.exceptions.RequestException):
            logger.warning("sandbox %s: cannot list containers for cleanup", sandbox.id)
            return
        for container in leftovers:
            try:
                container.remove(force=True)
            except (NotFound, APIError):
                pass

    def close(self) -> None:
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None
