from __future__ import annotations

import os
import uuid
from pathlib import Path

import pytest

from execengine.core.errors import SandboxUnavailableError
from execengine.models.schemas import ExecuteRequest, ExecutionStatus, Language
from execengine.services.engine import ExecutionEngine
from execengine.services.executor import ProcessBackend
from execengine.services.isolation import NamespaceJail
from execengine.services.lifecycle import sandbox_scope
from execengine.services.sandbox import SandboxProvisioner, StepLimits
from tests.test_hello_world import _isolation_mode, _require_toolchain, _settings


LIMITS = StepLimits(memory_mb=256, wall_timeout_sec=10, cpu_time_sec=10)

WRITER = """
import sys
for path in sys.argv[1:]:
    try:
        with open(path, "w") as fh:
            fh.write("x")
    except OSError as exc:
        print("denied", path, type(exc).__name__)
    else:
        print("wrote", path)
"""

CONNECT = """
import socket
try:
    socket.create_connection(("1.1.1.1", 53), timeout=2).close()
except OSError as exc:
    print("blocked", type(exc).__name__)
else:
    print("connected")
"""

LOOK_AROUND = """
import os
import sys
print(os.path.exists(sys.argv[1]))
print(len([p for p in os.listdir("/proc") if p.isdigit()]))
"""


def _provisioner(tmp_path, backend: ProcessBackend, slots: int = 1) -> SandboxProvisioner:
    return SandboxProvisioner(
        backend, slots=slots, acquire_timeout_ms=50, scratch_root=str(tmp_path), max_output_bytes=4096
    )


@pytest.fixture
def jailed(tmp_path) -> ProcessBackend:
    _require_toolchain("python3")
    if _isolation_mode() != "required":
        pytest.skip("Skipping jail test: this host cannot create user namespaces with bwrap")
    return ProcessBackend(scratch_root=str(tmp_path), isolation="required")


def test_writes_outside_the_scratch_dir_fail(jailed: ProcessBackend, tmp_path) -> None:
    marker = f"execengine-escape-{uuid.uuid4().hex}"
    host_tmp = Path("/tmp") / marker
    beside_tests = Path(__file__).resolve().parent / marker
    in_etc = Path("/etc") / marker

    with sandbox_scope(_provisioner(tmp_path, jailed)) as sandbox:
        sandbox.write_file("main.py", WRITER)
        outcome = sandbox.run(
            ["python3", "main.py", str(beside_tests), str(in_etc), str(host_tmp), "inside.txt"],
            stdin=None,
            limits=LIMITS,
            image="python:3.12-slim",
        )
        assert (sandbox.scratch_dir / "inside.txt").read_text() == "x"

    assert outcome.exit_code == 0, outcome.stderr
    lines = outcome.stdout.splitlines()
    assert any(line.startswith(f"denied {beside_tests}") for line in lines)
    assert any(line.startswith(f"denied {in_etc}") for line in lines)
    assert "wrote inside.txt" in lines
    # /tmp inside the jail is a private tmpfs
    assert not host_tmp.exists()
    assert not beside_tests.exists()
    assert not in_etc.exists()


def test_network_is_unreachable(jailed: ProcessBackend, tmp_path) -> None:
    with sandbox_scope(_provisioner(tmp_path, jailed)) as sandbox:
        sandbox.write_file("main.py", CONNECT)
        outcome = sandbox.run(["python3", "main.py"], stdin=None, limits=LIMITS, image="python:3.12-slim")

    assert outcome.stdout.startswith("blocked"), outcome.stdout + outcome.stderr


def test_other_sandboxes_and_host_processes_are_invisible(jailed: ProcessBackend, tmp_path) -> None:
    provisioner = _provisioner(tmp_path, jailed, slots=2)
    with sandbox_scope(provisioner) as neighbour, sandbox_scope(provisioner) as sandbox:
        secret = neighbour.write_file("secret.txt", "hidden")
        sandbox.write_file("main.py", LOOK_AROUND)
        outcome = sandbox.run(
            ["python3", "main.py", str(secret)], stdin=None, limits=LIMITS, image="python:3.12-slim"
        )

    assert outcome.exit_code == 0, outcome.stderr
    visible, process_count = outcome.stdout.split()
    assert visible == "False"
    # the jail's own init and the program
    assert int(process_count) <= 3


def test_wrap_builds_a_read_only_jail(tmp_path) -> None:
    root = "/opt/execengine-scratch"
    jail = NamespaceJail(root)
    scratch = f"{root}/exec-1"

    command = jail.wrap(["python3", "main.py"], scratch)

    expected_root = os.path.realpath(root)
    expected_scratch = os.path.realpath(scratch)
    assert command[0] == "bwrap"
    assert "--unshare-all" in command
    assert "--die-with-parent" in command
    index = command.index("--ro-bind")
    assert command[index : index + 3] == ["--ro-bind", "/", "/"]
    assert command[command.index("/tmp") - 1] == "--tmpfs"
    assert command[command.index(expected_root) - 1] == "--tmpfs"
    assert command[-8:] == [
        "--bind",
        expected_scratch,
        expected_scratch,
        "--chdir",
        expected_scratch,
        "--",
        "python3",
        "main.py",
    ]


def test_scratch_root_under_tmp_is_not_mounted_twice(tmp_path) -> None:
    jail = NamespaceJail("/tmp")
    command = jail.wrap(["true"], "/tmp/exec-1")
    tmpfs_targets = [command[i + 1] for i, part in enumerate(command) if part == "--tmpfs"]
    assert tmpfs_targets.count("/tmp") == 1


def test_missing_jail_tool_is_reported(tmp_path) -> None:
    jail = NamespaceJail(str(tmp_path), executable="execengine-no-such-bwrap")
    available, reason = jail.available()
    assert available is False
    assert "not found" in reason


def test_required_isolation_without_a_jail_refuses_to_run(tmp_path) -> None:
    jail = NamespaceJail(str(tmp_path), executable="execengine-no-such-bwrap")
    backend = ProcessBackend(isolation="required", jail=jail)

    available, message = backend.check_available()
    assert available is False
    assert "namespace isolation unavailable" in message

    with sandbox_scope(_provisioner(tmp_path, backend)) as sandbox:
        with pytest.raises(SandboxUnavailableError):
            sandbox.run(["python3", "main.py"], stdin=None, limits=LIMITS, image="python:3.12-slim")


def test_engine_without_a_jail_is_degraded_and_runs_nothing(tmp_path) -> None:
    jail = NamespaceJail(str(tmp_path), executable="execengine-no-such-bwrap")
    engine = ExecutionEngine(_settings(tmp_path), backend=ProcessBackend(isolation="required", jail=jail))
    engine.start()

    health = engine.health()
    assert health.status == "degraded"
    assert health.sandbox_runtime_available is False
    assert "namespace isolation unavailable" in health.message

    response = engine.execute(ExecuteRequest(code="print(1)", language=Language.PYTHON))
    assert response.status is ExecutionStatus.SYSTEM_ERROR
    assert "namespace isolation unavailable" in response.error


def test_isolation_off_is_reported_as_degraded(tmp_path) -> None:
    engine = ExecutionEngine(_settings(tmp_path, sandbox_isolation="off"))
    engine.start()

    health = engine.health()
    assert health.status == "degraded"
    assert health.sandbox_runtime_available is True
    assert "isolation: namespace isolation is off" in health.message


def test_unknown_isolation_mode_is_rejected() -> None:
    with pytest.raises(ValueError):
        ProcessBackend(isolation="chroot")
