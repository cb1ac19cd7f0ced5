from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from execengine.services.sandbox import Sandbox, SandboxProvisioner


@contextmanager
def sandbox_scope(provisioner: SandboxProvisioner) -> Iterator[Sandbox]:
    """Hold one slot and one fresh sandbox for the duration of the block.

    The sandbox is destroyed and the slot released exactly once on every
    exit path: normal return, an exception from the block, a failure while
    creating the sandbox, or a step killed by the watchdog.
    """
    provisioner.acquire_slot()
    try:
        sandbox = provisioner.create()
        try:
            yield sandbox
        finally:
            provisioner.destroy(sandbox)
    finally:
        provisioner.release_slot()
