from __future__ import annotations

import threading
import time

from execengine.services.watchdog import Watchdog


def test_fires_after_deadline() -> None:
    killed = threading.Event()
    with Watchdog(0.05, killed.set) as watchdog:
        assert killed.wait(2.0)
    assert watchdog.fired is True


def test_cancel_before_deadline() -> None:
    killed = threading.Event()
    with Watchdog(0.5, killed.set) as watchdog:
        pass
    time.sleep(0.7)
    assert not killed.is_set()
    assert watchdog.fired is False


def test_kill_errors_do_not_escape_the_timer() -> None:
    def boom() -> None:
        raise ProcessLookupError("already gone")

    watchdog = Watchdog(0.01, boom).start()
    deadline = time.monotonic() + 2.0
    while not watchdog.fired and time.monotonic() < deadline:
        time.sleep(0.01)
    watchdog.cancel()
    assert watchdog.fired is True
