from __future__ import annotations

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class Watchdog:
    """Hard wall-clock bound on one sandboxed command.

    The timer runs on its own thread and calls ``kill`` once ``deadline_sec``
    has elapsed, whatever the sandboxed process is doing. ``fired`` tells the
    caller afterwards whether the kill happened.
    """

    def __init__(self, deadline_sec: float, kill: Callable[[], None], *, label: str = "sandbox") -> None:
        self.deadline_sec = deadline_sec
        self._kill = kill
        self._label = label
        self._fired = threading.Event()
        self._timer = threading.Timer(deadline_sec, self._fire)
        self._timer.daemon = True

    @property
    def fired(self) -> bool:
        return self._fired.is_set()

    def _fire(self) -> None:
        self._fired.set()
        logger.info("watchdog fired for %s after %.1fs", self._label, self.deadline_sec)
        try:
            self._kill()
        except Exception:  # the kill target may already be gone
            logger.debug("watchdog kill for %s raised", self._label, exc_info=True)

    def start(self) -> "Watchdog":
        self._timer.start()
        return self

    def cancel(self) -> None:
        self._timer.cancel()

    def __enter__(self) -> "Watchdog":
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.cancel()
