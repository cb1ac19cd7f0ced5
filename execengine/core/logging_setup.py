from __future__ import annotations

import logging

_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for the service.

    Uvicorn installs its own handlers on its loggers; this only sets up the
    root logger used by the ``execengine`` modules.
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(level=numeric, format=_FORMAT)
    logging.getLogger("execengine").setLevel(numeric)
