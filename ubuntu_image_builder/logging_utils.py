"""Logging setup for the ubuntu-image command line.

The console shows progress at the level asked for on the command line. The
optional --log file always records DEBUG, which keeps the captured output of
every host tool the build ran, whatever the console shows.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

FALLBACK_LOG_NAME = "ubuntu-image.log"

CONSOLE_HANDLER = "ubuntu-image-console"
FILE_HANDLER = "ubuntu-image-file"

CONSOLE_FORMAT = "%(levelname)s %(name)s: %(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _file_handler(log_path: str) -> logging.FileHandler:
    try:
        Path(os.path.dirname(log_path) or ".").mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(log_path)
    except OSError:
        # unwritable --log location, e.g. /var/log on a build host without root
        return logging.FileHandler(str(Path.cwd() / FALLBACK_LOG_NAME))


def configure_logging(
    log_path: Optional[str] = None,
    level: int = logging.INFO,
    also_console: bool = True,
) -> Optional[str]:
    """Attach the build's handlers to the root logger.

    If log_path cannot be created the log goes to ./ubuntu-image.log instead.
    A second call leaves the existing handlers alone. Returns the path of the
    log file in use, or None when there is none.
    """

    root = logging.getLogger()
    ours = {h.get_name(): h for h in root.handlers if h.get_name() in (CONSOLE_HANDLER, FILE_HANDLER)}
    if ours:
        existing = ours.get(FILE_HANDLER)
        return getattr(existing, "baseFilename", None)

    chosen_path: Optional[str] = None
    if log_path:
        file_handler = _file_handler(log_path)
        file_handler.set_name(FILE_HANDLER)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(fmt=FILE_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z"))
        root.addHandler(file_handler)
        chosen_path = file_handler.baseFilename

    if also_console:
        console = logging.StreamHandler()
        console.set_name(CONSOLE_HANDLER)
        console.setLevel(level)
        console.setFormatter(logging.Formatter(fmt=CONSOLE_FORMAT))
        root.addHandler(console)

    root.setLevel(logging.DEBUG if chosen_path else level)

    logging.getLogger(__name__).debug("Logging to %s (requested %s)", chosen_path, log_path)
    return chosen_path
