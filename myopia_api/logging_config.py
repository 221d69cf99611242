# backend/myopia_api/logging_config.py
import logging
from pathlib import Path
from typing import Optional

from . import config

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """Install one console handler (and an optional file handler) on the root logger.

    Safe to call more than once; handlers are only added the first time.
    """
    root = logging.getLogger()
    root.setLevel((level or config.LOG_LEVEL).upper())
    if getattr(root, "_myopia_configured", False):
        return

    formatter = logging.Formatter(LOG_FORMAT)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    path = log_file or config.LOG_FILE
    if path:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root._myopia_configured = True
