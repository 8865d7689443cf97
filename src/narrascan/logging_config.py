from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from rich.logging import RichHandler

_FILE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Console logging through Rich. Safe to call more than once."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        root.addHandler(RichHandler(rich_tracebacks=True, show_path=False))
    # Request lines from httpx are noise at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


@contextmanager
def run_log_files(log_dir: str | Path, run_id: str) -> Iterator[Path]:
    """
    Attach <log_dir>/<run_id>/run.log and errors.log for the block.

    Files are opened in append mode so a resumed run keeps one history.
    """
    run_dir = Path(log_dir) / run_id
    run_dir.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(_FILE_FORMAT)
    run_handler = logging.FileHandler(run_dir / "run.log", encoding="utf-8")
    run_handler.setLevel(logging.DEBUG)
    run_handler.setFormatter(formatter)
    error_handler = logging.FileHandler(run_dir / "errors.log", encoding="utf-8")
    error_handler.setLevel(logging.WARNING)
    error_handler.setFormatter(formatter)

    pkg_logger = logging.getLogger("narrascan")
    pkg_logger.addHandler(run_handler)
    pkg_logger.addHandler(error_handler)
    try:
        yield run_dir
    finally:
        for h in (run_handler, error_handler):
            pkg_logger.removeHandler(h)
            h.close()
