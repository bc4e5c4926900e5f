"""Daily closing and cash reconciliation for a small shop's workbook daybook."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = PROJECT_ROOT / ".logs"
LOG_FILE = LOG_DIR / "daybook_erp.log"

_FORMATTER = logging.Formatter(
    fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


def _file_handler(path: Path) -> Optional[RotatingFileHandler]:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(path, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: daybook log '{path}' unavailable, logging to console only: {exc}", file=sys.stderr)
        return None
    handler.setLevel(logging.INFO)
    handler.setFormatter(_FORMATTER)
    return handler


def use_log_file(path: Path) -> None:
    """Send the package log to ``path`` instead of the default file.

    Called once the ``[System] LogFile`` entry of ``config.ini`` is known.
    """

    path = Path(path).expanduser().resolve()
    current = [h for h in log.handlers if isinstance(h, RotatingFileHandler)]
    if any(Path(h.baseFilename) == path for h in current):
        return
    handler = _file_handler(path)
    if handler is None:
        return
    for old in current:
        log.removeHandler(old)
        old.close()
    log.addHandler(handler)
    log.info("Daybook log moved to '%s'", path)


def _configure_logging() -> logging.Logger:
    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    handler = _file_handler(LOG_FILE)
    if handler is not None:
        logger.addHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(_FORMATTER)
    logger.addHandler(console_handler)
    return logger


log = _configure_logging()
