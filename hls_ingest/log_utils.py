# hls_ingest/log_utils.py
"""
Console + daily log file. One line per lifecycle event, e.g.

    2025-06-01 12:00:03,114 |    INFO | [v_redd_it_abc123] fetching https://v.redd.it/abc123.mp4
"""
from __future__ import annotations

import datetime as dt
import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)7s | %(message)s"

_HANDLER_TAG = "_hls_ingest_handler"


def daily_log_path(log_dir: Path, today: Optional[dt.date] = None) -> Path:
    today = today or dt.datetime.now(dt.timezone.utc).date()
    return Path(log_dir) / f"{today.isoformat()}.log"


def setup_logging(log_dir: Optional[Path] = None, level: str = "INFO") -> Optional[Path]:
    """
    Attach a console handler and, when log_dir is given, a file handler for
    <log_dir>/<YYYY-MM-DD>.log to the root logger. Calling it again replaces
    the handlers it installed earlier. Returns the log file path.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_TAG, False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    setattr(console, _HANDLER_TAG, True)
    root.addHandler(console)

    if log_dir is None:
        return None
    log_path = daily_log_path(log_dir)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    setattr(file_handler, _HANDLER_TAG, True)
    root.addHandler(file_handler)
    return log_path
