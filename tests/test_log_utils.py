import datetime as dt
import logging

from hls_ingest.log_utils import daily_log_path, setup_logging


def test_daily_log_path(tmp_path):
    assert daily_log_path(tmp_path, dt.date(2025, 6, 1)) == tmp_path / "2025-06-01.log"


def test_setup_logging_writes_daily_file(tmp_path):
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    try:
        path = setup_logging(tmp_path / "logs", "DEBUG")
        setup_logging(tmp_path / "logs", "DEBUG")
        logging.getLogger("hls_ingest.test").info("[v_abc] fetching https://v.redd.it/abc.mp4")
        for handler in root.handlers:
            handler.flush()

        assert path.parent == tmp_path / "logs"
        text = path.read_text(encoding="utf-8")
        assert "|    INFO | [v_abc] fetching" in text
        # calling twice does not duplicate lines
        assert text.count("[v_abc] fetching") == 1
    finally:
        for handler in list(root.handlers):
            if handler not in before:
                root.removeHandler(handler)
                handler.close()
        root.setLevel(level)
