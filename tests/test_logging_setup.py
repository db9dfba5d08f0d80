from __future__ import annotations

import logging
from pathlib import Path

import pytest

from cosmobridge.logging_setup import EmojiFormatter, setup_logging


def format_record(level: int, msg: str) -> str:
    record = logging.LogRecord("cosmobridge.test", level, __file__, 1, msg, None, None)
    return EmojiFormatter("%(message)s").format(record)


def test_warnings_get_a_marker_once() -> None:
    markers = EmojiFormatter.LEVEL_MARKERS
    assert format_record(logging.WARNING, "Scan failed") == markers[logging.WARNING] + "Scan failed"
    assert format_record(logging.ERROR, "Crash") == markers[logging.ERROR] + "Crash"
    assert format_record(logging.ERROR, "📡 Adapter gone") == "📡 Adapter gone"
    assert format_record(logging.INFO, "Ready") == "Ready"


def test_marker_does_not_leak_into_other_handlers() -> None:
    record = logging.LogRecord("cosmobridge.test", logging.WARNING, __file__, 1, "Slow client", None, None)
    EmojiFormatter("%(message)s").format(record)

    assert logging.Formatter("%(message)s").format(record) == "Slow client"


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


def test_debug_log_file_gets_debug_records(tmp_path: Path, restore_root_logger) -> None:
    log_file = tmp_path / "bridge.log"
    setup_logging(verbose=False, console_output=True, log_file=str(log_file))

    root = logging.getLogger()
    assert root.level == logging.DEBUG
    assert [h.level for h in root.handlers] == [logging.INFO, logging.DEBUG]
    assert logging.getLogger("dbus_next").level == logging.INFO

    logging.getLogger("cosmobridge.test").debug("notification on %s", "1524")
    for handler in root.handlers:
        handler.flush()

    assert "notification on 1524" in log_file.read_text(encoding="utf-8")
