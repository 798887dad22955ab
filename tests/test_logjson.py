import logging
from datetime import datetime, timedelta, timezone

from limaconf.logjson import propagate_json

LOGGER_NAME = "test.logjson"
STAMP = datetime(2023, 1, 1, tzinfo=timezone.utc)
LINE_TIME = "2023-01-01T00:00:00Z"


def _line(level, msg, time=LINE_TIME):
    return '{"level":"%s","msg":"%s","time":"%s"}' % (level, msg, time)


def test_warning_is_propagated_with_header(caplog):
    caplog.set_level(logging.DEBUG)
    propagate_json(logging.getLogger(LOGGER_NAME), _line("warning", "hello"), "hdr: ", None)
    assert [(r.name, r.levelno, r.getMessage()) for r in caplog.records] == [
        (LOGGER_NAME, logging.WARNING, "hdr: hello")
    ]


def test_fatal_becomes_error_with_level_attribute(caplog):
    caplog.set_level(logging.DEBUG)
    propagate_json(logging.getLogger(LOGGER_NAME), _line("fatal", "dead"), "h ", None)
    assert len(caplog.records) == 1
    record = caplog.records[0]
    assert record.levelno == logging.ERROR
    assert record.level == "fatal"
    assert record.getMessage() == "h dead"


def test_bytes_input_and_debug_level(caplog):
    caplog.set_level(logging.DEBUG)
    propagate_json(logging.getLogger(LOGGER_NAME), _line("debug", "dbg").encode(), "", None)
    assert [(r.levelno, r.getMessage()) for r in caplog.records] == [(logging.DEBUG, "dbg")]


def test_old_lines_are_dropped(caplog):
    caplog.set_level(logging.DEBUG)
    begin = STAMP + timedelta(seconds=2)
    propagate_json(logging.getLogger(LOGGER_NAME), _line("info", "old"), "", begin)
    assert caplog.records == []


def test_lines_within_tolerance_are_kept(caplog):
    caplog.set_level(logging.DEBUG)
    begin = STAMP + timedelta(milliseconds=500)
    propagate_json(logging.getLogger(LOGGER_NAME), _line("info", "recent"), "", begin)
    assert [r.getMessage() for r in caplog.records] == ["recent"]


def test_invalid_json_falls_back_to_root_info(caplog):
    caplog.set_level(logging.DEBUG)
    propagate_json(logging.getLogger(LOGGER_NAME), "not json at all", "hdr: ", None)
    assert [(r.name, r.levelno, r.getMessage()) for r in caplog.records] == [
        ("root", logging.INFO, "hdr: not json at all")
    ]


def test_unknown_level_falls_back(caplog):
    caplog.set_level(logging.DEBUG)
    line = _line("loud", "x")
    propagate_json(logging.getLogger(LOGGER_NAME), line, "", None)
    assert [(r.name, r.getMessage()) for r in caplog.records] == [("root", line)]


def test_blank_line_is_ignored(caplog):
    caplog.set_level(logging.DEBUG)
    propagate_json(logging.getLogger(LOGGER_NAME), "   \n", "hdr: ", None)
    assert caplog.records == []