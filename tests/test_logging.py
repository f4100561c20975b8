from __future__ import annotations

import json
import logging
import sys

import pytest

from safex_logging import JsonFormatter, configure_logging, parse_level


@pytest.mark.parametrize(
    "value,expected",
    [
        (None, logging.INFO),
        ("debug", logging.DEBUG),
        ("WARNING", logging.WARNING),
        (logging.ERROR, logging.ERROR),
    ],
)
def test_parse_level(value, expected) -> None:
    assert parse_level(value) == expected


def test_parse_level_rejects_unknown() -> None:
    with pytest.raises(ValueError, match="Invalid log level"):
        parse_level("chatty")


def test_text_format(capsys) -> None:
    logger = configure_logging("info", "text")
    logging.getLogger("safex.tar").info("hello %s", "world")
    logging.getLogger("safex.tar").debug("hidden")
    err = capsys.readouterr().err
    assert "| INFO     | safex.tar | hello world" in err
    assert "hidden" not in err
    assert logger.name == "safex"


def test_json_format_includes_extra_fields(capsys) -> None:
    configure_logging("debug", "json")
    logging.getLogger("safex.zip").warning("rejected", extra={"entry": "../evil"})
    record = json.loads(capsys.readouterr().err.strip())
    assert record["level"] == "WARNING"
    assert record["logger"] == "safex.zip"
    assert record["message"] == "rejected"
    assert record["entry"] == "../evil"
    assert "time" in record


def test_json_formatter_includes_exception() -> None:
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = logging.LogRecord("safex", logging.ERROR, __file__, 1, "failed", (), None)
        record.exc_info = sys.exc_info()
    payload = json.loads(JsonFormatter().format(record))
    assert "RuntimeError: boom" in payload["error"]


def test_configure_is_idempotent_unless_forced() -> None:
    logger = configure_logging("info", "text")
    handler = logger.handlers[0]
    assert configure_logging("debug", "json").handlers == [handler]
    forced = configure_logging("debug", "json", force=True)
    assert len(forced.handlers) == 1
    assert isinstance(forced.handlers[0].formatter, JsonFormatter)
    assert forced.level == logging.DEBUG


def test_unknown_format_rejected() -> None:
    with pytest.raises(ValueError, match="Unsupported log format"):
        configure_logging("info", "xml")
