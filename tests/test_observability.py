from __future__ import annotations

import json
import logging

import pytest

from geolocator.observability import JsonFormatter, JsonLogConfig, configure_logging


def _record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="geolocator.lifecycle",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="lookup failed kind=%s",
        args=("timed_out",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_emits_one_object_per_record() -> None:
    line = JsonFormatter(JsonLogConfig()).format(_record(fields={"attempt": 3}))
    payload = json.loads(line)

    assert payload["severity"] == "WARNING"
    assert payload["logger"] == "geolocator.lifecycle"
    assert payload["message"] == "lookup failed kind=timed_out"
    assert payload["service"] == "geolocator"
    assert payload["fields"] == {"attempt": 3}
    assert payload["timestamp"].endswith("+00:00")
    assert "\n" not in line


def test_json_formatter_ignores_non_dict_fields() -> None:
    payload = json.loads(JsonFormatter(JsonLogConfig(service_name="edge")).format(_record(fields="x")))
    assert "fields" not in payload
    assert payload["service"] == "edge"


@pytest.fixture
def _restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def test_configure_logging_replaces_handlers(_restore_root_logger: logging.Logger) -> None:
    configure_logging(level="DEBUG", log_format="json")
    configure_logging(level="DEBUG", log_format="json")

    root = _restore_root_logger
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, JsonFormatter)
    assert root.level == logging.DEBUG
