"""
test_logging.py — Log formatters, layered log context, request ids.
"""

from __future__ import annotations

import json
import logging
import sys

import pytest

from backend.app.core.logging_config import (
    JSONFormatter,
    PrettyFormatter,
    _use_json,
    bind_log_context,
    get_log_context,
    log_context,
    reset_log_context,
)
from backend.app.core.middleware import resolve_request_id


def _record(msg="Alert ALR-1 complete", level=logging.INFO, **extra) -> logging.LogRecord:
    record = logging.LogRecord("backend.app.alerts", level, __file__, 10, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestLogContext:

    def test_layers_and_restores(self):
        assert get_log_context() == {}
        with log_context(request_id="req-1"):
            with log_context(incident_id="SOS-1", admin_id=None):
                assert get_log_context() == {"request_id": "req-1", "incident_id": "SOS-1"}
            assert get_log_context() == {"request_id": "req-1"}
        assert get_log_context() == {}

    def test_bind_and_reset(self):
        token = bind_log_context(alert_id="ALR-9")
        try:
            assert get_log_context()["alert_id"] == "ALR-9"
        finally:
            reset_log_context(token)
        assert get_log_context() == {}


class TestFormatters:

    def test_json_carries_context_and_extras(self):
        with log_context(request_id="abcdef1234567890", incident_id="SOS-1"):
            line = JSONFormatter().format(_record(recipient_count=3, channel="push"))

        entry = json.loads(line)
        assert entry["message"] == "Alert ALR-1 complete"
        assert entry["level"] == "INFO"
        assert entry["request_id"] == "abcdef1234567890"
        assert entry["incident_id"] == "SOS-1"
        assert entry["recipient_count"] == 3
        assert entry["channel"] == "push"

    def test_json_exception(self):
        try:
            raise RuntimeError("store down")
        except RuntimeError:
            record = _record(level=logging.ERROR)
            record.exc_info = sys.exc_info()
        entry = json.loads(JSONFormatter().format(record))
        assert entry["exception"] == {"type": "RuntimeError", "message": "store down"}

    def test_pretty_tags(self):
        with log_context(request_id="abcdef1234567890"):
            line = PrettyFormatter(use_color=False).format(
                _record(incident_id="SOS-1", alert_id="ALR-1"),
            )
        assert "[abcdef12 SOS-1 ALR-1]" in line
        assert line.endswith("backend.app.alerts: Alert ALR-1 complete")
        assert "\033[" not in line

    def test_pretty_without_context(self):
        line = PrettyFormatter(use_color=False).format(_record())
        assert "[" not in line

    def test_format_selection(self):
        assert _use_json("json") is True
        assert _use_json("pretty") is False
        with pytest.raises(ValueError):
            _use_json("xml")


class TestRequestId:

    def test_well_formed_id_kept(self):
        assert resolve_request_id("edge-7f3a.01") == "edge-7f3a.01"

    @pytest.mark.parametrize("value", [None, "", "has space", "a" * 65, "line\nbreak"])
    def test_other_values_replaced(self, value):
        generated = resolve_request_id(value)
        assert generated != value
        assert len(generated) == 16
