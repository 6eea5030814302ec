import json
import logging
from datetime import datetime

from app.logging_config import JsonFormatter


def _record(**extra):
    record = logging.makeLogRecord(
        {"name": "app.negotiations.engine", "levelname": "INFO", "levelno": logging.INFO, "msg": "negotiation.started"}
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_extra_fields():
    line = JsonFormatter().format(_record(event="negotiation.started", negotiation_id="NEG-test0001", round=0))
    payload = json.loads(line)
    assert payload["message"] == "negotiation.started"
    assert payload["logger"] == "app.negotiations.engine"
    assert payload["level"] == "INFO"
    assert payload["event"] == "negotiation.started"
    assert payload["negotiation_id"] == "NEG-test0001"
    assert payload["round"] == 0
    assert "args" not in payload


def test_json_formatter_serializes_non_json_values():
    line = JsonFormatter().format(_record(expires_at=datetime(2026, 10, 19, 12, 0)))
    assert json.loads(line)["expires_at"] == "2026-10-19 12:00:00"
