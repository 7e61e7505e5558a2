import json
import logging

from osdl_runtime.logging_config import StructuredFormatter, get_session_id, set_session_id


def make_record(**extra) -> logging.LogRecord:
    record = logging.makeLogRecord({"name": "osdl_runtime.orchestrator", "levelno": logging.INFO, "levelname": "INFO", "msg": "Fetching data requirement"})
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_emits_extra_fields_as_json():
    line = StructuredFormatter().format(make_record(node_id="reviews-panel", attempt=2))
    payload = json.loads(line)

    assert payload["message"] == "Fetching data requirement"
    assert payload["severity"] == "INFO"
    assert payload["node_id"] == "reviews-panel"
    assert payload["attempt"] == 2
    assert payload["timestamp"].endswith("Z")
    assert "msg" not in payload


def test_formatter_includes_session_id():
    set_session_id("preview_product-detail_abc123")
    try:
        payload = json.loads(StructuredFormatter().format(make_record()))
    finally:
        set_session_id(None)

    assert payload["session_id"] == "preview_product-detail_abc123"
    assert get_session_id() is None
