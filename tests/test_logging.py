import json
import logging

from vehicle_service.logging_config import JSONFormatter, correlation_id, current_vrm, get_correlation_id, log_data


def _record(msg="lookup done", **extra):
    record = logging.LogRecord("vehicle_service.engine", logging.INFO, __file__, 1, msg, (), None)
    for k, v in extra.items():
        setattr(record, k, v)
    return record


def test_json_formatter_includes_context():
    cid_token = correlation_id.set("abc123")
    vrm_token = current_vrm.set("AB12CDE")
    try:
        entry = json.loads(JSONFormatter().format(_record(**log_data(sources={"registration": True}))))
    finally:
        current_vrm.reset(vrm_token)
        correlation_id.reset(cid_token)

    assert entry["message"] == "lookup done"
    assert entry["level"] == "INFO"
    assert entry["correlation_id"] == "abc123"
    assert entry["vrm"] == "AB12CDE"
    assert entry["data"] == {"sources": {"registration": True}}


def test_vrm_omitted_outside_lookup():
    entry = json.loads(JSONFormatter().format(_record()))
    assert "vrm" not in entry
    assert "data" not in entry


def test_correlation_id_generated_once():
    token = correlation_id.set("")
    try:
        first = get_correlation_id()
        assert first
        assert get_correlation_id() == first
    finally:
        correlation_id.reset(token)
