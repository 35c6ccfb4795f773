from __future__ import annotations

import json
import logging

from txlaunch.logging import event_log_path, get_logger, init_logging, log_event, log_exception
from txlaunch.system.gpu_probe import CapacitySummary


def read_events(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_events_append_to_file_with_context(tmp_path):
    path = tmp_path / "nested" / "events.jsonl"
    init_logging(path, session="skyrl-tx")
    assert event_log_path() == path

    log_event("first", port=8000)
    log_event("second", session="override")

    first, second = read_events(path)
    assert first["event"] == "first"
    assert first["port"] == 8000
    assert first["session"] == "skyrl-tx"
    assert "level" not in first
    assert second["session"] == "override"


def test_non_json_values_are_encoded(tmp_path):
    path = tmp_path / "events.jsonl"
    init_logging(str(path))
    summary = CapacitySummary(device_count=2, min_memory_mib=81559, distinct_names=frozenset({"H200", "H100"}))
    log_event("values", gpus=summary, where=tmp_path, names={"b", "a"})

    (record,) = read_events(path)
    assert record["gpus"] == {"device_count": 2, "min_memory_mib": 81559, "distinct_names": ["H100", "H200"]}
    assert record["where"] == str(tmp_path)
    assert record["names"] == ["a", "b"]


def test_exception_is_logged_at_error_level(tmp_path):
    path = tmp_path / "events.jsonl"
    init_logging(path)
    try:
        raise ValueError("bad value")
    except ValueError as exc:
        log_exception("failed", exc, step="resolve")

    (record,) = read_events(path)
    assert record["level"] == "error"
    assert record["error"] == "bad value"
    assert record["error_type"] == "ValueError"
    assert "Traceback" in record["traceback"]
    assert record["step"] == "resolve"


def test_falls_back_to_logger_with_event_level(caplog):
    init_logging(None)
    assert event_log_path() is None
    with caplog.at_level(logging.WARNING, logger="txlaunch"):
        log_event("quiet")
        log_event("loud", level=logging.WARNING, row=3)

    messages = [r.getMessage() for r in caplog.records]
    assert not any('"quiet"' in message for message in messages)
    (record,) = [r for r in caplog.records if '"loud"' in r.getMessage()]
    assert record.levelno == logging.WARNING
    assert json.loads(record.getMessage())["row"] == 3


def test_get_logger_nests_under_package():
    assert get_logger("custom").name == "txlaunch.custom"
    assert get_logger("txlaunch.runner.cli").name == "txlaunch.runner.cli"
    assert get_logger().name == "txlaunch"
