from __future__ import annotations

import json
import logging

import pytest

from vegetable_ai.logging import (
    _choose_formatter,
    _ConsoleFormatter,
    _env_level,
    _JsonFormatter,
    _parse_evt_fields,
    get_logger,
    init_logging,
    log_event,
)
from vegetable_ai.request_context import request_id_var


def _record(msg: str, level: int = logging.INFO) -> logging.LogRecord:
    return logging.LogRecord(
        name="vegetable_ai",
        level=level,
        pathname="t",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )


class _Capture(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.messages: list[str] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.messages.append(record.getMessage())


def test_log_event_writes_typed_fields() -> None:
    logger = get_logger()
    cap = _Capture()
    old_level = logger.level
    logger.addHandler(cap)
    logger.setLevel(logging.INFO)
    try:
        log_event(
            "prediction_finished",
            {
                "latency_ms": 12,
                "predicted_class": 4,
                "confidence": 0.5,
                "label": "sweet corn",
                "model_id": "veg_v1",
                "ignored": object(),
            },
        )
    finally:
        logger.removeHandler(cap)
        logger.setLevel(old_level)
    assert len(cap.messages) == 1
    msg = cap.messages[0]
    assert msg.startswith("EVT event=prediction_finished")
    assert "label=sweet_corn" in msg and "ignored" not in msg
    fields = _parse_evt_fields(msg)
    assert fields["latency_ms"] == 12
    assert fields["predicted_class"] == 4
    assert fields["confidence"] == 0.5
    assert fields["model_id"] == "veg_v1"


def test_parse_evt_fields_ignores_plain_messages() -> None:
    assert _parse_evt_fields("hello world") == {}
    assert _parse_evt_fields("EVT event=x junk =v") == {"event": "x"}


def test_json_formatter_flattens_evt_and_request_id() -> None:
    token = request_id_var.set("rid-9")
    try:
        out = _JsonFormatter().format(_record("EVT event=model_loaded model_id=m1 state=ready"))
    finally:
        request_id_var.reset(token)
    payload = json.loads(out)
    assert payload["message"] == "model_loaded"
    assert payload["model_id"] == "m1"
    assert payload["request_id"] == "rid-9"
    assert payload["level"] == "INFO"


def test_console_formatter_evt_line() -> None:
    out = _ConsoleFormatter().format(
        _record("EVT event=prediction_finished latency_ms=7 confidence=0.91 label=carrot")
    )
    assert "[INFO]" in out
    assert "prediction_finished" in out
    assert "latency_ms" in out and "0.91" in out and "carrot" in out


def test_console_formatter_plain_and_levels() -> None:
    f = _ConsoleFormatter()
    warn = f.format(_record("model_load_error artifacts_missing", logging.WARNING))
    assert "[WARN]" in warn and "artifacts_missing" in warn
    assert "[DEBUG]" in f.format(_record("k=v", logging.DEBUG))


def test_choose_formatter_explicit_and_env(monkeypatch: pytest.MonkeyPatch) -> None:
    assert isinstance(_choose_formatter("json"), _JsonFormatter)
    assert isinstance(_choose_formatter("pretty"), _ConsoleFormatter)
    monkeypatch.delenv("VEGETABLE_AI_LOG_JSON", raising=False)
    monkeypatch.delenv("LOG_JSON", raising=False)
    monkeypatch.setenv("VEGETABLE_AI_LOG_PRETTY", "1")
    assert isinstance(_choose_formatter("auto"), _ConsoleFormatter)
    monkeypatch.setenv("VEGETABLE_AI_LOG_JSON", "yes")
    assert isinstance(_choose_formatter("auto"), _JsonFormatter)


def test_env_level(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("VEGETABLE_AI_LOG_LEVEL", raising=False)
    assert _env_level() == logging.INFO
    monkeypatch.setenv("VEGETABLE_AI_LOG_LEVEL", "warning")
    assert _env_level() == logging.WARNING
    monkeypatch.setenv("VEGETABLE_AI_LOG_LEVEL", "nonsense")
    assert _env_level() == logging.INFO


def test_init_logging_does_not_stack_handlers() -> None:
    init_logging("json")
    logger = init_logging("json")
    streams = [h for h in logger.handlers if isinstance(h, logging.StreamHandler)]
    assert len(streams) == 1
