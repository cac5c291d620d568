from __future__ import annotations

import io
import json
import logging

import pytest

from sketch_learner.logging import (
    _ConsoleFormatter,
    _JsonFormatter,
    _parse_evt_fields,
    get_logger,
    init_logging,
    log_event,
    request_id_var,
)


def _record(msg: str, level: int = logging.INFO) -> logging.LogRecord:
    return logging.LogRecord(
        name="sketch_learner",
        level=level,
        pathname="t",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )


def _capture_json() -> tuple[io.StringIO, logging.Handler]:
    buf = io.StringIO()
    h = logging.StreamHandler(buf)
    h.setFormatter(_JsonFormatter())
    return buf, h


def test_log_event_typed_fields() -> None:
    buf, h = _capture_json()
    logger = get_logger()
    old_level = logger.level
    logger.setLevel(logging.INFO)
    logger.addHandler(h)
    try:
        log_event(
            "training_complete",
            fields={
                "model_id": "sketchcnn v1",
                "n_examples": 6,
                "accuracy": 0.875,
                "stale": False,
            },
        )
    finally:
        logger.removeHandler(h)
        logger.setLevel(old_level)
    obj = json.loads(buf.getvalue().strip())
    assert obj["message"] == "training_complete"
    assert obj["model_id"] == "sketchcnn_v1"
    assert obj["n_examples"] == 6
    assert obj["accuracy"] == 0.875
    assert obj["stale"] is False


def test_json_formatter_includes_request_id() -> None:
    token = request_id_var.set("rid-1")
    try:
        out = json.loads(_JsonFormatter().format(_record("hello world")))
    finally:
        request_id_var.reset(token)
    assert out["request_id"] == "rid-1"
    assert out["message"] == "hello world"
    assert out["level"] == "INFO"


def test_json_formatter_evt_without_event_field() -> None:
    out = _JsonFormatter().format(_record("EVT foo=1"))
    assert '"message": "EVT foo=1"' in out
    assert '"foo": "1"' in out


def test_parse_evt_fields_ignores_non_evt_and_bad_tokens() -> None:
    assert _parse_evt_fields("plain message") == {}
    got = _parse_evt_fields("EVT event=x epoch=3 loss=abc junk =1 labels_restored=yes")
    assert got == {"event": "x", "epoch": 3, "loss": "abc", "labels_restored": True}


def test_console_formatter_splits_event_and_pairs() -> None:
    out = _ConsoleFormatter().format(_record("epoch_done idx=2 loss=0.5 trailing"))
    assert "epoch_done" in out and "idx" in out and "trailing" in out
    evt = _ConsoleFormatter().format(_record("EVT event=model_saved bytes=10", logging.WARNING))
    assert "model_saved" in evt and "[WARN]" in evt


def test_init_logging_env_level_and_json(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SKETCH_LEARNER_LOG_LEVEL", "debug")
    monkeypatch.setenv("SKETCH_LEARNER_LOG_JSON", "1")
    logger = init_logging()
    try:
        assert logger.level == logging.DEBUG
        handlers = [h for h in logger.handlers if isinstance(h, logging.StreamHandler)]
        assert len(handlers) == 1
        assert isinstance(handlers[0].formatter, _JsonFormatter)
        # Re-initializing does not duplicate handlers
        init_logging("pretty")
        handlers = [h for h in logger.handlers if isinstance(h, logging.StreamHandler)]
        assert len(handlers) == 1
        assert isinstance(handlers[0].formatter, _ConsoleFormatter)
    finally:
        for h in list(logger.handlers):
            logger.removeHandler(h)
        logger.setLevel(logging.NOTSET)
        logger.propagate = True
