from __future__ import annotations

import io
import json
import logging

import pytest

from tumor_ai.errors import (
    AppError,
    DecodeError,
    EmptyOutput,
    EngineUnavailable,
    ErrorCode,
    ImageTooLarge,
    new_error,
    status_for,
)
from tumor_ai.logging import _ConsoleFormatter, _JsonFormatter, get_logger, init_logging, log_event
from tumor_ai.request_context import request_id_var


def _record(msg: str) -> logging.LogRecord:
    return logging.LogRecord(
        name="tumor_ai", level=logging.INFO, pathname="t", lineno=1, msg=msg, args=(), exc_info=None
    )


def test_domain_errors_carry_codes_and_statuses() -> None:
    cases: list[tuple[AppError, ErrorCode, int]] = [
        (DecodeError(), ErrorCode.decode_error, 400),
        (EngineUnavailable(), ErrorCode.engine_unavailable, 503),
        (EmptyOutput(), ErrorCode.empty_output, 502),
        (ImageTooLarge(), ErrorCode.too_large, 413),
    ]
    for err, code, http in cases:
        assert err.code is code
        assert err.http_status == http
        assert err.message
    assert DecodeError("bad bytes").message == "bad bytes"


def test_status_mapping_and_error_body() -> None:
    assert status_for(ErrorCode.unsupported_media_type) == 415
    assert status_for(ErrorCode.timeout) == 504
    assert status_for(ErrorCode.unauthorized) == 401
    assert status_for(ErrorCode.internal_error) == 500
    body = new_error(ErrorCode.engine_unavailable, "rid").to_dict()
    assert body == {
        "code": "engine_unavailable",
        "message": "Model not loaded.",
        "request_id": "rid",
    }


def test_json_formatter_parses_event_fields() -> None:
    token = request_id_var.set("r-9")
    try:
        out = _JsonFormatter().format(
            _record("EVT event=classify_finished latency_ms=12 confidence=0.700000 label=Glioma")
        )
    finally:
        request_id_var.reset(token)
    payload = json.loads(out)
    assert payload["message"] == "classify_finished"
    assert payload["latency_ms"] == 12
    assert payload["confidence"] == pytest.approx(0.7)
    assert payload["label"] == "Glioma"
    assert payload["request_id"] == "r-9"


def test_log_event_escapes_spaces_and_drops_unknown_fields() -> None:
    buf = io.StringIO()
    h = logging.StreamHandler(buf)
    h.setFormatter(_JsonFormatter())
    logger = get_logger()
    old_level = logger.level
    logger.setLevel(logging.INFO)
    logger.addHandler(h)
    try:
        log_event("classify_finished", {"label": "No tumor", "secret": "x", "latency_ms": True})
    finally:
        logger.removeHandler(h)
        logger.setLevel(old_level)
    payload = json.loads(buf.getvalue().strip())
    assert payload["label"] == "No_tumor"
    assert "secret" not in payload
    assert "latency_ms" not in payload


def test_console_formatter_renders_event_and_pairs() -> None:
    out = _ConsoleFormatter().format(_record("model_loaded model_id=brain backend=tflite"))
    assert "model_loaded" in out
    assert "model_id" in out and "brain" in out


def test_console_formatter_highlights_predicted_label() -> None:
    fmt = _ConsoleFormatter()
    out = fmt.format(_record("EVT event=classify_finished latency_ms=12 label=Glioma"))
    assert f"{fmt._BOLD}{fmt._FG_GREEN}Glioma{fmt._RESET}" in out
    assert f"{fmt._FG_MAGENTA}12{fmt._RESET}" in out
    assert f"{fmt._BOLD}{fmt._FG_BLUE_BRIGHT}classify_finished{fmt._RESET}" in out


def test_init_logging_keeps_single_handler(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TUMOR_AI_LOG_LEVEL", "debug")
    init_logging("json")
    logger = init_logging("pretty")
    handlers = [h for h in logger.handlers if isinstance(h, logging.StreamHandler)]
    assert len(handlers) == 1
    assert logger.level == logging.DEBUG
    assert isinstance(handlers[0].formatter, _ConsoleFormatter)
