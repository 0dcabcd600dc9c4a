from __future__ import annotations

import os
import threading
import time
from collections.abc import Callable
from pathlib import Path

from fastapi.testclient import TestClient

from tests._fakes import FakeBackend, make_settings
from tumor_ai.api.app import create_app
from tumor_ai.inference.backends import ModelBackend
from tumor_ai.inference.engine import InferenceEngine


def _count_reloader_threads() -> int:
    return sum(1 for t in threading.enumerate() if t.name == "model-reloader")


def _wait_for(cond: Callable[[], bool], attempts: int = 100, delay: float = 0.02) -> bool:
    for _ in range(attempts):
        if cond():
            return True
        time.sleep(delay)
    return cond()


def test_background_reloader_starts_and_stops_cleanly(tmp_path: Path) -> None:
    s = make_settings(tmp_path / "absent.tflite")
    app = create_app(s, reload_interval_seconds=0.05)
    with TestClient(app):
        assert _wait_for(lambda: _count_reloader_threads() > 0)
    assert _wait_for(lambda: _count_reloader_threads() == 0)


def test_no_reloader_without_interval(tmp_path: Path) -> None:
    s = make_settings(tmp_path / "absent.tflite")
    with TestClient(create_app(s, reload_interval_seconds=0.0)):
        assert _wait_for(lambda: _count_reloader_threads() == 0)


def test_background_reloader_picks_up_new_model_file(tmp_path: Path) -> None:
    model = tmp_path / "brain_tumor_cnn.tflite"
    model.write_bytes(b"x")
    backends: list[FakeBackend] = []

    def _factory(path: Path, threads: int | None) -> ModelBackend:
        b = FakeBackend()
        backends.append(b)
        return b

    eng = InferenceEngine(make_settings(model), backend_factory=_factory)
    eng.load()
    app = create_app(make_settings(model), lambda: eng, reload_interval_seconds=0.05)
    with TestClient(app):
        st = model.stat()
        os.utime(model, (st.st_atime, st.st_mtime + 10.0))
        assert _wait_for(lambda: len(backends) >= 2 and backends[0].closed)
        assert eng.ready is True
    assert _wait_for(lambda: _count_reloader_threads() == 0)
