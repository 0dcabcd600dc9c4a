from __future__ import annotations

import json
import os
from pathlib import Path

import pytest
import torch

from tests._fakes import FakeBackend, make_settings
from tumor_ai.errors import EmptyOutput, EngineUnavailable
from tumor_ai.inference.backends import ModelBackend
from tumor_ai.inference.engine import InferenceEngine
from tumor_ai.inference.types import OUTPUT_SHAPE
from tumor_ai.preprocess import preprocess_signature


def _model_file(tmp_path: Path, name: str = "brain.tflite") -> Path:
    p = tmp_path / name
    p.write_bytes(b"\x00" * 16)
    return p


def _engine(tmp_path: Path, backend: FakeBackend, **classifier: object) -> InferenceEngine:
    s = make_settings(_model_file(tmp_path), **classifier)

    def _factory(path: Path, threads: int | None) -> ModelBackend:
        return backend

    return InferenceEngine(s, backend_factory=_factory)


def _zeros(size: int = 150) -> torch.Tensor:
    return torch.zeros(size * size * 3, dtype=torch.float32)


def test_missing_model_file_raises_engine_unavailable(tmp_path: Path) -> None:
    eng = InferenceEngine(make_settings(tmp_path / "absent.tflite"))
    with pytest.raises(EngineUnavailable):
        eng.load()
    assert eng.ready is False
    assert eng.try_load() is False


def test_run_without_model_raises_engine_unavailable(tmp_path: Path) -> None:
    eng = InferenceEngine(make_settings(tmp_path / "absent.tflite"))
    with pytest.raises(EngineUnavailable):
        eng.run(_zeros())


def test_run_feeds_nhwc_batch_and_returns_scores(tmp_path: Path) -> None:
    backend = FakeBackend((0.1, 0.7, 0.05, 0.15))
    eng = _engine(tmp_path, backend)
    eng.load()
    out = eng.run(_zeros())
    assert backend.calls == [(1, 150, 150, 3)]
    assert out == pytest.approx([0.1, 0.7, 0.05, 0.15])
    assert eng.model_id == "brain"
    assert eng.backend_name == "fake"


def test_output_shape_mismatch_raises_empty_output(tmp_path: Path) -> None:
    eng = _engine(tmp_path, FakeBackend((0.2, 0.3, 0.5)))
    eng.load()
    with pytest.raises(EmptyOutput):
        eng.run(_zeros())
    eng2 = _engine(tmp_path, FakeBackend((0.1, 0.2, 0.3, 0.4), out_shape=(4,)))
    eng2.load()
    with pytest.raises(EmptyOutput):
        eng2.run(_zeros())


def test_explicit_expected_shape(tmp_path: Path) -> None:
    eng = _engine(tmp_path, FakeBackend((0.1, 0.2, 0.3, 0.4)))
    eng.load()
    assert len(eng.run(_zeros(), expected_output_shape=OUTPUT_SHAPE)) == 4
    assert len(eng.run(_zeros(), expected_output_shape=[1, 4])) == 4
    with pytest.raises(EmptyOutput):
        eng.run(_zeros(), expected_output_shape=(1, 5))


def test_wrong_input_length_rejected(tmp_path: Path) -> None:
    eng = _engine(tmp_path, FakeBackend())
    eng.load()
    with pytest.raises(ValueError):
        eng.run(torch.zeros(10, dtype=torch.float32))


def test_failed_request_does_not_poison_engine(tmp_path: Path) -> None:
    backend = FakeBackend()
    eng = _engine(tmp_path, backend)
    eng.load()
    with pytest.raises(ValueError):
        eng.run(torch.zeros(3, dtype=torch.float32))
    assert eng.run(_zeros()) == pytest.approx(backend.scores)


def test_context_manager_closes_backend(tmp_path: Path) -> None:
    backend = FakeBackend()
    with _engine(tmp_path, backend) as eng:
        assert eng.ready is True
        fut = eng.submit(_zeros())
        assert fut.result(timeout=5) == pytest.approx(backend.scores)
    assert backend.closed is True
    assert eng.ready is False
    with pytest.raises(EngineUnavailable):
        eng.run(_zeros())


def test_reload_replaces_and_closes_old_backend(tmp_path: Path) -> None:
    b1 = FakeBackend((1.0, 0.0, 0.0, 0.0))
    b2 = FakeBackend((0.0, 0.0, 0.0, 1.0))
    backends = [b1, b2]
    model = _model_file(tmp_path)

    def _factory(path: Path, threads: int | None) -> ModelBackend:
        return backends.pop(0)

    eng = InferenceEngine(make_settings(model), backend_factory=_factory)
    eng.load()
    first = eng.run(_zeros())
    assert eng.reload_if_changed() is False

    st = model.stat()
    os.utime(model, (st.st_atime, st.st_mtime + 10.0))
    assert eng.reload_if_changed() is True
    assert eng.run(_zeros()) == pytest.approx([0.0, 0.0, 0.0, 1.0])
    assert first == pytest.approx([1.0, 0.0, 0.0, 0.0])
    assert b1.closed is True
    assert b2.closed is False


def test_reload_noop_when_never_loaded(tmp_path: Path) -> None:
    eng = InferenceEngine(make_settings(tmp_path / "absent.tflite"))
    assert eng.reload_if_changed() is False


def test_manifest_sidecar_overrides_labels_and_size(tmp_path: Path) -> None:
    backend = FakeBackend((0.9, 0.1))
    eng = _engine(tmp_path, backend)
    (tmp_path / "brain.json").write_text(
        json.dumps(
            {
                "schema_version": "v1",
                "model_id": "brain-v2",
                "labels": ["benign", "malignant"],
                "input_size": 8,
                "preprocess_hash": preprocess_signature(),
            }
        ),
        encoding="utf-8",
    )
    eng.load()
    assert eng.model_id == "brain-v2"
    assert eng.labels == ("benign", "malignant")
    assert eng.input_size == 8
    assert eng.run(_zeros(8)) == pytest.approx([0.9, 0.1])
    assert backend.calls == [(1, 8, 8, 3)]


def test_manifest_with_other_preprocess_hash_is_refused(tmp_path: Path) -> None:
    eng = _engine(tmp_path, FakeBackend())
    (tmp_path / "brain.json").write_text(
        json.dumps(
            {
                "schema_version": "v1",
                "model_id": "m",
                "labels": ["a", "b", "c", "d"],
                "preprocess_hash": "v0/other",
            }
        ),
        encoding="utf-8",
    )
    with pytest.raises(EngineUnavailable):
        eng.load()


def test_invalid_manifest_is_refused(tmp_path: Path) -> None:
    eng = _engine(tmp_path, FakeBackend())
    (tmp_path / "brain.json").write_text("[]", encoding="utf-8")
    with pytest.raises(EngineUnavailable):
        eng.load()


def test_model_input_shape_mismatch_is_refused(tmp_path: Path) -> None:
    backend = FakeBackend(input_shape=(1, 224, 224, 3))
    eng = _engine(tmp_path, backend)
    with pytest.raises(EngineUnavailable):
        eng.load()
    assert backend.closed is True
    assert eng.ready is False


def test_matching_model_input_shape_is_accepted(tmp_path: Path) -> None:
    eng = _engine(tmp_path, FakeBackend(input_shape=(1, 150, 150, 3)))
    eng.load()
    assert eng.ready is True
