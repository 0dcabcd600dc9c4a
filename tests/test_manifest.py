from __future__ import annotations

import json
from pathlib import Path

import pytest

from tumor_ai.inference.manifest import ModelManifest


def _valid() -> dict[str, object]:
    return {
        "schema_version": "v1",
        "model_id": "brain_tumor_cnn",
        "labels": ["Glioma", "Meningioma", "No tumor", "Pituitary"],
        "input_size": 150,
        "preprocess_hash": "v2/rgb+bilinear-stretch+div255+nhwc",
    }


def test_from_path_and_sidecar(tmp_path: Path) -> None:
    model = tmp_path / "brain_tumor_cnn.tflite"
    side = ModelManifest.sidecar_for(model)
    assert side.name == "brain_tumor_cnn.json"
    side.write_text(json.dumps(_valid()), encoding="utf-8")
    man = ModelManifest.from_path(side)
    assert man.model_id == "brain_tumor_cnn"
    assert man.labels[2] == "No tumor"
    assert man.input_size == 150


def test_input_size_defaults_to_150() -> None:
    d = _valid()
    del d["input_size"]
    assert ModelManifest.from_dict(d).input_size == 150


@pytest.mark.parametrize(
    ("key", "value"),
    [
        ("schema_version", "v9"),
        ("model_id", ""),
        ("labels", ["only"]),
        ("labels", "Glioma"),
        ("labels", ["a", " "]),
        ("input_size", 0),
        ("preprocess_hash", ""),
    ],
)
def test_invalid_fields_rejected(key: str, value: object) -> None:
    d = _valid()
    d[key] = value
    with pytest.raises(ValueError):
        ModelManifest.from_dict(d)


def test_non_object_json_rejected() -> None:
    with pytest.raises(ValueError):
        ModelManifest.from_json("[1, 2]")
