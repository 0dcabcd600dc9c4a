from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Final

_ALLOWED_SCHEMA_VERSIONS: Final[tuple[str, ...]] = ("v1",)


@dataclass(frozen=True)
class ModelManifest:
    """Optional JSON sidecar describing a model file (``<model>.json``)."""

    schema_version: str
    model_id: str
    labels: tuple[str, ...]
    input_size: int
    preprocess_hash: str

    @staticmethod
    def sidecar_for(model_path: Path) -> Path:
        return model_path.with_suffix(".json")

    @staticmethod
    def from_path(path: Path) -> ModelManifest:
        return ModelManifest.from_json(path.read_text(encoding="utf-8"))

    @staticmethod
    def from_json(s: str) -> ModelManifest:
        obj: object = json.loads(s)
        if not isinstance(obj, dict):
            raise ValueError("manifest must be a JSON object")
        return ModelManifest.from_dict({str(k): v for k, v in obj.items()})

    @staticmethod
    def from_dict(d: dict[str, object]) -> ModelManifest:
        schema_version = str(d.get("schema_version", "")).strip()
        model_id = str(d.get("model_id", "")).strip()
        preprocess_hash = str(d.get("preprocess_hash", "")).strip()
        if not schema_version or not model_id or not preprocess_hash:
            raise ValueError("manifest is missing required fields")
        if schema_version not in _ALLOWED_SCHEMA_VERSIONS:
            raise ValueError("unsupported manifest schema version")
        labels_raw = d.get("labels")
        if not isinstance(labels_raw, list) or len(labels_raw) < 2:
            raise ValueError("labels must be a list of at least two names")
        labels = tuple(str(x).strip() for x in labels_raw)
        if any(not x for x in labels):
            raise ValueError("labels must be non-empty strings")
        input_size = int(str(d.get("input_size", 150)))
        if input_size < 1:
            raise ValueError("input_size must be >= 1")
        return ModelManifest(
            schema_version=schema_version,
            model_id=model_id,
            labels=labels,
            input_size=input_size,
            preprocess_hash=preprocess_hash,
        )
